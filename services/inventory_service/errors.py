"""
Inventory Service — 例外階層

すべての例外は HTTP ステータスとは独立した機械可読な `code` と、
「再試行すれば通る」か「このままでは決して成功しない」かを示す
`retryable` フラグを持つ。

台帳の失敗をまとめて扱うなら `LedgerError`、個別に扱うなら
`InsufficientStock` などのサブクラスを捕捉する。
"""


class LedgerError(Exception):
    """在庫台帳の例外の基底クラス"""

    code: str = "INTERNAL_ERROR"
    status_code: int = 500
    retryable: bool = False

    def __init__(self, message: str | None = None) -> None:
        if message is None:
            message = "An unspecified inventory error occurred."
        self.message = message
        super().__init__(message)

    def details(self) -> dict:
        return {}

    def to_dict(self) -> dict:
        return {
            "code": self.code,
            "message": self.message,
            "retryable": self.retryable,
            **self.details(),
        }


class ValidationFailed(LedgerError):
    """
    不正なペイロード (reserve / confirm / release の本文、OrderCreated 通知)。

    配送チャネルが永遠に再送しないよう、ステータスは 4xx で
    `retryable` は False。
    """

    code = "VALIDATION_ERROR"
    status_code = 400

    def __init__(self, message: str, errors: list[dict] | None = None) -> None:
        super().__init__(message)
        self.errors = errors or []

    def details(self) -> dict:
        return {"errors": self.errors}


class InventoryNotFound(LedgerError):
    code = "PRODUCT_NOT_FOUND"
    status_code = 404

    def __init__(self, product_id: str) -> None:
        super().__init__(f"Product {product_id} not found in inventory")
        self.product_id = product_id

    def details(self) -> dict:
        return {"product_id": self.product_id}


class InsufficientStock(LedgerError):
    """
    要求数量を在庫でまかなえないときに Reserve が送出する。

    バグではなく想定内の業務結果。`available` は引き当て可能だった数量。
    """

    code = "INSUFFICIENT_STOCK"
    status_code = 409

    def __init__(self, available: int, requested: int) -> None:
        super().__init__(
            f"Insufficient stock. Available: {available}, Requested: {requested}"
        )
        self.available = available
        self.requested = requested

    def details(self) -> dict:
        return {"available": self.available, "requested": self.requested}


class ConcurrentModification(LedgerError):
    """version 条件に一致する行がない (別の書き込みが先にコミットした)"""

    code = "CONCURRENT_MODIFICATION"
    status_code = 409
    retryable = True

    def __init__(self, product_id: str) -> None:
        super().__init__(
            "Inventory was modified by another request. Please retry."
        )
        self.product_id = product_id


class InvariantViolation(LedgerError):
    """
    在庫数・引き当て数・利用可能在庫のいずれかを負にする書き込みを
    データベースが拒否した。そのトランザクションは常に失敗扱い。
    """

    code = "INVARIANT_VIOLATION"
    status_code = 500

    def __init__(self, product_id: str, operation: str) -> None:
        super().__init__(
            f"{operation} on product {product_id} would violate the inventory invariant"
        )
        self.product_id = product_id
        self.operation = operation


class DuplicateEvent(LedgerError):
    """同じイベントの同時配送が先に event_id を記録した"""

    code = "DUPLICATE_EVENT"
    status_code = 200

    def __init__(self, event_id: str) -> None:
        super().__init__(f"Event {event_id} already processed")
        self.event_id = event_id
