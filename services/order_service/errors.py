"""
Order Service — 例外階層

エラー応答には HTTP ステータスとは別に機械可読な `code` を必ず含める。
クライアントは「再試行すればよい」(SERVICE_UNAVAILABLE,
CONCURRENT_MODIFICATION) と「このままでは成功しない」
(INSUFFICIENT_STOCK, PRODUCT_NOT_FOUND, VALIDATION_ERROR) を区別できる。
"""


class OrderError(Exception):
    """注文 Saga が返すすべての失敗の基底クラス"""

    code: str = "INTERNAL_ERROR"
    status_code: int = 500
    retryable: bool = False

    def __init__(self, message: str | None = None) -> None:
        if message is None:
            message = "Failed to create order. Please try again."
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


class OrderValidationError(OrderError):
    code = "VALIDATION_ERROR"
    status_code = 400

    def __init__(self, message: str, errors: list[dict] | None = None) -> None:
        super().__init__(message)
        self.errors = errors or []

    def details(self) -> dict:
        return {"errors": self.errors}


class OrderNotFound(OrderError):
    code = "ORDER_NOT_FOUND"
    status_code = 404

    def __init__(self, order_id: str) -> None:
        super().__init__(f"Order {order_id} not found")


class ProductNotFound(OrderError):
    code = "PRODUCT_NOT_FOUND"
    status_code = 404

    def __init__(self, product_id: str) -> None:
        super().__init__(f"Product {product_id} not found")
        self.product_id = product_id


class ProductNotInInventory(OrderError):
    code = "PRODUCT_NOT_IN_INVENTORY"
    status_code = 404

    def __init__(self, product_id: str) -> None:
        super().__init__(f"Product {product_id} not found in inventory")
        self.product_id = product_id


class InsufficientStock(OrderError):
    code = "INSUFFICIENT_STOCK"
    status_code = 409

    def __init__(self, available: int, requested: int, message: str | None = None) -> None:
        super().__init__(
            message
            or f"Insufficient stock. Available: {available}, Requested: {requested}"
        )
        self.available = available
        self.requested = requested

    def details(self) -> dict:
        return {"available": self.available, "requested": self.requested}


class ConcurrentModification(OrderError):
    code = "CONCURRENT_MODIFICATION"
    status_code = 409
    retryable = True

    def __init__(self, message: str | None = None) -> None:
        super().__init__(
            message or "Inventory was modified by another request. Please retry."
        )


class ServiceUnavailable(OrderError):
    """下流サービスのタイムアウト・接続不可・5xx 応答"""

    code = "SERVICE_UNAVAILABLE"
    status_code = 503
    retryable = True

    def __init__(self, service: str) -> None:
        super().__init__(
            f"{service} is currently unavailable. Please try again later."
        )
        self.service = service


class UnconfirmedReservation(ServiceUnavailable):
    """在庫サービスは 2xx を返したが、応答から引き当て結果を読み取れない。

    引き当て自体は成功している可能性があるため、呼び出し側は解放を行う。
    """

    def __init__(self, product_id: str) -> None:
        super().__init__("Inventory service")
        self.product_id = product_id


class NotificationFailed(OrderError):
    """OrderCreated の発行に失敗した。注文の INSERT はロールバックされる。"""

    code = "INTERNAL_ERROR"
    status_code = 500

    def __init__(self, order_id: str) -> None:
        super().__init__("Failed to publish order event")
        self.order_id = order_id
