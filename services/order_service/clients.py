"""
Order Service — 下流サービスクライアント

商品参照 (Product Service) と在庫台帳 (Inventory Service) を呼ぶ
薄い httpx ラッパー。すべての呼び出しにタイムアウトを設定する。
タイムアウト・接続失敗・5xx は ServiceUnavailable (再試行可) として扱う。
"""

import logging

import httpx
from pydantic import ValidationError

from .errors import (
    ConcurrentModification,
    InsufficientStock,
    ProductNotFound,
    ProductNotInInventory,
    ServiceUnavailable,
    UnconfirmedReservation,
)
from .schemas import Product

logger = logging.getLogger(__name__)


def _body(resp: httpx.Response) -> dict:
    try:
        data = resp.json()
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}


class ProductClient:
    """商品 ID で GET → {id, price} | ProductNotFound"""

    def __init__(self, client: httpx.AsyncClient, base_url: str, timeout: float):
        self.client = client
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    async def get_product(self, product_id: str) -> Product:
        try:
            resp = await self.client.get(
                f"{self.base_url}/products/{product_id}", timeout=self.timeout
            )
        except httpx.HTTPError as e:
            logger.error("Product service unavailable: %s", e)
            raise ServiceUnavailable("Product service") from e

        if resp.status_code == 404:
            raise ProductNotFound(product_id)
        if resp.is_error:
            logger.error("Product service returned %d", resp.status_code)
            raise ServiceUnavailable("Product service")

        try:
            return Product.model_validate(_body(resp))
        except ValidationError as e:
            logger.error("Product service returned a malformed product: %s", e)
            raise ServiceUnavailable("Product service") from e


class InventoryClient:
    """在庫台帳への引き当て / 解放の呼び出し"""

    def __init__(self, client: httpx.AsyncClient, base_url: str, timeout: float):
        self.client = client
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    async def _post(self, path: str, product_id: str, quantity: int) -> httpx.Response:
        try:
            return await self.client.post(
                f"{self.base_url}{path}",
                json={"product_id": product_id, "quantity": quantity},
                timeout=self.timeout,
            )
        except httpx.HTTPError as e:
            logger.error("Inventory service unavailable (%s): %s", path, e)
            raise ServiceUnavailable("Inventory service") from e

    async def reserve(self, product_id: str, quantity: int) -> int:
        """在庫を引き当て、引き当て後の利用可能在庫を返す。"""
        resp = await self._post("/inventory/reserve", product_id, quantity)
        body = _body(resp)

        if resp.is_success:
            try:
                return int(body["available"])
            except (KeyError, TypeError, ValueError) as e:
                logger.error("Inventory service reserve reply has no available stock")
                raise UnconfirmedReservation(product_id) from e

        code = body.get("code")
        if resp.status_code == 409 and code == "INSUFFICIENT_STOCK":
            raise InsufficientStock(
                body.get("available", 0), quantity, body.get("message")
            )
        if resp.status_code == 409 and code == "CONCURRENT_MODIFICATION":
            raise ConcurrentModification(body.get("message"))
        if resp.status_code == 404:
            raise ProductNotInInventory(product_id)

        logger.error(
            "Inventory service error on reserve: %d %s", resp.status_code, code
        )
        raise ServiceUnavailable("Inventory service")

    async def release(self, product_id: str, quantity: int) -> None:
        """引き当てを解放する。2xx 以外はすべて例外。"""
        resp = await self._post("/inventory/release-reservation", product_id, quantity)
        if resp.status_code == 404:
            raise ProductNotInInventory(product_id)
        resp.raise_for_status()
