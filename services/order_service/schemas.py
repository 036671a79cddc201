"""
Order Service — リクエスト / 行モデル
"""

from datetime import datetime, timezone
from decimal import Decimal
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

from . import config


class PlaceOrderRequest(BaseModel):
    """`POST /orders` のボディ

    `quantity` は (0, MAX_ORDER_QUANTITY] の整数のみ。文字列・小数・真偽値は
    変換せずに拒否する。ID は数値で送られてきても文字列として受け付ける。
    """

    model_config = ConfigDict(str_strip_whitespace=True, coerce_numbers_to_str=True)

    requester_id: str = Field(..., min_length=1)
    product_id: str = Field(..., min_length=1)
    quantity: int = Field(..., gt=0, le=config.MAX_ORDER_QUANTITY, strict=True)
    idempotency_key: str | None = Field(None, min_length=1, max_length=255)


class Product(BaseModel):
    """Saga が商品カタログから必要とする情報"""

    model_config = ConfigDict(extra="ignore", coerce_numbers_to_str=True)

    id: str
    price: Decimal = Field(..., ge=0)


class Order(BaseModel):
    id: str
    user_id: str
    product_id: str
    quantity: int
    total_price: Decimal
    # 状態遷移はない。完了は在庫台帳側で追跡する
    status: Literal["pending"] = "pending"
    idempotency_key: str | None = None
    created_at: datetime

    @field_validator("created_at")
    @classmethod
    def assume_utc(cls, v: datetime) -> datetime:
        # SQLite はタイムゾーンなしで返す。保存時は常に UTC
        return v if v.tzinfo else v.replace(tzinfo=timezone.utc)

    @classmethod
    def from_row(cls, row) -> "Order":
        return cls(
            id=row.id,
            user_id=row.user_id,
            product_id=row.product_id,
            quantity=row.quantity,
            total_price=row.total_price,
            status=row.status,
            idempotency_key=row.idempotency_key,
            created_at=row.created_at,
        )
