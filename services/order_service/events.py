"""
Order Service — イベント定義

イベント名は過去形。発行後は不変 (Immutable)。
"""

from datetime import datetime
from decimal import Decimal
from uuid import uuid4

from pydantic import BaseModel, Field

from .schemas import Order


class OrderCreated(BaseModel):
    """注文が永続化され、在庫が引き当て済みになった。

    `event_id` は発行ごとに新しく採番され `order_id` とは別物。
    Inventory Service のコンシューマーはこれで重複を排除する。
    """

    event_id: str = Field(default_factory=lambda: str(uuid4()))
    order_id: str
    user_id: str
    product_id: str
    quantity: int
    total_price: Decimal
    created_at: datetime

    @classmethod
    def for_order(cls, order: Order) -> "OrderCreated":
        return cls(
            order_id=order.id,
            user_id=order.user_id,
            product_id=order.product_id,
            quantity=order.quantity,
            total_price=order.total_price,
            created_at=order.created_at,
        )
