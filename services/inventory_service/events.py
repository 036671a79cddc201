"""
Inventory Service — イベント定義

配送チャネルから受け取る通知。
"""

from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field


class OrderCreated(BaseModel):
    """注文が永続化され、引き当てを確定できる状態になった"""

    model_config = ConfigDict(extra="ignore", coerce_numbers_to_str=True)

    event_id: str = Field(..., min_length=1)
    order_id: str = Field(..., min_length=1)
    product_id: str = Field(..., min_length=1)
    quantity: int = Field(..., gt=0, strict=True)
    user_id: str | None = None
    total_price: Decimal | None = None
    created_at: datetime | None = None
