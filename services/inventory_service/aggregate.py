"""
Inventory Service — 在庫レコード

`inventory` 1 行のスナップショット。
available = stock_quantity - reserved_quantity
"""

from dataclasses import dataclass
from datetime import datetime


@dataclass(frozen=True)
class InventoryRecord:
    product_id: str
    stock_quantity: int
    reserved_quantity: int
    version: int
    updated_at: datetime | None = None

    @property
    def available(self) -> int:
        return self.stock_quantity - self.reserved_quantity

    @classmethod
    def from_row(cls, row) -> "InventoryRecord":
        return cls(
            product_id=row.product_id,
            stock_quantity=row.stock_quantity,
            reserved_quantity=row.reserved_quantity,
            version=row.version,
            updated_at=row.updated_at,
        )

    def to_dict(self) -> dict:
        return {
            "product_id": self.product_id,
            "stock_quantity": self.stock_quantity,
            "reserved_quantity": self.reserved_quantity,
            "available_stock": self.available,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
