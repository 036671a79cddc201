"""
Inventory Service — テーブル定義

`inventory` は商品ごとに 1 行。`processed_events` は適用済みの
注文通知を記録する。

CHECK 制約は在庫不変条件の最後の砦: アプリケーションが何をしても、
利用可能在庫 (stock - reserved) が負になる行はデータベースが拒否する。
"""

from sqlalchemy import (
    CheckConstraint,
    Column,
    DateTime,
    Integer,
    MetaData,
    String,
    Table,
)
from sqlalchemy.ext.asyncio import AsyncEngine

metadata = MetaData()

inventory = Table(
    "inventory",
    metadata,
    Column("product_id", String(255), primary_key=True),
    Column("stock_quantity", Integer, nullable=False, default=0),
    Column("reserved_quantity", Integer, nullable=False, default=0),
    Column("version", Integer, nullable=False, default=0),
    Column("updated_at", DateTime(timezone=True), nullable=True),
    CheckConstraint("stock_quantity >= 0", name="ck_inventory_stock_non_negative"),
    CheckConstraint(
        "reserved_quantity >= 0", name="ck_inventory_reserved_non_negative"
    ),
    CheckConstraint(
        "stock_quantity - reserved_quantity >= 0",
        name="ck_inventory_available_non_negative",
    ),
)

processed_events = Table(
    "processed_events",
    metadata,
    Column("event_id", String(255), primary_key=True),
    Column("order_id", String(255), nullable=False),
    Column("product_id", String(255), nullable=False),
    Column("quantity", Integer, nullable=False),
    Column("processed_at", DateTime(timezone=True), nullable=False, index=True),
)


async def init_db(engine: AsyncEngine) -> None:
    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)
