"""
Order Service — テーブル定義

注文ストアはこのサービスだけが所有する。在庫ストアとは所有者が
別なので、inventory への外部キーは持たない。
"""

from sqlalchemy import (
    CheckConstraint,
    Column,
    DateTime,
    Integer,
    MetaData,
    Numeric,
    String,
    Table,
)
from sqlalchemy.ext.asyncio import AsyncEngine

metadata = MetaData()

orders = Table(
    "orders",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("user_id", String(255), nullable=False),
    Column("product_id", String(255), nullable=False),
    Column("quantity", Integer, nullable=False),
    Column("total_price", Numeric(12, 2), nullable=False),
    Column("status", String(50), nullable=False, default="pending"),
    Column("idempotency_key", String(255), nullable=True, unique=True),
    Column("created_at", DateTime(timezone=True), nullable=False),
    CheckConstraint("quantity > 0", name="ck_orders_quantity_positive"),
    CheckConstraint("total_price >= 0", name="ck_orders_total_price_non_negative"),
)


async def init_db(engine: AsyncEngine) -> None:
    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)
