"""
Inventory Service — クエリハンドラ (CQRS Read 側)
"""

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from .aggregate import InventoryRecord
from .db import inventory


async def get_availability(
    session: AsyncSession, product_id: str
) -> InventoryRecord | None:
    """商品 1 件の在庫数・引き当て数・利用可能在庫 (読み取り専用)"""
    result = await session.execute(
        select(inventory).where(inventory.c.product_id == product_id)
    )
    row = result.fetchone()
    if not row:
        return None
    return InventoryRecord.from_row(row)


async def list_inventory(session: AsyncSession) -> list[InventoryRecord]:
    result = await session.execute(
        select(inventory).order_by(inventory.c.product_id)
    )
    return [InventoryRecord.from_row(row) for row in result.fetchall()]
