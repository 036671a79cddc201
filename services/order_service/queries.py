"""
Order Service — クエリハンドラ (CQRS Read 側)
"""

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from .db import orders
from .schemas import Order


async def get_order(session: AsyncSession, order_id: str) -> Order | None:
    result = await session.execute(select(orders).where(orders.c.id == order_id))
    row = result.fetchone()
    if not row:
        return None
    return Order.from_row(row)


async def get_order_by_idempotency_key(
    session: AsyncSession, idempotency_key: str
) -> Order | None:
    result = await session.execute(
        select(orders).where(orders.c.idempotency_key == idempotency_key)
    )
    row = result.fetchone()
    if not row:
        return None
    return Order.from_row(row)
