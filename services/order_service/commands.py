"""
Order Service — コマンドハンドラ (CQRS Write 側)

注文行は一度だけ INSERT され、以後は更新されない。
"""

from sqlalchemy import insert
from sqlalchemy.ext.asyncio import AsyncSession

from .db import orders
from .schemas import Order


async def insert_order(session: AsyncSession, order: Order) -> None:
    """
    呼び出し元のトランザクション内で注文行を INSERT する。

    コミット / ロールバックは呼び出し元の責任。注文行が見えるように
    なるのは OrderCreated の発行が成功した後だけ。
    """
    await session.execute(
        insert(orders).values(
            id=order.id,
            user_id=order.user_id,
            product_id=order.product_id,
            quantity=order.quantity,
            total_price=order.total_price,
            status=order.status,
            idempotency_key=order.idempotency_key,
            created_at=order.created_at,
        )
    )
