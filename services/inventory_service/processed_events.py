"""
Inventory Service — 処理済みイベントストア

在庫に適用済みの注文通知の永続的な集合。行が存在することが、
コンシューマが頼る唯一の冪等性シグナル。行は書き込み一度きりで、
チャネルの再送期間よりずっと長い保持期間を過ぎると削除される。
"""

from datetime import datetime, timezone

from sqlalchemy import delete, insert, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from .db import processed_events
from .errors import DuplicateEvent


async def is_processed(session: AsyncSession, event_id: str) -> bool:
    result = await session.execute(
        select(processed_events.c.event_id).where(
            processed_events.c.event_id == event_id
        )
    )
    return result.first() is not None


async def record_event(
    session: AsyncSession,
    event_id: str,
    order_id: str,
    product_id: str,
    quantity: int,
) -> datetime:
    """
    呼び出し側のトランザクション内で event_id を INSERT する。

    主キー衝突は同じイベントの同時配送が先着したことを意味し、
    DuplicateEvent として報告する。
    """
    now = datetime.now(timezone.utc)
    try:
        await session.execute(
            insert(processed_events).values(
                event_id=event_id,
                order_id=order_id,
                product_id=product_id,
                quantity=quantity,
                processed_at=now,
            )
        )
    except IntegrityError as e:
        raise DuplicateEvent(event_id) from e
    return now


async def load_event(session: AsyncSession, event_id: str) -> dict | None:
    result = await session.execute(
        select(processed_events).where(processed_events.c.event_id == event_id)
    )
    row = result.fetchone()
    if not row:
        return None
    return {
        "event_id": row.event_id,
        "order_id": row.order_id,
        "product_id": row.product_id,
        "quantity": row.quantity,
        "processed_at": row.processed_at.isoformat() if row.processed_at else None,
    }


async def prune_events(session: AsyncSession, older_than: datetime) -> int:
    """`older_than` より前に処理されたエントリを削除し、削除件数を返す"""
    async with session.begin():
        result = await session.execute(
            delete(processed_events).where(
                processed_events.c.processed_at < older_than
            )
        )
    return result.rowcount
