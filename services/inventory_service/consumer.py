"""
Inventory Service — 冪等な OrderCreated コンシューマ

配送チャネルは at-least-once: 同じ通知が複数回、遅れて、あるいは他の
注文と前後して届くことがある。`event_id` をキーに効果を一度だけにする。

  ┌─────────────────────────────────────────────────────────┐
  │  1. ペイロード検証              → 400 (再送しない)      │
  │  2. event_id が記録済み?        → duplicate, 何もしない │
  │  3. 1 つのローカルトランザクション:                     │
  │       INSERT processed_events(event_id, ...)            │
  │       ConfirmReservation(product_id, quantity)          │
  │     commit → 応答                                       │
  └─────────────────────────────────────────────────────────┘

記録と確定は一緒にコミットされるので、記録されずに確定されることはない。
event_id を先に INSERT するため、同じイベントの同時配送は主キーで待たされ、
その後 duplicate として引き下がる。コンシューマ内では再試行しない
(再送はチャネルの役割で、重複は記録済み集合が吸収する)。
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from . import commands, config, processed_events
from .errors import DuplicateEvent, ValidationFailed
from .events import OrderCreated

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ConsumeResult:
    event_id: str
    order_id: str
    duplicate: bool

    def to_dict(self) -> dict:
        return {
            "event_id": self.event_id,
            "order_id": self.order_id,
            "duplicate": self.duplicate,
        }


def parse_event(payload: dict) -> OrderCreated:
    try:
        return OrderCreated.model_validate(payload)
    except ValidationError as e:
        raise ValidationFailed(
            "event_id, order_id, product_id and a positive quantity are required",
            [
                {"field": ".".join(str(p) for p in err["loc"]), "message": err["msg"]}
                for err in e.errors()
            ],
        ) from e


async def handle_order_created(session: AsyncSession, payload: dict) -> ConsumeResult:
    event = parse_event(payload)

    try:
        async with session.begin():
            if await processed_events.is_processed(session, event.event_id):
                logger.info(
                    "Event %s already processed, skipping", event.event_id
                )
                return ConsumeResult(event.event_id, event.order_id, duplicate=True)

            await processed_events.record_event(
                session,
                event.event_id,
                event.order_id,
                event.product_id,
                event.quantity,
            )
            await commands.apply_confirmation(
                session, event.product_id, event.quantity
            )
    except DuplicateEvent:
        logger.info(
            "Event %s recorded by a concurrent delivery, skipping",
            event.event_id,
        )
        return ConsumeResult(event.event_id, event.order_id, duplicate=True)

    logger.info(
        "Consumed event %s for order %s: confirmed %d of %s",
        event.event_id,
        event.order_id,
        event.quantity,
        event.product_id,
    )
    return ConsumeResult(event.event_id, event.order_id, duplicate=False)


async def prune_processed_events(
    session: AsyncSession,
    retention: timedelta | None = None,
    now: datetime | None = None,
) -> int:
    retention = retention or timedelta(hours=config.PROCESSED_EVENT_RETENTION_HOURS)
    cutoff = (now or datetime.now(timezone.utc)) - retention
    removed = await processed_events.prune_events(session, cutoff)
    if removed:
        logger.info("Pruned %d processed events older than %s", removed, cutoff)
    return removed
