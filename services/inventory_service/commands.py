"""
Inventory Service — コマンドハンドラ (CQRS Write 側)

`inventory` 行を変更するのは Reserve / Confirm / Release の 3 つだけ。
それぞれが独立したローカルトランザクションで動き、`version` を進める。

  ┌──────────────────────────────────────────────────────────────┐
  │  Reserve:  SELECT ... FOR UPDATE                             │
  │            available < qty → InsufficientStock (書き込みなし)│
  │            UPDATE reserved += qty WHERE version = :read      │
  │  Confirm:  stock -= qty, reserved -= qty  (イベント消費側)   │
  │  Release:  reserved -= qty                (Saga の補償)      │
  └──────────────────────────────────────────────────────────────┘

行ロックは読み取り → 判定 → 書き込みの間だけ同じ商品の引き当てを直列化する。
version 条件は保険: 一致する行がなければ最新の状態で全体をやり直す。
"""

import logging
from datetime import datetime, timezone

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from . import config
from .aggregate import InventoryRecord
from .db import inventory
from .errors import (
    ConcurrentModification,
    InsufficientStock,
    InventoryNotFound,
    InvariantViolation,
    ValidationFailed,
)

logger = logging.getLogger(__name__)


def _check_quantity(quantity: int) -> None:
    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
        raise ValidationFailed(
            "quantity must be a positive integer",
            [{"field": "quantity", "message": "must be a positive integer"}],
        )


async def _guarded_write(session: AsyncSession, stmt, product_id: str, operation: str):
    try:
        return await session.execute(stmt)
    except IntegrityError as e:
        logger.error(
            "Invariant violation rejected by database: %s product=%s",
            operation,
            product_id,
        )
        raise InvariantViolation(product_id, operation) from e


def locked_row(product_id: str):
    return (
        select(inventory)
        .where(inventory.c.product_id == product_id)
        .with_for_update()
    )


async def _reserve_once(session: AsyncSession, product_id: str, quantity: int) -> int:
    result = await session.execute(locked_row(product_id))
    row = result.fetchone()
    if row is None:
        raise InventoryNotFound(product_id)

    record = InventoryRecord.from_row(row)
    if record.available < quantity:
        raise InsufficientStock(record.available, quantity)

    result = await _guarded_write(
        session,
        update(inventory)
        .where(
            inventory.c.product_id == product_id,
            inventory.c.version == record.version,
        )
        .values(
            reserved_quantity=inventory.c.reserved_quantity + quantity,
            version=inventory.c.version + 1,
            updated_at=datetime.now(timezone.utc),
        ),
        product_id,
        "reserve",
    )
    if result.rowcount == 0:
        raise ConcurrentModification(product_id)

    return record.available - quantity


async def reserve_inventory(
    session: AsyncSession,
    product_id: str,
    quantity: int,
    max_attempts: int | None = None,
) -> int:
    """
    `product_id` を `quantity` 個引き当て、引き当て後の利用可能在庫を返す。

    すべての試行が version 競合に負けた場合は ConcurrentModification。
    """
    _check_quantity(quantity)
    attempts = max(1, max_attempts or config.RESERVE_MAX_ATTEMPTS)

    for attempt in range(1, attempts + 1):
        try:
            async with session.begin():
                available = await _reserve_once(session, product_id, quantity)
        except ConcurrentModification:
            logger.warning(
                "Version conflict reserving %s (attempt %d/%d)",
                product_id,
                attempt,
                attempts,
            )
            if attempt == attempts:
                raise
            continue

        logger.info(
            "Reserved %d of %s, available now %d", quantity, product_id, available
        )
        return available

    raise ConcurrentModification(product_id)


async def apply_confirmation(
    session: AsyncSession, product_id: str, quantity: int
) -> None:
    """
    引き当て済みの `quantity` を確定消費に移す。

    呼び出し側のトランザクション内で実行する。在庫の再チェックはしない
    (引き当て時点で利用可能在庫から確保済み)。
    """
    result = await _guarded_write(
        session,
        update(inventory)
        .where(inventory.c.product_id == product_id)
        .values(
            stock_quantity=inventory.c.stock_quantity - quantity,
            reserved_quantity=inventory.c.reserved_quantity - quantity,
            version=inventory.c.version + 1,
            updated_at=datetime.now(timezone.utc),
        ),
        product_id,
        "confirm",
    )
    if result.rowcount == 0:
        raise InventoryNotFound(product_id)


async def confirm_reservation(
    session: AsyncSession, product_id: str, quantity: int
) -> None:
    _check_quantity(quantity)
    async with session.begin():
        await apply_confirmation(session, product_id, quantity)
    logger.info("Confirmed reservation of %d of %s", quantity, product_id)


async def release_reservation(
    session: AsyncSession, product_id: str, quantity: int
) -> None:
    """
    引き当ての解放 (注文 Saga の補償アクション)。

    stock には触れず、数量を利用可能在庫に戻す。
    """
    _check_quantity(quantity)
    async with session.begin():
        result = await _guarded_write(
            session,
            update(inventory)
            .where(inventory.c.product_id == product_id)
            .values(
                reserved_quantity=inventory.c.reserved_quantity - quantity,
                version=inventory.c.version + 1,
                updated_at=datetime.now(timezone.utc),
            ),
            product_id,
            "release",
        )
        if result.rowcount == 0:
            raise InventoryNotFound(product_id)
    logger.info("Released reservation of %d of %s", quantity, product_id)
