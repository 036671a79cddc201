"""
Saga Orchestrator — 注文作成 Saga

Saga パターン（オーケストレーション型）:
  Order Service 自身が各ステップを順に実行し、後続ステップが失敗した
  場合は、成功済みステップが登録した補償アクションを逆順に実行する。

  フロー:
  ┌──────────────────────────────────────────────────────────────┐
  │  1. リクエスト検証                        (副作用なし)        │
  │  2. 冪等キーが既存 → 既存注文を duplicate=True で返す         │
  │  3. 商品参照 → 単価                       (副作用なし)        │
  │  4. 在庫引き当て (Reserve)                                   │
  │       └─ 補償を登録: ReleaseReservation                      │
  │  5. BEGIN; 注文 INSERT; OrderCreated を発行                   │
  │  6. COMMIT                                                   │
  │     ├─ 成功 → 注文 + 残り在庫                                │
  │     └─ 5-6 で失敗 / キャンセル → 補償を実行して再送出         │
  └──────────────────────────────────────────────────────────────┘

引き当ての確定 (Confirm) は Inventory Service が OrderCreated を
受信したときに非同期で行われる。
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from functools import partial
from typing import Awaitable, Callable
from uuid import uuid4

from pydantic import ValidationError
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker

from . import commands, queries
from .clients import InventoryClient, ProductClient
from .errors import OrderError, OrderValidationError, UnconfirmedReservation
from .events import OrderCreated
from .publisher import NotificationPublisher
from .schemas import Order, PlaceOrderRequest

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")


class CompensationStack:
    """ステップ成功時に登録される補償アクションのスタック"""

    def __init__(self) -> None:
        self._actions: list[tuple[str, Callable[[], Awaitable[None]]]] = []

    def __len__(self) -> int:
        return len(self._actions)

    def push(self, name: str, action: Callable[[], Awaitable[None]]) -> None:
        self._actions.append((name, action))

    async def unwind(self, saga_log: list[dict]) -> None:
        """
        登録済みのアクションを新しいものから順にすべて実行する。

        失敗したアクションは手動照合用にログへ残し、残りのアクションは
        そのまま実行を続ける。その場での再試行はしない。
        """
        while self._actions:
            name, action = self._actions.pop()
            entry = _log_entry(saga_log, f"{name} (COMPENSATING)")
            try:
                await action()
                entry["status"] = "COMPLETED"
                logger.info("Compensation %s completed", name)
            except Exception as e:
                entry["status"] = "FAILED"
                entry["error"] = str(e)
                logger.exception(
                    "Compensation %s failed, manual reconciliation required", name
                )


@dataclass
class PlaceOrderResult:
    order: Order
    duplicate: bool = False
    available_stock: int | None = None
    saga_log: list[dict] = field(default_factory=list)


def _log_entry(saga_log: list[dict], action: str) -> dict:
    saga_log.append(
        {
            "step": len(saga_log) + 1,
            "action": action,
            "status": "EXECUTING",
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
    )
    return saga_log[-1]


def validate_request(payload: dict | PlaceOrderRequest) -> PlaceOrderRequest:
    if isinstance(payload, PlaceOrderRequest):
        return payload
    try:
        return PlaceOrderRequest.model_validate(payload)
    except ValidationError as e:
        raise OrderValidationError(
            "requester_id, product_id and a quantity between 1 and the order "
            "limit are required",
            [
                {"field": ".".join(str(p) for p in err["loc"]), "message": err["msg"]}
                for err in e.errors()
            ],
        ) from e


class OrderSagaOrchestrator:
    """注文作成 Saga のオーケストレーター"""

    def __init__(
        self,
        session_factory: sessionmaker,
        products: ProductClient,
        inventory: InventoryClient,
        publisher: NotificationPublisher,
    ):
        self.session_factory = session_factory
        self.products = products
        self.inventory = inventory
        self.publisher = publisher

    async def execute(self, payload: dict | PlaceOrderRequest) -> PlaceOrderResult:
        saga_log: list[dict] = []

        # ── Step 1: リクエスト検証 ─────────────────
        req = validate_request(payload)

        # ── Step 2: 冪等キーの確認 ─────────────────
        if req.idempotency_key:
            existing = await self._find_by_key(req.idempotency_key)
            if existing:
                logger.info(
                    "Returning existing order %s for idempotency key %s",
                    existing.id,
                    req.idempotency_key,
                )
                return PlaceOrderResult(order=existing, duplicate=True)

        # ── Step 3: 価格を取得 ─────────────────────
        entry = _log_entry(saga_log, "LookupProduct")
        product = await self._run_step(entry, self.products.get_product(req.product_id))
        total_price = (product.price * req.quantity).quantize(CENT, ROUND_HALF_UP)

        # ── Step 4: 在庫を引き当て ─────────────────
        compensations = CompensationStack()
        release = partial(self.inventory.release, req.product_id, req.quantity)

        entry = _log_entry(saga_log, "ReserveInventory")
        try:
            available = await self._run_step(
                entry, self.inventory.reserve(req.product_id, req.quantity)
            )
        except UnconfirmedReservation:
            # 引き当ては成功している可能性がある
            compensations.push("ReleaseReservation", release)
            await asyncio.shield(compensations.unwind(saga_log))
            raise
        logger.info(
            "Reserved %d units of %s, available %d",
            req.quantity,
            req.product_id,
            available,
        )
        compensations.push("ReleaseReservation", release)

        # ── Step 5-6: 永続化 + 発行、コミット ───────
        entry = _log_entry(saga_log, "CreateOrder")
        try:
            order = await self._persist_and_publish(req, total_price)
        except IntegrityError as e:
            entry["status"] = "FAILED"
            entry["error"] = type(e).__name__
            await asyncio.shield(compensations.unwind(saga_log))
            return await self._resolve_key_race(req, saga_log, e)
        except (Exception, asyncio.CancelledError) as e:
            entry["status"] = "FAILED"
            entry["error"] = str(e) or type(e).__name__
            logger.error("Order creation failed after reservation, compensating")
            await asyncio.shield(compensations.unwind(saga_log))
            raise

        entry["status"] = "COMPLETED"
        logger.info("Created order %s for user %s", order.id, order.user_id)
        return PlaceOrderResult(
            order=order, available_stock=available, saga_log=saga_log
        )

    async def _run_step(self, entry: dict, step: Awaitable):
        try:
            result = await step
        except OrderError as e:
            entry["status"] = "FAILED"
            entry["error"] = e.code
            logger.warning("Saga step %s failed: %s", entry["action"], e.code)
            raise
        entry["status"] = "COMPLETED"
        return result

    async def _find_by_key(self, idempotency_key: str) -> Order | None:
        async with self.session_factory() as session:
            return await queries.get_order_by_idempotency_key(session, idempotency_key)

    async def _persist_and_publish(
        self, req: PlaceOrderRequest, total_price: Decimal
    ) -> Order:
        order = Order(
            id=str(uuid4()),
            user_id=req.requester_id,
            product_id=req.product_id,
            quantity=req.quantity,
            total_price=total_price,
            idempotency_key=req.idempotency_key,
            created_at=datetime.now(timezone.utc),
        )
        async with self.session_factory() as session:
            # 例外でブロックを抜けると INSERT はロールバックされる。
            # コミットは発行が成功した後だけ。
            async with session.begin():
                await commands.insert_order(session, order)
                await self.publisher.publish(OrderCreated.for_order(order))
        return order

    async def _resolve_key_race(
        self, req: PlaceOrderRequest, saga_log: list[dict], error: IntegrityError
    ) -> PlaceOrderResult:
        """
        同じ冪等キーの同時リクエストに INSERT で負けた場合、勝った側の
        注文を返す。冪等キー以外の制約違反はそのまま内部エラーにする。
        """
        existing = None
        if req.idempotency_key:
            existing = await self._find_by_key(req.idempotency_key)
        if existing is None:
            logger.error(
                "Order insert rejected by the database", exc_info=error
            )
            raise OrderError() from error
        logger.info(
            "Idempotency key %s taken concurrently by order %s",
            req.idempotency_key,
            existing.id,
        )
        return PlaceOrderResult(order=existing, duplicate=True, saga_log=saga_log)
