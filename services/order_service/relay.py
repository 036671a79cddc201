"""
Order Service — 通知リレー (配送チャネル)

OrderCreated の Redis Stream をコンシューマーグループ経由で読み出し、
各エントリを Inventory Service のイベントエンドポイントに POST する。

┌───────────────┐ XADD  ┌──────────────┐ XREADGROUP ┌───────┐  POST  ┌───────────┐
│ Saga (publish)│ ────▶ │ order_events │ ─────────▶ │ Relay │ ─────▶ │ Inventory │
└───────────────┘       └──────────────┘ XAUTOCLAIM └───────┘        └───────────┘

配送は at-least-once:
  - 2xx              → XACK
  - 400 / 422        → 恒久的な失敗。デッドレター Stream へ移す
  - それ以外          → pending のまま。RELAY_CLAIM_IDLE_MS 後に再取得して再送
  - RELAY_MAX_DELIVERIES 回を超えて配送 → デッドレター
    (ここで諦める。外部での照合が必要)
"""

import asyncio
import json
import logging

import httpx
import redis.asyncio as aioredis
from redis.exceptions import ResponseError

logger = logging.getLogger(__name__)

PERMANENT_FAILURE_STATUSES = (400, 422)


async def ensure_group(redis: aioredis.Redis, stream: str, group: str) -> None:
    try:
        await redis.xgroup_create(stream, group, id="0", mkstream=True)
    except ResponseError as e:
        if "BUSYGROUP" not in str(e):
            raise


class NotificationRelay:
    def __init__(
        self,
        redis: aioredis.Redis,
        http: httpx.AsyncClient,
        webhook_url: str,
        *,
        stream: str,
        group: str,
        consumer: str,
        dead_letter_stream: str,
        max_deliveries: int,
        claim_idle_ms: int,
        batch_size: int = 10,
        block_ms: int = 1000,
    ):
        self.redis = redis
        self.http = http
        self.webhook_url = webhook_url
        self.stream = stream
        self.group = group
        self.consumer = consumer
        self.dead_letter_stream = dead_letter_stream
        self.max_deliveries = max_deliveries
        self.claim_idle_ms = claim_idle_ms
        self.batch_size = batch_size
        self.block_ms = block_ms

    async def _ack(self, message_id: str) -> None:
        await self.redis.xack(self.stream, self.group, message_id)

    async def dead_letter(self, message_id: str, fields: dict, reason: str) -> None:
        await self.redis.xadd(
            self.dead_letter_stream,
            {**fields, "source_id": message_id, "reason": reason},
        )
        await self._ack(message_id)
        logger.error(
            "Dead-lettered notification %s (%s), manual reconciliation required",
            message_id,
            reason,
        )

    async def deliver(self, message_id: str, fields: dict) -> bool:
        """1 エントリを配送する。もう配送不要になったら True を返す。"""
        try:
            payload = json.loads(fields["payload"])
        except (KeyError, TypeError, ValueError):
            await self.dead_letter(message_id, fields, "malformed payload")
            return True

        try:
            resp = await self.http.post(self.webhook_url, json=payload)
        except httpx.HTTPError as e:
            logger.warning("Delivery of %s failed, will retry: %s", message_id, e)
            return False

        if resp.is_success:
            await self._ack(message_id)
            logger.info("Delivered event %s", payload.get("event_id"))
            return True

        if resp.status_code in PERMANENT_FAILURE_STATUSES:
            await self.dead_letter(
                message_id, fields, f"rejected with {resp.status_code}"
            )
            return True

        logger.warning(
            "Delivery of %s answered %d, will retry", message_id, resp.status_code
        )
        return False

    async def _times_delivered(self, message_id: str) -> int:
        pending = await self.redis.xpending_range(
            self.stream, self.group, min=message_id, max=message_id, count=1
        )
        return pending[0]["times_delivered"] if pending else 0

    async def process_pending(self) -> int:
        """長時間 pending のエントリを再取得して再送する。"""
        claimed = await self.redis.xautoclaim(
            self.stream,
            self.group,
            self.consumer,
            min_idle_time=self.claim_idle_ms,
            start_id="0-0",
            count=self.batch_size,
        )
        messages = claimed[1] if claimed else []
        for message_id, fields in messages:
            if fields is None:
                continue
            if await self._times_delivered(message_id) > self.max_deliveries:
                await self.dead_letter(message_id, fields, "max deliveries exceeded")
                continue
            logger.info("Redelivering notification %s", message_id)
            await self.deliver(message_id, fields)
        return len(messages)

    async def process_new(self) -> int:
        response = await self.redis.xreadgroup(
            self.group,
            self.consumer,
            {self.stream: ">"},
            count=self.batch_size,
            block=self.block_ms,
        )
        delivered = 0
        for _stream, messages in response or []:
            for message_id, fields in messages:
                await self.deliver(message_id, fields)
                delivered += 1
        return delivered

    async def run(self, shutdown_event: asyncio.Event) -> None:
        await ensure_group(self.redis, self.stream, self.group)
        logger.info("Relaying %s to %s", self.stream, self.webhook_url)
        while not shutdown_event.is_set():
            try:
                await self.process_pending()
                await self.process_new()
            except Exception:
                logger.exception("Relay iteration failed")
                await asyncio.sleep(1.0)
