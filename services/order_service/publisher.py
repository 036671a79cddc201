"""
Order Service — 通知パブリッシャー

OrderCreated を Redis Stream に追加 (XADD) する。
Saga から見て発行は同期処理: 失敗・タイムアウトは呼び出し元に返り、
注文の INSERT はロールバックされる。
Inventory Service への配送は後からリレーが行う (at-least-once)。
"""

import asyncio
import logging

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from .errors import NotificationFailed
from .events import OrderCreated

logger = logging.getLogger(__name__)


class NotificationPublisher:
    def __init__(
        self,
        redis: aioredis.Redis,
        stream: str,
        timeout: float,
    ):
        self.redis = redis
        self.stream = stream
        self.timeout = timeout

    async def publish(self, event: OrderCreated) -> str:
        """イベントを発行し、Stream のエントリ ID を返す。"""
        try:
            message_id = await asyncio.wait_for(
                self.redis.xadd(
                    self.stream,
                    {
                        "event_type": "OrderCreated",
                        "event_id": event.event_id,
                        "payload": event.model_dump_json(),
                    },
                ),
                timeout=self.timeout,
            )
        except (RedisError, OSError, asyncio.TimeoutError) as e:
            logger.error(
                "Failed to publish OrderCreated for order %s: %s", event.order_id, e
            )
            raise NotificationFailed(event.order_id) from e

        logger.info(
            "OrderCreated published for order %s, event_id %s",
            event.order_id,
            event.event_id,
        )
        return message_id
