"""
Inventory Service — 初期データ投入

テーブルが空のときだけ初期在庫を作成する。シードファイルは
`{"id": ..., "stock": ...}` の JSON 配列 (`name` などの余分なキーは無視)。
"""

import json
import logging
from pathlib import Path

from sqlalchemy import func, insert, select
from sqlalchemy.ext.asyncio import AsyncSession

from .db import inventory

logger = logging.getLogger(__name__)


def load_seed_file(path: str | Path) -> list[dict]:
    with open(path, encoding="utf-8") as f:
        return json.load(f)


async def seed_inventory(session: AsyncSession, items: list[dict]) -> int:
    """テーブルが空なら `items` を投入し、投入件数を返す"""
    async with session.begin():
        count = await session.scalar(select(func.count()).select_from(inventory))
        if count:
            return 0

        for item in items:
            await session.execute(
                insert(inventory).values(
                    product_id=str(item["id"]),
                    stock_quantity=int(item["stock"]),
                    reserved_quantity=0,
                    version=0,
                )
            )
            logger.info(
                "Seeded inventory for product %s (stock %s)", item["id"], item["stock"]
            )
    return len(items)
