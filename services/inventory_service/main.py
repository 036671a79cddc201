"""
Inventory Service — FastAPI エントリポイント

在庫台帳サービス。在庫数と引き当て数を決める唯一の権限を持つ。

┌───────────────┐  reserve / release   ┌───────────────────┐
│ Order Service │ ───────────────────▶ │ Inventory Service │
└──────┬────────┘   (同期 HTTP)        │                   │
       │ XADD                          │  inventory        │
       ▼                               │  processed_events │
┌───────────────┐  POST /inventory/    │                   │
│ Redis Stream  │ ───── event ───────▶ │                   │
└───────────────┘  (at-least-once)     └───────────────────┘
"""

import asyncio
import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import Body, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from . import commands, config, consumer, queries, seed
from .db import init_db
from .errors import InventoryNotFound, LedgerError

logging.basicConfig(
    level=config.LOG_LEVEL,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

engine = create_async_engine(config.DATABASE_URL, echo=False)
async_session = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def run_pruner(
    session_factory: sessionmaker,
    interval: float,
    shutdown_event: asyncio.Event,
) -> None:
    """シャットダウンまで `interval` 秒ごとに期限切れの処理済みイベントを削除する"""
    while not shutdown_event.is_set():
        try:
            async with session_factory() as session:
                await consumer.prune_processed_events(session)
        except Exception:
            logger.exception("Failed to prune processed events")
        try:
            await asyncio.wait_for(shutdown_event.wait(), timeout=interval)
        except asyncio.TimeoutError:
            pass


@asynccontextmanager
async def lifespan(app: FastAPI):
    await init_db(engine)
    if config.INVENTORY_SEED_FILE:
        async with async_session() as session:
            await seed.seed_inventory(
                session, seed.load_seed_file(config.INVENTORY_SEED_FILE)
            )

    shutdown_event = asyncio.Event()
    pruner_task = asyncio.create_task(
        run_pruner(async_session, config.PRUNE_INTERVAL_SECONDS, shutdown_event)
    )
    yield
    shutdown_event.set()
    pruner_task.cancel()
    try:
        await pruner_task
    except asyncio.CancelledError:
        pass
    await engine.dispose()


app = FastAPI(title="Inventory Service", lifespan=lifespan)


@app.exception_handler(LedgerError)
async def ledger_error_handler(request: Request, exc: LedgerError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=400,
        content={
            "code": "VALIDATION_ERROR",
            "message": "product_id and a positive integer quantity are required",
            "retryable": False,
            "errors": [
                {"field": ".".join(str(p) for p in err["loc"]), "message": err["msg"]}
                for err in exc.errors()
            ],
        },
    )


# ── Request Models ───────────────────────────────


class QuantityRequest(BaseModel):
    product_id: str = Field(..., min_length=1)
    quantity: int = Field(..., gt=0, strict=True)


# ── Command Endpoints (Write 側) ─────────────────


@app.post("/inventory/reserve")
async def cmd_reserve(req: QuantityRequest):
    """在庫引き当て: 注文のために在庫を確保"""
    async with async_session() as session:
        available = await commands.reserve_inventory(
            session, req.product_id, req.quantity
        )
    return {
        "reserved": True,
        "product_id": req.product_id,
        "reserved_quantity": req.quantity,
        "available": available,
    }


@app.post("/inventory/confirm-reservation")
async def cmd_confirm(req: QuantityRequest):
    """引き当て確定: 引き当て分を在庫から差し引く"""
    async with async_session() as session:
        await commands.confirm_reservation(session, req.product_id, req.quantity)
    return {"confirmed": True, "product_id": req.product_id}


@app.post("/inventory/release-reservation")
async def cmd_release(req: QuantityRequest):
    """引き当て解放 (Saga の補償)"""
    async with async_session() as session:
        await commands.release_reservation(session, req.product_id, req.quantity)
    return {"released": True, "product_id": req.product_id}


@app.post("/inventory/event")
async def consume_order_created(payload: dict = Body(...)):
    """OrderCreated Webhook (チャネルから at-least-once で配送される)"""
    async with async_session() as session:
        result = await consumer.handle_order_created(session, payload)
    return result.to_dict()


# ── Query Endpoints (Read 側) ────────────────────


@app.get("/inventory")
async def query_list_inventory():
    async with async_session() as session:
        return [r.to_dict() for r in await queries.list_inventory(session)]


@app.get("/inventory/{product_id}")
async def query_get_inventory(product_id: str):
    async with async_session() as session:
        record = await queries.get_availability(session, product_id)
    if not record:
        raise InventoryNotFound(product_id)
    return record.to_dict()


@app.get("/health")
async def health():
    return {"status": "ok", "service": "inventory-service"}


def run() -> None:
    uvicorn.run(app, host="0.0.0.0", port=config.PORT)


if __name__ == "__main__":
    run()
