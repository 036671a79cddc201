"""
Order Service — FastAPI エントリポイント

注文を受け付け、注文作成 Saga (orchestrator.py) を実行する。
OrderCreated のリレーは API と同じプロセスのバックグラウンドタスクで動く。
"""

import asyncio
import logging
from contextlib import asynccontextmanager

import httpx
import redis.asyncio as aioredis
import uvicorn
from fastapi import Body, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from . import config, queries
from .clients import InventoryClient, ProductClient
from .db import init_db
from .errors import OrderError, OrderNotFound
from .orchestrator import OrderSagaOrchestrator
from .publisher import NotificationPublisher
from .relay import NotificationRelay

logging.basicConfig(
    level=config.LOG_LEVEL,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

engine = create_async_engine(config.DATABASE_URL, echo=False)
async_session = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
redis_pool: aioredis.Redis | None = None
http_client: httpx.AsyncClient | None = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    global redis_pool, http_client
    await init_db(engine)
    redis_pool = aioredis.from_url(config.REDIS_URL, decode_responses=True)
    http_client = httpx.AsyncClient(timeout=config.HTTP_TIMEOUT_SECONDS)

    shutdown_event = asyncio.Event()
    relay_task = None
    if config.RELAY_ENABLED:
        relay = NotificationRelay(
            redis_pool,
            http_client,
            config.INVENTORY_EVENT_URL,
            stream=config.ORDER_EVENTS_STREAM,
            group=config.RELAY_GROUP,
            consumer=config.RELAY_CONSUMER,
            dead_letter_stream=config.DEAD_LETTER_STREAM,
            max_deliveries=config.RELAY_MAX_DELIVERIES,
            claim_idle_ms=config.RELAY_CLAIM_IDLE_MS,
        )
        relay_task = asyncio.create_task(relay.run(shutdown_event))
    yield
    shutdown_event.set()
    if relay_task:
        relay_task.cancel()
        try:
            await relay_task
        except asyncio.CancelledError:
            pass
    await http_client.aclose()
    await redis_pool.aclose()
    await engine.dispose()


app = FastAPI(title="Order Service", lifespan=lifespan)


def build_orchestrator() -> OrderSagaOrchestrator:
    return OrderSagaOrchestrator(
        async_session,
        ProductClient(http_client, config.PRODUCT_SERVICE_URL, config.HTTP_TIMEOUT_SECONDS),
        InventoryClient(
            http_client, config.INVENTORY_SERVICE_URL, config.HTTP_TIMEOUT_SECONDS
        ),
        NotificationPublisher(
            redis_pool, config.ORDER_EVENTS_STREAM, config.PUBLISH_TIMEOUT_SECONDS
        ),
    )


@app.exception_handler(OrderError)
async def order_error_handler(request: Request, exc: OrderError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=400,
        content={
            "code": "VALIDATION_ERROR",
            "message": "Request body must be a JSON object",
            "retryable": False,
            "errors": [
                {"field": ".".join(str(p) for p in err["loc"]), "message": err["msg"]}
                for err in exc.errors()
            ],
        },
    )


@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content=OrderError().to_dict())


# ── Command Endpoints (Write 側) ─────────────────


@app.post("/orders", status_code=201)
async def create_order(payload: dict = Body(...)):
    """注文作成: 在庫引き当て → 永続化 → OrderCreated 発行"""
    result = await build_orchestrator().execute(payload)
    order = result.order.model_dump(mode="json")
    if result.duplicate:
        return JSONResponse(status_code=200, content={"order": order, "duplicate": True})
    return {"order": order, "available_stock": result.available_stock}


# ── Query Endpoints (Read 側) ────────────────────


@app.get("/orders/{order_id}")
async def get_order(order_id: str):
    async with async_session() as session:
        order = await queries.get_order(session, order_id)
    if not order:
        raise OrderNotFound(order_id)
    return order.model_dump(mode="json")


@app.get("/health")
async def health():
    return {"status": "ok", "service": "order-service"}


def run() -> None:
    uvicorn.run(app, host="0.0.0.0", port=config.PORT)


if __name__ == "__main__":
    run()
