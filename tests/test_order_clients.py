"""Product / inventory HTTP clients and the notification publisher."""

import asyncio
from datetime import datetime, timezone
from decimal import Decimal
from unittest.mock import AsyncMock

import httpx
import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from order_service.clients import InventoryClient, ProductClient
from order_service.errors import (
    ConcurrentModification,
    InsufficientStock,
    NotificationFailed,
    ProductNotFound,
    ProductNotInInventory,
    ServiceUnavailable,
    UnconfirmedReservation,
)
from order_service.events import OrderCreated
from order_service.publisher import NotificationPublisher


def http_client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


# ── Product Lookup ───────────────────────────────


@pytest.mark.asyncio
async def test_product_lookup_returns_price():
    def handler(request):
        assert request.url.path == "/products/p1"
        return httpx.Response(200, json={"id": 1, "name": "Mouse", "price": 12.5})

    async with http_client(handler) as client:
        product = await ProductClient(client, "http://products/", 1).get_product("p1")

    assert product.id == "1"
    assert product.price == Decimal("12.5")


@pytest.mark.asyncio
async def test_product_lookup_not_found():
    async with http_client(lambda r: httpx.Response(404, json={})) as client:
        with pytest.raises(ProductNotFound):
            await ProductClient(client, "http://products", 1).get_product("p1")


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "response",
    [
        httpx.Response(500, json={}),
        httpx.Response(200, json={"id": "p1"}),
        httpx.Response(200, json={"id": "p1", "price": -1}),
        httpx.Response(200, text="<html>"),
    ],
)
async def test_product_lookup_bad_answers_are_unavailable(response):
    async with http_client(lambda r: response) as client:
        with pytest.raises(ServiceUnavailable):
            await ProductClient(client, "http://products", 1).get_product("p1")


@pytest.mark.asyncio
async def test_product_lookup_timeout_is_unavailable():
    def handler(request):
        raise httpx.ReadTimeout("slow", request=request)

    async with http_client(handler) as client:
        with pytest.raises(ServiceUnavailable) as exc_info:
            await ProductClient(client, "http://products", 1).get_product("p1")
    assert exc_info.value.retryable is True


# ── Inventory Ledger ─────────────────────────────


@pytest.mark.asyncio
async def test_reserve_returns_available():
    seen = []

    def handler(request):
        seen.append((request.url.path, request.content))
        return httpx.Response(200, json={"reserved": True, "available": 6})

    async with http_client(handler) as client:
        available = await InventoryClient(client, "http://inventory", 1).reserve("p1", 4)

    assert available == 6
    assert seen[0][0] == "/inventory/reserve"
    assert b'"quantity":4' in seen[0][1].replace(b" ", b"")


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "response",
    [
        httpx.Response(200, json={"reserved": True}),
        httpx.Response(200, json={"available": None}),
        httpx.Response(200, text="ok"),
    ],
)
async def test_reserve_success_without_available_is_unconfirmed(response):
    async with http_client(lambda r: response) as client:
        with pytest.raises(UnconfirmedReservation) as exc_info:
            await InventoryClient(client, "http://inventory", 1).reserve("p1", 4)

    assert isinstance(exc_info.value, ServiceUnavailable)
    assert exc_info.value.product_id == "p1"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "response, error",
    [
        (
            httpx.Response(
                409,
                json={"code": "INSUFFICIENT_STOCK", "available": 2, "message": "no"},
            ),
            InsufficientStock,
        ),
        (
            httpx.Response(409, json={"code": "CONCURRENT_MODIFICATION"}),
            ConcurrentModification,
        ),
        (httpx.Response(404, json={"code": "PRODUCT_NOT_FOUND"}), ProductNotInInventory),
        (httpx.Response(500, json={"code": "INVARIANT_VIOLATION"}), ServiceUnavailable),
        (httpx.Response(502, text="bad gateway"), ServiceUnavailable),
    ],
)
async def test_reserve_maps_ledger_errors(response, error):
    async with http_client(lambda r: response) as client:
        with pytest.raises(error):
            await InventoryClient(client, "http://inventory", 1).reserve("p1", 4)


@pytest.mark.asyncio
async def test_reserve_insufficient_carries_available():
    response = httpx.Response(409, json={"code": "INSUFFICIENT_STOCK", "available": 2})
    async with http_client(lambda r: response) as client:
        with pytest.raises(InsufficientStock) as exc_info:
            await InventoryClient(client, "http://inventory", 1).reserve("p1", 4)
    assert (exc_info.value.available, exc_info.value.requested) == (2, 4)


@pytest.mark.asyncio
async def test_reserve_connection_error_is_unavailable():
    def handler(request):
        raise httpx.ConnectError("refused", request=request)

    async with http_client(handler) as client:
        with pytest.raises(ServiceUnavailable):
            await InventoryClient(client, "http://inventory", 1).reserve("p1", 1)


@pytest.mark.asyncio
async def test_release_raises_on_failure():
    async with http_client(lambda r: httpx.Response(200, json={"released": True})) as client:
        await InventoryClient(client, "http://inventory", 1).release("p1", 1)

    async with http_client(lambda r: httpx.Response(500, json={})) as client:
        with pytest.raises(httpx.HTTPStatusError):
            await InventoryClient(client, "http://inventory", 1).release("p1", 1)

    async with http_client(lambda r: httpx.Response(404, json={})) as client:
        with pytest.raises(ProductNotInInventory):
            await InventoryClient(client, "http://inventory", 1).release("p1", 1)


# ── Notification publisher ───────────────────────


def make_event() -> OrderCreated:
    return OrderCreated(
        order_id="order-1",
        user_id="u1",
        product_id="p1",
        quantity=2,
        total_price=Decimal("19.98"),
        created_at=datetime(2024, 5, 1, tzinfo=timezone.utc),
    )


@pytest.mark.asyncio
async def test_publish_appends_to_stream():
    redis = AsyncMock()
    redis.xadd.return_value = "1714564800000-0"
    event = make_event()

    message_id = await NotificationPublisher(redis, "order_events", 1).publish(event)

    assert message_id == "1714564800000-0"
    stream, fields = redis.xadd.call_args.args
    assert stream == "order_events"
    assert fields["event_type"] == "OrderCreated"
    assert fields["event_id"] == event.event_id
    assert OrderCreated.model_validate_json(fields["payload"]) == event


@pytest.mark.asyncio
async def test_publish_failure_raises_notification_failed():
    redis = AsyncMock()
    redis.xadd.side_effect = RedisConnectionError("down")

    with pytest.raises(NotificationFailed):
        await NotificationPublisher(redis, "order_events", 1).publish(make_event())


@pytest.mark.asyncio
async def test_publish_timeout_raises_notification_failed():
    redis = AsyncMock()

    async def hang(*args, **kwargs):
        await asyncio.sleep(10)

    redis.xadd.side_effect = hang

    with pytest.raises(NotificationFailed):
        await NotificationPublisher(redis, "order_events", 0.05).publish(make_event())
