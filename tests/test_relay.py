"""At-least-once delivery of OrderCreated from the stream to the inventory service."""

import json
from unittest.mock import AsyncMock

import httpx
import pytest
from redis.exceptions import ResponseError

from order_service.relay import NotificationRelay, ensure_group

EVENT = {"event_id": "evt-1", "order_id": "order-1", "product_id": "p1", "quantity": 2}
FIELDS = {"event_type": "OrderCreated", "event_id": "evt-1", "payload": json.dumps(EVENT)}


def make_relay(handler, redis=None, **overrides):
    options = dict(
        stream="order_events",
        group="inventory-webhook",
        consumer="test-1",
        dead_letter_stream="order_events.dead",
        max_deliveries=3,
        claim_idle_ms=1000,
    )
    options.update(overrides)
    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return NotificationRelay(
        redis or AsyncMock(), http, "http://inventory/inventory/event", **options
    )


@pytest.mark.asyncio
async def test_successful_delivery_is_acked():
    received = []

    def handler(request):
        received.append(json.loads(request.content))
        return httpx.Response(200, json={"duplicate": False})

    relay = make_relay(handler)

    assert await relay.deliver("1-0", FIELDS) is True
    assert received == [EVENT]
    relay.redis.xack.assert_awaited_once_with("order_events", "inventory-webhook", "1-0")
    relay.redis.xadd.assert_not_awaited()


@pytest.mark.asyncio
async def test_duplicate_answer_is_also_acked():
    relay = make_relay(lambda r: httpx.Response(200, json={"duplicate": True}))
    assert await relay.deliver("1-0", FIELDS) is True
    relay.redis.xack.assert_awaited_once()


@pytest.mark.asyncio
@pytest.mark.parametrize("status", [400, 422])
async def test_rejected_payload_goes_to_dead_letter(status):
    relay = make_relay(lambda r: httpx.Response(status, json={"code": "VALIDATION_ERROR"}))

    assert await relay.deliver("1-0", FIELDS) is True

    stream, fields = relay.redis.xadd.call_args.args
    assert stream == "order_events.dead"
    assert fields["source_id"] == "1-0"
    assert fields["payload"] == FIELDS["payload"]
    assert str(status) in fields["reason"]
    relay.redis.xack.assert_awaited_once()


@pytest.mark.asyncio
@pytest.mark.parametrize("status", [404, 409, 500, 503])
async def test_other_failures_stay_pending(status):
    relay = make_relay(lambda r: httpx.Response(status, json={}))

    assert await relay.deliver("1-0", FIELDS) is False
    relay.redis.xack.assert_not_awaited()
    relay.redis.xadd.assert_not_awaited()


@pytest.mark.asyncio
async def test_unreachable_inventory_stays_pending():
    def handler(request):
        raise httpx.ConnectError("refused", request=request)

    relay = make_relay(handler)

    assert await relay.deliver("1-0", FIELDS) is False
    relay.redis.xack.assert_not_awaited()


@pytest.mark.asyncio
async def test_malformed_entry_goes_to_dead_letter():
    relay = make_relay(lambda r: httpx.Response(200))

    assert await relay.deliver("1-0", {"event_type": "OrderCreated", "payload": "{"}) is True

    stream, fields = relay.redis.xadd.call_args.args
    assert stream == "order_events.dead"
    assert fields["reason"] == "malformed payload"


@pytest.mark.asyncio
async def test_pending_entries_are_redelivered():
    redis = AsyncMock()
    redis.xautoclaim.return_value = ["0-0", [("1-0", FIELDS)], []]
    redis.xpending_range.return_value = [{"message_id": "1-0", "times_delivered": 2}]
    relay = make_relay(lambda r: httpx.Response(200, json={}), redis=redis)

    assert await relay.process_pending() == 1

    assert redis.xautoclaim.call_args.kwargs["min_idle_time"] == 1000
    redis.xack.assert_awaited_once_with("order_events", "inventory-webhook", "1-0")


@pytest.mark.asyncio
async def test_entries_over_delivery_limit_are_dead_lettered():
    redis = AsyncMock()
    redis.xautoclaim.return_value = ["0-0", [("1-0", FIELDS)], []]
    redis.xpending_range.return_value = [{"message_id": "1-0", "times_delivered": 4}]
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(200)

    relay = make_relay(handler, redis=redis)

    await relay.process_pending()

    assert calls == []
    stream, fields = redis.xadd.call_args.args
    assert stream == "order_events.dead"
    assert fields["reason"] == "max deliveries exceeded"
    redis.xack.assert_awaited_once()


@pytest.mark.asyncio
async def test_new_entries_are_read_through_the_group():
    redis = AsyncMock()
    redis.xreadgroup.return_value = [
        ["order_events", [("1-0", FIELDS), ("2-0", {**FIELDS, "event_id": "evt-2"})]]
    ]
    relay = make_relay(lambda r: httpx.Response(200, json={}), redis=redis)

    assert await relay.process_new() == 2

    group, consumer, streams = redis.xreadgroup.call_args.args
    assert (group, consumer, streams) == ("inventory-webhook", "test-1", {"order_events": ">"})
    assert redis.xack.await_count == 2


@pytest.mark.asyncio
async def test_ensure_group_tolerates_existing_group():
    redis = AsyncMock()
    redis.xgroup_create.side_effect = ResponseError(
        "BUSYGROUP Consumer Group name already exists"
    )
    await ensure_group(redis, "order_events", "inventory-webhook")

    redis.xgroup_create.side_effect = ResponseError("WRONGTYPE")
    with pytest.raises(ResponseError):
        await ensure_group(redis, "order_events", "inventory-webhook")
