"""
tests/test_realtime.py
Tests for real-time fan-out: subscriber registry, bounded queues, Redis
publishing and cross-instance relay, and events produced by HTTP writes.
"""

import asyncio
import json
import uuid
from datetime import datetime, timezone
from decimal import Decimal

import fakeredis.aioredis
import pytest
from httpx import AsyncClient

from main import app
from services.realtime.notifier import (
    AVAILABILITY_CHANGED,
    BOOKING_CREATED,
    REQUEST_STATUS_CHANGED,
    Notifier,
    RealtimeEvent,
    SubscriberRegistry,
)
from services.realtime.router import KEEP_ALIVE, event_stream
from shared.models.models import RequestStatus
from tests.conftest import auth_headers, make_request, window_json, window


# ── Registry ──────────────────────────────────────────────────

def test_subscribe_and_unsubscribe():
    registry = SubscriberRegistry(queue_size=5)
    first = registry.subscribe()
    second = registry.subscribe()
    assert len(registry) == 2

    registry.unsubscribe(first)
    registry.unsubscribe(first)
    assert len(registry) == 1
    assert registry.broadcast(RealtimeEvent(BOOKING_CREATED, None)) == 1
    assert second.queue.qsize() == 1


def test_type_filter():
    registry = SubscriberRegistry(queue_size=5)
    only_bookings = registry.subscribe(frozenset({BOOKING_CREATED}))
    everything = registry.subscribe()

    delivered = registry.broadcast(RealtimeEvent(AVAILABILITY_CHANGED, "r1"))

    assert delivered == 1
    assert only_bookings.queue.empty()
    assert everything.queue.qsize() == 1


def test_full_queue_drops_without_blocking_others():
    """A slow subscriber loses events instead of stalling the broadcast."""
    registry = SubscriberRegistry(queue_size=2)
    slow = registry.subscribe()
    for _ in range(2):
        registry.broadcast(RealtimeEvent(BOOKING_CREATED, None))
    fast = registry.subscribe()

    delivered = registry.broadcast(RealtimeEvent(BOOKING_CREATED, None))

    assert delivered == 1
    assert slow.dropped == 1
    assert slow.queue.qsize() == 2
    assert fast.queue.qsize() == 1


@pytest.mark.asyncio
async def test_next_event_times_out():
    subscription = SubscriberRegistry(queue_size=1).subscribe()
    assert await subscription.next_event(timeout=0.01) is None


# ── Events ────────────────────────────────────────────────────

def test_event_serialization():
    resource_id = uuid.uuid4()
    notifier = Notifier(SubscriberRegistry(), instance_id="api-1")
    event = notifier.emit(
        AVAILABILITY_CHANGED,
        resource_id,
        {
            "start_time": datetime(2024, 6, 1, 10, tzinfo=timezone.utc),
            "rate": Decimal("12.50"),
            "status": RequestStatus.ACCEPTED,
        },
    )

    assert event.resource_id == str(resource_id)
    assert event.origin == "api-1"
    assert event.payload == {
        "start_time": "2024-06-01T10:00:00+00:00",
        "rate": "12.50",
        "status": "accepted",
    }
    assert RealtimeEvent.from_json(event.to_json()) == event

    frame = event.to_sse()
    assert frame.startswith(f"event: {AVAILABILITY_CHANGED}\nid: {event.id}\ndata: ")
    assert frame.endswith("\n\n")
    assert json.loads(frame.split("data: ", 1)[1])["type"] == AVAILABILITY_CHANGED


def test_unknown_event_type_rejected():
    notifier = Notifier(SubscriberRegistry())
    with pytest.raises(ValueError):
        notifier.emit("provider_exploded")


def test_emit_without_loop_still_delivers_locally():
    registry = SubscriberRegistry()
    subscription = registry.subscribe()
    notifier = Notifier(registry, redis=fakeredis.aioredis.FakeRedis(decode_responses=True))

    notifier.emit(BOOKING_CREATED, "r1", {"booking_id": "b1"})
    assert subscription.queue.qsize() == 1


# ── Redis bridge ──────────────────────────────────────────────

@pytest.mark.asyncio
async def test_emit_publishes_to_redis(redis):
    pubsub = redis.pubsub()
    await pubsub.subscribe("test:events")
    await pubsub.get_message(timeout=1)    # subscribe confirmation

    notifier = Notifier(SubscriberRegistry(), redis=redis, channel="test:events", instance_id="a")
    event = notifier.emit(REQUEST_STATUS_CHANGED, "r1", {"status": "accepted"})
    await notifier.flush()

    message = await pubsub.get_message(ignore_subscribe_messages=True, timeout=1)
    assert message is not None
    assert RealtimeEvent.from_json(message["data"]).id == event.id

    await pubsub.unsubscribe("test:events")
    await pubsub.aclose()


def test_relay_skips_own_echo_and_garbage():
    registry = SubscriberRegistry()
    subscription = registry.subscribe()
    local = Notifier(registry, instance_id="a")
    remote_event = RealtimeEvent(BOOKING_CREATED, "r1", {"booking_id": "b1"}, origin="b")
    own_event = RealtimeEvent(BOOKING_CREATED, "r1", origin="a")

    assert local.relay(remote_event.to_json()) is True
    assert local.relay(own_event.to_json().encode()) is False
    assert local.relay("not json") is False
    assert local.relay(json.dumps({"payload": {}})) is False

    assert subscription.queue.qsize() == 1
    assert subscription.queue.get_nowait().id == remote_event.id


@pytest.mark.asyncio
async def test_bridge_relays_between_instances(redis):
    """An event emitted on one instance reaches subscribers on another."""
    registry_a = SubscriberRegistry()
    registry_b = SubscriberRegistry()
    a = Notifier(registry_a, redis=redis, channel="test:bridge", instance_id="a")
    b = Notifier(registry_b, redis=redis, channel="test:bridge", instance_id="b")
    on_b = registry_b.subscribe()
    on_a = registry_a.subscribe()

    b.start_bridge()
    a.start_bridge()
    await asyncio.sleep(0.05)
    try:
        event = a.emit(BOOKING_CREATED, "r1", {"booking_id": "b1"})
        await a.flush()
        relayed = await on_b.next_event(timeout=1)
    finally:
        await a.stop_bridge()
        await b.stop_bridge()

    assert relayed is not None
    assert relayed.id == event.id
    # Instance a delivered locally and ignored its own echo
    assert on_a.queue.qsize() == 1


# ── SSE stream ────────────────────────────────────────────────

class _Client:
    """Stands in for a Starlette request: connected for n polls."""

    def __init__(self, polls: int):
        self.polls = polls

    async def is_disconnected(self) -> bool:
        self.polls -= 1
        return self.polls < 0


@pytest.mark.asyncio
async def test_event_stream_frames():
    notifier = Notifier(SubscriberRegistry())
    stream = event_stream(_Client(polls=2), notifier, None, 0.01)

    connected = await stream.__anext__()
    assert connected.startswith("event: connected\n")
    assert len(notifier.registry) == 1

    event = notifier.emit(BOOKING_CREATED, "r1", {"booking_id": "b1"})
    rest = [frame async for frame in stream]

    assert rest == [event.to_sse(), KEEP_ALIVE]
    assert len(notifier.registry) == 0


@pytest.mark.asyncio
async def test_unread_stream_never_subscribes():
    """A response dropped before its first frame leaves no subscriber behind."""
    notifier = Notifier(SubscriberRegistry())
    stream = event_stream(_Client(polls=1), notifier, frozenset({BOOKING_CREATED}), 0.01)

    assert len(notifier.registry) == 0
    await stream.aclose()
    assert len(notifier.registry) == 0


@pytest.mark.asyncio
async def test_event_stream_honours_type_filter():
    notifier = Notifier(SubscriberRegistry())
    stream = event_stream(_Client(polls=1), notifier, frozenset({BOOKING_CREATED}), 0.01)
    await stream.__anext__()

    notifier.emit(AVAILABILITY_CHANGED, "r1")
    booked = notifier.emit(BOOKING_CREATED, "r1", {"booking_id": "b1"})
    rest = [frame async for frame in stream]

    assert rest == [booked.to_sse()]
    assert len(notifier.registry) == 0


@pytest.mark.asyncio
async def test_stream_rejects_unknown_types(client: AsyncClient):
    response = await client.get("/realtime/stream", params={"types": "booking_created,bogus"})
    assert response.status_code == 400
    assert "bogus" in response.json()["detail"]


@pytest.mark.asyncio
async def test_http_accept_reaches_subscribers(
    client: AsyncClient, db, user, service_type, provider_profile, provider_user, notifier
):
    request = await make_request(db, user, service_type)
    subscription = app.state.notifier.registry.subscribe(
        frozenset({BOOKING_CREATED, REQUEST_STATUS_CHANGED})
    )

    response = await client.post(
        f"/requests/{request.id}/accept",
        json={
            "resource": {"resource_type": "INDIVIDUAL", "resource_id": str(provider_profile.id)},
            "window": window_json(window(10)),
        },
        headers=auth_headers(provider_user),
    )
    assert response.status_code == 200

    status_event = subscription.queue.get_nowait()
    booked_event = subscription.queue.get_nowait()
    assert status_event.type == REQUEST_STATUS_CHANGED
    assert status_event.payload["status"] == "accepted"
    assert booked_event.type == BOOKING_CREATED
    assert booked_event.payload["booking_id"] == response.json()["booking"]["id"]
    assert subscription.queue.empty()
