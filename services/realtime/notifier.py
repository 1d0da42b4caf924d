"""
services/realtime/notifier.py
Real-time event fan-out for schedule and request changes.

Each process owns one SubscriberRegistry (held on app.state) with a bounded
queue per connected client. When Redis is configured, every emitted event is
also published on a shared channel and a bridge task re-broadcasts events
that other instances published, so subscribers see changes regardless of
which instance handled the write.
"""

import asyncio
import json
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, FrozenSet, Optional, Set

import redis.asyncio as aioredis
from fastapi import Request
from redis.exceptions import RedisError
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from config.settings import settings

logger = logging.getLogger(__name__)

REQUEST_STATUS_CHANGED = "request_status_changed"
BOOKING_CREATED = "booking_created"
BOOKING_STATUS_CHANGED = "booking_status_changed"
AVAILABILITY_CHANGED = "availability_changed"

EVENT_TYPES = frozenset(
    {REQUEST_STATUS_CHANGED, BOOKING_CREATED, BOOKING_STATUS_CHANGED, AVAILABILITY_CHANGED}
)


def _jsonable(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, (uuid.UUID, Decimal)):
        return str(value)
    if isinstance(value, Enum):
        return value.value
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


@dataclass(frozen=True)
class RealtimeEvent:
    type: str
    resource_id: Optional[str]
    payload: Dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    emitted_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    origin: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "type": self.type,
            "resource_id": self.resource_id,
            "payload": self.payload,
            "emitted_at": self.emitted_at,
            "origin": self.origin,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), default=_jsonable)

    @classmethod
    def from_json(cls, raw: str) -> "RealtimeEvent":
        data = json.loads(raw)
        return cls(
            type=data["type"],
            resource_id=data.get("resource_id"),
            payload=data.get("payload") or {},
            id=data.get("id") or uuid.uuid4().hex,
            emitted_at=data.get("emitted_at") or datetime.now(timezone.utc).isoformat(),
            origin=data.get("origin"),
        )

    def to_sse(self) -> str:
        """Server-sent event frame: event name, id and a single JSON data line."""
        return f"event: {self.type}\nid: {self.id}\ndata: {self.to_json()}\n\n"


# ── Subscribers ───────────────────────────────────────────────

class Subscription:
    """One connected client. Events beyond the queue bound are dropped."""

    def __init__(self, maxsize: int, event_types: Optional[FrozenSet[str]] = None):
        self.id = uuid.uuid4().hex
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self.event_types = event_types
        self.dropped = 0

    def wants(self, event: RealtimeEvent) -> bool:
        return not self.event_types or event.type in self.event_types

    def offer(self, event: RealtimeEvent) -> bool:
        try:
            self.queue.put_nowait(event)
            return True
        except asyncio.QueueFull:
            self.dropped += 1
            return False

    async def next_event(self, timeout: float) -> Optional[RealtimeEvent]:
        """Wait up to timeout seconds; None means nothing arrived."""
        try:
            return await asyncio.wait_for(self.queue.get(), timeout=timeout)
        except asyncio.TimeoutError:
            return None


class SubscriberRegistry:
    def __init__(self, queue_size: int = settings.REALTIME_QUEUE_SIZE):
        self.queue_size = queue_size
        self._subscribers: Set[Subscription] = set()

    def __len__(self) -> int:
        return len(self._subscribers)

    def subscribe(self, event_types: Optional[FrozenSet[str]] = None) -> Subscription:
        subscription = Subscription(self.queue_size, event_types)
        self._subscribers.add(subscription)
        logger.info(f"Realtime subscriber {subscription.id} connected ({len(self)} active)")
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        self._subscribers.discard(subscription)
        logger.info(f"Realtime subscriber {subscription.id} disconnected ({len(self)} active)")

    def broadcast(self, event: RealtimeEvent) -> int:
        """Deliver to every interested subscriber. Returns how many received it."""
        delivered = 0
        for subscription in list(self._subscribers):
            if not subscription.wants(event):
                continue
            if subscription.offer(event):
                delivered += 1
            else:
                logger.warning(
                    f"Realtime subscriber {subscription.id} queue full, dropped {event.type}"
                )
        return delivered


# ── Notifier ──────────────────────────────────────────────────

class Notifier:
    """
    Entry point used by the domain services after a successful commit.
    emit() never blocks on the network and delivery failures never reach the caller.
    """

    def __init__(
        self,
        registry: SubscriberRegistry,
        redis: Optional[aioredis.Redis] = None,
        channel: str = settings.REALTIME_CHANNEL,
        instance_id: Optional[str] = None,
    ):
        self.registry = registry
        self.redis = redis
        self.channel = channel
        self.instance_id = instance_id or uuid.uuid4().hex
        self._pending: Set[asyncio.Task] = set()
        self._bridge: Optional[asyncio.Task] = None

    def emit(self, event_type: str, resource_id: Any = None, payload: Optional[dict] = None) -> RealtimeEvent:
        if event_type not in EVENT_TYPES:
            raise ValueError(f"Unknown realtime event type: {event_type}")

        event = RealtimeEvent(
            type=event_type,
            resource_id=str(resource_id) if resource_id is not None else None,
            payload=json.loads(json.dumps(payload or {}, default=_jsonable)),
            origin=self.instance_id,
        )
        self.registry.broadcast(event)

        if self.redis is not None:
            try:
                task = asyncio.get_running_loop().create_task(self._publish_safely(event))
            except RuntimeError:
                logger.debug(f"No running loop, {event.type} not published to Redis")
            else:
                self._pending.add(task)
                task.add_done_callback(self._pending.discard)
        return event

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.1, max=1),
        retry=retry_if_exception_type(RedisError),
        reraise=True,
    )
    async def _publish(self, event: RealtimeEvent) -> None:
        await self.redis.publish(self.channel, event.to_json())

    async def _publish_safely(self, event: RealtimeEvent) -> None:
        try:
            await self._publish(event)
        except RedisError as exc:
            logger.error(f"Realtime publish of {event.type} failed: {exc}")

    async def flush(self) -> None:
        """Wait for in-flight Redis publishes."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    # ── Redis bridge ──────────────────────────────────────────

    def start_bridge(self) -> None:
        if self.redis is None or self._bridge is not None:
            return
        self._bridge = asyncio.get_running_loop().create_task(self._run_bridge())
        logger.info(f"Realtime bridge listening on '{self.channel}'")

    async def stop_bridge(self) -> None:
        if self._bridge is None:
            return
        self._bridge.cancel()
        try:
            await self._bridge
        except asyncio.CancelledError:
            pass
        self._bridge = None
        await self.flush()

    @retry(
        wait=wait_exponential(multiplier=0.5, max=30),
        retry=retry_if_exception_type(RedisError),
        before_sleep=lambda state: logger.warning(
            f"Realtime bridge lost Redis, reconnect attempt {state.attempt_number}"
        ),
    )
    async def _run_bridge(self) -> None:
        pubsub = self.redis.pubsub()
        await pubsub.subscribe(self.channel)
        try:
            async for message in pubsub.listen():
                if message.get("type") != "message":
                    continue
                self.relay(message["data"])
        finally:
            await pubsub.unsubscribe(self.channel)
            await pubsub.aclose()

    def relay(self, raw: Any) -> bool:
        """Re-broadcast an event published by another instance. Own echoes are skipped."""
        if isinstance(raw, bytes):
            raw = raw.decode()
        try:
            event = RealtimeEvent.from_json(raw)
        except (ValueError, KeyError, TypeError) as exc:
            logger.warning(f"Ignoring malformed realtime message: {exc}")
            return False
        if event.origin == self.instance_id:
            return False
        self.registry.broadcast(event)
        return True


def get_notifier(request: Request) -> Notifier:
    """FastAPI dependency: the notifier owned by the running app."""
    return request.app.state.notifier
