"""
services/realtime/router.py
Server-sent event stream of schedule, booking and request changes.
"""

import json
from datetime import datetime, timezone
from typing import FrozenSet, Optional

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import StreamingResponse

from config.settings import settings
from services.realtime.notifier import EVENT_TYPES, Notifier, get_notifier
from shared.errors import ValidationError

router = APIRouter(prefix="/realtime", tags=["Realtime"])

KEEP_ALIVE = ": keep-alive\n\n"


async def event_stream(
    request: Request,
    notifier: Notifier,
    event_types: Optional[FrozenSet[str]],
    keepalive_seconds: float,
):
    """
    Yield SSE frames until the client goes away. The subscription lives
    exactly as long as the generator runs.
    """
    subscription = notifier.registry.subscribe(event_types)
    try:
        connected = {
            "type": "connected",
            "subscriber_id": subscription.id,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        yield f"event: connected\ndata: {json.dumps(connected)}\n\n"

        while not await request.is_disconnected():
            event = await subscription.next_event(timeout=keepalive_seconds)
            yield event.to_sse() if event else KEEP_ALIVE
    finally:
        notifier.registry.unsubscribe(subscription)


@router.get("/stream")
async def stream_events(
    request: Request,
    types: Optional[str] = Query(None, description="Comma-separated event types to receive"),
    notifier: Notifier = Depends(get_notifier),
):
    """
    Public SSE stream. Sends a `connected` event, then every change as
    `event: <type>` / `data: <json>`, with a keep-alive comment when idle.
    """
    wanted = None
    if types:
        wanted = frozenset(t.strip() for t in types.split(",") if t.strip())
        unknown = wanted - EVENT_TYPES
        if unknown:
            raise ValidationError(f"Unknown event types: {', '.join(sorted(unknown))}")

    return StreamingResponse(
        event_stream(request, notifier, wanted, settings.REALTIME_KEEPALIVE_SECONDS),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache, no-transform",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )
