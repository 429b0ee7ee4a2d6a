"""
Notification stream (SSE)
- diagnostics: {"uri", "diagnostics": [...]}
- totalBytesProcessed: {"totalBytesProcessed": "<label>"}
"""
import asyncio
import json
from datetime import datetime

from fastapi import APIRouter, Depends, Request
from sse_starlette.sse import EventSourceResponse

from bqls.deps import Services, get_services


router = APIRouter(prefix="/events", tags=["Events"])

HEARTBEAT_SECONDS = 15.0


@router.get("/stream")
async def stream_events(request: Request, services: Services = Depends(get_services)):
    """
    Subscribes the caller to every notification the server publishes.

    The latest cost label (if any) is replayed right after the connected message.
    """
    queue = services.events.subscribe()

    async def event_generator():
        try:
            yield {
                "event": "connected",
                "data": json.dumps({
                    "subscribers": services.events.subscriber_count,
                    "timestamp": datetime.now().isoformat(),
                }),
            }
            if services.events.latest_cost_label is not None:
                yield {
                    "event": "totalBytesProcessed",
                    "data": json.dumps({"totalBytesProcessed": services.events.latest_cost_label}),
                }

            while True:
                if await request.is_disconnected():
                    break
                try:
                    message = await asyncio.wait_for(queue.get(), timeout=HEARTBEAT_SECONDS)
                    yield message
                except asyncio.TimeoutError:
                    yield {
                        "event": "heartbeat",
                        "data": json.dumps({"timestamp": datetime.now().isoformat()}),
                    }
        finally:
            services.events.unsubscribe(queue)

    return EventSourceResponse(event_generator())


@router.get("/latest")
async def latest_events(services: Services = Depends(get_services)):
    """Snapshot of the most recent notifications, for clients that poll instead of streaming."""
    return {
        "totalBytesProcessed": services.events.latest_cost_label,
        "diagnostics": {
            uri: [d.model_dump(mode="json") for d in diags]
            for uri, diags in services.events.latest_diagnostics.items()
        },
    }
