"""
Live event endpoints.

Server-Sent Events at ``/events/stream`` and a WebSocket at ``/events/ws``,
both optionally filtered to one plan with ``planId``.
"""

import logging
from collections.abc import AsyncIterator

from fastapi import APIRouter, Depends, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import StreamingResponse

from ralph.api.config import APIConfig
from ralph.api.dependencies import get_api_config, get_event_bus
from ralph.events import Event, EventBus, Subscription

logger = logging.getLogger(__name__)

router = APIRouter()


def _replayed(bus: EventBus, subscription: Subscription) -> list[Event]:
    return [event for event in bus.recent() if subscription.matches(event)]


async def _sse_frames(
    request: Request,
    bus: EventBus,
    plan_id: str | None,
    replay: bool,
    limit: int | None,
    heartbeat: float,
) -> AsyncIterator[str]:
    subscription = bus.subscribe(plan_id=plan_id)
    backlog = _replayed(bus, subscription) if replay else []
    last_replayed = backlog[-1].id if backlog else 0
    sent = 0
    try:
        yield ": connected\n\n"
        for event in backlog:
            yield event.to_sse()
            sent += 1
            if limit is not None and sent >= limit:
                return

        while True:
            if await request.is_disconnected():
                return
            event = await subscription.get(timeout=heartbeat)
            if event is None:
                if subscription.closed:
                    return
                yield ": keepalive\n\n"
                continue
            if event.id <= last_replayed:
                continue
            yield event.to_sse()
            sent += 1
            if limit is not None and sent >= limit:
                return
    finally:
        subscription.close()


@router.get("/events/stream")
async def stream_events(
    request: Request,
    plan_id: str | None = Query(None, alias="planId", description="Only events for this plan"),
    replay: bool = Query(False, description="Send recent events before live ones"),
    limit: int | None = Query(None, ge=1, description="Close the stream after this many events"),
    bus: EventBus = Depends(get_event_bus),
    config: APIConfig = Depends(get_api_config),
) -> StreamingResponse:
    """
    Stream execution events as Server-Sent Events.

    Each frame carries the event type and a JSON body with ``planId``,
    ``sessionId``, ``taskId`` (for task events), ``progress`` and the
    completed, failed and in-progress task lists.
    """
    return StreamingResponse(
        _sse_frames(request, bus, plan_id, replay, limit, config.heartbeat_interval),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


@router.websocket("/events/ws")
async def events_websocket(websocket: WebSocket, planId: str | None = None) -> None:
    """Push every matching event to the client as a JSON message."""
    bus: EventBus = websocket.app.state.bus
    await websocket.accept()
    subscription = bus.subscribe(plan_id=planId)
    try:
        async for event in subscription:
            await websocket.send_json(event.to_dict())
    except WebSocketDisconnect:
        logger.debug("Event WebSocket client disconnected")
    finally:
        subscription.close()
        await _close_quietly(websocket)


async def _close_quietly(websocket: WebSocket) -> None:
    try:
        await websocket.close()
    except RuntimeError:
        # Already closed by the client
        pass
