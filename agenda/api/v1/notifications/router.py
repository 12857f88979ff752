import uuid

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import StreamingResponse

from agenda.api.deps import get_broadcaster
from agenda.services.notifications import NotificationBroadcaster, format_sse

router = APIRouter(prefix="/notifications", tags=["Notifications"])

KEEPALIVE_SECONDS = 15.0


@router.get("/stream")
async def stream_notifications(
    request: Request,
    business_id: uuid.UUID | None = Query(None),
    broadcaster: NotificationBroadcaster = Depends(get_broadcaster),
):
    """
    Server-Sent Events stream of booking events for live dashboards.

    Example event:
        event: booking_created
        data: {"type": "booking_created", "booking_id": "...", ...}
    """
    subscription = broadcaster.subscribe(business_id)

    async def event_stream():
        try:
            yield ": connected\n\n"
            while not subscription.closed:
                if await request.is_disconnected():
                    break
                event = await subscription.next_event(timeout=KEEPALIVE_SECONDS)
                yield format_sse(event) if event else ": keepalive\n\n"
        finally:
            broadcaster.unsubscribe(subscription)

    return StreamingResponse(
        event_stream(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )
