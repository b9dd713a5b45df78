"""
Server-sent events stream of pipeline status events.

GET /events - one SSE message per StatusEvent
"""

from fastapi import APIRouter, HTTPException, Request
from fastapi.responses import StreamingResponse

from inbox_pipeline.services.broadcaster import EventStreamBroadcaster

router = APIRouter()


@router.get("/events")
async def stream_events(request: Request):
    broadcaster = getattr(request.app.state, "broadcaster", None)
    if not isinstance(broadcaster, EventStreamBroadcaster):
        raise HTTPException(status_code=503, detail="Event stream not available")

    async def event_stream():
        async for payload in broadcaster.subscribe():
            if await request.is_disconnected():
                break
            yield payload

    return StreamingResponse(event_stream(), media_type="text/event-stream")
