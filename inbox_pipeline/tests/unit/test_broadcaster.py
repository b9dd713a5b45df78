"""Unit tests for status broadcasting."""

import asyncio
import json
from datetime import datetime, timezone

from inbox_pipeline.services.broadcaster import (
    EventStreamBroadcaster,
    EventType,
    NullBroadcaster,
    StatusEvent,
    safe_broadcast,
)
from inbox_pipeline.tests.fakes import RecordingBroadcaster


def completed(message_id: int = 7) -> StatusEvent:
    return StatusEvent(type=EventType.COMPLETED, message_id=message_id, account_id=1, progress=100)


class TestStatusEvent:
    def test_to_dict(self):
        event = StatusEvent(
            type=EventType.CLASSIFIED,
            message_id=3,
            account_id=1,
            progress=90,
            message="Classified as banking",
            timestamp=datetime(2024, 3, 1, tzinfo=timezone.utc),
        )

        assert event.to_dict() == {
            "type": "classified",
            "messageId": 3,
            "accountId": 1,
            "progress": 90,
            "message": "Classified as banking",
            "data": {},
            "timestamp": "2024-03-01T00:00:00+00:00",
        }


class TestEventStreamBroadcaster:
    """Tests for the server-sent-events fan-out."""

    def test_subscriber_receives_event(self):
        broadcaster = EventStreamBroadcaster()

        async def scenario():
            stream = broadcaster.subscribe()
            pending = asyncio.ensure_future(stream.__anext__())
            while broadcaster.subscriber_count == 0:
                await asyncio.sleep(0)
            broadcaster.broadcast(completed())
            payload = await asyncio.wait_for(pending, timeout=1)
            await stream.aclose()
            return payload

        payload = asyncio.run(scenario())

        header, data = payload.strip().split("\n")
        assert header == "event: completed"
        assert json.loads(data.removeprefix("data: "))["messageId"] == 7
        assert broadcaster.subscriber_count == 0

    def test_full_queue_drops_events(self):
        """Test a slow subscriber loses events instead of blocking the publisher."""
        broadcaster = EventStreamBroadcaster(max_queue_size=2)

        async def scenario():
            stream = broadcaster.subscribe()
            pending = asyncio.ensure_future(stream.__anext__())
            while broadcaster.subscriber_count == 0:
                await asyncio.sleep(0)
            for i in range(5):
                broadcaster.broadcast(completed(message_id=i))
            await asyncio.sleep(0.05)
            received = [await asyncio.wait_for(pending, timeout=1)]
            received.append(await asyncio.wait_for(stream.__anext__(), timeout=1))
            extra = asyncio.ensure_future(stream.__anext__())
            await asyncio.sleep(0.05)
            leftover = extra.done()
            extra.cancel()
            await asyncio.gather(extra, return_exceptions=True)
            return received, leftover

        received, leftover = asyncio.run(scenario())

        ids = [json.loads(p.strip().split("\n")[1].removeprefix("data: "))["messageId"] for p in received]
        assert ids == [0, 1]
        assert leftover is False

    def test_no_subscribers(self):
        EventStreamBroadcaster().broadcast(completed())


class TestSafeBroadcast:
    def test_transport_error_swallowed(self):
        safe_broadcast(RecordingBroadcaster(broken=True), completed())

    def test_delivers(self):
        broadcaster = RecordingBroadcaster()
        safe_broadcast(broadcaster, completed())
        assert broadcaster.types_for(7) == ["completed"]

    def test_null_broadcaster(self):
        safe_broadcast(NullBroadcaster(), completed())
