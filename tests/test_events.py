"""Tests for the progress event channel."""

import asyncio

import pytest

from rlmkit.rlm.events import EventChannel, EventType, ProgressEvent


def test_full_buffer_drops_and_counts():
    """Test dropping events when the buffer is full."""
    channel = EventChannel(maxsize=2)
    for _ in range(3):
        channel.publish(ProgressEvent(EventType.PHASE_STARTED))

    assert channel.dropped == 1
    assert channel.published == 3
    assert len(channel.drain()) == 2
    assert channel.stats()["buffered"] == 0


def test_callbacks_run_immediately_without_a_loop():
    """Test callbacks outside an event loop."""
    channel = EventChannel()
    seen = []
    channel.subscribe(seen.append)
    channel.publish(ProgressEvent(EventType.COMPLETED))
    assert [e.type for e in seen] == [EventType.COMPLETED]


class TestCallbacks:
    """Test callback delivery inside an event loop."""

    @pytest.mark.asyncio
    async def test_callback_is_scheduled_not_awaited(self):
        """Test that emit never waits on a callback."""
        channel = EventChannel()
        seen = []
        channel.subscribe(seen.append)

        channel.publish(ProgressEvent(EventType.QUERY_RECEIVED))
        assert seen == []
        await asyncio.sleep(0)
        assert len(seen) == 1

    @pytest.mark.asyncio
    async def test_failing_callback_is_tolerated(self):
        """Test that a raising callback is logged and skipped."""
        channel = EventChannel()
        seen = []

        def broken(event):
            raise RuntimeError("ui gone")

        channel.subscribe(broken)
        channel.subscribe(seen.append)
        channel.publish(ProgressEvent(EventType.QUERY_RECEIVED))
        await asyncio.sleep(0)

        assert len(seen) == 1

    @pytest.mark.asyncio
    async def test_async_callback_runs(self):
        """Test coroutine callbacks."""
        channel = EventChannel()
        seen = []

        async def record(event):
            seen.append(event.type)

        channel.subscribe(record)
        channel.publish(ProgressEvent(EventType.COMPLETED))
        for _ in range(3):
            await asyncio.sleep(0)

        assert seen == [EventType.COMPLETED]

    @pytest.mark.asyncio
    async def test_unsubscribe(self):
        """Test unsubscribing."""
        channel = EventChannel()
        seen = []
        channel.subscribe(seen.append)
        channel.unsubscribe(seen.append)
        channel.publish(ProgressEvent(EventType.COMPLETED))
        await asyncio.sleep(0)
        assert seen == []
