"""Progress events emitted while a query is processed.

Events go to two places: a bounded queue that UI code can drain or
stream, and any subscribed callbacks. Neither may slow the pipeline
down. A full queue drops the event and counts it, and callbacks are
scheduled on the loop instead of awaited.
"""

import asyncio
import inspect
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncIterator, Callable, Optional

from loguru import logger


class EventType(str, Enum):
    QUERY_RECEIVED = "query_received"
    CACHE_HIT = "cache_hit"
    PLAN_CREATED = "plan_created"
    PHASE_STARTED = "phase_started"
    SUB_QUERY_STARTED = "sub_query_started"
    SUB_QUERY_FINISHED = "sub_query_finished"
    RECURSIVE_CALL = "recursive_call"
    CONFLICTS_DETECTED = "conflicts_detected"
    AGGREGATION_STARTED = "aggregation_started"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class ProgressEvent:
    type: EventType
    data: dict[str, Any] = field(default_factory=dict)
    query_id: Optional[str] = None
    depth: int = 0
    timestamp: float = field(default_factory=time.time)


ProgressCallback = Callable[[ProgressEvent], Any]


class EventChannel:
    """Bounded, non-blocking fan-out of progress events."""

    def __init__(self, maxsize: int = 256):
        self._queue: asyncio.Queue[ProgressEvent] = asyncio.Queue(maxsize=maxsize)
        self._callbacks: list[ProgressCallback] = []
        self._tasks: set[asyncio.Task] = set()
        self.published = 0
        self.dropped = 0

    def subscribe(self, callback: ProgressCallback) -> None:
        self._callbacks.append(callback)

    def unsubscribe(self, callback: ProgressCallback) -> None:
        if callback in self._callbacks:
            self._callbacks.remove(callback)

    def clear_subscribers(self) -> None:
        self._callbacks.clear()

    def publish(self, event: ProgressEvent) -> None:
        self.published += 1
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            self.dropped += 1
            if self.dropped == 1 or self.dropped % 100 == 0:
                logger.debug(f"Event buffer full, dropped {self.dropped} events so far")

        if not self._callbacks:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            loop = None
        for callback in list(self._callbacks):
            if loop is None:
                self._invoke(callback, event)
            else:
                loop.call_soon(self._invoke, callback, event)

    def _invoke(self, callback: ProgressCallback, event: ProgressEvent) -> None:
        try:
            result = callback(event)
        except Exception as e:
            logger.warning(f"Progress callback failed: {e}")
            return
        if inspect.isawaitable(result):
            task = asyncio.ensure_future(result)
            self._tasks.add(task)
            task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.warning(f"Progress callback failed: {task.exception()}")

    def drain(self) -> list[ProgressEvent]:
        """Remove and return every buffered event without waiting."""
        events = []
        while True:
            try:
                events.append(self._queue.get_nowait())
            except asyncio.QueueEmpty:
                return events

    async def stream(self) -> AsyncIterator[ProgressEvent]:
        """Yield events as they arrive. Runs until the consumer stops iterating."""
        while True:
            yield await self._queue.get()

    def stats(self) -> dict[str, int]:
        return {
            "published": self.published,
            "dropped": self.dropped,
            "buffered": self._queue.qsize(),
            "subscribers": len(self._callbacks),
        }
