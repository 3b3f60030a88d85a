"""Structured event channel for stage transitions, breaker changes and escalations.

Publishing never blocks and never raises: events go into a bounded buffer
that drops the oldest entry when full, and a background task drains the
buffer into the registered sinks.
"""

import asyncio
import json
import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Union

logger = logging.getLogger(__name__)

_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}


@dataclass(slots=True)
class Event:
    level: str
    message: str
    context: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict[str, Any]:
        return {
            "level": self.level,
            "message": self.message,
            "context": self.context,
            "timestamp": self.timestamp.isoformat(),
        }


Sink = Callable[[Event], Union[None, Awaitable[None]]]


def logging_sink(event: Event) -> None:
    """Default sink: forward to the ``concierge.events`` logger."""
    logger.log(
        _LEVELS.get(event.level, logging.INFO),
        f"{event.message} {json.dumps(event.context, default=str)}",
    )


class RedisStreamSink:
    """Append warn/error events to a capped Redis stream for alerting."""

    STREAM = "concierge:stream:events"
    MAX_LEN = 10000

    def __init__(self, redis, levels: tuple[str, ...] = ("warn", "warning", "error")):
        self.redis = redis
        self.levels = levels

    async def __call__(self, event: Event) -> None:
        if event.level not in self.levels:
            return
        await self.redis.xadd(
            self.STREAM,
            {
                "level": event.level,
                "message": event.message,
                "context": json.dumps(event.context, default=str),
                "timestamp": event.timestamp.isoformat(),
            },
            maxlen=self.MAX_LEN,
            approximate=True,
        )


class EventBus:
    """Bounded fire-and-forget event channel.

    Usage:
        bus = EventBus(max_size=1000)
        await bus.start()
        bus.emit("info", "Cache hit", user_id="42")
        await bus.stop()
    """

    def __init__(self, max_size: int = 1000, sinks: list[Sink] | None = None):
        self.max_size = max_size
        self._buffer: deque[Event] = deque(maxlen=max_size)
        self._sinks: list[Sink] = list(sinks) if sinks is not None else [logging_sink]
        self._wakeup: asyncio.Event | None = None
        self._task: asyncio.Task | None = None
        self._running = False
        self.published = 0
        self.dropped = 0
        self.sink_failures = 0

    def add_sink(self, sink: Sink) -> None:
        self._sinks.append(sink)

    def emit(self, level: str, message: str, **context: Any) -> None:
        """Publish an event. Drops the oldest buffered event when full."""
        if len(self._buffer) == self.max_size:
            self.dropped += 1
        self._buffer.append(Event(level=level, message=message, context=context))
        self.published += 1
        if self._wakeup is not None:
            self._wakeup.set()

    def pending(self) -> int:
        return len(self._buffer)

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._wakeup = asyncio.Event()
        self._task = asyncio.create_task(self._drain_loop())
        logger.info(f"Event bus started (capacity: {self.max_size})")

    async def stop(self) -> None:
        """Stop the drain task, flushing whatever is still buffered."""
        self._running = False
        if self._task:
            self._wakeup.set()
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        await self.flush()
        logger.info("Event bus stopped")

    async def flush(self) -> int:
        """Deliver every buffered event now. Returns the number delivered."""
        delivered = 0
        while self._buffer:
            await self._deliver(self._buffer.popleft())
            delivered += 1
        return delivered

    async def _drain_loop(self) -> None:
        while self._running:
            await self._wakeup.wait()
            self._wakeup.clear()
            await self.flush()

    async def _deliver(self, event: Event) -> None:
        for sink in self._sinks:
            try:
                result = sink(event)
                if asyncio.iscoroutine(result):
                    await result
            except Exception as e:
                # A failing sink must never reach the request path
                self.sink_failures += 1
                logger.debug(f"Event sink {sink!r} failed: {e}")

    def stats(self) -> dict[str, Any]:
        return {
            "running": self._running,
            "capacity": self.max_size,
            "pending": len(self._buffer),
            "published": self.published,
            "dropped": self.dropped,
            "sink_failures": self.sink_failures,
            "sinks": len(self._sinks),
        }
