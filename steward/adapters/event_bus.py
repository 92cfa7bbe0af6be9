"""Async event bus between the session orchestrator and its consumers.

The orchestrator publishes from its session tasks; a UI (or the CLI)
drains the bus from its own consumer loop.
"""
from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator

from .events import SessionEvent

logger = logging.getLogger(__name__)

# Max time a publish waits on a full queue before dropping the event
PUBLISH_TIMEOUT_SECONDS = 30.0


class EventBus:
    """Bounded async queue of ``SessionEvent`` objects."""

    def __init__(self, maxsize: int = 5000) -> None:
        self._queue: asyncio.Queue[SessionEvent] = asyncio.Queue(maxsize=maxsize)
        self._closed = False

    def qsize(self) -> int:
        return self._queue.qsize()

    async def publish(self, event: SessionEvent) -> None:
        """Queue ``event``. Failures are logged, never raised."""
        if self._closed:
            return
        try:
            # Backpressure instead of dropping, up to a limit
            await asyncio.wait_for(
                self._queue.put(event), timeout=PUBLISH_TIMEOUT_SECONDS,
            )
        except asyncio.TimeoutError:
            logger.error(
                "EventBus queue blocked for %.0fs, dropping: %s task=%s (queue size: %d)",
                PUBLISH_TIMEOUT_SECONDS,
                event.event_type,
                event.task_id[:8],
                self._queue.qsize(),
            )
        except Exception as e:
            logger.error("EventBus publish error: %s", e)

    async def consume(self) -> AsyncIterator[SessionEvent]:
        """Yield events as they arrive. Stops on close()."""
        while not self._closed:
            try:
                event = await asyncio.wait_for(self._queue.get(), timeout=0.5)
                yield event
            except asyncio.TimeoutError:
                continue
            except asyncio.CancelledError:
                break

    def drain_nowait(self) -> list[SessionEvent]:
        """Take every queued event without waiting."""
        events = []
        while not self._queue.empty():
            events.append(self._queue.get_nowait())
        return events

    def close(self) -> None:
        """Stop the consumer loop permanently."""
        self._closed = True
