"""Binding between conversations and their single outward stream.

Each conversation has at most one sink. Events emitted while no sink
is bound are dropped; nothing is queued for a later reconnect.
"""
from __future__ import annotations

import abc
import asyncio
import logging
from typing import Any

from ccbridge.adapters.events import NormalizedEvent, event_to_wire

logger = logging.getLogger(__name__)


class Sink(abc.ABC):
    """An outward channel for one conversation's events."""

    @abc.abstractmethod
    def send(self, payload: dict[str, Any]) -> None:
        """Deliver one wire payload. Must not block."""

    @abc.abstractmethod
    def close(self) -> None:
        """Stop accepting payloads and release the reader."""

    @property
    @abc.abstractmethod
    def closed(self) -> bool:
        """Whether close() has been called."""


class QueueSink(Sink):
    """Sink backed by an unbounded asyncio queue, drained by the SSE writer.

    ``get()`` returns ``None`` once the sink is closed and the queue is
    empty.
    """

    def __init__(self) -> None:
        self._queue: asyncio.Queue[dict[str, Any] | None] = asyncio.Queue()
        self._closed = False

    def send(self, payload: dict[str, Any]) -> None:
        if self._closed:
            return
        self._queue.put_nowait(payload)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._queue.put_nowait(None)

    @property
    def closed(self) -> bool:
        return self._closed

    async def get(self, timeout: float | None = None) -> dict[str, Any] | None:
        """Wait for the next payload. Raises asyncio.TimeoutError on timeout."""
        if timeout is None:
            return await self._queue.get()
        return await asyncio.wait_for(self._queue.get(), timeout=timeout)

    def pending(self) -> int:
        return self._queue.qsize()


class StreamSinkBinding:
    """conversation id → bound sink."""

    def __init__(self) -> None:
        self._sinks: dict[str, Sink] = {}

    def attach(self, conversation_id: str, sink: Sink) -> Sink | None:
        """Bind *sink*, superseding and closing any earlier one."""
        previous = self._sinks.get(conversation_id)
        self._sinks[conversation_id] = sink
        if previous is not None and previous is not sink:
            logger.info("[%s] Stream superseded by a new connection", conversation_id)
            previous.close()
            return previous
        logger.info("[%s] Stream attached", conversation_id)
        return None

    def detach(self, conversation_id: str, sink: Sink | None = None) -> bool:
        """Unbind without closing. With *sink*, only unbind if it is the bound one."""
        current = self._sinks.get(conversation_id)
        if current is None:
            return False
        if sink is not None and current is not sink:
            return False
        del self._sinks[conversation_id]
        logger.info("[%s] Stream detached", conversation_id)
        return True

    def emit(self, conversation_id: str, event: NormalizedEvent) -> bool:
        """Write *event* to the bound sink; terminal events also close it."""
        sink = self._sinks.get(conversation_id)
        if sink is None:
            logger.debug(
                "[%s] No stream attached, dropping %s event",
                conversation_id, event.event_type,
            )
            return False
        sink.send(event_to_wire(event))
        if event.terminal:
            self.close(conversation_id)
        return True

    def close(self, conversation_id: str) -> bool:
        """Close and unbind the sink without emitting anything."""
        sink = self._sinks.pop(conversation_id, None)
        if sink is None:
            return False
        sink.close()
        logger.info("[%s] Stream closed", conversation_id)
        return True

    def close_all(self, event: NormalizedEvent | None = None) -> int:
        """Close every bound sink, sending *event* to each first when given."""
        closed = 0
        for conversation_id in list(self._sinks):
            sink = self._sinks.pop(conversation_id)
            if event is not None:
                sink.send(event_to_wire(event))
            sink.close()
            closed += 1
        if closed:
            logger.info("Closed %d stream(s)", closed)
        return closed

    def get(self, conversation_id: str) -> Sink | None:
        return self._sinks.get(conversation_id)

    def is_attached(self, conversation_id: str) -> bool:
        return conversation_id in self._sinks

    def __len__(self) -> int:
        return len(self._sinks)
