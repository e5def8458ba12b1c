"""Adapters package - normalized events and the sinks they are delivered to."""
from __future__ import annotations

__all__ = [
    "NormalizedEvent",
    "event_to_wire",
    "QueueSink",
    "Sink",
    "StreamSinkBinding",
]

from ccbridge.adapters.events import NormalizedEvent, event_to_wire
from ccbridge.adapters.sink import QueueSink, Sink, StreamSinkBinding
