"""Normalized events produced from Claude CLI output records.

Each event is a typed dataclass; ``event_to_wire()`` turns it into the
``{type, data}`` payload written to the SSE stream.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass
class NormalizedEvent:
    """Base event delivered to a conversation's sink."""
    event_type: str = ""

    @property
    def terminal(self) -> bool:
        """True for events that end the current turn and close the sink."""
        return False


@dataclass
class TextEvent(NormalizedEvent):
    event_type: str = "text"
    text: str = ""


@dataclass
class ToolUseEvent(NormalizedEvent):
    event_type: str = "tool_use"
    payload: dict[str, Any] = field(default_factory=dict)


@dataclass
class DoneEvent(NormalizedEvent):
    event_type: str = "done"

    @property
    def terminal(self) -> bool:
        return True


@dataclass
class ErrorEvent(NormalizedEvent):
    event_type: str = "error"
    message: str = ""

    @property
    def terminal(self) -> bool:
        return True


@dataclass
class PassThroughEvent(NormalizedEvent):
    """A record of a type the translator does not interpret, forwarded as-is."""
    event_type: str = "passthrough"
    record: dict[str, Any] = field(default_factory=dict)


def event_to_wire(event: NormalizedEvent) -> dict[str, Any]:
    """Convert a normalized event to its outward JSON payload."""
    if isinstance(event, TextEvent):
        return {"type": "text", "data": event.text}
    if isinstance(event, ToolUseEvent):
        return {"type": "tool_use", "data": event.payload}
    if isinstance(event, DoneEvent):
        return {"type": "done"}
    if isinstance(event, ErrorEvent):
        return {"type": "error", "data": event.message}
    if isinstance(event, PassThroughEvent):
        return event.record
    raise TypeError(f"Unsupported event: {event!r}")
