"""Translate Claude CLI stream-json records into normalized events.

Classification is stateless: the same record always yields the same
event sequence. Priority order:

1. ``assistant`` with a content-block list: text and tool_use blocks
2. ``result``: Done
3. ``error``: Error, then Done
4. any other type: passed through unchanged
5. a line that is not a JSON object: fallback Text, then Done
"""
from __future__ import annotations

import json
import logging
from typing import Any

from ccbridge.adapters.events import (
    DoneEvent,
    ErrorEvent,
    NormalizedEvent,
    PassThroughEvent,
    TextEvent,
    ToolUseEvent,
)
from ccbridge.engine.errors import MalformedEventError
from ccbridge.engine.output_schema import DEFAULT_SHAPE, StructuredReplyShape

logger = logging.getLogger(__name__)

PARSE_ERROR_MESSAGE = (
    "Response generated but encountered parsing error. "
    "Check server logs for details."
)
UNKNOWN_ERROR_MESSAGE = "Unknown error"


def parse_record(line: str) -> dict[str, Any]:
    """Decode one complete output line into a record dict."""
    try:
        record = json.loads(line)
    except json.JSONDecodeError as exc:
        raise MalformedEventError(line, str(exc)) from exc
    if not isinstance(record, dict):
        raise MalformedEventError(line, f"expected object, got {type(record).__name__}")
    return record


def translate_line(
    line: str,
    shape: StructuredReplyShape = DEFAULT_SHAPE,
) -> list[NormalizedEvent]:
    """Translate one complete line. Blank lines produce no events."""
    if not line.strip():
        return []
    try:
        record = parse_record(line)
    except MalformedEventError as exc:
        logger.error("Failed to parse Claude output: %s", exc)
        return [TextEvent(text=PARSE_ERROR_MESSAGE), DoneEvent()]
    return translate(record, shape)


def translate(
    record: dict[str, Any],
    shape: StructuredReplyShape = DEFAULT_SHAPE,
) -> list[NormalizedEvent]:
    record_type = record.get("type")

    if record_type == "assistant":
        message = record.get("message")
        content = message.get("content") if isinstance(message, dict) else None
        if isinstance(content, list):
            events: list[NormalizedEvent] = []
            for block in content:
                events.extend(_translate_block(block, shape))
            return events

    elif record_type == "result":
        return [DoneEvent()]

    elif record_type == "error":
        return [ErrorEvent(message=_error_message(record.get("error"))), DoneEvent()]

    return [PassThroughEvent(record=record)]


def _translate_block(
    block: Any,
    shape: StructuredReplyShape,
) -> list[NormalizedEvent]:
    if not isinstance(block, dict):
        logger.debug("Ignoring non-object content block: %r", block)
        return []
    block_type = block.get("type")

    if block_type == "text":
        text = block.get("text")
        if not isinstance(text, str) or not text:
            return []
        structured = _parse_structured_text(text, shape)
        if structured is None:
            return [TextEvent(text=text)]
        return [
            ToolUseEvent(payload=structured),
            TextEvent(text=structured[shape.explanation_field]),
        ]

    if block_type == "tool_use" and isinstance(block.get("input"), dict):
        tool_input = block["input"]
        events: list[NormalizedEvent] = [ToolUseEvent(payload=tool_input)]
        explanation = tool_input.get(shape.explanation_field)
        if isinstance(explanation, str) and explanation:
            events.append(TextEvent(text=explanation))
        return events

    logger.debug("Ignoring unhandled content block type: %s", block_type)
    return []


def _parse_structured_text(
    text: str,
    shape: StructuredReplyShape,
) -> dict[str, Any] | None:
    try:
        parsed = json.loads(text)
    except json.JSONDecodeError:
        return None
    return parsed if shape.matches(parsed) else None


def _error_message(error: Any) -> str:
    if isinstance(error, str) and error:
        return error
    if isinstance(error, dict):
        message = error.get("message")
        if isinstance(message, str) and message:
            return message
        return json.dumps(error)
    if error:
        return str(error)
    return UNKNOWN_ERROR_MESSAGE
