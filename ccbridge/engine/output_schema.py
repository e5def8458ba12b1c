"""Structured-output tool descriptor passed to the Claude CLI.

The CLI is told to answer through a single tool whose input has three
required parts: a list of instructions, a conversational explanation,
and an action discriminator. ``StructuredReplyShape`` records which
property names play those roles so the translator can recognise the
same shape when the model writes it as plain JSON text instead.
"""
from __future__ import annotations

import logging
from copy import deepcopy
from dataclasses import dataclass
from typing import Any

logger = logging.getLogger(__name__)

DOM_CHANGES_ACTIONS = (
    "append",
    "replace_all",
    "replace_specific",
    "remove_specific",
    "none",
)

DOM_CHANGES_TOOL: dict[str, Any] = {
    "name": "dom_changes_generator",
    "description": (
        "Generates DOM change objects for A/B tests following strict selector rules."
    ),
    "input_schema": {
        "type": "object",
        "properties": {
            "domChanges": {
                "type": "array",
                "description": "Array of DOM change instruction objects.",
            },
            "response": {
                "type": "string",
                "description": "Conversational explanation and reasoning.",
            },
            "action": {
                "type": "string",
                "enum": list(DOM_CHANGES_ACTIONS),
                "description": "How the DOM changes should be applied.",
            },
            "targetSelectors": {
                "type": "array",
                "description": "Selectors to target for replace/remove actions.",
                "items": {"type": "string"},
            },
        },
        "required": ["domChanges", "response", "action"],
    },
}

_BARE_SCHEMA_TOOL_NAME = "structured_output"


@dataclass(frozen=True)
class StructuredReplyShape:
    instructions_field: str
    explanation_field: str
    action_field: str
    actions: tuple[str, ...] | None = None

    def matches(self, obj: Any) -> bool:
        """True when *obj* carries all three parts with the right types."""
        if not isinstance(obj, dict):
            return False
        if not isinstance(obj.get(self.instructions_field), list):
            return False
        if not isinstance(obj.get(self.explanation_field), str):
            return False
        action = obj.get(self.action_field)
        if not isinstance(action, str):
            return False
        if self.actions is not None and action not in self.actions:
            return False
        return True


DEFAULT_SHAPE = StructuredReplyShape(
    instructions_field="domChanges",
    explanation_field="response",
    action_field="action",
    actions=DOM_CHANGES_ACTIONS,
)


def build_tool_descriptor(schema: dict[str, Any] | None) -> dict[str, Any]:
    """Return the tool descriptor for a caller-supplied schema.

    *schema* may be a complete tool (``name`` + ``input_schema``) or a
    bare JSON schema, which is wrapped into a tool. ``None`` selects
    the DOM changes tool.
    """
    if not schema:
        return deepcopy(DOM_CHANGES_TOOL)
    if "input_schema" in schema and "name" in schema:
        return deepcopy(schema)
    return {
        "name": _BARE_SCHEMA_TOOL_NAME,
        "description": "Structured reply for the conversation.",
        "input_schema": deepcopy(schema),
    }


def tool_choice(tool: dict[str, Any]) -> dict[str, Any]:
    return {"type": "tool", "name": tool["name"]}


def shape_from_tool(tool: dict[str, Any]) -> StructuredReplyShape:
    """Derive the reply shape from a tool's required input properties.

    Instructions: first required array. Explanation: first required
    string without an enum. Action: first required string with an enum.
    Falls back to ``DEFAULT_SHAPE`` when any role cannot be filled.
    """
    input_schema = tool.get("input_schema") or {}
    properties = input_schema.get("properties") or {}
    required = input_schema.get("required") or []

    instructions = explanation = action = None
    actions: tuple[str, ...] | None = None
    for name in required:
        prop = properties.get(name)
        if not isinstance(prop, dict):
            continue
        prop_type = prop.get("type")
        if prop_type == "array" and instructions is None:
            instructions = name
        elif prop_type == "string" and "enum" in prop and action is None:
            action = name
            actions = tuple(str(v) for v in prop["enum"])
        elif prop_type == "string" and explanation is None:
            explanation = name

    if instructions is None or explanation is None or action is None:
        logger.warning(
            "Tool %s does not declare instructions/explanation/action properties; "
            "using default reply shape",
            tool.get("name", "<unnamed>"),
        )
        return DEFAULT_SHAPE
    return StructuredReplyShape(
        instructions_field=instructions,
        explanation_field=explanation,
        action_field=action,
        actions=actions,
    )
