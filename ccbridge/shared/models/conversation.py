"""Conversation and chat message models."""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from ccbridge.engine.supervisor import ProcessHandle


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_conversation_id() -> str:
    return f"conv_{uuid.uuid4().hex[:12]}"


class MessageRole(Enum):
    USER = "user"
    ASSISTANT = "assistant"


@dataclass
class ChatMessage:
    role: MessageRole
    content: str
    timestamp: datetime = field(default_factory=_utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "role": self.role.value,
            "content": self.content,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass
class ConversationState:
    """State for a single conversation.

    The live process is referenced through ``handle``; the partial-line
    buffer and the bound stream are kept by the supervisor and the sink
    binding under the same id.
    """

    id: str
    session_id: str | None = None
    resume: bool = False
    system_prompt: str | None = None
    model: str | None = None
    schema: dict[str, Any] | None = None
    history: list[ChatMessage] = field(default_factory=list)
    handle: ProcessHandle | None = field(default=None, repr=False)
    created_at: datetime = field(default_factory=_utcnow)
    # Epoch seconds of the last request touching this conversation.
    last_active_at: float = field(default_factory=time.time)

    def touch(self) -> None:
        self.last_active_at = time.time()

    def add_message(self, role: MessageRole, content: str) -> ChatMessage:
        message = ChatMessage(role=role, content=content)
        self.history.append(message)
        return message

    def to_dict(self) -> dict[str, Any]:
        return {
            "conversationId": self.id,
            "sessionId": self.session_id,
            "isResume": self.resume,
            "model": self.model,
            "running": self.handle is not None and self.handle.alive,
            "createdAt": self.created_at.isoformat(),
            "messages": [m.to_dict() for m in self.history],
        }
