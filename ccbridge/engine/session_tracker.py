"""Tracks which Claude session ids the bridge has already seen.

A session id seen for the first time starts a new CLI session
(``--session-id``); any later sighting resumes it (``--resume``).
"""
from __future__ import annotations

import logging
from dataclasses import dataclass

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SessionRecord:
    session_id: str
    conversation_id: str
    is_resume: bool


class SessionResumeTracker:
    """In-memory session id → conversation mapping."""

    def __init__(self) -> None:
        self._records: dict[str, SessionRecord] = {}

    def resolve(self, session_id: str, conversation_id: str) -> SessionRecord:
        """Record a sighting of *session_id* and report whether it is a resume."""
        is_resume = session_id in self._records
        record = SessionRecord(
            session_id=session_id,
            conversation_id=conversation_id,
            is_resume=is_resume,
        )
        self._records[session_id] = record
        logger.info(
            "Conversation %s %s session %s",
            conversation_id, "resuming" if is_resume else "starting", session_id,
        )
        return record

    def get(self, session_id: str) -> SessionRecord | None:
        return self._records.get(session_id)

    def lookup_conversation(self, conversation_id: str) -> SessionRecord | None:
        """Return the record bound to *conversation_id*, if any."""
        for record in self._records.values():
            if record.conversation_id == conversation_id:
                return record
        return None

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._records

    def __len__(self) -> int:
        return len(self._records)
