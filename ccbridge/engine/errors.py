"""Exception hierarchy for the bridge.

One exception per failure mode. Idempotent reuse of a running
process is not an error and has no exception.
"""
from __future__ import annotations


class BridgeError(Exception):
    """Base exception for all bridge errors."""


class ProcessMissingError(BridgeError):
    """A message or control record targeted a conversation with no live process."""
    def __init__(self, conversation_id: str):
        self.conversation_id = conversation_id
        super().__init__(
            f"No Claude CLI process running for conversation {conversation_id}"
        )


class SpawnError(BridgeError):
    """Failed to start the Claude CLI process for a conversation."""
    def __init__(self, conversation_id: str, reason: str):
        self.conversation_id = conversation_id
        self.reason = reason
        super().__init__(
            f"Failed to spawn Claude CLI for conversation {conversation_id}: {reason}"
        )


class MalformedEventError(BridgeError):
    """A complete output line could not be decoded into a record."""
    def __init__(self, line: str, reason: str):
        self.line = line
        self.reason = reason
        super().__init__(f"Malformed output line ({reason}): {line[:200]}")


class ConversationNotFoundError(BridgeError):
    """Requested conversation is not registered."""
    def __init__(self, conversation_id: str):
        self.conversation_id = conversation_id
        super().__init__(f"Conversation {conversation_id} not found")


class AuthUnavailableError(BridgeError):
    """Claude credentials could not be read or are unusable."""
    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(reason)


class SnapshotNotFoundError(BridgeError):
    """No HTML snapshot is stored for the conversation."""
    def __init__(self, conversation_id: str):
        self.conversation_id = conversation_id
        super().__init__(f"No HTML snapshot stored for conversation {conversation_id}")


class SelectorError(BridgeError):
    """A CSS or XPath selector could not be evaluated."""
    def __init__(self, selector: str, reason: str):
        self.selector = selector
        self.reason = reason
        super().__init__(f"Invalid selector {selector!r}: {reason}")
