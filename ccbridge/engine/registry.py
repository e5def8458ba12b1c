"""Conversation registry.

The single entry point request handlers use. Composes the session
tracker, the process supervisor, the sink binding and the HTML
snapshot store, all keyed by conversation id.
"""
from __future__ import annotations

import logging
import time
from typing import Any

from ccbridge.adapters.events import ErrorEvent, NormalizedEvent, TextEvent
from ccbridge.adapters.sink import Sink, StreamSinkBinding
from ccbridge.engine.config import BridgeConfig
from ccbridge.engine.errors import ConversationNotFoundError, ProcessMissingError
from ccbridge.engine.session_tracker import SessionResumeTracker
from ccbridge.engine.supervisor import ProcessSupervisor, SpawnOptions, Spawner
from ccbridge.shared.models.conversation import (
    ConversationState,
    MessageRole,
    new_conversation_id,
)
from ccbridge.shared.services.html_snapshots import ChunkResult, HtmlSnapshotStore

logger = logging.getLogger(__name__)

SHUTDOWN_MESSAGE = "Bridge is shutting down"


class ConversationRegistry:
    """conversation id → ConversationState, plus the components serving it."""

    def __init__(
        self,
        config: BridgeConfig | None = None,
        *,
        spawner: Spawner | None = None,
        snapshots: HtmlSnapshotStore | None = None,
    ) -> None:
        self._config = config or BridgeConfig()
        self._conversations: dict[str, ConversationState] = {}
        self.tracker = SessionResumeTracker()
        self.binding = StreamSinkBinding()
        self.snapshots = snapshots or HtmlSnapshotStore()
        self.supervisor = ProcessSupervisor(
            self._config,
            self.binding,
            self.tracker,
            spawner=spawner,
            on_event=self._record_event,
            on_exit=self._handle_exit,
        )

    # ── Lookup ──

    def get(self, conversation_id: str) -> ConversationState | None:
        return self._conversations.get(conversation_id)

    def require(self, conversation_id: str) -> ConversationState:
        state = self._conversations.get(conversation_id)
        if state is None:
            raise ConversationNotFoundError(conversation_id)
        return state

    def get_or_create(self, conversation_id: str) -> ConversationState:
        state = self._conversations.get(conversation_id)
        if state is None:
            state = ConversationState(id=conversation_id)
            self._conversations[conversation_id] = state
            logger.info("[%s] Conversation registered on first message", conversation_id)
        return state

    def __contains__(self, conversation_id: object) -> bool:
        return conversation_id in self._conversations

    def __len__(self) -> int:
        return len(self._conversations)

    @property
    def process_count(self) -> int:
        return len(self.supervisor)

    # ── Conversation lifecycle ──

    def create_conversation(
        self,
        session_id: str | None = None,
        *,
        system_prompt: str | None = None,
        model: str | None = None,
        schema: dict[str, Any] | None = None,
        html: str | None = None,
    ) -> ConversationState:
        """Create or re-create a conversation.

        The id is the session id when given. Re-creating a known id
        resets its history and stores new spawn options; a live process
        is left untouched.
        """
        conversation_id = session_id or new_conversation_id()
        state = self._conversations.get(conversation_id)
        if state is None:
            state = ConversationState(id=conversation_id)
            self._conversations[conversation_id] = state
        else:
            state.history.clear()
            if self.supervisor.get(conversation_id) is not None:
                logger.info(
                    "[%s] Re-created while running; options apply to the next spawn",
                    conversation_id,
                )

        if session_id:
            record = self.tracker.resolve(session_id, conversation_id)
            state.session_id = session_id
            state.resume = record.is_resume
        if system_prompt is not None:
            state.system_prompt = system_prompt
        if model is not None:
            state.model = model
        if schema is not None:
            state.schema = schema
        if html is not None:
            self.snapshots.put(conversation_id, html)
        state.touch()
        return state

    async def remove(self, conversation_id: str) -> None:
        """Terminate the process, close the stream and drop all state."""
        state = self.require(conversation_id)
        self.supervisor.terminate(conversation_id)
        self.binding.close(conversation_id)
        self.snapshots.delete(conversation_id)
        del self._conversations[conversation_id]
        self.supervisor.forget(conversation_id)
        logger.info("[%s] Conversation removed", state.id)

    def reap_idle(self, idle_seconds: float, now: float | None = None) -> list[str]:
        """Drop conversations with no process, no stream and no recent activity."""
        if idle_seconds <= 0:
            return []
        now = time.time() if now is None else now
        reaped: list[str] = []
        for conversation_id, state in list(self._conversations.items()):
            if self.supervisor.get(conversation_id) is not None:
                continue
            if self.binding.is_attached(conversation_id):
                continue
            if now - state.last_active_at < idle_seconds:
                continue
            del self._conversations[conversation_id]
            self.snapshots.delete(conversation_id)
            self.supervisor.forget(conversation_id)
            reaped.append(conversation_id)
        if reaped:
            logger.info("Reaped %d idle conversation(s): %s", len(reaped), ", ".join(reaped))
        return reaped

    def shutdown(self) -> int:
        """SIGTERM every live process and end every open stream.

        Process exit is not awaited, so each stream gets an Error event
        here instead of the one its exit would have produced.
        """
        signalled = self.supervisor.shutdown()
        self.binding.close_all(ErrorEvent(message=SHUTDOWN_MESSAGE))
        return signalled

    # ── Messaging ──

    async def send_message(
        self,
        conversation_id: str,
        content: str,
        files: list[Any] | None = None,
        system_prompt: str | None = None,
    ) -> None:
        """Spawn-or-reuse the conversation's process and write one user turn.

        Raises SpawnError when the process cannot start and
        ProcessMissingError when the turn could not be written.
        """
        state = self.get_or_create(conversation_id)
        state.touch()
        options = SpawnOptions(
            session_id=state.session_id,
            system_prompt=system_prompt or state.system_prompt,
            model=state.model,
            schema=state.schema,
        )
        state.handle = await self.supervisor.spawn_or_attach(conversation_id, options)
        if not await self.supervisor.write_message(conversation_id, content, files):
            raise ProcessMissingError(conversation_id)
        state.add_message(MessageRole.USER, content)

    async def approve(self, conversation_id: str, request_id: str, data: Any = None) -> None:
        await self.supervisor.write_control(conversation_id, "approve", request_id, data=data)
        self._touch(conversation_id)

    async def deny(self, conversation_id: str, request_id: str, reason: str | None = None) -> None:
        await self.supervisor.write_control(conversation_id, "deny", request_id, reason=reason)
        self._touch(conversation_id)

    # ── Streams ──

    def attach_stream(self, conversation_id: str, sink: Sink) -> None:
        self.binding.attach(conversation_id, sink)
        self._touch(conversation_id)

    def detach_stream(self, conversation_id: str, sink: Sink) -> None:
        self.binding.detach(conversation_id, sink)
        self._touch(conversation_id)

    # ── HTML snapshots ──

    def store_snapshot(self, conversation_id: str, html: str) -> None:
        self.get_or_create(conversation_id).touch()
        self.snapshots.put(conversation_id, html)

    def extract_chunks(self, conversation_id: str, selectors: list[str]) -> list[ChunkResult]:
        return self.snapshots.extract(conversation_id, selectors)

    # ── Supervisor callbacks ──

    def _touch(self, conversation_id: str) -> None:
        state = self._conversations.get(conversation_id)
        if state is not None:
            state.touch()

    def _record_event(self, conversation_id: str, event: NormalizedEvent) -> None:
        if not isinstance(event, TextEvent):
            return
        state = self._conversations.get(conversation_id)
        if state is not None:
            state.add_message(MessageRole.ASSISTANT, event.text)

    def _handle_exit(self, conversation_id: str, returncode: int | None) -> None:
        state = self._conversations.get(conversation_id)
        if state is not None:
            state.handle = None
            if state.session_id:
                record = self.tracker.get(state.session_id)
                state.resume = record.is_resume if record is not None else state.resume
            state.touch()
