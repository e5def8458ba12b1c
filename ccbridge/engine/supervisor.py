"""Claude CLI process supervisor.

Owns one long-running ``claude --input-format stream-json`` process per
conversation. Spawning is idempotent: while a process is alive, further
spawn requests return the existing handle and ignore their options.

Output is read in raw chunks and pushed through the per-conversation
LineDemultiplexer, the translator, and the sink binding. stderr is kept
for diagnostics only.

Writes go through a readiness handshake instead of a fixed delay: a
handle queues writes until its ``ready`` event is set, then flushes them
in order. Without a configured sentinel the handle is ready as soon as
the process exists (stdin is a pipe and buffers input until the CLI
starts reading). With ``ready_sentinel`` set, the first record of that
type releases the queue, or the ready timeout does.
"""
from __future__ import annotations

import asyncio
import base64
import binascii
import json
import logging
import re
import time
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from ccbridge.adapters.events import DoneEvent, ErrorEvent, NormalizedEvent
from ccbridge.adapters.sink import StreamSinkBinding
from ccbridge.engine.config import BridgeConfig
from ccbridge.engine.demux import LineDemultiplexer
from ccbridge.engine.errors import MalformedEventError, ProcessMissingError, SpawnError
from ccbridge.engine.output_schema import (
    DEFAULT_SHAPE,
    StructuredReplyShape,
    build_tool_descriptor,
    shape_from_tool,
    tool_choice,
)
from ccbridge.engine.session_tracker import SessionResumeTracker
from ccbridge.engine.translator import parse_record, translate_line

logger = logging.getLogger(__name__)

_DATA_URI_RE = re.compile(
    r"^data:(?P<mime>[\w.+-]+/[\w.+-]+);base64,(?P<data>.+)$",
    re.DOTALL,
)
_EXIT_DRAIN_TIMEOUT = 5.0

Spawner = Callable[..., Awaitable[Any]]
# Signature: callback(conversation_id, event) -> None
EventCallback = Callable[[str, NormalizedEvent], None]
# Signature: callback(conversation_id, returncode) -> None
ExitCallback = Callable[[str, int | None], None]


@dataclass
class SpawnOptions:
    """Options that only take effect when a new process is spawned."""
    session_id: str | None = None
    # None: ask the session tracker.
    resume: bool | None = None
    system_prompt: str | None = None
    model: str | None = None
    schema: dict[str, Any] | None = None


@dataclass
class ProcessHandle:
    """A live Claude CLI process owned by exactly one conversation."""

    conversation_id: str
    process: Any
    argv: list[str]
    model: str
    shape: StructuredReplyShape = DEFAULT_SHAPE
    session_id: str | None = None
    resumed: bool = False
    ready: asyncio.Event = field(default_factory=asyncio.Event)
    pending_writes: list[bytes] = field(default_factory=list)
    stderr_tail: deque[str] = field(default_factory=lambda: deque(maxlen=20))
    started_at: float = field(default_factory=time.time)
    _stdout_task: asyncio.Task | None = field(default=None, repr=False)
    _stderr_task: asyncio.Task | None = field(default=None, repr=False)
    _exit_task: asyncio.Task | None = field(default=None, repr=False)
    _ready_task: asyncio.Task | None = field(default=None, repr=False)

    @property
    def pid(self) -> int | None:
        return getattr(self.process, "pid", None)

    @property
    def alive(self) -> bool:
        return self.process.returncode is None


def decode_attachment(data_uri: Any) -> dict[str, Any] | None:
    """Turn a base64 data URI into a Claude content block, or None if unusable."""
    if not isinstance(data_uri, str):
        return None
    match = _DATA_URI_RE.match(data_uri.strip())
    if not match:
        return None
    mime = match.group("mime").lower()
    payload = match.group("data")
    try:
        base64.b64decode(payload, validate=True)
    except (binascii.Error, ValueError):
        return None
    if mime.startswith("image/"):
        kind = "image"
    elif mime == "application/pdf":
        kind = "document"
    else:
        return None
    return {
        "type": kind,
        "source": {"type": "base64", "media_type": mime, "data": payload},
    }


def build_user_content(
    conversation_id: str,
    content: str,
    attachments: list[Any] | None = None,
) -> str | list[dict[str, Any]]:
    """Build the ``message.content`` of a user turn.

    Plain text when there are no attachments, otherwise a text block
    followed by one block per valid attachment.
    """
    if not attachments:
        return content
    blocks: list[dict[str, Any]] = [{"type": "text", "text": content}]
    for attachment in attachments:
        block = decode_attachment(attachment)
        if block is None:
            logger.warning(
                "[%s] Invalid data URI format: %s...",
                conversation_id, str(attachment)[:50],
            )
            continue
        blocks.append(block)
    logger.info(
        "[%s] Sending message with %d attachment(s)",
        conversation_id, len(blocks) - 1,
    )
    return blocks


class ProcessSupervisor:
    """conversation id → Claude CLI process, with output routing."""

    def __init__(
        self,
        config: BridgeConfig,
        binding: StreamSinkBinding,
        tracker: SessionResumeTracker,
        *,
        spawner: Spawner | None = None,
        on_event: EventCallback | None = None,
        on_exit: ExitCallback | None = None,
    ) -> None:
        self._config = config
        self._binding = binding
        self._tracker = tracker
        self._spawner = spawner or asyncio.create_subprocess_exec
        self._on_event = on_event
        self._on_exit = on_exit
        self._handles: dict[str, ProcessHandle] = {}
        self._buffers: dict[str, LineDemultiplexer] = {}
        self._spawn_locks: dict[str, asyncio.Lock] = {}
        # Removed conversations whose process has not exited yet.
        self._forgotten: set[str] = set()

    # ── Lookup ──

    def get(self, conversation_id: str) -> ProcessHandle | None:
        """Return the live handle for *conversation_id*, if any."""
        handle = self._handles.get(conversation_id)
        if handle is not None and handle.alive:
            return handle
        return None

    def buffered(self, conversation_id: str) -> str:
        """Return the unterminated output fragment held for *conversation_id*."""
        demux = self._buffers.get(conversation_id)
        return demux.buffer if demux is not None else ""

    def __len__(self) -> int:
        return len(self._handles)

    # ── Spawning ──

    def _resolve_session(
        self,
        conversation_id: str,
        options: SpawnOptions,
    ) -> tuple[str | None, bool]:
        session_id = options.session_id
        resume = options.resume
        if resume is None:
            record = (
                self._tracker.get(session_id)
                if session_id
                else self._tracker.lookup_conversation(conversation_id)
            )
            if record is not None:
                session_id = record.session_id
                resume = record.is_resume
        return session_id, bool(resume)

    def build_command(
        self,
        conversation_id: str,
        options: SpawnOptions,
    ) -> list[str]:
        """Build the argv for a new Claude CLI process."""
        cmd = [
            self._config.command,
            *self._config.command_args,
            "--print",
            "--verbose",
            "--output-format", "stream-json",
            "--input-format", "stream-json",
            "--replay-user-messages",
        ]
        if self._config.skip_permissions:
            cmd.append("--dangerously-skip-permissions")

        session_id, resume = self._resolve_session(conversation_id, options)
        if session_id:
            if resume:
                logger.info("[%s] Resuming session %s", conversation_id, session_id)
                cmd.extend(["--resume", session_id])
            else:
                logger.info("[%s] Starting new session %s", conversation_id, session_id)
                cmd.extend(["--session-id", session_id])

        cmd.extend(["--model", options.model or self._config.default_model])

        tool = build_tool_descriptor(options.schema)
        cmd.extend(["--tools", json.dumps([tool])])
        cmd.extend(["--tool-choice", json.dumps(tool_choice(tool))])

        if options.system_prompt:
            logger.info("[%s] Using custom system prompt", conversation_id)
            cmd.extend(["--system-prompt", options.system_prompt])
        return cmd

    async def spawn_or_attach(
        self,
        conversation_id: str,
        options: SpawnOptions | None = None,
    ) -> ProcessHandle:
        """Return the conversation's live process, spawning one if needed.

        Options are ignored when a live process already exists.
        """
        options = options or SpawnOptions()
        lock = self._spawn_locks.setdefault(conversation_id, asyncio.Lock())
        async with lock:
            self._forgotten.discard(conversation_id)
            existing = self._handles.get(conversation_id)
            if existing is not None:
                if existing.alive:
                    logger.info(
                        "[%s] Claude CLI already running (pid=%s)",
                        conversation_id, existing.pid,
                    )
                    return existing
                # Exited, but the exit watcher has not finalized it yet.
                await self._await_exit(existing)
            return await self._spawn(conversation_id, options)

    async def _await_exit(self, handle: ProcessHandle) -> None:
        task = handle._exit_task
        if task is not None and not task.done():
            try:
                await asyncio.wait_for(asyncio.shield(task), timeout=_EXIT_DRAIN_TIMEOUT + 1)
            except asyncio.TimeoutError:
                logger.warning(
                    "[%s] Exit watcher for pid=%s did not finish, finalizing now",
                    handle.conversation_id, handle.pid,
                )
        if self._handles.get(handle.conversation_id) is handle:
            self._finalize(handle, handle.process.returncode)

    async def _spawn(
        self,
        conversation_id: str,
        options: SpawnOptions,
    ) -> ProcessHandle:
        argv = self.build_command(conversation_id, options)
        tool = build_tool_descriptor(options.schema)
        session_id, resume = self._resolve_session(conversation_id, options)
        logger.info(
            "[%s] Spawning Claude CLI: %s",
            conversation_id, " ".join(argv)[:1000],
        )
        try:
            proc = await self._spawner(
                *argv,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            logger.error(
                "[%s] Failed to start '%s': %s",
                conversation_id, self._config.command, exc,
            )
            self._binding.emit(
                conversation_id,
                ErrorEvent(message=f"Failed to start Claude CLI: {exc}"),
            )
            raise SpawnError(conversation_id, str(exc)) from exc

        handle = ProcessHandle(
            conversation_id=conversation_id,
            process=proc,
            argv=argv,
            model=options.model or self._config.default_model,
            shape=shape_from_tool(tool),
            session_id=session_id,
            resumed=resume,
            stderr_tail=deque(maxlen=self._config.stderr_tail_lines),
        )
        self._handles[conversation_id] = handle
        self._buffers[conversation_id] = LineDemultiplexer()
        handle._stdout_task = asyncio.create_task(self._pump_stdout(handle))
        handle._stderr_task = asyncio.create_task(self._pump_stderr(handle))
        handle._exit_task = asyncio.create_task(self._watch_exit(handle))

        if self._config.ready_sentinel is None:
            self._mark_ready(handle)
        else:
            handle._ready_task = asyncio.create_task(self._ready_timeout(handle))
        logger.info("[%s] Claude CLI started (pid=%s)", conversation_id, handle.pid)
        return handle

    # ── Readiness ──

    def _mark_ready(self, handle: ProcessHandle) -> None:
        if handle.ready.is_set():
            return
        handle.ready.set()
        if handle.pending_writes:
            logger.info(
                "[%s] Process ready, flushing %d queued write(s)",
                handle.conversation_id, len(handle.pending_writes),
            )
            for data in handle.pending_writes:
                self._raw_write(handle, data)
            handle.pending_writes.clear()

    async def _ready_timeout(self, handle: ProcessHandle) -> None:
        await asyncio.sleep(self._config.ready_timeout_seconds)
        if not handle.ready.is_set():
            logger.warning(
                "[%s] No %r record within %.1fs; releasing queued writes",
                handle.conversation_id,
                self._config.ready_sentinel,
                self._config.ready_timeout_seconds,
            )
            self._mark_ready(handle)

    def _check_sentinel(self, handle: ProcessHandle, line: str) -> None:
        try:
            record = parse_record(line)
        except MalformedEventError:
            return
        if record.get("type") == self._config.ready_sentinel:
            logger.info(
                "[%s] Received %r record, process ready",
                handle.conversation_id, self._config.ready_sentinel,
            )
            self._mark_ready(handle)

    # ── Writing ──

    def _raw_write(self, handle: ProcessHandle, data: bytes) -> bool:
        stdin = handle.process.stdin
        if stdin is None or stdin.is_closing():
            logger.error("[%s] stdin is closed, write dropped", handle.conversation_id)
            return False
        try:
            stdin.write(data)
        except (BrokenPipeError, ConnectionResetError) as exc:
            logger.error("[%s] Write to Claude CLI failed: %s", handle.conversation_id, exc)
            return False
        return True

    async def _send_record(self, handle: ProcessHandle, record: dict[str, Any]) -> bool:
        data = (json.dumps(record) + "\n").encode("utf-8")
        if not handle.ready.is_set():
            handle.pending_writes.append(data)
            logger.info(
                "[%s] Process not ready, queued %s record",
                handle.conversation_id, record.get("type"),
            )
            return True
        if not self._raw_write(handle, data):
            return False
        try:
            await handle.process.stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as exc:
            logger.error("[%s] Write to Claude CLI failed: %s", handle.conversation_id, exc)
            return False
        return True

    async def write_message(
        self,
        conversation_id: str,
        content: str,
        attachments: list[Any] | None = None,
    ) -> bool:
        """Write one user turn. Returns False when no live process exists."""
        handle = self.get(conversation_id)
        if handle is None:
            logger.error("[%s] No Claude process found, message not sent", conversation_id)
            return False
        record = {
            "type": "user",
            "message": {
                "role": "user",
                "content": build_user_content(conversation_id, content, attachments),
            },
        }
        logger.info("[%s] Sending to Claude: %s", conversation_id, json.dumps(record)[:200])
        return await self._send_record(handle, record)

    async def write_control(
        self,
        conversation_id: str,
        action: str,
        request_id: str,
        *,
        data: Any = None,
        reason: str | None = None,
    ) -> None:
        """Write an approve/deny control record for a pending tool invocation."""
        handle = self.get(conversation_id)
        if handle is None:
            raise ProcessMissingError(conversation_id)
        record: dict[str, Any] = {
            "type": "control",
            "action": action,
            "requestId": request_id,
        }
        if action == "approve":
            record["data"] = data
        else:
            record["reason"] = reason
        logger.info(
            "[%s] Control %s request_id=%s", conversation_id, action, str(request_id)[:8],
        )
        if not await self._send_record(handle, record):
            raise ProcessMissingError(conversation_id)

    # ── Output routing ──

    def feed(self, conversation_id: str, chunk: bytes | str) -> list[NormalizedEvent]:
        """Push raw stdout through demux → translator → sink.

        Returns the events produced, whether or not a sink received them.
        """
        demux = self._buffers.setdefault(conversation_id, LineDemultiplexer())
        handle = self._handles.get(conversation_id)
        shape = handle.shape if handle is not None else DEFAULT_SHAPE
        produced: list[NormalizedEvent] = []
        for line in demux.feed(chunk):
            if handle is not None and not handle.ready.is_set():
                self._check_sentinel(handle, line)
            for event in translate_line(line, shape):
                self._binding.emit(conversation_id, event)
                self._notify_event(conversation_id, event)
                if event.terminal:
                    leftover = demux.reset()
                    if leftover:
                        logger.debug(
                            "[%s] Released %d buffered character(s) after %s",
                            conversation_id, len(leftover), event.event_type,
                        )
                produced.append(event)
        return produced

    def _notify_event(self, conversation_id: str, event: NormalizedEvent) -> None:
        if self._on_event is None:
            return
        try:
            self._on_event(conversation_id, event)
        except Exception:
            logger.exception("[%s] Event callback failed", conversation_id)

    async def _pump_stdout(self, handle: ProcessHandle) -> None:
        cid = handle.conversation_id
        stdout = handle.process.stdout
        try:
            while True:
                chunk = await stdout.read(self._config.read_chunk_size)
                if not chunk:
                    break
                if self._handles.get(cid) is not handle:
                    logger.debug("[%s] Dropping output from replaced process", cid)
                    continue
                self.feed(cid, chunk)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("[%s] stdout reader failed", cid)

    async def _pump_stderr(self, handle: ProcessHandle) -> None:
        cid = handle.conversation_id
        stderr = handle.process.stderr
        demux = LineDemultiplexer()
        try:
            while True:
                chunk = await stderr.read(self._config.read_chunk_size)
                if not chunk:
                    break
                for line in demux.feed(chunk):
                    self._record_stderr(handle, line)
            self._record_stderr(handle, demux.reset())
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("[%s] stderr reader failed", cid)

    @staticmethod
    def _record_stderr(handle: ProcessHandle, line: str) -> None:
        text = line.rstrip()
        if not text:
            return
        handle.stderr_tail.append(text)
        logger.warning("[%s] Claude CLI stderr: %s", handle.conversation_id, text)

    # ── Exit handling ──

    async def _watch_exit(self, handle: ProcessHandle) -> None:
        cid = handle.conversation_id
        returncode = await handle.process.wait()
        logger.info("[%s] Claude CLI exited with code %s", cid, returncode)

        readers = [t for t in (handle._stdout_task, handle._stderr_task) if t is not None]
        if readers:
            _, still_running = await asyncio.wait(readers, timeout=_EXIT_DRAIN_TIMEOUT)
            for task in still_running:
                logger.warning("[%s] Output reader did not finish after exit, cancelling", cid)
                task.cancel()
        self._finalize(handle, returncode)

    def _finalize(self, handle: ProcessHandle, returncode: int | None) -> None:
        cid = handle.conversation_id
        if handle._ready_task is not None:
            handle._ready_task.cancel()
        if handle.pending_writes:
            logger.warning(
                "[%s] Dropping %d queued write(s) for exited process",
                cid, len(handle.pending_writes),
            )
            handle.pending_writes.clear()

        if self._handles.get(cid) is not handle:
            logger.debug("[%s] Exited process pid=%s was already replaced", cid, handle.pid)
            return
        del self._handles[cid]

        if handle.session_id and not handle.resumed:
            # The CLI created this session; later spawns must resume it.
            self._tracker.resolve(handle.session_id, cid)

        demux = self._buffers.pop(cid, None)
        if demux is not None:
            leftover = demux.reset()
            if leftover.strip():
                logger.warning(
                    "[%s] Discarding unterminated output on exit: %s",
                    cid, leftover[:200],
                )

        if self._binding.is_attached(cid):
            if returncode == 0:
                self._binding.emit(cid, DoneEvent())
            else:
                self._binding.emit(cid, ErrorEvent(message=self._exit_message(handle, returncode)))

        if self._on_exit is not None:
            try:
                self._on_exit(cid, returncode)
            except Exception:
                logger.exception("[%s] Exit callback failed", cid)

        if cid in self._forgotten:
            self._forgotten.discard(cid)
            self._spawn_locks.pop(cid, None)

    @staticmethod
    def _exit_message(handle: ProcessHandle, returncode: int | None) -> str:
        message = f"Claude CLI exited with code {returncode}"
        if handle.stderr_tail:
            message += f": {handle.stderr_tail[-1]}"
        return message

    # ── Termination ──

    def terminate(self, conversation_id: str) -> bool:
        """Send SIGTERM to the conversation's process. Does not wait for exit."""
        handle = self._handles.get(conversation_id)
        if handle is None:
            return False
        try:
            handle.process.terminate()
        except ProcessLookupError:
            return False
        logger.info("[%s] Sent SIGTERM to Claude CLI (pid=%s)", conversation_id, handle.pid)
        return True

    def forget(self, conversation_id: str) -> None:
        """Drop per-conversation bookkeeping once the conversation is removed."""
        if conversation_id in self._handles:
            # Finalization drops the rest once the process exits.
            self._forgotten.add(conversation_id)
            return
        self._buffers.pop(conversation_id, None)
        self._spawn_locks.pop(conversation_id, None)

    def shutdown(self) -> int:
        """SIGTERM every live process without waiting. Returns the count signalled."""
        signalled = 0
        for conversation_id in list(self._handles):
            if self.terminate(conversation_id):
                signalled += 1
        if signalled:
            logger.info("Sent SIGTERM to %d Claude CLI process(es)", signalled)
        return signalled
