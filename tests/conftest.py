from __future__ import annotations

import asyncio
import json
from collections.abc import Callable

import pytest

from ccbridge.engine.config import BridgeConfig


class _FakeStdin:
    def __init__(self) -> None:
        self.writes: list[bytes] = []
        self.closed = False

    def write(self, data: bytes) -> None:
        self.writes.append(data)

    async def drain(self) -> None:
        return None

    def is_closing(self) -> bool:
        return self.closed

    def records(self) -> list[dict]:
        data = b"".join(self.writes).decode("utf-8")
        return [json.loads(line) for line in data.splitlines() if line]


class FakeProcess:
    """Stands in for an asyncio subprocess running the Claude CLI."""

    _next_pid = 4000

    def __init__(self, argv: list[str]) -> None:
        FakeProcess._next_pid += 1
        self.pid = FakeProcess._next_pid
        self.argv = argv
        self.stdin = _FakeStdin()
        self.stdout = asyncio.StreamReader()
        self.stderr = asyncio.StreamReader()
        self.returncode: int | None = None
        self.terminated = False
        self._exited = asyncio.Event()

    def emit(self, record: dict) -> None:
        self.stdout.feed_data((json.dumps(record) + "\n").encode("utf-8"))

    def emit_raw(self, data: bytes) -> None:
        self.stdout.feed_data(data)

    def exit(self, code: int = 0, stderr: str = "") -> None:
        if self.returncode is not None:
            return
        if stderr:
            self.stderr.feed_data(stderr.encode("utf-8"))
        self.stdout.feed_eof()
        self.stderr.feed_eof()
        self.stdin.closed = True
        self.returncode = code
        self._exited.set()

    async def wait(self) -> int:
        await self._exited.wait()
        return self.returncode

    def terminate(self) -> None:
        self.terminated = True
        self.exit(-15)


class FakeSpawner:
    """Records spawn argv and hands out FakeProcess instances."""

    def __init__(self) -> None:
        self.calls: list[list[str]] = []
        self.processes: list[FakeProcess] = []
        self.fail_with: OSError | None = None

    async def __call__(self, *argv: str, **kwargs) -> FakeProcess:
        self.calls.append(list(argv))
        if self.fail_with is not None:
            raise self.fail_with
        proc = FakeProcess(list(argv))
        self.processes.append(proc)
        return proc

    @property
    def last(self) -> FakeProcess:
        return self.processes[-1]


@pytest.fixture
def spawner() -> FakeSpawner:
    return FakeSpawner()


@pytest.fixture
def config() -> BridgeConfig:
    return BridgeConfig(command="claude", command_args=[], log_dir="/tmp/ccbridge-test-logs")


@pytest.fixture
def settle() -> Callable:
    """Return an awaitable that yields until *predicate* holds (or times out)."""

    async def _settle(predicate: Callable[[], bool] | None = None, timeout: float = 2.0) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while True:
            await asyncio.sleep(0.001)
            if predicate is None or predicate():
                if predicate is None:
                    for _ in range(10):
                        await asyncio.sleep(0)
                return
            if loop.time() > deadline:
                raise AssertionError("condition not reached before timeout")

    return _settle
