"""Best-effort cleanup for stale Claude CLI processes.

Targets stream-json Claude CLI processes that a previous bridge run
spawned and that outlived it (the bridge was killed before it could
SIGTERM its children).
"""

from __future__ import annotations

import os
import re
import signal
import subprocess
from dataclasses import dataclass
from typing import Callable

_MANAGED_PATTERNS = [
    r"@anthropic-ai/claude-code\b.*--input-format\s+stream-json",
    r"\bclaude\b.*--input-format\s+stream-json.*--replay-user-messages",
]


@dataclass(frozen=True)
class ProcessInfo:
    pid: int
    ppid: int
    args: str


def parse_process_table(output: str) -> dict[int, ProcessInfo]:
    """Parse ``ps -eo pid=,ppid=,args=`` output into a table keyed by PID."""
    table: dict[int, ProcessInfo] = {}
    for line in output.splitlines():
        line = line.strip()
        if not line:
            continue
        parts = line.split(maxsplit=2)
        if len(parts) < 3:
            continue
        try:
            pid = int(parts[0])
            ppid = int(parts[1])
        except ValueError:
            continue
        table[pid] = ProcessInfo(pid=pid, ppid=ppid, args=parts[2])
    return table


def _list_processes() -> dict[int, ProcessInfo]:
    out = subprocess.check_output(
        ["ps", "-eo", "pid=,ppid=,args="],
        text=True,
        stderr=subprocess.DEVNULL,
    )
    return parse_process_table(out)


def has_bridge_ancestor(
    proc: ProcessInfo,
    table: dict[int, ProcessInfo],
    current_pid: int,
) -> bool:
    """True when the process tree includes this or another running bridge."""
    cur = proc
    hops = 0
    while hops < 32:
        if cur.pid == current_pid:
            return True
        if cur.pid != proc.pid and "ccbridge" in cur.args:
            return True
        parent = table.get(cur.ppid)
        if parent is None:
            return False
        cur = parent
        hops += 1
    return False


def is_managed_candidate(args: str) -> bool:
    """Match Claude CLI invocations shaped like the ones the bridge spawns."""
    return any(re.search(pat, args) for pat in _MANAGED_PATTERNS)


def find_stale_processes(
    table: dict[int, ProcessInfo],
    current_pid: int,
) -> list[ProcessInfo]:
    """Return managed processes that are orphaned and owned by no live bridge."""
    stale: list[ProcessInfo] = []
    for proc in table.values():
        if proc.pid == current_pid:
            continue
        if not is_managed_candidate(proc.args):
            continue
        is_orphan = proc.ppid == 1 or proc.ppid not in table
        if not is_orphan:
            continue
        if has_bridge_ancestor(proc, table, current_pid):
            continue
        stale.append(proc)
    return stale


def cleanup_stale_claude_processes(
    *,
    current_pid: int | None = None,
    log: Callable[[str], None] | None = None,
    table: dict[int, ProcessInfo] | None = None,
    kill: Callable[[int, int], None] = os.kill,
) -> int:
    """SIGTERM orphaned bridge-spawned Claude CLI processes. Returns the count."""
    pid = current_pid or os.getpid()
    logger = log or (lambda _: None)
    if table is None:
        table = _list_processes()
    killed = 0

    for proc in find_stale_processes(table, pid):
        try:
            kill(proc.pid, signal.SIGTERM)
            killed += 1
            logger(
                f"Reaped stale Claude CLI process pid={proc.pid} "
                f"ppid={proc.ppid} cmd={proc.args[:180]}"
            )
        except ProcessLookupError:
            continue
        except PermissionError as exc:
            logger(f"Failed to reap stale process pid={proc.pid}: {exc}")

    return killed
