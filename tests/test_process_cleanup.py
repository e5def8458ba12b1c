from __future__ import annotations

import signal

from ccbridge.shared.services.process_cleanup import (
    cleanup_stale_claude_processes,
    is_managed_candidate,
    parse_process_table,
)

_CLAUDE = (
    "node /usr/lib/node_modules/@anthropic-ai/claude-code/cli.js --print --verbose "
    "--output-format stream-json --input-format stream-json --replay-user-messages"
)

PS_OUTPUT = f"""
    1     0 /sbin/init
  200     1 /usr/bin/python3 /usr/local/bin/ccbridge --port 3000
  201   200 {_CLAUDE}
  300     1 {_CLAUDE}
  301  9999 {_CLAUDE}
  400     1 claude --help
  bad line
"""


def test_parse_process_table() -> None:
    table = parse_process_table(PS_OUTPUT)
    assert set(table) == {1, 200, 201, 300, 301, 400}
    assert table[201].ppid == 200


def test_is_managed_candidate() -> None:
    assert is_managed_candidate(_CLAUDE)
    assert not is_managed_candidate("claude --help")
    assert not is_managed_candidate("vim notes.txt")


def test_only_orphans_outside_a_live_bridge_are_reaped() -> None:
    killed: list[tuple[int, int]] = []
    messages: list[str] = []
    count = cleanup_stale_claude_processes(
        current_pid=12345,
        table=parse_process_table(PS_OUTPUT),
        kill=lambda pid, sig: killed.append((pid, sig)),
        log=messages.append,
    )
    assert count == 2
    assert sorted(killed) == [(300, signal.SIGTERM), (301, signal.SIGTERM)]
    assert len(messages) == 2


def test_vanished_process_is_skipped() -> None:
    def _kill(pid: int, sig: int) -> None:
        raise ProcessLookupError(pid)

    count = cleanup_stale_claude_processes(
        current_pid=12345,
        table=parse_process_table(PS_OUTPUT),
        kill=_kill,
    )
    assert count == 0
