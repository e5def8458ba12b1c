"""Tests for LineDemultiplexer chunk → line splitting."""
from __future__ import annotations

import json

import pytest

from ccbridge.engine.demux import LineDemultiplexer


def test_complete_lines_returned_in_order() -> None:
    demux = LineDemultiplexer()
    assert demux.feed(b"one\ntwo\nthree\n") == ["one", "two", "three"]
    assert demux.buffer == ""


def test_line_split_across_chunks_is_reassembled() -> None:
    demux = LineDemultiplexer()
    assert demux.feed(b'{"type":"ass') == []
    assert demux.buffer == '{"type":"ass'
    assert demux.feed(b'istant"}\n{"ty') == ['{"type":"assistant"}']
    assert demux.buffer == '{"ty'
    assert demux.feed(b'pe":"result"}\n') == ['{"type":"result"}']
    assert demux.buffer == ""


@pytest.mark.parametrize("split_at", [1, 5, 17, 40])
def test_arbitrary_split_points_yield_same_lines(split_at: int) -> None:
    records = [{"type": "assistant", "n": i} for i in range(3)]
    stream = "".join(json.dumps(r) + "\n" for r in records).encode("utf-8")
    demux = LineDemultiplexer()
    lines: list[str] = []
    for start in range(0, len(stream), split_at):
        lines.extend(demux.feed(stream[start:start + split_at]))
    assert [json.loads(line) for line in lines] == records
    assert demux.buffer == ""


def test_multibyte_character_split_across_chunks() -> None:
    encoded = "héllo ✓\n".encode("utf-8")
    demux = LineDemultiplexer()
    # Split inside the three-byte check mark.
    cut = encoded.index("✓".encode("utf-8")) + 1
    assert demux.feed(encoded[:cut]) == []
    assert demux.feed(encoded[cut:]) == ["héllo ✓"]


def test_unterminated_output_stays_buffered() -> None:
    demux = LineDemultiplexer()
    for _ in range(10):
        assert demux.feed(b"x" * 100) == []
    assert len(demux.buffer) == 1000


def test_empty_lines_are_returned() -> None:
    demux = LineDemultiplexer()
    assert demux.feed("a\n\nb\n") == ["a", "", "b"]


def test_str_chunks_are_accepted() -> None:
    demux = LineDemultiplexer()
    assert demux.feed("partial") == []
    assert demux.feed(" line\n") == ["partial line"]


def test_reset_returns_and_clears_fragment() -> None:
    demux = LineDemultiplexer()
    demux.feed(b"done\nleft")
    assert demux.reset() == "left"
    assert demux.buffer == ""
    assert demux.feed(b"fresh\n") == ["fresh"]


def test_invalid_bytes_are_replaced() -> None:
    demux = LineDemultiplexer()
    assert demux.feed(b"bad \xff byte\n") == ["bad � byte"]
