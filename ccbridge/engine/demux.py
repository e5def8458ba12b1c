"""Incremental splitting of subprocess output into complete lines."""
from __future__ import annotations

import codecs


class LineDemultiplexer:
    """Per-conversation partial-line buffer.

    ``feed()`` returns only lines whose ``\\n`` terminator has been seen,
    in arrival order. The unterminated tail stays buffered until a later
    chunk completes it or ``reset()`` discards it.
    """

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""

    @property
    def buffer(self) -> str:
        return self._buffer

    def feed(self, chunk: bytes | str) -> list[str]:
        if isinstance(chunk, bytes):
            chunk = self._decoder.decode(chunk)
        if not chunk:
            return []
        parts = (self._buffer + chunk).split("\n")
        self._buffer = parts.pop()
        return parts

    def reset(self) -> str:
        """Drop buffered state and return the discarded fragment."""
        leftover = self._buffer + self._decoder.decode(b"", final=True)
        self._decoder.reset()
        self._buffer = ""
        return leftover
