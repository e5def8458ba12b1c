"""ccbridge: HTTP + SSE bridge to long-running Claude CLI conversations."""

__version__ = "0.4.0"
