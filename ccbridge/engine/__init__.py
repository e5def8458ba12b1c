"""Bridge engine: process supervision, output parsing and conversation state."""
from .config import BridgeConfig, load_yaml_config
from .demux import LineDemultiplexer
from .errors import (
    AuthUnavailableError,
    BridgeError,
    ConversationNotFoundError,
    MalformedEventError,
    ProcessMissingError,
    SelectorError,
    SnapshotNotFoundError,
    SpawnError,
)
from .session_tracker import SessionRecord, SessionResumeTracker

__all__ = [
    # Config
    "BridgeConfig",
    "load_yaml_config",
    # Output parsing
    "LineDemultiplexer",
    "translate_line",
    # Sessions
    "SessionRecord",
    "SessionResumeTracker",
    # Supervisor / registry (lazy import)
    "ProcessSupervisor",
    "SpawnOptions",
    "ConversationRegistry",
    # Errors
    "AuthUnavailableError",
    "BridgeError",
    "ConversationNotFoundError",
    "MalformedEventError",
    "ProcessMissingError",
    "SelectorError",
    "SnapshotNotFoundError",
    "SpawnError",
]


def __getattr__(name: str):
    if name == "translate_line":
        from .translator import translate_line
        return translate_line
    if name == "ProcessSupervisor":
        from .supervisor import ProcessSupervisor
        return ProcessSupervisor
    if name == "SpawnOptions":
        from .supervisor import SpawnOptions
        return SpawnOptions
    if name == "ConversationRegistry":
        from .registry import ConversationRegistry
        return ConversationRegistry
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
