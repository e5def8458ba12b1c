from __future__ import annotations

import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path

from ccbridge.app import configure_logging, resolve_config_path


def test_resolve_config_prefers_explicit(tmp_path: Path) -> None:
    (tmp_path / "ccbridge.yaml").write_text("bridge: {}\n")
    assert resolve_config_path("other.yaml", cwd=tmp_path) == Path("other.yaml")


def test_resolve_config_auto_discovers(tmp_path: Path) -> None:
    assert resolve_config_path(None, cwd=tmp_path) is None
    (tmp_path / "ccbridge.yaml").write_text("bridge: {}\n")
    assert resolve_config_path(None, cwd=tmp_path) == tmp_path / "ccbridge.yaml"


def test_configure_logging_installs_file_and_stderr_handlers(tmp_path: Path) -> None:
    root = logging.getLogger()
    saved_handlers, saved_level = list(root.handlers), root.level
    try:
        log_file = configure_logging("debug", tmp_path / "logs")
        assert log_file == tmp_path / "logs" / "ccbridge.log"
        assert root.level == logging.DEBUG
        assert any(isinstance(h, RotatingFileHandler) for h in root.handlers)
        assert any(type(h) is logging.StreamHandler for h in root.handlers)
    finally:
        for handler in root.handlers:
            handler.close()
        root.handlers[:] = saved_handlers
        root.setLevel(saved_level)
