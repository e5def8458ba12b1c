from __future__ import annotations

from pathlib import Path

import pytest
import yaml

from ccbridge.engine.config import PREFERRED_PORTS, BridgeConfig, load_yaml_config


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch) -> None:
    import os

    for key in list(os.environ):
        if key.startswith("BRIDGE_") or key == "PORT":
            monkeypatch.delenv(key, raising=False)


def test_defaults() -> None:
    config = BridgeConfig.from_env()
    assert config.ports == PREFERRED_PORTS
    assert config.command == "npx"
    assert config.command_args == ["@anthropic-ai/claude-code"]
    assert config.default_model == "sonnet"
    assert config.ready_sentinel is None
    assert config.max_body_bytes == 10 * 1024 * 1024


def test_env_overrides(monkeypatch) -> None:
    monkeypatch.setenv("PORT", "4100")
    monkeypatch.setenv("BRIDGE_COMMAND", "claude")
    monkeypatch.setenv("BRIDGE_COMMAND_ARGS", "")
    monkeypatch.setenv("BRIDGE_SKIP_PERMISSIONS", "false")
    monkeypatch.setenv("BRIDGE_READY_SENTINEL", "system")
    monkeypatch.setenv("BRIDGE_IDLE_SECONDS", "0")
    monkeypatch.setenv("BRIDGE_LOG_LEVEL", "debug")

    config = BridgeConfig.from_env()
    assert config.ports == [4100]
    assert config.command == "claude"
    assert config.command_args == []
    assert config.skip_permissions is False
    assert config.ready_sentinel == "system"
    assert config.idle_conversation_seconds == 0.0
    assert config.log_level == "DEBUG"


def test_yaml_bridge_section(tmp_path: Path) -> None:
    path = tmp_path / "ccbridge.yaml"
    path.write_text(yaml.safe_dump({
        "bridge": {"ports": 3100, "default_model": "opus", "bogus": True},
    }))
    config = load_yaml_config(path)
    assert config.ports == [3100]
    assert config.default_model == "opus"
    assert not hasattr(config, "bogus")


def test_yaml_without_section_uses_env(tmp_path: Path) -> None:
    path = tmp_path / "ccbridge.yaml"
    path.write_text("other: 1\n")
    assert load_yaml_config(path).ports == PREFERRED_PORTS


def test_yaml_errors_propagate(tmp_path: Path) -> None:
    with pytest.raises(FileNotFoundError):
        load_yaml_config(tmp_path / "missing.yaml")
    bad = tmp_path / "bad.yaml"
    bad.write_text("bridge: [unclosed\n")
    with pytest.raises(yaml.YAMLError):
        load_yaml_config(bad)
