"""Configuration loaded from environment variables and an optional YAML file.

All settings have sensible defaults. Override via BRIDGE_* env vars, or
point ``load_yaml_config()`` at a file with a ``bridge:`` section.

Example YAML:
    bridge:
      ports: [3000, 3001]
      command: claude
      command_args: []
      default_model: opus
      ready_sentinel: system
      idle_conversation_seconds: 1800
"""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

import yaml

logger = logging.getLogger(__name__)

PREFERRED_PORTS = [3000, 3001, 3002, 3003, 3004]


def _env_flag(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.lower() in {"1", "true", "yes", "on"}


@dataclass
class BridgeConfig:
    """Bridge server configuration."""

    # Listening socket. Ports are tried in order until one binds.
    host: str = "127.0.0.1"
    ports: list[int] = field(default_factory=lambda: list(PREFERRED_PORTS))

    # Claude CLI invocation: <command> <command_args...> <protocol flags...>
    command: str = "npx"
    command_args: list[str] = field(
        default_factory=lambda: ["@anthropic-ai/claude-code"]
    )
    default_model: str = "sonnet"
    skip_permissions: bool = True

    credentials_path: str = str(Path.home() / ".claude" / ".credentials.json")

    # Readiness handshake. None means the process is ready once spawned;
    # otherwise queued writes wait for the first record of this type.
    ready_sentinel: str | None = None
    ready_timeout_seconds: float = 10.0

    read_chunk_size: int = 65536
    stderr_tail_lines: int = 20
    sse_keepalive_seconds: float = 30.0
    # <= 0 disables reaping idle conversations.
    idle_conversation_seconds: float = 900.0
    max_body_bytes: int = 10 * 1024 * 1024
    reap_stale_processes: bool = True

    log_level: str = "INFO"
    log_dir: str = str(Path.home() / ".ccbridge" / "logs")

    @classmethod
    def from_env(cls) -> BridgeConfig:
        """Load configuration from BRIDGE_* environment variables."""
        bridge_vars = {
            k: v for k, v in os.environ.items() if k.startswith("BRIDGE_")
        }
        if bridge_vars:
            logger.info(
                "BridgeConfig.from_env: BRIDGE_* env overrides: %s",
                ", ".join(f"{k}={v}" for k, v in sorted(bridge_vars.items())),
            )
        else:
            logger.debug("BridgeConfig.from_env: no BRIDGE_* env vars set, using defaults")

        defaults = cls()
        port = os.getenv("PORT")
        command_args = os.getenv("BRIDGE_COMMAND_ARGS")
        config = cls(
            host=os.getenv("BRIDGE_HOST", defaults.host),
            ports=[int(port)] if port else defaults.ports,
            command=os.getenv("BRIDGE_COMMAND", defaults.command),
            command_args=(
                command_args.split() if command_args is not None
                else defaults.command_args
            ),
            default_model=os.getenv("BRIDGE_DEFAULT_MODEL", defaults.default_model),
            skip_permissions=_env_flag(
                "BRIDGE_SKIP_PERMISSIONS", defaults.skip_permissions
            ),
            credentials_path=os.getenv(
                "BRIDGE_CREDENTIALS_PATH", defaults.credentials_path
            ),
            ready_sentinel=os.getenv("BRIDGE_READY_SENTINEL") or None,
            ready_timeout_seconds=float(os.getenv(
                "BRIDGE_READY_TIMEOUT", str(defaults.ready_timeout_seconds)
            )),
            read_chunk_size=int(os.getenv(
                "BRIDGE_READ_CHUNK_SIZE", str(defaults.read_chunk_size)
            )),
            stderr_tail_lines=int(os.getenv(
                "BRIDGE_STDERR_TAIL_LINES", str(defaults.stderr_tail_lines)
            )),
            sse_keepalive_seconds=float(os.getenv(
                "BRIDGE_SSE_KEEPALIVE", str(defaults.sse_keepalive_seconds)
            )),
            idle_conversation_seconds=float(os.getenv(
                "BRIDGE_IDLE_SECONDS", str(defaults.idle_conversation_seconds)
            )),
            max_body_bytes=int(os.getenv(
                "BRIDGE_MAX_BODY_BYTES", str(defaults.max_body_bytes)
            )),
            reap_stale_processes=_env_flag(
                "BRIDGE_REAP_STALE", defaults.reap_stale_processes
            ),
            log_level=os.getenv("BRIDGE_LOG_LEVEL", defaults.log_level).upper(),
            log_dir=os.getenv("BRIDGE_LOG_DIR", defaults.log_dir),
        )
        logger.info(
            "BridgeConfig.from_env: command=%s model=%s ports=%s",
            config.command, config.default_model, config.ports,
        )
        return config

    def apply_overrides(self, overrides: dict[str, Any]) -> None:
        """Overlay known keys from a mapping; unknown keys are logged and skipped."""
        known = {f.name for f in fields(self)}
        for key, value in overrides.items():
            if key not in known:
                logger.warning("Ignoring unknown bridge config key: %s", key)
                continue
            if key == "ports" and isinstance(value, int):
                value = [value]
            setattr(self, key, value)


def load_yaml_config(path: str | Path) -> BridgeConfig:
    """Load a YAML config file on top of the environment configuration.

    Only the ``bridge:`` section is read. Missing files and YAML errors
    propagate to the caller.
    """
    path = Path(path)
    logger.info(
        "load_yaml_config: attempting to load config from %s (exists=%s)",
        path, path.exists(),
    )
    try:
        with open(path) as f:
            raw = yaml.safe_load(f) or {}
    except FileNotFoundError:
        logger.error(
            "load_yaml_config: config file not found at %s (absolute path: %s)",
            path, path.absolute(),
        )
        raise
    except yaml.YAMLError as exc:
        logger.error("load_yaml_config: YAML parse error in %s: %s", path, exc)
        raise

    config = BridgeConfig.from_env()
    section = raw.get("bridge") if isinstance(raw, dict) else None
    if isinstance(section, dict):
        config.apply_overrides(section)
    else:
        logger.warning("load_yaml_config: %s has no 'bridge' section", path)
    return config
