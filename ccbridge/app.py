"""ccbridge: main application entry point."""

from __future__ import annotations

import asyncio
import logging
import sys
from pathlib import Path
from logging.handlers import RotatingFileHandler

from ccbridge.engine.config import BridgeConfig, load_yaml_config


def configure_logging(level: str, log_dir: str | Path) -> Path:
    """Send logs to a rotating file and stderr. Returns the log file path."""
    log_dir = Path(log_dir).expanduser()
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / "ccbridge.log"

    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    root.handlers.clear()
    formatter = logging.Formatter(
        "%(asctime)s %(levelname)s %(name)s [pid=%(process)d] %(message)s"
    )
    file_handler = RotatingFileHandler(
        log_file, maxBytes=2_000_000, backupCount=5, encoding="utf-8"
    )
    file_handler.setFormatter(formatter)
    stream_handler = logging.StreamHandler(sys.stderr)
    stream_handler.setFormatter(formatter)
    root.addHandler(file_handler)
    root.addHandler(stream_handler)
    return log_file


def resolve_config_path(explicit: str | None, cwd: Path | None = None) -> Path | None:
    """Return the explicit config path, or ``./ccbridge.yaml`` if it exists."""
    log = logging.getLogger(__name__)
    if explicit:
        path = Path(explicit)
        log.info("Using explicit config path: %s (exists=%s)", path, path.exists())
        return path
    candidate = (cwd or Path.cwd()) / "ccbridge.yaml"
    if candidate.exists():
        log.info("Auto-discovered config: %s", candidate)
        return candidate
    log.info("No config file found (tried %s); using defaults", candidate)
    return None


def main(argv: list[str] | None = None) -> None:
    import argparse

    parser = argparse.ArgumentParser(
        prog="ccbridge",
        description="HTTP + SSE bridge to long-running Claude CLI conversations",
    )
    parser.add_argument(
        "--port", type=int, default=None,
        help="Listen on this port only (default: first free of 3000-3004, or $PORT)",
    )
    parser.add_argument(
        "--host", default=None,
        help="Interface to bind (default: 127.0.0.1)",
    )
    parser.add_argument(
        "--config", metavar="PATH",
        help="YAML config file with a 'bridge:' section (default: ./ccbridge.yaml)",
    )
    parser.add_argument(
        "--log-level", default=None,
        help="Logging level (default: INFO, or $BRIDGE_LOG_LEVEL)",
    )
    args = parser.parse_args(argv)

    from ccbridge.server import BridgeServer
    from ccbridge.shared.services.process_cleanup import (
        cleanup_stale_claude_processes,
    )

    config_path = resolve_config_path(args.config)
    config = load_yaml_config(config_path) if config_path else BridgeConfig.from_env()
    if args.port is not None:
        config.ports = [args.port]
    if args.host:
        config.host = args.host
    if args.log_level:
        config.log_level = args.log_level.upper()

    log_file = configure_logging(config.log_level, config.log_dir)
    log = logging.getLogger(__name__)
    log.info(
        "Starting ccbridge cwd=%s ports=%s config=%s log=%s",
        Path.cwd(), config.ports, config_path or "<none>", log_file,
    )

    if config.reap_stale_processes:
        try:
            reaped = cleanup_stale_claude_processes(log=log.info)
            if reaped:
                log.warning("Reaped %d stale Claude CLI process(es) at startup", reaped)
        except Exception:
            log.exception("Startup stale-process cleanup failed")

    server = BridgeServer(config)
    try:
        asyncio.run(server.serve_forever())
    except RuntimeError as exc:
        log.error("%s", exc)
        sys.exit(1)
    sys.exit(0)


if __name__ == "__main__":
    main()
