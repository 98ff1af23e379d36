"""
observability/logger.py — Shardline Structured Logger

Sets up structlog with:
  - Human-readable output to console (dev mode) or JSON (prod/pipe mode)
  - Optional JSON output to rotating log files
  - Consistent fields on every log line: timestamp, level, event, shard_id
  - websockets/httpx frame-level chatter held at WARNING unless the
    requested level is DEBUG

Usage:
    from shardline.observability.logger import get_logger, setup_logging
    setup_logging(level="INFO", console_output=True)
    log = get_logger(__name__, shard_id=0)
    log.info("shard.hello", heartbeat_interval=41.25)
"""

from __future__ import annotations

import logging
import logging.handlers
import sys
from pathlib import Path
from typing import Any, Optional

import structlog

# Third-party loggers that log every frame / request at DEBUG and INFO.
_NOISY_LOGGERS = [
    "websockets",
    "websockets.client",
    "httpx",
    "httpcore",
]


def _quiet_noisy_loggers(numeric_level: int) -> None:
    """Hold transport libraries at WARNING unless we're debugging ourselves."""
    target = logging.DEBUG if numeric_level <= logging.DEBUG else logging.WARNING
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(target)


def _shared_processors() -> list[Any]:
    """Processors applied to structlog and foreign (stdlib) records alike."""
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]


def _formatter(renderer: Any, pre_chain: list[Any]) -> logging.Formatter:
    return structlog.stdlib.ProcessorFormatter(
        processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer],
        foreign_pre_chain=pre_chain,
    )


def _build_handlers(
    numeric_level: int,
    log_dir: Path | None,
    console_renderer: Any,
    console_output: bool,
    max_bytes: int,
    backup_count: int,
    pre_chain: list[Any],
) -> list[logging.Handler]:
    handlers: list[logging.Handler] = []

    if log_dir is not None:
        log_dir.mkdir(parents=True, exist_ok=True)
        rotating = logging.handlers.RotatingFileHandler(
            filename=log_dir / "shardline.log",
            maxBytes=max_bytes,
            backupCount=backup_count,
            encoding="utf-8",
        )
        # Files are always JSON, whatever the console shows.
        rotating.setFormatter(_formatter(structlog.processors.JSONRenderer(), pre_chain))
        handlers.append(rotating)

    if console_output:
        stream = logging.StreamHandler(sys.stdout)
        stream.setFormatter(_formatter(console_renderer, pre_chain))
        handlers.append(stream)

    for handler in handlers:
        handler.setLevel(numeric_level)
    return handlers or [logging.NullHandler()]


# ─────────────────────────────────────────────────────────────────────────────
# Public API
# ─────────────────────────────────────────────────────────────────────────────


def setup_logging(
    level: str = "INFO",
    log_dir: str | Path | None = None,
    json_format: Optional[bool] = None,
    console_output: bool = True,
    max_bytes: int = 100 * 1024 * 1024,
    backup_count: int = 5,
) -> None:
    """
    Route structlog through stdlib logging. Call once, before connecting.

    Args:
        level:          DEBUG | INFO | WARNING | ERROR | CRITICAL
        log_dir:        Where shardline.log rotates; None means no file.
        json_format:    Console renderer. True = JSON lines, False = coloured
                        key/value output, None = coloured only on a TTY.
        console_output: Set False to silence stdout entirely.
        max_bytes:      Rotation threshold per file.
        backup_count:   Rotated files kept next to shardline.log.
    """
    numeric_level = getattr(logging, level.upper(), logging.INFO)
    if json_format is None:
        json_format = not sys.stdout.isatty()
    console_renderer: Any = (
        structlog.processors.JSONRenderer()
        if json_format
        else structlog.dev.ConsoleRenderer(colors=True)
    )

    pre_chain = _shared_processors()
    handlers = _build_handlers(
        numeric_level,
        Path(log_dir) if log_dir is not None else None,
        console_renderer,
        console_output,
        max_bytes,
        backup_count,
        pre_chain,
    )

    logging.basicConfig(format="%(message)s", level=numeric_level, handlers=handlers, force=True)
    _quiet_noisy_loggers(numeric_level)

    structlog.configure(
        processors=pre_chain + [structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def get_logger(name: str = "shardline", **initial_values: Any) -> structlog.stdlib.BoundLogger:
    """
    Return a structlog logger named ``name`` with ``initial_values`` bound
    to every line it emits.

    Example:
        log = get_logger(__name__, shard_id=3)
        log.info("shard.identify.sent")
        # → {"event": "shard.identify.sent", "shard_id": 3,
        #    "logger": "shardline.gateway.connection", ...}
    """
    logger = structlog.get_logger(name)
    if initial_values:
        logger = logger.bind(**initial_values)
    return logger
