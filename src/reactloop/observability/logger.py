"""
reactloop/observability/logger.py — reactloop Structured Logger

structlog routed through stdlib logging:
  - JSON lines to a rotating file (always)
  - stderr console output, JSON or coloured, so a streamed answer on stdout
    stays readable
  - session_id / agent attached to every line emitted inside session_context()

Usage:
    from reactloop.observability.logger import get_logger, setup_logging_from_settings

    setup_logging_from_settings(settings)          # once, at startup
    log = get_logger(__name__)
    log.info("executor.step_start", step=1, max_steps=20)

    with session_context(executor.session_id, executor.name):
        ...                                        # every line carries both ids
"""

from __future__ import annotations

import logging
import logging.handlers
import sys
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator

import structlog

LOG_FILE_NAME = "reactloop.log"

_SHARED_PROCESSORS: list[Any] = [
    structlog.contextvars.merge_contextvars,
    structlog.stdlib.add_log_level,
    structlog.stdlib.add_logger_name,
    structlog.processors.TimeStamper(fmt="iso", utc=True),
    structlog.processors.StackInfoRenderer(),
    structlog.processors.format_exc_info,
]


def _handlers(log_dir: Path, console_output: bool, max_bytes: int, backup_count: int) -> list[logging.Handler]:
    handlers: list[logging.Handler] = [
        logging.handlers.RotatingFileHandler(
            filename=log_dir / LOG_FILE_NAME,
            maxBytes=max_bytes,
            backupCount=backup_count,
            encoding="utf-8",
        )
    ]
    if console_output:
        handlers.append(logging.StreamHandler(sys.stderr))
    return handlers


def setup_logging(
    level: str = "INFO",
    log_dir: str | Path = "./data/logs",
    json_format: bool = True,
    console_output: bool = True,
    max_bytes: int = 100 * 1024 * 1024,
    backup_count: int = 5,
) -> None:
    """
    Configure structlog and stdlib logging. Safe to call again (handlers are
    replaced, not stacked).

    Args:
        level:          DEBUG | INFO | WARNING | ERROR | CRITICAL
        log_dir:        Directory for the rotating log file; created if missing.
        json_format:    Console renders JSON when True, coloured text when False.
                        The file is JSON either way.
        console_output: Emit to stderr at all.
        max_bytes:      Rotation size of the log file.
        backup_count:   Rotated files kept.
    """
    log_dir = Path(log_dir)
    log_dir.mkdir(parents=True, exist_ok=True)
    numeric_level = getattr(logging, level.upper(), logging.INFO)

    handlers = _handlers(log_dir, console_output, max_bytes, backup_count)
    file_handler, console_handlers = handlers[0], handlers[1:]

    file_handler.setFormatter(_formatter(structlog.processors.JSONRenderer()))
    console_renderer = (
        structlog.processors.JSONRenderer()
        if json_format
        else structlog.dev.ConsoleRenderer(colors=True)
    )
    for handler in console_handlers:
        handler.setFormatter(_formatter(console_renderer))
    for handler in handlers:
        handler.setLevel(numeric_level)

    logging.basicConfig(level=numeric_level, handlers=handlers, force=True)

    structlog.configure(
        processors=_SHARED_PROCESSORS + [structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def _formatter(renderer: Any) -> structlog.stdlib.ProcessorFormatter:
    return structlog.stdlib.ProcessorFormatter(
        processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer],
        foreign_pre_chain=_SHARED_PROCESSORS,
    )


def setup_logging_from_settings(settings, level: str | None = None) -> None:
    """setup_logging() driven by settings.logging; `level` overrides the configured one."""
    cfg = settings.logging
    setup_logging(
        level=level or cfg.level,
        log_dir=cfg.log_dir,
        json_format=cfg.json_format,
        console_output=cfg.console_output,
        max_bytes=cfg.max_file_size_mb * 1024 * 1024,
        backup_count=cfg.backup_count,
    )


def get_logger(name: str = "reactloop", **initial_values: Any) -> structlog.stdlib.BoundLogger:
    """
    Bound logger for a module, with optional permanently-bound fields.

        log = get_logger(__name__, component="tool_bus")
        log.info("tool_bus.dispatch", tool="do_terminate")
    """
    logger = structlog.get_logger(name)
    if initial_values:
        logger = logger.bind(**initial_values)
    return logger


@contextmanager
def session_context(session_id: str, agent_name: str) -> Iterator[None]:
    """
    Attach session_id and agent to every line logged inside the block,
    restoring the previous values on exit. Tasks created inside the block
    inherit the binding (asyncio copies the context).
    """
    with structlog.contextvars.bound_contextvars(session_id=session_id, agent=agent_name):
        yield
