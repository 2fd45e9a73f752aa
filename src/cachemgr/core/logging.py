"""Structured logging infrastructure for cachemgr.

Provides structured logging using structlog with operation-specific context
(operation_id, kind) and component names. Supports console and JSON output,
with an optional rotating log file.

Example usage:
    from cachemgr.core.logging import get_logger, configure_logging, with_context

    # Configure once at startup
    configure_logging(level="DEBUG", format="console")

    # Get a component-specific logger
    logger = get_logger("ops.orchestrator")
    logger.info("worker_started", pid=1234)

    # Everything logged inside the block carries operation_id and kind
    ctx = OperationContext(operation_id="3f2a...", kind="cache_clear")
    with with_context(ctx):
        logger.info("poll.tick")
"""

from __future__ import annotations

import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass
from datetime import UTC, datetime
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Literal

import structlog
from structlog.types import EventDict, Processor, WrappedLogger

# Field names whose values are never written to a log
SENSITIVE_PATTERNS = frozenset({
    "api_key",
    "token",
    "secret",
    "password",
    "credential",
    "authorization",
})


@dataclass(frozen=True)
class OperationContext:
    """Immutable correlation context for everything logged by one operation.

    Attributes:
        operation_id: The tracked operation's id.
        kind: Operation kind (``cache_clear``, ``log_ingest``).
        silent: Whether the operation runs without progress pushes.
    """

    operation_id: str
    kind: str
    silent: bool = False

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "operation_id": self.operation_id,
            "kind": self.kind,
        }
        if self.silent:
            result["silent"] = True
        return result


_current_context: ContextVar[OperationContext | None] = ContextVar(
    "cachemgr_context", default=None
)


def get_current_context() -> OperationContext | None:
    """Return the OperationContext active in this task, if any."""
    return _current_context.get()


@contextmanager
def with_context(ctx: OperationContext) -> Iterator[OperationContext]:
    """Set the OperationContext for the duration of a block.

    ContextVars are copied into tasks created inside the block, so the poll
    loop and process-wait tasks of an operation inherit the context too.
    """
    token = _current_context.set(ctx)
    try:
        yield ctx
    finally:
        _current_context.reset(token)


def _sanitize_event_dict(
    logger: WrappedLogger,
    method_name: str,
    event_dict: EventDict,
) -> EventDict:
    """Structlog processor that redacts sensitive fields."""
    for key in list(event_dict):
        key_lower = key.lower()
        if any(pattern in key_lower for pattern in SENSITIVE_PATTERNS):
            event_dict[key] = "[REDACTED]"
    return event_dict


def _add_timestamp(
    logger: WrappedLogger,
    method_name: str,
    event_dict: EventDict,
) -> EventDict:
    event_dict["timestamp"] = datetime.now(UTC).isoformat()
    return event_dict


def _add_context(
    logger: WrappedLogger,
    method_name: str,
    event_dict: EventDict,
) -> EventDict:
    """Structlog processor that adds OperationContext fields.

    Explicitly passed keys take precedence over context values.
    """
    ctx = get_current_context()
    if ctx is not None:
        for key, value in ctx.to_dict().items():
            event_dict.setdefault(key, value)
    return event_dict


class CacheMgrLogger:
    """Component-bound wrapper around a structlog logger.

    The underlying structlog logger is fetched on every call so loggers
    created at import time still honour ``configure_logging()`` calls made
    later during startup.
    """

    def __init__(self, component: str, **initial_context: Any) -> None:
        self._component = component
        self._context: dict[str, Any] = {"component": component, **initial_context}

    def _get_logger(self) -> structlog.stdlib.BoundLogger:
        logger: structlog.stdlib.BoundLogger = structlog.get_logger().bind(**self._context)
        return logger

    def bind(self, **context: Any) -> CacheMgrLogger:
        """Return a new logger with additional bound context."""
        new_logger = CacheMgrLogger.__new__(CacheMgrLogger)
        new_logger._component = self._component
        new_logger._context = {**self._context, **context}
        return new_logger

    def debug(self, event: str, **kw: Any) -> None:
        self._get_logger().debug(event, **kw)

    def info(self, event: str, **kw: Any) -> None:
        self._get_logger().info(event, **kw)

    def warning(self, event: str, **kw: Any) -> None:
        self._get_logger().warning(event, **kw)

    def error(self, event: str, **kw: Any) -> None:
        self._get_logger().error(event, **kw)

    def exception(self, event: str, **kw: Any) -> None:
        """Log at error level with the active exception's traceback."""
        self._get_logger().exception(event, **kw)


def _build_processors(renderer: Processor) -> list[Processor]:
    return [
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_log_level,
        _sanitize_event_dict,
        _add_context,
        _add_timestamp,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        renderer,
    ]


def configure_logging(
    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO",
    format: Literal["json", "console"] = "console",  # noqa: A002
    file_path: Path | None = None,
    max_file_size_mb: int = 50,
    backup_count: int = 5,
) -> None:
    """Configure structured logging for the process.

    Call once at startup, before the first operation is started.

    Args:
        level: Minimum log level to emit.
        format: ``console`` for human-readable stderr output, ``json`` for
            one JSON object per line.
        file_path: Optional rotating log file. Entries written there use the
            same renderer as the console.
        max_file_size_mb: Size at which the log file rotates.
        backup_count: Rotated files to keep.
    """
    log_level = getattr(logging, level)

    handlers: list[logging.Handler] = []
    stream = sys.stderr if format == "console" else sys.stdout
    stream_handler = logging.StreamHandler(stream)
    stream_handler.setLevel(log_level)
    handlers.append(stream_handler)

    if file_path is not None:
        file_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            file_path,
            maxBytes=max_file_size_mb * 1024 * 1024,
            backupCount=backup_count,
            encoding="utf-8",
        )
        file_handler.setLevel(log_level)
        handlers.append(file_handler)

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)
    for handler in handlers:
        root_logger.addHandler(handler)

    renderer: Processor
    if format == "json":
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=stream.isatty())

    # cache_logger_on_first_use=False keeps module-level loggers in sync with
    # reconfiguration (tests reconfigure repeatedly)
    structlog.configure(
        processors=_build_processors(renderer),
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=False,
    )


def get_logger(component: str, **initial_context: Any) -> CacheMgrLogger:
    """Get a logger bound to a component name (e.g. ``"ops.registry"``)."""
    return CacheMgrLogger(component, **initial_context)


__all__ = [
    "CacheMgrLogger",
    "OperationContext",
    "SENSITIVE_PATTERNS",
    "configure_logging",
    "get_current_context",
    "get_logger",
    "with_context",
]
