"""Structured logging for the workflow engine.

Run-scoped fields (run_id, workflow_id, visitor_id) are carried in
contextvars, so every log line emitted while a run is traversed, including
lines from branch tasks spawned by the executor, carries them without
threading the values through each call.
"""

import sys
import logging
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional

import structlog

from core.config import Settings


def _stdlib_handlers(settings: Settings, level: int) -> list:
    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(level)
    handlers = [console_handler]

    if settings.log_file:
        log_path = Path(settings.log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_path)
        file_handler.setLevel(level)
        handlers.append(file_handler)

    return handlers


def configure_logging(settings: Settings) -> None:
    """Route structlog through stdlib logging with a JSON or console renderer."""
    level = getattr(logging, settings.log_level.upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        handlers=_stdlib_handlers(settings, level),
        format="%(message)s"
    )

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]

    if settings.log_format == "json":
        processors.insert(0, structlog.processors.TimeStamper(fmt="iso", utc=True))
        processors.insert(0, structlog.stdlib.add_logger_name)
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.insert(0, structlog.processors.TimeStamper(fmt="%H:%M:%S"))
        processors.append(structlog.dev.ConsoleRenderer(
            colors=False,
            pad_event=35,
            exception_formatter=structlog.dev.plain_traceback
        ))

    structlog.configure(
        processors=processors,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def get_logger(name: str) -> structlog.BoundLogger:
    """Get a structured logger instance."""
    return structlog.get_logger(name)


@contextmanager
def run_logging_context(run_id: str, workflow_id: str,
                        visitor_id: Optional[str] = None) -> Iterator[None]:
    """Bind run identifiers to every log line emitted inside the block."""
    with structlog.contextvars.bound_contextvars(
        run_id=run_id, workflow_id=workflow_id, visitor_id=visitor_id
    ):
        yield


def log_execution_time(logger: structlog.BoundLogger, operation: str,
                       start_time: float, end_time: float, **kwargs) -> None:
    """Log execution time with additional context."""
    logger.info(
        "Operation completed",
        operation=operation,
        execution_time_seconds=round(end_time - start_time, 4),
        **kwargs
    )


def log_delivery_attempt(logger: structlog.BoundLogger, action: str, attempt: int,
                         max_attempts: int, error: Optional[str] = None,
                         retry_in_ms: Optional[float] = None, **kwargs) -> None:
    """Log one outbound delivery attempt (webhook, email) that failed."""
    log_data = {
        "action": action,
        "attempt": attempt,
        "max_attempts": max_attempts,
        "error": error,
        **kwargs
    }

    if retry_in_ms is not None:
        log_data["retry_in_ms"] = round(retry_in_ms)
        logger.warning("Delivery attempt failed, retrying", **log_data)
    else:
        logger.error("Delivery attempts exhausted", **log_data)


def log_cache_operation(logger: structlog.BoundLogger, operation: str,
                        key: str, hit: bool = None, **kwargs) -> None:
    """Log cache operations."""
    log_data = {
        "operation": operation,
        "cache_key": key,
        **kwargs
    }

    if hit is not None:
        log_data["cache_hit"] = hit

    logger.debug("Cache operation", **log_data)
