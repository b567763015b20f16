"""Structured logging for stackharness.

Handlers hang off the ``stackharness`` logger rather than the root logger, so
turning on harness logs inside a test session leaves the host project's own
logging alone.
"""

import logging
import logging.handlers
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

import structlog

LOGGER_NAME = "stackharness"


def setup_structured_logging(
    log_file_path: Path | None = None,
    log_level: str = "INFO",
    max_bytes: int = 10 * 1024 * 1024,  # 10MB
    backup_count: int = 3,
    console_output: bool = True,
) -> None:
    """
    Route stackharness events to a rotating JSON file and/or the console.
    """
    level = getattr(logging, log_level.upper())
    handlers: list[logging.Handler] = []

    if console_output:
        handlers.append(logging.StreamHandler())

    if log_file_path:
        log_file_path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(
            logging.handlers.RotatingFileHandler(
                filename=log_file_path,
                maxBytes=max_bytes,
                backupCount=backup_count,
                encoding="utf-8",
            )
        )

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.dev.set_exc_info,
            # JSON for files, dev format for terminals
            _get_processor(log_file_path is not None),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    harness_logger = logging.getLogger(LOGGER_NAME)
    harness_logger.setLevel(level)
    harness_logger.propagate = False
    for handler in harness_logger.handlers:
        handler.close()
    harness_logger.handlers.clear()
    for handler in handlers:
        handler.setLevel(level)
        handler.setFormatter(logging.Formatter("%(message)s"))
        harness_logger.addHandler(handler)


def _get_processor(use_json: bool) -> Any:
    if use_json:
        return structlog.processors.JSONRenderer()
    return structlog.dev.ConsoleRenderer(colors=True)


def get_logger(name: str) -> structlog.BoundLogger:
    return structlog.get_logger(name)


@contextmanager
def environment_context(environment: str) -> Iterator[None]:
    """Tag every event logged inside the block with the environment's id."""
    with structlog.contextvars.bound_contextvars(environment=environment):
        yield


def flush_logs() -> None:
    for handler in logging.getLogger(LOGGER_NAME).handlers:
        handler.flush()
