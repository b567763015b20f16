from __future__ import annotations

import functools
from collections.abc import Callable
from typing import TYPE_CHECKING, Any

from stackharness.logging_config import get_logger
from stackharness.utils.maybe import Maybe

if TYPE_CHECKING:
    from stackharness.environment import TestEnvironment


class StackHarnessError(Exception):
    """Base class for every error raised by stackharness."""


class ConfigurationError(StackHarnessError):
    pass


class BinaryNotFoundError(StackHarnessError):
    def __init__(self, binary: str, hint: str = ""):
        self.binary = binary
        message = f"{binary} not found"
        if hint:
            message = f"{message}. {hint}"
        super().__init__(message)


class ServiceStartError(StackHarnessError):
    def __init__(self, service: str, reason: str):
        self.service = service
        self.reason = reason
        super().__init__(f"{service} failed to start: {reason}")


class ReadinessTimeoutError(StackHarnessError):
    def __init__(self, name: str, elapsed: float):
        self.name = name
        self.elapsed = elapsed
        super().__init__(f"{name} did not become ready within {elapsed:.1f}s")


class ServiceFailedError(StackHarnessError):
    """Raised when start is requested on an instance whose readiness already timed out."""

    def __init__(self, service: str):
        self.service = service
        super().__init__(f"{service} is in a terminal failed state and cannot be restarted")


class CommandError(StackHarnessError):
    def __init__(self, command: str, detail: str):
        self.command = command
        self.detail = detail
        super().__init__(f"{command} failed: {detail}")


class EnvironmentSetupError(StackHarnessError):
    """Wraps the first failure during environment setup.

    The partially started environment is attached so the caller can inspect
    it and must still call ``teardown()`` on it.
    """

    def __init__(self, service: str, environment: TestEnvironment):
        self.service = service
        self.environment = environment
        super().__init__(f"environment setup failed while starting {service}")


def fail_gracefully[**P, R](logger: Any | None = None) -> Callable[[Callable[P, R]], Callable[P, Maybe[R]]]:
    if logger is None:
        logger = get_logger(__name__)

    def decorator(f: Callable[P, R]):
        @functools.wraps(f)
        def wrapper(*args: P.args, **kwargs: P.kwargs) -> Maybe[R]:
            try:
                r = f(*args, **kwargs)
                return Maybe(r)
            except Exception as e:
                logger.exception("Suppressed error", operation=f.__name__, error=str(e))
                return Maybe[R](None)

        return wrapper
    return decorator
