"""Environment-variable driven settings for stackharness.

Every knob has a default so a bare checkout works without any exported
variables. Values are read once by :func:`load_settings` and carried around as
an immutable :class:`HarnessSettings`.
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path

from stackharness.errors import ConfigurationError

ENV_PREFIX = "STACKHARNESS_"

DEFAULT_PORT_RANGE = (15000, 60000)
DEFAULT_READINESS_TIMEOUT = 30.0
DEFAULT_POLL_INTERVAL = 0.1


@dataclass(frozen=True, slots=True)
class HarnessSettings:
    stack_path: Path | None = None
    tmp_dir: Path = Path("./tmp")
    port_range: tuple[int, int] = DEFAULT_PORT_RANGE
    readiness_timeout: float = DEFAULT_READINESS_TIMEOUT
    poll_interval: float = DEFAULT_POLL_INTERVAL
    log_level: str = "INFO"
    keep_workdir: bool = False


def load_settings(environ: Mapping[str, str] | None = None) -> HarnessSettings:
    env = os.environ if environ is None else environ

    def get(name: str) -> str | None:
        value = env.get(ENV_PREFIX + name)
        if value is None or value.strip() == "":
            return None
        return value.strip()

    stack_path = get("STACK_PATH")
    tmp_dir = get("TMP_DIR")
    port_range = get("PORT_RANGE")
    timeout = get("READINESS_TIMEOUT")
    interval = get("POLL_INTERVAL")
    log_level = get("LOG_LEVEL")
    keep = get("KEEP_WORKDIR")

    return HarnessSettings(
        stack_path=Path(stack_path) if stack_path else None,
        tmp_dir=Path(tmp_dir) if tmp_dir else Path("./tmp"),
        port_range=parse_port_range(port_range) if port_range else DEFAULT_PORT_RANGE,
        readiness_timeout=_parse_positive_float("READINESS_TIMEOUT", timeout, DEFAULT_READINESS_TIMEOUT),
        poll_interval=_parse_positive_float("POLL_INTERVAL", interval, DEFAULT_POLL_INTERVAL),
        log_level=_parse_log_level(log_level) if log_level else "INFO",
        keep_workdir=_parse_bool("KEEP_WORKDIR", keep) if keep else False,
    )


def parse_port_range(raw: str) -> tuple[int, int]:
    """Parse ``"lower-upper"`` into a validated inclusive port range."""
    parts = raw.split("-")
    if len(parts) != 2:
        raise ConfigurationError(f"{ENV_PREFIX}PORT_RANGE must look like 'lower-upper', got {raw!r}")

    try:
        lower, upper = int(parts[0]), int(parts[1])
    except ValueError as e:
        raise ConfigurationError(f"{ENV_PREFIX}PORT_RANGE bounds must be integers, got {raw!r}") from e

    if not (1024 <= lower < upper <= 65535):
        raise ConfigurationError(f"{ENV_PREFIX}PORT_RANGE must satisfy 1024 <= lower < upper <= 65535, got {raw!r}")

    return lower, upper


def _parse_positive_float(name: str, raw: str | None, default: float) -> float:
    if raw is None:
        return default

    try:
        value = float(raw)
    except ValueError as e:
        raise ConfigurationError(f"{ENV_PREFIX}{name} must be a number, got {raw!r}") from e

    if value <= 0:
        raise ConfigurationError(f"{ENV_PREFIX}{name} must be positive, got {raw!r}")
    return value


def _parse_log_level(raw: str) -> str:
    level = raw.upper()
    if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
        raise ConfigurationError(f"{ENV_PREFIX}LOG_LEVEL is not a log level: {raw!r}")
    return level


def _parse_bool(name: str, raw: str) -> bool:
    lowered = raw.lower()
    if lowered in {"1", "true", "yes", "on"}:
        return True
    if lowered in {"0", "false", "no", "off"}:
        return False
    raise ConfigurationError(f"{ENV_PREFIX}{name} must be a boolean, got {raw!r}")
