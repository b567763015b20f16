"""Readiness probing for spawned servers.

A server process being alive says nothing about whether it accepts traffic
yet, so every service polls a probe through :func:`wait_until_ready` before it
is considered running.
"""

import socket
import time
from collections.abc import Callable

import requests

from stackharness.errors import ReadinessTimeoutError
from stackharness.logging_config import get_logger

log = get_logger(__name__)

HEALTH_CHECK_TIMEOUT = 30.0
HEALTH_CHECK_INTERVAL = 0.1


def wait_until_ready(
    probe: Callable[[], bool],
    timeout: float = HEALTH_CHECK_TIMEOUT,
    poll_interval: float = HEALTH_CHECK_INTERVAL,
    name: str = "service",
) -> float:
    """Poll ``probe`` until it returns True.

    A probe that raises counts as not ready. Returns the elapsed seconds, or
    raises ReadinessTimeoutError naming ``name`` once ``timeout`` has passed.
    """
    start = time.monotonic()
    while True:
        try:
            ready = probe()
        except Exception as e:
            log.debug("Readiness probe raised", name=name, error=str(e))
            ready = False

        elapsed = time.monotonic() - start
        if ready:
            log.debug("Readiness probe succeeded", name=name, elapsed=round(elapsed, 3))
            return elapsed

        if elapsed >= timeout:
            raise ReadinessTimeoutError(name, elapsed)

        time.sleep(min(poll_interval, timeout - elapsed))


def check_tcp_port(host: str, port: int, timeout: float = 1.0) -> bool:
    try:
        with socket.create_connection((host, port), timeout=timeout):
            return True
    except OSError:
        return False


def check_http_health(url: str, timeout: float = 1.0) -> bool:
    try:
        response = requests.get(url, timeout=timeout)
    except requests.RequestException:
        return False
    return response.ok
