"""TCP port allocation for environments running side by side.

A :class:`PortAllocator` hands out ports that are both unused by any live
allocation it made and bindable on loopback at the time of the call. Each
environment gets a :class:`PortSet`, released as a unit at teardown.
"""

from __future__ import annotations

import socket
import threading
from dataclasses import dataclass, fields

from stackharness.logging_config import get_logger
from stackharness.settings import DEFAULT_PORT_RANGE

log = get_logger(__name__)

LOOPBACK = "127.0.0.1"


def is_port_bindable(port: int, host: str = LOOPBACK) -> bool:
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    try:
        sock.bind((host, port))
        return True
    except OSError:
        return False
    finally:
        sock.close()


class PortAllocator:
    def __init__(self, lower: int = DEFAULT_PORT_RANGE[0], upper: int = DEFAULT_PORT_RANGE[1]):
        if not (0 < lower < upper <= 65535):
            raise ValueError(f"Invalid port range: {lower}-{upper}")

        self.lower = lower
        self.upper = upper

        self._lock = threading.Lock()
        self._next = lower
        self._held: set[int] = set()


    def allocate(self) -> int:
        """Return a port no live allocation holds and that is bindable right now.

        Loops until it finds one; the range is assumed large relative to demand.
        """
        while True:
            with self._lock:
                candidate = self._next
                self._next = candidate + 1 if candidate < self.upper else self.lower

                if candidate in self._held:
                    continue

                # reserve before probing so a concurrent caller skips it
                self._held.add(candidate)

            if is_port_bindable(candidate):
                log.debug("Allocated port", port=candidate)
                return candidate

            with self._lock:
                self._held.discard(candidate)


    def allocate_many(self, count: int) -> list[int]:
        return [self.allocate() for _ in range(count)]


    def release(self, port: int) -> None:
        with self._lock:
            self._held.discard(port)


    def held(self) -> frozenset[int]:
        with self._lock:
            return frozenset(self._held)


    def is_held(self, port: int) -> bool:
        with self._lock:
            return port in self._held


# ----------------------------
# -- Process-wide allocator --
# ----------------------------
_default_lock = threading.Lock()
_default_allocator: PortAllocator | None = None


def init_default_allocator(lower: int = DEFAULT_PORT_RANGE[0], upper: int = DEFAULT_PORT_RANGE[1]) -> PortAllocator:
    """Create the process-wide allocator.

    Calling it again with the same range returns the existing instance; a
    different range is rejected since ports may already be held.
    """
    global _default_allocator
    with _default_lock:
        if _default_allocator is None:
            _default_allocator = PortAllocator(lower, upper)
            log.info("Initialised default port allocator", lower=lower, upper=upper)
            return _default_allocator

        if (_default_allocator.lower, _default_allocator.upper) != (lower, upper):
            raise RuntimeError(
                f"Default port allocator already initialised with range "
                f"{_default_allocator.lower}-{_default_allocator.upper}",
            )
        return _default_allocator


def get_default_allocator() -> PortAllocator:
    with _default_lock:
        allocator = _default_allocator
    if allocator is not None:
        return allocator
    return init_default_allocator()


def reset_default_allocator() -> None:
    global _default_allocator
    with _default_lock:
        _default_allocator = None


@dataclass(frozen=True)
class PortSet:
    database: int
    object_store: int
    object_store_console: int
    cache: int
    application: int
    mock_identity: int
    mock_llm: int
    allocator: PortAllocator

    @classmethod
    def allocate(cls, allocator: PortAllocator) -> PortSet:
        names = [f.name for f in fields(cls) if f.name != "allocator"]
        ports = dict(zip(names, allocator.allocate_many(len(names)), strict=True))
        return cls(allocator=allocator, **ports)


    def ports(self) -> dict[str, int]:
        return {f.name: getattr(self, f.name) for f in fields(self) if f.name != "allocator"}


    def release(self) -> None:
        for port in self.ports().values():
            self.allocator.release(port)
