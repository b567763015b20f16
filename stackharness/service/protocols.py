from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import Path
from typing import Protocol


class ServiceKind(StrEnum):
    """Kinds of server an environment can run, in start order."""
    DATABASE = "database"
    OBJECT_STORE = "object_store"
    CACHE = "cache"


class ServiceState(StrEnum):
    """Current observed state of a service."""
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    FAILED = "failed"


@dataclass(frozen=True, slots=True)
class ConnectionDescriptor:
    kind: ServiceKind
    url: str
    extras: Mapping[str, str] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class ServiceStatus:
    kind: ServiceKind
    state: ServiceState
    port: int
    pid: int | None
    data_dir: Path


class ServiceLike(Protocol):
    """Lifecycle and inspection API every managed server implements."""

    @property
    def kind(self) -> ServiceKind:
        ...

    @property
    def state(self) -> ServiceState:
        ...

    def start(self) -> None:
        ...

    def wait_ready(self) -> None:
        """Block until the server accepts traffic, or raise ReadinessTimeoutError."""
        ...

    def stop(self) -> None:
        ...

    def cleanup(self) -> None:
        """Remove the private data directory; never raises."""
        ...

    def connection_descriptor(self) -> ConnectionDescriptor:
        ...

    def status(self) -> ServiceStatus:
        ...
