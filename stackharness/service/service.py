from __future__ import annotations

import shutil
from abc import ABC, abstractmethod
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path

from stackharness.errors import ReadinessTimeoutError, ServiceFailedError, ServiceStartError, fail_gracefully
from stackharness.logging_config import get_logger
from stackharness.service.protocols import (
    ConnectionDescriptor,
    ServiceKind,
    ServiceState,
    ServiceStatus,
)
from stackharness.utils.process import Process, StopOutcome
from stackharness.utils.readiness import (
    HEALTH_CHECK_INTERVAL,
    HEALTH_CHECK_TIMEOUT,
    check_tcp_port,
    wait_until_ready,
)

log = get_logger(__name__)


@dataclass(frozen=True)
class ServiceConfig:
    host: str = "127.0.0.1"
    readiness_timeout: float = HEALTH_CHECK_TIMEOUT
    poll_interval: float = HEALTH_CHECK_INTERVAL
    stop_attempts: int = 50
    stop_poll_interval: float = 0.1
    stack_path: Path | None = None


class Service(ABC):
    kind: ServiceKind
    data_subdir: str

    def __init__(self, port: int, work_dir: Path, config: ServiceConfig | None = None):
        self.config = config if config is not None else ServiceConfig()
        self.port = port
        self.data_dir = work_dir / self.data_subdir

        self._state = ServiceState.STOPPED
        self._process: Process | None = None

    # -----------
    # -- Hooks --
    # -----------
    @abstractmethod
    def _build_args(self) -> list[str]:
        pass

    @abstractmethod
    def connection_url(self) -> str:
        pass

    def _spawn_env(self) -> Mapping[str, str] | None:
        return None

    def _log_file(self) -> Path | None:
        return None

    def _prepare(self) -> None:
        """Runs before spawn, after the data directory exists."""

    def _native_ready_check(self) -> bool:
        """Protocol-level probe run after the TCP port accepts connections."""
        return True

    def _after_ready(self) -> None:
        """First-use setup once the server accepts traffic."""

    def _stop_process(self, process: Process) -> StopOutcome:
        return process.stop(
            attempts=self.config.stop_attempts,
            poll_interval=self.config.stop_poll_interval,
        )

    # ------------
    # -- Public --
    # ------------
    @property
    def state(self) -> ServiceState:
        return self._state

    @property
    def host(self) -> str:
        return self.config.host

    def start(self) -> None:
        if self._state == ServiceState.FAILED:
            raise ServiceFailedError(self.kind)

        if self._state == ServiceState.RUNNING and self.is_running():
            log.info("Service already running, skipping start", service=self.kind, port=self.port)
            return

        log.info("Starting service", service=self.kind, port=self.port, data_dir=str(self.data_dir))
        self._state = ServiceState.STARTING
        try:
            self.data_dir.mkdir(parents=True, exist_ok=True)
            self._prepare()
            log_file = self._log_file()
            self._process = Process.spawn(
                self._build_args(),
                service=self.kind,
                env=self._spawn_env(),
                log_file=log_file,
                stream_stderr=log_file is None,
            )
            self.wait_ready()
            self._after_ready()
        except Exception:
            log.exception("Service failed to start", service=self.kind, port=self.port)
            self._state = ServiceState.FAILED
            raise

        self._state = ServiceState.RUNNING
        log.info("Service running", service=self.kind, port=self.port, pid=self.get_pid())

    def wait_ready(self) -> None:
        """TCP probe first, then the protocol-level check, sharing one timeout."""
        timeout = self.config.readiness_timeout
        try:
            elapsed = wait_until_ready(
                lambda: check_tcp_port(self.host, self.port),
                timeout=timeout,
                poll_interval=self.config.poll_interval,
                name=str(self.kind),
            )
        except ReadinessTimeoutError as e:
            self._raise_if_exited()
            raise ReadinessTimeoutError(str(self.kind), e.elapsed) from e

        try:
            wait_until_ready(
                self._native_ready_check,
                timeout=max(timeout - elapsed, self.config.poll_interval),
                poll_interval=self.config.poll_interval,
                name=str(self.kind),
            )
        except ReadinessTimeoutError as e:
            self._raise_if_exited()
            raise ReadinessTimeoutError(str(self.kind), elapsed + e.elapsed) from e

    def stop(self) -> None:
        process = self._process
        if process is None:
            if self._state != ServiceState.FAILED:
                self._state = ServiceState.STOPPED
            return

        log.info("Stopping service", service=self.kind, pid=process.pid)
        failed = self._state == ServiceState.FAILED
        self._state = ServiceState.STOPPING
        try:
            outcome = self._stop_process(process)
        finally:
            self._process = None
            # FAILED is terminal for the instance even once its process is gone
            self._state = ServiceState.FAILED if failed else ServiceState.STOPPED

        if outcome == StopOutcome.UNKILLABLE:
            log.error("Service process survived SIGKILL", service=self.kind, pid=process.pid)
        else:
            log.info("Service stopped", service=self.kind, pid=process.pid, outcome=outcome)

    def cleanup(self) -> None:
        self._remove_data_dir()

    def is_running(self) -> bool:
        return self._process_alive()

    def get_pid(self) -> int | None:
        if self._process is not None:
            return self._process.pid
        return None

    def connection_descriptor(self) -> ConnectionDescriptor:
        return ConnectionDescriptor(kind=self.kind, url=self.connection_url())

    def status(self) -> ServiceStatus:
        return ServiceStatus(
            kind=self.kind,
            state=self._state,
            port=self.port,
            pid=self.get_pid(),
            data_dir=self.data_dir,
        )

    # -------------
    # -- Helpers --
    # -------------
    def _process_alive(self) -> bool:
        return self._process is not None and self._process.is_running()

    def _raise_if_exited(self) -> None:
        if self._process is not None and not self._process.is_running():
            raise ServiceStartError(
                self.kind,
                f"server process exited with code {self._process.returncode()} before becoming ready",
            )

    @fail_gracefully(log)
    def _remove_data_dir(self) -> None:
        if self.data_dir.exists():
            shutil.rmtree(self.data_dir)
            log.debug("Removed service data directory", service=self.kind, data_dir=str(self.data_dir))
