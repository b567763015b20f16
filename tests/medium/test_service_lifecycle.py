import sys
from pathlib import Path

import psutil
import pytest

from stackharness.errors import ReadinessTimeoutError, ServiceFailedError, ServiceStartError
from stackharness.service.protocols import ServiceKind, ServiceState
from stackharness.service.service import Service, ServiceConfig
from stackharness.utils.readiness import check_http_health
from tests.utils.polling import wait_for_event


class HttpServerService(Service):
    """Python's http.server standing in for a real dependency."""

    kind = ServiceKind.OBJECT_STORE
    data_subdir = "http"

    def _build_args(self) -> list[str]:
        return [
            sys.executable, "-m", "http.server", str(self.port),
            "--bind", self.host,
            "--directory", str(self.data_dir),
        ]

    def connection_url(self) -> str:
        return f"http://{self.host}:{self.port}"


class SilentService(HttpServerService):
    """Runs but never listens."""

    def _build_args(self) -> list[str]:
        return [sys.executable, "-c", "import time; time.sleep(60)"]


class CrashingService(HttpServerService):
    def _build_args(self) -> list[str]:
        return [sys.executable, "-c", "raise SystemExit(3)"]


def _config(timeout: float = 10.0) -> ServiceConfig:
    return ServiceConfig(readiness_timeout=timeout, poll_interval=0.05, stop_attempts=20, stop_poll_interval=0.05)


@pytest.mark.timeout(30)
def test_start_waits_until_server_accepts_traffic(tmp_path: Path, free_localhost_port: int):
    service = HttpServerService(free_localhost_port, tmp_path, _config())

    service.start()
    try:
        assert service.state == ServiceState.RUNNING
        assert service.is_running()
        assert check_http_health(service.connection_url() + "/")

        status = service.status()
        assert status.pid == service.get_pid()
        assert status.data_dir == tmp_path / "http"
    finally:
        service.stop()

    assert service.state == ServiceState.STOPPED
    assert service.get_pid() is None


@pytest.mark.timeout(30)
def test_stop_then_cleanup_leaves_nothing(tmp_path: Path, free_localhost_port: int):
    service = HttpServerService(free_localhost_port, tmp_path, _config())
    service.start()
    pid = service.get_pid()
    assert pid is not None

    service.stop()
    service.cleanup()

    assert wait_for_event(lambda: not psutil.pid_exists(pid), interval=0.05, timeout=5.0)
    assert not service.data_dir.exists()


@pytest.mark.timeout(30)
def test_start_twice_is_noop_while_running(tmp_path: Path, free_localhost_port: int):
    service = HttpServerService(free_localhost_port, tmp_path, _config())
    service.start()
    try:
        pid = service.get_pid()
        service.start()
        assert service.get_pid() == pid
    finally:
        service.stop()


@pytest.mark.timeout(30)
def test_readiness_timeout_is_terminal(tmp_path: Path, free_localhost_port: int):
    """
    A service that never becomes ready fails and cannot be restarted
    """
    service = SilentService(free_localhost_port, tmp_path, _config(timeout=0.5))

    with pytest.raises(ReadinessTimeoutError, match="object_store did not become ready"):
        service.start()
    assert service.state == ServiceState.FAILED

    with pytest.raises(ServiceFailedError):
        service.start()

    # the stalled process is still ours to stop
    pid = service.get_pid()
    service.stop()
    assert service.state == ServiceState.FAILED
    assert pid is not None and not psutil.pid_exists(pid)


@pytest.mark.timeout(30)
def test_early_exit_reported_as_start_error(tmp_path: Path, free_localhost_port: int):
    service = CrashingService(free_localhost_port, tmp_path, _config(timeout=0.5))

    with pytest.raises(ServiceStartError, match="exited with code 3"):
        service.start()
    assert service.state == ServiceState.FAILED
    service.stop()
