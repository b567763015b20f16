import socket
from pathlib import Path

import pytest

from stackharness.ports import PortAllocator, reset_default_allocator
from stackharness.settings import HarnessSettings

pytest_plugins = ["pytester"]


@pytest.fixture()
def free_localhost_port():
    """Function-scoped fixture to get a free port for each test."""
    # Binding to port 0 asks the OS for an arbitrary free port; closing the
    # socket straight away hands it back for the test to use.
    sock = socket.socket()
    sock.bind(("127.0.0.1", 0))
    sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)

    port: int = sock.getsockname()[1]
    sock.close()

    return port


@pytest.fixture()
def harness_settings(tmp_path: Path) -> HarnessSettings:
    """Settings rooted in the test's tmp directory with short readiness timeouts."""
    return HarnessSettings(tmp_dir=tmp_path / "envs", readiness_timeout=5.0, poll_interval=0.05)


@pytest.fixture()
def allocator() -> PortAllocator:
    return PortAllocator(42000, 42999)


@pytest.fixture(autouse=True)
def _reset_default_allocator():
    yield
    reset_default_allocator()
