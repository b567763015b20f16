"""pytest fixtures for disposable environments.

Registered through the ``pytest11`` entry point, so installing the package is
enough. Pick the stack for a test with the ``stackharness_preset`` marker::

    @pytest.mark.stackharness_preset("full")
    def test_upload(test_environment):
        ...
"""

from __future__ import annotations

import os
from collections.abc import Iterator
from pathlib import Path

import pytest

from stackharness.environment import EnvironmentFactory, TestEnvironment
from stackharness.errors import EnvironmentSetupError
from stackharness.logging_config import flush_logs, setup_structured_logging
from stackharness.ports import PortAllocator
from stackharness.settings import HarnessSettings, load_settings

DEFAULT_PRESET = "database-only"


def pytest_addoption(parser: pytest.Parser) -> None:
    group = parser.getgroup("stackharness")
    group.addoption(
        "--stackharness-log-file",
        default=None,
        help="write stackharness structured logs as JSON to this file",
    )


def pytest_configure(config: pytest.Config) -> None:
    config.addinivalue_line("markers", "stackharness_preset(name): preset used by the test_environment fixture")

    log_file = config.getoption("stackharness_log_file")
    if log_file:
        setup_structured_logging(Path(log_file), load_settings().log_level, console_output=False)


def pytest_unconfigure(config: pytest.Config) -> None:
    flush_logs()


def worker_port_range(port_range: tuple[int, int], worker: str | None, worker_count: int) -> tuple[int, int]:
    """Give each pytest-xdist worker a disjoint slice of the port range.

    The allocator's bind probe only sees ports that are already bound, so two
    worker processes could otherwise hand out the same port before either
    server has started.
    """
    if worker is None or worker_count <= 1 or not worker.startswith("gw"):
        return port_range

    index = int(worker.removeprefix("gw"))
    lower, upper = port_range
    width = (upper - lower + 1) // worker_count
    start = lower + index * width
    return start, start + width - 1


@pytest.fixture(scope="session")
def stackharness_settings() -> HarnessSettings:
    return load_settings()


@pytest.fixture(scope="session")
def port_allocator(stackharness_settings: HarnessSettings) -> PortAllocator:
    lower, upper = worker_port_range(
        stackharness_settings.port_range,
        os.environ.get("PYTEST_XDIST_WORKER"),
        int(os.environ.get("PYTEST_XDIST_WORKER_COUNT", "1")),
    )
    return PortAllocator(lower, upper)


@pytest.fixture(scope="session")
def environment_factory(
    port_allocator: PortAllocator,
    stackharness_settings: HarnessSettings,
) -> EnvironmentFactory:
    return EnvironmentFactory(allocator=port_allocator, settings=stackharness_settings)


@pytest.fixture()
def test_environment(
    request: pytest.FixtureRequest,
    environment_factory: EnvironmentFactory,
) -> Iterator[TestEnvironment]:
    """Function-scoped environment built from the test's preset marker, always torn down."""
    marker = request.node.get_closest_marker("stackharness_preset")
    name = marker.args[0] if marker is not None and marker.args else DEFAULT_PRESET
    overrides = marker.kwargs if marker is not None else {}

    try:
        env = environment_factory.setup_preset(name, **overrides)
    except EnvironmentSetupError as e:
        e.environment.teardown()
        raise

    try:
        yield env
    finally:
        env.teardown()
