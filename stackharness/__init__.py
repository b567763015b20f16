from stackharness.environment import EnvironmentConfig, EnvironmentFactory, TestEnvironment, preset
from stackharness.errors import (
    BinaryNotFoundError,
    CommandError,
    ConfigurationError,
    EnvironmentSetupError,
    ReadinessTimeoutError,
    ServiceFailedError,
    ServiceStartError,
    StackHarnessError,
)
from stackharness.ports import PortAllocator, PortSet, get_default_allocator, init_default_allocator
from stackharness.service.protocols import ConnectionDescriptor, ServiceKind, ServiceState
from stackharness.services import CacheService, DatabaseService, ObjectStoreService
from stackharness.utils.readiness import wait_until_ready

__all__ = [
    "BinaryNotFoundError",
    "CacheService",
    "CommandError",
    "ConfigurationError",
    "ConnectionDescriptor",
    "DatabaseService",
    "EnvironmentConfig",
    "EnvironmentFactory",
    "EnvironmentSetupError",
    "ObjectStoreService",
    "PortAllocator",
    "PortSet",
    "ReadinessTimeoutError",
    "ServiceFailedError",
    "ServiceKind",
    "ServiceStartError",
    "ServiceState",
    "StackHarnessError",
    "TestEnvironment",
    "get_default_allocator",
    "init_default_allocator",
    "preset",
    "wait_until_ready",
]
