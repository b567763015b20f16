"""Disposable multi-service environments.

An :class:`EnvironmentFactory` turns an :class:`EnvironmentConfig` (usually one
of the named presets) into a running :class:`TestEnvironment`: a port set, a
private working directory and the enabled services started in fixed order.
Teardown runs exactly once, either explicitly, on context-manager exit, or
from a finalizer when the environment is abandoned.
"""

from __future__ import annotations

import shutil
import time
import uuid
import weakref
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any

from stackharness.errors import ConfigurationError, EnvironmentSetupError, fail_gracefully
from stackharness.logging_config import environment_context, get_logger
from stackharness.ports import PortAllocator, PortSet, init_default_allocator
from stackharness.service.protocols import ConnectionDescriptor, ServiceKind, ServiceLike
from stackharness.service.service import ServiceConfig
from stackharness.services.cache import CacheService
from stackharness.services.database import DatabaseService
from stackharness.services.object_store import ObjectStoreService
from stackharness.settings import HarnessSettings, load_settings

log = get_logger(__name__)

WORKDIR_PREFIX = "stackharness-"


@dataclass(frozen=True)
class EnvironmentConfig:
    database: bool = True
    object_store: bool = False
    cache: bool = False
    run_migrations: bool = False
    migrations_dir: Path | None = None
    cache_password: str | None = None
    # None defers to HarnessSettings
    readiness_timeout: float | None = None
    poll_interval: float | None = None

    def enabled(self) -> list[ServiceKind]:
        kinds = [
            (ServiceKind.DATABASE, self.database),
            (ServiceKind.OBJECT_STORE, self.object_store),
            (ServiceKind.CACHE, self.cache),
        ]
        return [kind for kind, on in kinds if on]


# -------------
# -- Presets --
# -------------
PRESETS: dict[str, EnvironmentConfig] = {
    "minimal": EnvironmentConfig(database=False),
    "database-only": EnvironmentConfig(database=True),
    "default": EnvironmentConfig(database=True, run_migrations=True),
    "full": EnvironmentConfig(database=True, object_store=True, cache=True, run_migrations=True),
}


def preset(name: str, **overrides: Any) -> EnvironmentConfig:
    """Look up a named preset, optionally replacing some of its fields."""
    try:
        config = PRESETS[name]
    except KeyError as e:
        raise ConfigurationError(f"Unknown preset {name!r}, expected one of {sorted(PRESETS)}") from e

    if overrides:
        config = replace(config, **overrides)
    return config


# --------------
# -- Teardown --
# --------------
@fail_gracefully(log)
def _stop_service(service: ServiceLike) -> bool:
    service.stop()
    return True


@fail_gracefully(log)
def _cleanup_service(service: ServiceLike) -> bool:
    service.cleanup()
    return True


@fail_gracefully(log)
def _remove_work_dir(work_dir: Path) -> bool:
    if work_dir.exists():
        shutil.rmtree(work_dir)
    return True


def _teardown(services: list[ServiceLike], work_dir: Path, ports: PortSet, keep_workdir: bool) -> None:
    # must not reference the environment itself, or the finalizer keeps it alive
    with environment_context(work_dir.name):
        log.info("Tearing down environment", work_dir=str(work_dir), services=[str(s.kind) for s in services])

        failures = 0
        for service in reversed(services):
            if not _stop_service(service).or_else(False):
                failures += 1

        if keep_workdir:
            log.info("Keeping working directory", work_dir=str(work_dir))
        else:
            for service in reversed(services):
                _cleanup_service(service)
            if not _remove_work_dir(work_dir).or_else(False):
                failures += 1

        ports.release()

        if failures:
            log.warning("Environment teardown finished with errors", work_dir=str(work_dir), failures=failures)
        else:
            log.info("Environment torn down", work_dir=str(work_dir))


class TestEnvironment:
    __test__ = False

    def __init__(
        self,
        config: EnvironmentConfig,
        ports: PortSet,
        work_dir: Path,
        keep_workdir: bool = False,
    ):
        self.config = config
        self.ports = ports
        self.work_dir = work_dir
        self.keep_workdir = keep_workdir

        self._services: list[ServiceLike] = []
        self._finalizer = weakref.finalize(self, _teardown, self._services, work_dir, ports, keep_workdir)

    # ----------------
    # -- Membership --
    # ----------------
    def add_service(self, service: ServiceLike) -> None:
        """Register a service in start order; teardown stops it even if its start failed."""
        self._services.append(service)

    @property
    def services(self) -> tuple[ServiceLike, ...]:
        return tuple(self._services)

    def service(self, kind: ServiceKind) -> ServiceLike | None:
        for service in self._services:
            if service.kind == kind:
                return service
        return None

    @property
    def database(self) -> DatabaseService | None:
        service = self.service(ServiceKind.DATABASE)
        return service if isinstance(service, DatabaseService) else None

    @property
    def object_store(self) -> ObjectStoreService | None:
        service = self.service(ServiceKind.OBJECT_STORE)
        return service if isinstance(service, ObjectStoreService) else None

    @property
    def cache(self) -> CacheService | None:
        service = self.service(ServiceKind.CACHE)
        return service if isinstance(service, CacheService) else None

    # -----------------
    # -- Descriptors --
    # -----------------
    def connection_descriptors(self) -> dict[ServiceKind, ConnectionDescriptor]:
        return {service.kind: service.connection_descriptor() for service in self._services}

    def _url(self, kind: ServiceKind) -> str | None:
        service = self.service(kind)
        if service is None:
            return None
        return service.connection_descriptor().url

    def database_url(self) -> str | None:
        return self._url(ServiceKind.DATABASE)

    def object_store_endpoint(self) -> str | None:
        return self._url(ServiceKind.OBJECT_STORE)

    def cache_url(self) -> str | None:
        return self._url(ServiceKind.CACHE)

    def as_env(self) -> dict[str, str]:
        """Environment variables pointing an application at this stack."""
        env: dict[str, str] = {}
        descriptors = self.connection_descriptors()

        if (db := descriptors.get(ServiceKind.DATABASE)) is not None:
            env["DATABASE_URL"] = db.url

        if (store := descriptors.get(ServiceKind.OBJECT_STORE)) is not None:
            env["MINIO_ENDPOINT"] = store.url
            env["MINIO_ACCESS_KEY"] = store.extras.get("access_key", "")
            env["MINIO_SECRET_KEY"] = store.extras.get("secret_key", "")

        if (cache := descriptors.get(ServiceKind.CACHE)) is not None:
            env["REDIS_URL"] = cache.url

        return env

    # ---------------
    # -- Lifecycle --
    # ---------------
    @property
    def is_torn_down(self) -> bool:
        return not self._finalizer.alive

    def teardown(self) -> None:
        """Stop services in reverse start order, remove the working directory, release ports.

        Runs at most once; later calls are no-ops. Errors are logged, never raised.
        """
        self._finalizer()

    def __enter__(self) -> TestEnvironment:
        return self

    def __exit__(self, *exc: object) -> None:
        self.teardown()


class EnvironmentFactory:
    def __init__(
        self,
        allocator: PortAllocator | None = None,
        base_dir: Path | None = None,
        settings: HarnessSettings | None = None,
    ):
        self.settings = settings if settings is not None else load_settings()
        self.allocator = allocator if allocator is not None else init_default_allocator(*self.settings.port_range)
        self.base_dir = base_dir if base_dir is not None else self.settings.tmp_dir


    def setup(self, config: EnvironmentConfig) -> TestEnvironment:
        """Allocate ports and a working directory, then start every enabled service.

        On the first failure raises EnvironmentSetupError carrying the partial
        environment; services already started keep running until its teardown.
        """
        start = time.monotonic()
        ports = PortSet.allocate(self.allocator)
        work_dir = self.base_dir / f"{WORKDIR_PREFIX}{uuid.uuid4().hex}"
        work_dir.mkdir(parents=True, exist_ok=True)

        env = TestEnvironment(config, ports, work_dir, keep_workdir=self.settings.keep_workdir)
        with environment_context(work_dir.name):
            log.info("Setting up environment", work_dir=str(work_dir), services=[str(k) for k in config.enabled()])

            service_config = self._service_config(config)
            for kind in config.enabled():
                service = self._make_service(kind, config, ports, work_dir, service_config)
                env.add_service(service)
                try:
                    service.start()
                except Exception as e:
                    log.error("Environment setup failed", service=str(kind), error=str(e))
                    raise EnvironmentSetupError(str(kind), env) from e

            log.info(
                "Environment ready",
                work_dir=str(work_dir),
                ports=ports.ports(),
                elapsed=round(time.monotonic() - start, 3),
            )
        return env


    def setup_preset(self, name: str, **overrides: Any) -> TestEnvironment:
        return self.setup(preset(name, **overrides))


    def _service_config(self, config: EnvironmentConfig) -> ServiceConfig:
        timeout = config.readiness_timeout
        interval = config.poll_interval
        return ServiceConfig(
            readiness_timeout=timeout if timeout is not None else self.settings.readiness_timeout,
            poll_interval=interval if interval is not None else self.settings.poll_interval,
            stack_path=self.settings.stack_path,
        )


    def _make_service(
        self,
        kind: ServiceKind,
        config: EnvironmentConfig,
        ports: PortSet,
        work_dir: Path,
        service_config: ServiceConfig,
    ) -> ServiceLike:
        match kind:
            case ServiceKind.DATABASE:
                return DatabaseService(
                    ports.database,
                    work_dir,
                    service_config,
                    migrations_dir=config.migrations_dir,
                    apply_migrations=config.run_migrations,
                )
            case ServiceKind.OBJECT_STORE:
                return ObjectStoreService(ports.object_store, ports.object_store_console, work_dir, service_config)
            case ServiceKind.CACHE:
                return CacheService(ports.cache, work_dir, service_config, password=config.cache_password)
