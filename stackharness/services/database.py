"""PostgreSQL server for a single test environment.

The cluster lives in ``<work_dir>/postgres`` and is configured for speed over
durability; it is thrown away at teardown.
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from pathlib import Path
from typing import Any

import backoff
import sqlalchemy
from sqlalchemy import URL, Engine, text
from sqlalchemy.exc import DBAPIError, OperationalError
from sqlalchemy_utils import create_database, database_exists

from stackharness.errors import CommandError, ReadinessTimeoutError, ServiceStartError
from stackharness.logging_config import get_logger
from stackharness.service.protocols import ConnectionDescriptor, ServiceKind
from stackharness.service.service import Service, ServiceConfig
from stackharness.utils.executable import find_binary
from stackharness.utils.process import Process, StopOutcome, decode, run_tool

log = get_logger(__name__)

STACK_SUBDIR = "bin/tables/bin"
SEARCH_DIRS = (
    "/usr/lib/postgresql/17/bin",
    "/usr/lib/postgresql/16/bin",
    "/usr/lib/postgresql/15/bin",
    "/usr/lib/postgresql/14/bin",
    "/usr/bin",
    "/usr/local/bin",
    "/opt/homebrew/bin",
    "/opt/homebrew/opt/postgresql@17/bin",
    "/opt/homebrew/opt/postgresql@16/bin",
)

MIGRATIONS_TABLE = "stackharness_migrations"

TEST_CONFIG = """\
# stackharness: throwaway cluster, tuned for speed not durability
listen_addresses = '{host}'
port = {port}
max_connections = 50
shared_buffers = 128MB
work_mem = 16MB
maintenance_work_mem = 64MB
wal_level = minimal
fsync = off
synchronous_commit = off
full_page_writes = off
checkpoint_timeout = 30min
max_wal_senders = 0
logging_collector = off
log_statement = 'none'
log_duration = off
unix_socket_directories = '{socket_dir}'
"""


class DatabaseService(Service):
    kind = ServiceKind.DATABASE
    data_subdir = "postgres"

    DEFAULT_DATABASE = "bottest"
    DEFAULT_USERNAME = "bottest"
    DEFAULT_PASSWORD = "bottest"
    SUPERUSER = "postgres"
    MARKER_FILE = "PG_VERSION"

    def __init__(
        self,
        port: int,
        work_dir: Path,
        config: ServiceConfig | None = None,
        migrations_dir: Path | None = None,
        apply_migrations: bool = False,
    ):
        super().__init__(port, work_dir, config)
        self.database = self.DEFAULT_DATABASE
        self.username = self.DEFAULT_USERNAME
        self.password = self.DEFAULT_PASSWORD
        self.migrations_dir = migrations_dir
        self.apply_migrations = apply_migrations

        self._bin_dir: Path | None = None
        self._engine: Engine | None = None

    # ------------------
    # -- Installation --
    # ------------------
    @property
    def bin_dir(self) -> Path:
        if self._bin_dir is None:
            self._bin_dir = find_binary(
                "postgres",
                stack_path=self.config.stack_path,
                stack_subdir=STACK_SUBDIR,
                search_dirs=SEARCH_DIRS,
            ).parent
        return self._bin_dir

    def _binary(self, name: str) -> str:
        return str(self.bin_dir / name)

    def _tool_env(self) -> Mapping[str, str] | None:
        if self.config.stack_path is None:
            return None

        lib_dir = self.bin_dir.parent / "lib"
        if not lib_dir.is_dir():
            return None
        return {**os.environ, "LD_LIBRARY_PATH": str(lib_dir)}

    # -------------------
    # -- Cluster setup --
    # -------------------
    def is_initialized(self) -> bool:
        return (self.data_dir / self.MARKER_FILE).exists()

    def ensure_cluster(self) -> bool:
        """Run initdb unless the marker file shows it already ran. Returns True if it ran."""
        if self.is_initialized():
            log.debug("Cluster already initialised, skipping initdb", data_dir=str(self.data_dir))
            return False

        self._run_initdb()
        self._write_test_config()
        return True

    def _run_initdb(self) -> None:
        log.info("Initialising PostgreSQL data directory", data_dir=str(self.data_dir))
        result = run_tool(
            [
                self._binary("initdb"),
                "-D", str(self.data_dir),
                "-U", self.SUPERUSER,
                "-A", "trust",
                "-E", "UTF8",
                "--no-locale",
            ],
            env=self._tool_env(),
            timeout=120.0,
        )
        if result.returncode != 0:
            raise ServiceStartError(self.kind, f"initdb failed: {decode(result.stderr)}")

    def _write_test_config(self) -> None:
        config = TEST_CONFIG.format(
            host=self.host,
            port=self.port,
            socket_dir=self.data_dir.resolve(),
        )
        (self.data_dir / "postgresql.conf").write_text(config)

    # -------------------
    # -- Service hooks --
    # -------------------
    def _prepare(self) -> None:
        self.ensure_cluster()

    def _build_args(self) -> list[str]:
        # port and socket dir on the command line win over a reused postgresql.conf
        return [
            self._binary("postgres"),
            "-D", str(self.data_dir),
            "-p", str(self.port),
            "-h", self.host,
            "-k", str(self.data_dir.resolve()),
        ]

    def _spawn_env(self) -> Mapping[str, str] | None:
        return self._tool_env()

    def _log_file(self) -> Path | None:
        return self.data_dir / "postgres.log"

    def _native_ready_check(self) -> bool:
        result = run_tool(
            [self._binary("pg_isready"), "-h", self.host, "-p", str(self.port)],
            env=self._tool_env(),
            timeout=5.0,
        )
        return result.returncode == 0

    def wait_ready(self) -> None:
        try:
            super().wait_ready()
        except (ReadinessTimeoutError, ServiceStartError):
            self._log_server_output()
            raise

    def _after_ready(self) -> None:
        self.setup_test_database()
        if self.apply_migrations:
            self.run_migrations(self.migrations_dir)

    def _stop_process(self, process: Process) -> StopOutcome:
        self._dispose_engine()
        return super()._stop_process(process)

    # -------------------
    # -- Test database --
    # -------------------
    def setup_test_database(self) -> None:
        """Create the test role and database, tolerating leftovers from an earlier start."""
        log.info("Setting up test database", database=self.database, role=self.username)
        engine = sqlalchemy.create_engine(
            self._url(self.SUPERUSER, None, "postgres"),
            isolation_level="AUTOCOMMIT",
        )
        try:
            self._admin_execute(
                engine,
                f"CREATE ROLE {self.username} WITH LOGIN SUPERUSER PASSWORD '{self.password}'",
            )
            self._admin_execute(engine, f"CREATE DATABASE {self.database} OWNER {self.username}")
        finally:
            engine.dispose()

    @backoff.on_exception(backoff.expo, OperationalError, max_time=10, jitter=backoff.full_jitter)
    def _admin_execute(self, engine: Engine, statement: str) -> None:
        try:
            with engine.connect() as conn:
                conn.execute(text(statement))
        except OperationalError:
            raise
        except DBAPIError as e:
            if "already exists" in str(e.orig):
                log.debug("Object already exists, continuing", statement=statement.split(" WITH")[0])
                return
            raise CommandError("sql", str(e.orig).strip()) from e

    def create_database(self, name: str) -> None:
        url = self._url(self.username, self.password, name)
        if database_exists(url):
            log.debug("Database already exists", database=name)
            return
        try:
            create_database(url)
        except DBAPIError as e:
            if "already exists" not in str(e.orig):
                raise CommandError("create database", str(e.orig).strip()) from e
        log.info("Created database", database=name)

    # ----------------
    # -- Migrations --
    # ----------------
    def run_migrations(self, migrations_dir: Path | None) -> list[str]:
        """Apply ``*.sql`` files in lexical order, each in its own transaction.

        Already applied files (tracked by stem in a bookkeeping table) are skipped.
        """
        if migrations_dir is None or not migrations_dir.is_dir():
            log.warning("No migrations directory available, skipping migrations", migrations_dir=str(migrations_dir))
            return []

        with self.engine.begin() as conn:
            conn.execute(text(
                f"CREATE TABLE IF NOT EXISTS {MIGRATIONS_TABLE} ("
                "version TEXT PRIMARY KEY, applied_at TIMESTAMPTZ NOT NULL DEFAULT now())",
            ))
            done = {row[0] for row in conn.execute(text(f"SELECT version FROM {MIGRATIONS_TABLE}"))}

        applied: list[str] = []
        for path in sorted(migrations_dir.glob("*.sql")):
            version = path.stem
            if version in done:
                continue

            log.info("Applying migration", version=version)
            try:
                with self.engine.begin() as conn:
                    conn.exec_driver_sql(path.read_text(), execution_options={"no_parameters": True})
                    conn.execute(
                        text(f"INSERT INTO {MIGRATIONS_TABLE} (version) VALUES (:version)"),
                        {"version": version},
                    )
            except DBAPIError as e:
                raise CommandError(f"migration {path.name}", str(e.orig).strip()) from e
            applied.append(version)

        log.info("Migrations complete", applied=len(applied), skipped=len(done))
        return applied

    # -----------------
    # -- SQL helpers --
    # -----------------
    @property
    def engine(self) -> Engine:
        if self._engine is None:
            self._engine = sqlalchemy.create_engine(self.sqlalchemy_url(), pool_pre_ping=True)
        return self._engine

    def execute(self, sql: str, params: Mapping[str, Any] | None = None) -> int:
        """Run one statement in its own transaction and return the affected row count."""
        try:
            with self.engine.begin() as conn:
                return conn.execute(text(sql), dict(params or {})).rowcount
        except DBAPIError as e:
            raise CommandError("sql", str(e.orig).strip()) from e

    def fetch(self, sql: str, params: Mapping[str, Any] | None = None) -> list[tuple[Any, ...]]:
        try:
            with self.engine.connect() as conn:
                return [tuple(row) for row in conn.execute(text(sql), dict(params or {}))]
        except DBAPIError as e:
            raise CommandError("sql", str(e.orig).strip()) from e

    def query(self, sql: str) -> str:
        """Rows as text, one per line with ``|`` between columns."""
        rows = self.fetch(sql)
        return "\n".join("|".join("" if v is None else str(v) for v in row) for row in rows)

    def _dispose_engine(self) -> None:
        if self._engine is not None:
            self._engine.dispose()
            self._engine = None

    # -----------------
    # -- Descriptors --
    # -----------------
    def _url(self, username: str, password: str | None, database: str) -> URL:
        return URL.create(
            drivername="postgresql+psycopg2",
            username=username,
            password=password,
            host=self.host,
            port=self.port,
            database=database,
        )

    def sqlalchemy_url(self) -> URL:
        return self._url(self.username, self.password, self.database)

    def connection_url(self) -> str:
        return f"postgresql://{self.username}:{self.password}@{self.host}:{self.port}/{self.database}"

    def connection_descriptor(self) -> ConnectionDescriptor:
        return ConnectionDescriptor(
            kind=self.kind,
            url=self.connection_url(),
            extras={
                "database": self.database,
                "username": self.username,
                "password": self.password,
                "socket_dir": str(self.data_dir.resolve()),
            },
        )

    def _log_server_output(self) -> None:
        log_path = self.data_dir / "postgres.log"
        if log_path.exists():
            tail = log_path.read_text(errors="replace").splitlines()[-50:]
            log.error("PostgreSQL did not become ready", log_tail="\n".join(tail))
