from __future__ import annotations

import os
from collections.abc import Mapping
from pathlib import Path
from typing import Literal

from stackharness.errors import ReadinessTimeoutError
from stackharness.logging_config import get_logger
from stackharness.service.protocols import ConnectionDescriptor, ServiceKind
from stackharness.service.service import Service, ServiceConfig
from stackharness.services.object_clients import McObjectClient, ObjectClient, S3ObjectClient
from stackharness.utils.executable import find_binary, find_optional_binary
from stackharness.utils.readiness import check_http_health, wait_until_ready

log = get_logger(__name__)

MINIO_SEARCH_DIRS = ("/usr/local/bin", "/usr/bin", "/opt/minio", "/opt/homebrew/bin")
MC_SEARCH_DIRS = ("/usr/local/bin", "/usr/bin", "/opt/homebrew/bin")
LIVENESS_PATH = "/minio/health/live"
LIVENESS_ATTEMPTS = 30

ClientPreference = Literal["auto", "mc", "http"]


class ObjectStoreService(Service):
    kind = ServiceKind.OBJECT_STORE
    data_subdir = "minio"

    DEFAULT_ACCESS_KEY = "minioadmin"
    DEFAULT_SECRET_KEY = "minioadmin"
    REGION = "us-east-1"

    def __init__(
        self,
        port: int,
        console_port: int,
        work_dir: Path,
        config: ServiceConfig | None = None,
        access_key: str = DEFAULT_ACCESS_KEY,
        secret_key: str = DEFAULT_SECRET_KEY,
        client: ClientPreference = "auto",
    ):
        super().__init__(port, work_dir, config)
        self.console_port = console_port
        self.access_key = access_key
        self.secret_key = secret_key
        self.client_preference = client

        self._client: ObjectClient | None = None

    # -------------------
    # -- Service hooks --
    # -------------------
    def _build_args(self) -> list[str]:
        minio = find_binary(
            "minio",
            stack_path=self.config.stack_path,
            stack_subdir="bin/drive",
            search_dirs=MINIO_SEARCH_DIRS,
        )
        return [
            str(minio),
            "server",
            str(self.data_dir),
            "--address", f"{self.host}:{self.port}",
            "--console-address", f"{self.host}:{self.console_port}",
        ]

    def _spawn_env(self) -> Mapping[str, str] | None:
        return {
            **os.environ,
            "MINIO_ROOT_USER": self.access_key,
            "MINIO_ROOT_PASSWORD": self.secret_key,
        }

    def wait_ready(self) -> None:
        super().wait_ready()

        # older builds lack the liveness endpoint; TCP readiness is then enough
        try:
            wait_until_ready(
                lambda: check_http_health(f"{self.endpoint()}{LIVENESS_PATH}"),
                timeout=LIVENESS_ATTEMPTS * self.config.poll_interval,
                poll_interval=self.config.poll_interval,
                name=f"{self.kind} liveness",
            )
        except ReadinessTimeoutError:
            log.warning(
                "Object store liveness endpoint unavailable, relying on TCP probe",
                endpoint=self.endpoint(),
            )

    # ------------
    # -- Client --
    # ------------
    @property
    def client(self) -> ObjectClient:
        if self._client is None:
            self._client = self._make_client()
        return self._client

    def _make_client(self) -> ObjectClient:
        if self.client_preference != "http":
            mc = find_optional_binary("mc", stack_path=self.config.stack_path, stack_subdir="bin/drive",
                                      search_dirs=MC_SEARCH_DIRS)
            if mc is not None:
                log.debug("Using mc client for object operations", mc=str(mc))
                return McObjectClient(mc, self.endpoint(), self.access_key, self.secret_key)

            if self.client_preference == "mc":
                # explicit request: surface the missing binary
                find_binary("mc", search_dirs=MC_SEARCH_DIRS)

        log.debug("Using S3 HTTP client for object operations", endpoint=self.endpoint())
        return S3ObjectClient(self.endpoint(), self.access_key, self.secret_key, region=self.REGION)

    # ----------------
    # -- Operations --
    # ----------------
    def create_bucket(self, name: str) -> None:
        log.info("Creating bucket", bucket=name)
        self.client.create_bucket(name)

    def delete_bucket(self, name: str) -> None:
        log.info("Deleting bucket", bucket=name)
        self.client.delete_bucket(name)

    def bucket_exists(self, name: str) -> bool:
        return self.client.bucket_exists(name)

    def put_object(self, bucket: str, key: str, data: bytes) -> None:
        log.debug("Putting object", bucket=bucket, key=key, size=len(data))
        self.client.put_object(bucket, key, data)

    def get_object(self, bucket: str, key: str) -> bytes:
        log.debug("Getting object", bucket=bucket, key=key)
        return self.client.get_object(bucket, key)

    def delete_object(self, bucket: str, key: str) -> None:
        log.debug("Deleting object", bucket=bucket, key=key)
        self.client.delete_object(bucket, key)

    def list_objects(self, bucket: str, prefix: str = "") -> list[str]:
        return self.client.list_objects(bucket, prefix)

    # -----------------
    # -- Descriptors --
    # -----------------
    def endpoint(self) -> str:
        return f"http://{self.host}:{self.port}"

    def console_url(self) -> str:
        return f"http://{self.host}:{self.console_port}"

    def credentials(self) -> tuple[str, str]:
        return self.access_key, self.secret_key

    def s3_config(self) -> dict[str, str]:
        return {
            "endpoint_url": self.endpoint(),
            "access_key_id": self.access_key,
            "secret_access_key": self.secret_key,
            "region": self.REGION,
            "force_path_style": "true",
        }

    def connection_url(self) -> str:
        return self.endpoint()

    def connection_descriptor(self) -> ConnectionDescriptor:
        return ConnectionDescriptor(
            kind=self.kind,
            url=self.endpoint(),
            extras={
                "access_key": self.access_key,
                "secret_key": self.secret_key,
                "console_url": self.console_url(),
                "region": self.REGION,
            },
        )
