"""Bucket and object operations against the MinIO S3 surface.

Two interchangeable clients: :class:`McObjectClient` drives the ``mc`` binary
and :class:`S3ObjectClient` sends signed requests to the path-style S3 API. Both
treat "bucket already exists" on create and "not found" on delete as success.
Deleting a bucket that still holds objects fails with both. An unreachable
server is an error, never a missing bucket.
"""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Protocol
from urllib.parse import quote, urlsplit

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from stackharness.errors import CommandError
from stackharness.logging_config import get_logger
from stackharness.utils.process import decode, run_tool

log = get_logger(__name__)

MC_ALIAS = "stackharness"
NOT_FOUND_MARKERS = ("does not exist", "NoSuchBucket", "NoSuchKey", "not found")
NOT_FOUND_CODES = ("404", "NoSuchBucket", "NoSuchKey")
ALREADY_EXISTS_CODES = ("BucketAlreadyOwnedByYou", "BucketAlreadyExists")


class ObjectClient(Protocol):
    def create_bucket(self, bucket: str) -> None: ...

    def delete_bucket(self, bucket: str) -> None: ...

    def bucket_exists(self, bucket: str) -> bool: ...

    def put_object(self, bucket: str, key: str, data: bytes) -> None: ...

    def get_object(self, bucket: str, key: str) -> bytes: ...

    def delete_object(self, bucket: str, key: str) -> None: ...

    def list_objects(self, bucket: str, prefix: str = "") -> list[str]: ...


class S3ObjectClient:
    """SigV4-signed requests against the path-style S3 API."""

    def __init__(self, endpoint: str, access_key: str, secret_key: str, region: str = "us-east-1"):
        self.endpoint = endpoint.rstrip("/")
        self._s3 = boto3.client(
            "s3",
            endpoint_url=self.endpoint,
            aws_access_key_id=access_key,
            aws_secret_access_key=secret_key,
            region_name=region,
            config=Config(
                signature_version="s3v4",
                s3={"addressing_style": "path"},
                retries={"max_attempts": 2},
            ),
        )


    @staticmethod
    def _error_code(e: ClientError) -> str:
        return str(e.response.get("Error", {}).get("Code", ""))


    def _fail(self, operation: str, e: ClientError | BotoCoreError) -> CommandError:
        return CommandError(f"s3 {operation}", str(e))


    def create_bucket(self, bucket: str) -> None:
        try:
            self._s3.create_bucket(Bucket=bucket)
        except ClientError as e:
            if self._error_code(e) in ALREADY_EXISTS_CODES:
                log.debug("Bucket already exists", bucket=bucket)
                return
            raise self._fail("create_bucket", e) from e
        except BotoCoreError as e:
            raise self._fail("create_bucket", e) from e


    def delete_bucket(self, bucket: str) -> None:
        try:
            self._s3.delete_bucket(Bucket=bucket)
        except ClientError as e:
            if self._error_code(e) in NOT_FOUND_CODES:
                return
            raise self._fail("delete_bucket", e) from e
        except BotoCoreError as e:
            raise self._fail("delete_bucket", e) from e


    def bucket_exists(self, bucket: str) -> bool:
        try:
            self._s3.head_bucket(Bucket=bucket)
        except ClientError as e:
            if self._error_code(e) in NOT_FOUND_CODES:
                return False
            raise self._fail("head_bucket", e) from e
        except BotoCoreError as e:
            raise self._fail("head_bucket", e) from e
        return True


    def put_object(self, bucket: str, key: str, data: bytes) -> None:
        try:
            self._s3.put_object(Bucket=bucket, Key=key, Body=data)
        except (ClientError, BotoCoreError) as e:
            raise self._fail("put_object", e) from e


    def get_object(self, bucket: str, key: str) -> bytes:
        try:
            response = self._s3.get_object(Bucket=bucket, Key=key)
            return response["Body"].read()
        except (ClientError, BotoCoreError) as e:
            raise self._fail("get_object", e) from e


    def delete_object(self, bucket: str, key: str) -> None:
        # S3 answers 204 for missing keys as well
        try:
            self._s3.delete_object(Bucket=bucket, Key=key)
        except ClientError as e:
            if self._error_code(e) in NOT_FOUND_CODES:
                return
            raise self._fail("delete_object", e) from e
        except BotoCoreError as e:
            raise self._fail("delete_object", e) from e


    def list_objects(self, bucket: str, prefix: str = "") -> list[str]:
        keys: list[str] = []
        try:
            for page in self._s3.get_paginator("list_objects_v2").paginate(Bucket=bucket, Prefix=prefix):
                keys.extend(item["Key"] for item in page.get("Contents", []))
        except (ClientError, BotoCoreError) as e:
            raise self._fail("list_objects", e) from e
        return keys


class McObjectClient:
    def __init__(self, mc_path: Path, endpoint: str, access_key: str, secret_key: str, timeout: float = 30.0):
        self.mc_path = mc_path
        self.timeout = timeout

        # MC_HOST_<alias> configures the alias without touching ~/.mc
        parts = urlsplit(endpoint)
        host_url = f"{parts.scheme}://{quote(access_key, safe='')}:{quote(secret_key, safe='')}@{parts.netloc}"
        self._env = {**os.environ, f"MC_HOST_{MC_ALIAS}": host_url}


    def _target(self, bucket: str, key: str | None = None) -> str:
        if key is None:
            return f"{MC_ALIAS}/{bucket}"
        return f"{MC_ALIAS}/{bucket}/{key}"


    def _run(self, *args: str, input: bytes | None = None):
        return run_tool([str(self.mc_path), *args], env=self._env, timeout=self.timeout, input=input)


    def _fail(self, operation: str, result) -> CommandError:
        detail = decode(result.stderr) or decode(result.stdout)
        return CommandError(f"mc {operation}", detail)


    @staticmethod
    def _is_not_found(result) -> bool:
        output = decode(result.stderr) + decode(result.stdout)
        return any(marker in output for marker in NOT_FOUND_MARKERS)


    def create_bucket(self, bucket: str) -> None:
        result = self._run("mb", "--ignore-existing", self._target(bucket))
        if result.returncode == 0:
            return
        if "already" in decode(result.stderr) + decode(result.stdout):
            return
        raise self._fail("mb", result)


    def delete_bucket(self, bucket: str) -> None:
        # no --force: a non-empty bucket is refused
        result = self._run("rb", self._target(bucket))
        if result.returncode == 0 or self._is_not_found(result):
            return
        raise self._fail("rb", result)


    def bucket_exists(self, bucket: str) -> bool:
        result = self._run("stat", self._target(bucket))
        if result.returncode == 0:
            return True
        if self._is_not_found(result):
            return False
        raise self._fail("stat", result)


    def put_object(self, bucket: str, key: str, data: bytes) -> None:
        result = self._run("pipe", self._target(bucket, key), input=data)
        if result.returncode != 0:
            raise self._fail("pipe", result)


    def get_object(self, bucket: str, key: str) -> bytes:
        result = self._run("cat", self._target(bucket, key))
        if result.returncode != 0:
            raise self._fail("cat", result)
        return result.stdout


    def delete_object(self, bucket: str, key: str) -> None:
        result = self._run("rm", self._target(bucket, key))
        if result.returncode == 0 or self._is_not_found(result):
            return
        raise self._fail("rm", result)


    def list_objects(self, bucket: str, prefix: str = "") -> list[str]:
        result = self._run("ls", "--json", "--recursive", self._target(bucket))
        if result.returncode != 0:
            raise self._fail("ls", result)

        keys: list[str] = []
        for line in decode(result.stdout).splitlines():
            if not line.strip():
                continue
            entry = json.loads(line)
            if entry.get("type") == "file" and entry.get("key", "").startswith(prefix):
                keys.append(entry["key"])
        return keys
