"""Skip conditions for tests that run the real servers."""

import os

import pytest

from stackharness.services import cache, database, object_store
from stackharness.settings import load_settings
from stackharness.utils.executable import find_optional_binary

_STACK_PATH = load_settings().stack_path


def _missing(name: str, subdir: str, search_dirs) -> bool:
    return find_optional_binary(name, _STACK_PATH, subdir, search_dirs) is None


# postgres refuses to start as root
requires_postgres = pytest.mark.skipif(
    _missing("postgres", database.STACK_SUBDIR, database.SEARCH_DIRS)
    or _missing("initdb", database.STACK_SUBDIR, database.SEARCH_DIRS)
    or os.geteuid() == 0,
    reason="PostgreSQL binaries not available, or running as root",
)

requires_minio = pytest.mark.skipif(
    _missing("minio", "bin/drive", object_store.MINIO_SEARCH_DIRS),
    reason="minio binary not available",
)

requires_redis = pytest.mark.skipif(
    _missing("redis-server", cache.STACK_SUBDIR, cache.SEARCH_DIRS)
    or _missing("redis-cli", cache.STACK_SUBDIR, cache.SEARCH_DIRS),
    reason="redis binaries not available",
)
