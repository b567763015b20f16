import pytest
import requests

from stackharness.environment import TestEnvironment
from tests.utils.binaries import requires_minio, requires_postgres, requires_redis

pytestmark = [requires_postgres, requires_minio, requires_redis]


@pytest.mark.timeout(180)
@pytest.mark.stackharness_preset("full")
def test_full_stack_fixture(test_environment: TestEnvironment):
    """
    The plugin fixture brings up every service and exposes them to an application
    """
    env_vars = test_environment.as_env()
    assert set(env_vars) == {"DATABASE_URL", "MINIO_ENDPOINT", "MINIO_ACCESS_KEY", "MINIO_SECRET_KEY", "REDIS_URL"}

    assert test_environment.database is not None
    assert test_environment.database.query("SELECT 1") == "1"

    assert test_environment.cache is not None
    test_environment.cache.set("k", "v")
    assert test_environment.cache.get("k") == "v"

    live = requests.get(f"{env_vars['MINIO_ENDPOINT']}/minio/health/live", timeout=5)
    assert live.ok
