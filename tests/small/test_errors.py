import structlog

from stackharness.errors import (
    BinaryNotFoundError,
    CommandError,
    ReadinessTimeoutError,
    ServiceFailedError,
    StackHarnessError,
    fail_gracefully,
)


def test_fail_gracefully_wraps_result():
    @fail_gracefully()
    def ok() -> int:
        return 3

    assert ok().unwrap() == 3


def test_fail_gracefully_suppresses_and_logs():
    """
    Exceptions are logged with the operation name and turned into an empty Maybe
    """
    @fail_gracefully()
    def boom() -> int:
        raise RuntimeError("kaput")

    with structlog.testing.capture_logs() as logs:
        result = boom()

    assert result.is_none()
    assert result.or_else(-1) == -1
    assert logs[0]["event"] == "Suppressed error"
    assert logs[0]["operation"] == "boom"
    assert logs[0]["error"] == "kaput"


def test_error_messages_name_the_subject():
    assert str(BinaryNotFoundError("minio", "install it")) == "minio not found. install it"
    assert str(ReadinessTimeoutError("database", 3.04)) == "database did not become ready within 3.0s"
    assert "cache" in str(ServiceFailedError("cache"))
    assert str(CommandError("redis-cli GET", "NOAUTH")) == "redis-cli GET failed: NOAUTH"


def test_errors_share_base_class():
    for error in (BinaryNotFoundError("x"), CommandError("c", "d"), ServiceFailedError("s")):
        assert isinstance(error, StackHarnessError)
