import pytest

from tests.utils.polling import TIMEOUT_SCALE_ENV, scaled_timeout, wait_for_event


def test_scaled_timeout(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.delenv(TIMEOUT_SCALE_ENV, raising=False)
    assert scaled_timeout(2.0) == 2.0

    monkeypatch.setenv(TIMEOUT_SCALE_ENV, "3")
    assert scaled_timeout(2.0) == 6.0


def test_wait_for_event_gives_up(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.delenv(TIMEOUT_SCALE_ENV, raising=False)
    assert not wait_for_event(lambda: False, interval=0.01, timeout=0.05)


def test_wait_for_event_checks_at_deadline(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.delenv(TIMEOUT_SCALE_ENV, raising=False)
    calls = []

    def pred() -> bool:
        calls.append(1)
        return len(calls) > 1

    # a zero timeout skips the loop but still asks once
    assert wait_for_event(pred, interval=0.01, timeout=0.0) is False
    assert wait_for_event(pred, interval=0.01, timeout=0.0) is True
