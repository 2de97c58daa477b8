import pytest
from fastapi import HTTPException

from app.core import rate_limit
from app.core.rate_limit import FailedAttemptLimiter


class _Clock:
    def __init__(self, now: float = 1_000.0):
        self.now = now

    def time(self) -> float:
        return self.now


@pytest.fixture
def clock(monkeypatch):
    fake = _Clock()
    monkeypatch.setattr(rate_limit, "time", fake)
    return fake


def test_lockout_and_retry_after(clock):
    limiter = FailedAttemptLimiter(max_attempts=3, window_seconds=60, lock_seconds=120)
    for _ in range(3):
        limiter.register_failure("agent-1:order-1")

    with pytest.raises(HTTPException) as exc_info:
        limiter.ensure_allowed("agent-1:order-1", detail="Locked")
    assert exc_info.value.status_code == 429
    assert exc_info.value.headers == {"Retry-After": "121"}
    assert limiter.check("agent-2:order-1") == 0


def test_expired_keys_are_dropped(clock):
    limiter = FailedAttemptLimiter(max_attempts=3, window_seconds=60, lock_seconds=120)
    limiter.register_failure("agent-1:order-1")
    for _ in range(3):
        limiter.register_failure("agent-1:order-2")
    assert limiter.tracked_keys() == 2

    clock.now += 61
    assert limiter.check("agent-1:order-1") == 0
    assert limiter.tracked_keys() == 1

    clock.now += 60
    limiter.register_failure("agent-9:order-3")
    assert limiter.tracked_keys() == 1
    assert limiter.check("agent-1:order-2") == 0
