import time
from dataclasses import dataclass, field
from threading import Lock

from fastapi import HTTPException


@dataclass
class _AttemptState:
    failures: list[float] = field(default_factory=list)
    lock_until: float = 0.0


class FailedAttemptLimiter:
    """Locks a key out after too many failures inside a sliding window.

    Used for password logins and for drop-off/pickup code checks, where a
    six digit code would otherwise be cheap to brute force.
    """

    def __init__(self, *, max_attempts: int, window_seconds: int, lock_seconds: int):
        self.max_attempts = max_attempts
        self.window_seconds = window_seconds
        self.lock_seconds = lock_seconds
        self._states: dict[str, _AttemptState] = {}
        self._lock = Lock()

    def check(self, key: str) -> int:
        """Returns retry-after seconds when blocked, otherwise 0."""
        now = time.time()
        with self._lock:
            state = self._states.get(key)
            if not state:
                return 0
            self._prune(state, now)
            if state.lock_until > now:
                return int(state.lock_until - now) + 1
            if not state.failures:
                del self._states[key]
            return 0

    def ensure_allowed(self, key: str, *, detail: str) -> None:
        retry_after = self.check(key)
        if retry_after:
            raise HTTPException(
                status_code=429,
                detail=detail,
                headers={"Retry-After": str(retry_after)},
            )

    def register_failure(self, key: str) -> None:
        now = time.time()
        with self._lock:
            self._sweep(now)
            state = self._states.setdefault(key, _AttemptState())
            self._prune(state, now)
            state.failures.append(now)
            if len(state.failures) >= self.max_attempts:
                state.lock_until = now + self.lock_seconds

    def register_success(self, key: str) -> None:
        with self._lock:
            self._states.pop(key, None)

    def clear(self) -> None:
        with self._lock:
            self._states.clear()

    def _prune(self, state: _AttemptState, now: float) -> None:
        cutoff = now - self.window_seconds
        state.failures = [ts for ts in state.failures if ts >= cutoff]

    def _sweep(self, now: float) -> None:
        # Keys whose failures aged out and whose lock expired carry no state.
        for key in list(self._states):
            state = self._states[key]
            self._prune(state, now)
            if not state.failures and state.lock_until <= now:
                del self._states[key]

    def tracked_keys(self) -> int:
        with self._lock:
            return len(self._states)
