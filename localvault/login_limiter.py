"""
Login Rate Limiter
Counts failed unlock attempts and enforces a persisted lockout deadline.
"""

import math
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from localvault.storage_backend import StorageBackend

LOCKOUT_KEY = "vault_lockout"
ATTEMPTS_KEY = "vault_login_attempts"


@dataclass(frozen=True)
class LockoutStatus:
    locked: bool
    remaining_seconds: int = 0


class LoginRateLimiter:

    DEFAULT_MAX_ATTEMPTS = 5
    DEFAULT_LOCKOUT_SECONDS = 30

    def __init__(
            self,
            backend: StorageBackend,
            config: Optional[Dict[str, Any]] = None,
            clock: Callable[[], float] = time.time
    ):
        """
        Initialize the rate limiter

        Args:
            backend: key/value store holding the lockout deadline (epoch ms)
            config: optional dict with ``max_attempts`` and ``lockout_seconds``
            clock: returns the current Unix time in seconds

        Both the failure counter and the deadline are persisted, so a restart
        during a lockout still honors the remaining wait.
        """
        self.backend = backend
        self.clock = clock
        self.config = dict(config) if config is not None else {}

        for key in ("max_attempts", "lockout_seconds"):
            value = self.config.get(key)
            if value is not None and (not isinstance(value, int) or isinstance(value, bool)):
                raise ValueError("LoginRateLimiter config values must be integers")

        self.max_attempts = int(self.config.get("max_attempts", self.DEFAULT_MAX_ATTEMPTS))
        self.lockout_seconds = int(self.config.get("lockout_seconds", self.DEFAULT_LOCKOUT_SECONDS))

        if self.max_attempts <= 0 or self.lockout_seconds <= 0:
            raise ValueError("LoginRateLimiter config values must be positive")

        self._lock = threading.Lock()

    def _now_ms(self) -> int:
        return int(self.clock() * 1000)

    def _read_int(self, key: str) -> Optional[int]:
        raw = self.backend.get(key)
        if raw is None:
            return None
        try:
            return int(raw)
        except ValueError:
            # Unreadable value: treat as absent and clear it
            self.backend.delete(key)
            return None

    @property
    def attempts(self) -> int:
        return self._read_int(ATTEMPTS_KEY) or 0

    def remaining_attempts(self) -> int:
        return max(0, self.max_attempts - self.attempts)

    def record_failed_attempt(self) -> LockoutStatus:
        """
        Count one failed unlock.

        On the ``max_attempts``-th consecutive failure a deadline
        ``lockout_seconds`` in the future is persisted and the counter resets.
        """
        with self._lock:
            attempts = self.attempts + 1
            if attempts >= self.max_attempts:
                deadline = self._now_ms() + self.lockout_seconds * 1000
                self.backend.set(LOCKOUT_KEY, str(deadline))
                self.backend.delete(ATTEMPTS_KEY)
                return LockoutStatus(True, self.lockout_seconds)
            self.backend.set(ATTEMPTS_KEY, str(attempts))
            return LockoutStatus(False, 0)

    def is_locked_out(self) -> LockoutStatus:
        """
        Check the persisted deadline. Expired deadlines are cleared.
        """
        with self._lock:
            deadline = self._read_int(LOCKOUT_KEY)
            if deadline is None:
                return LockoutStatus(False, 0)
            remaining_ms = deadline - self._now_ms()
            if remaining_ms <= 0:
                self.backend.delete(LOCKOUT_KEY)
                return LockoutStatus(False, 0)
            return LockoutStatus(True, int(math.ceil(remaining_ms / 1000.0)))

    def reset_attempts(self) -> None:
        """Clear the counter and any deadline after a successful unlock."""
        with self._lock:
            self.backend.delete(ATTEMPTS_KEY)
            self.backend.delete(LOCKOUT_KEY)

    def get_status(self) -> dict:
        status = self.is_locked_out()
        return {
            "locked": status.locked,
            "remaining_seconds": status.remaining_seconds,
            "attempts": self.attempts,
            "remaining_attempts": self.remaining_attempts(),
        }
