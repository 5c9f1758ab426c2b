"""Sliding-window rate limiter for sandbox command execution.

Keyed per ticket and command hash. In-memory only; windows reset on process restart.
"""

from __future__ import annotations

import threading
import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field

from patchpilot.constants import RATE_LIMIT_ATTEMPTS, RATE_LIMIT_DECAY_SECONDS
from patchpilot.utils.hashing import command_digest

Clock = Callable[[], float]


def rate_limit_key(ticket_id: str, command: str) -> str:
    """Build the limiter key for one ticket/command pair."""
    return f"runner:rate_limit:{ticket_id}:{command_digest(command)}"


@dataclass
class SlidingWindowRateLimiter:
    """Count attempts per key within the trailing ``decay_seconds`` window.

    Args:
        max_attempts: Attempts admitted per window before the key is blocked.
        decay_seconds: Window length.
        clock: Monotonic time source; injectable for tests.
    """

    max_attempts: int = RATE_LIMIT_ATTEMPTS
    decay_seconds: float = RATE_LIMIT_DECAY_SECONDS
    clock: Clock = time.monotonic
    _windows: dict[str, deque[float]] = field(default_factory=dict, repr=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)
    _horizon: float = field(default=0.0, init=False, repr=False)
    _last_sweep: float = field(default=float("-inf"), init=False, repr=False)

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.decay_seconds <= 0:
            raise ValueError("decay_seconds must be > 0")

    def is_limited(
        self,
        key: str,
        *,
        max_attempts: int | None = None,
        decay_seconds: float | None = None,
    ) -> bool:
        """Return True (blocked) once ``max_attempts`` attempts fall inside the window.

        Admitted attempts are recorded; blocked attempts are not.
        """
        limit = self.max_attempts if max_attempts is None else max_attempts
        window = self.decay_seconds if decay_seconds is None else decay_seconds
        now = self.clock()
        with self._lock:
            self._prune(now, window)
            attempts = self._windows.setdefault(key, deque())
            while attempts and now - attempts[0] >= window:
                attempts.popleft()
            if len(attempts) >= limit:
                return True
            attempts.append(now)
            return False

    def attempts(self, key: str) -> int:
        now = self.clock()
        with self._lock:
            attempts = self._windows.get(key)
            if not attempts:
                return 0
            return sum(1 for stamp in attempts if now - stamp < self.decay_seconds)

    def reset(self, key: str | None = None) -> None:
        with self._lock:
            if key is None:
                self._windows.clear()
            else:
                self._windows.pop(key, None)

    @property
    def tracked_keys(self) -> int:
        with self._lock:
            return len(self._windows)

    def _prune(self, now: float, window: float) -> None:
        # Caller holds the lock. A full sweep runs at most once per horizon.
        self._horizon = max(self._horizon, window)
        if now - self._last_sweep < self._horizon:
            return
        self._last_sweep = now
        stale = [
            key
            for key, attempts in self._windows.items()
            if not attempts or now - attempts[-1] >= self._horizon
        ]
        for key in stale:
            del self._windows[key]


__all__ = ["Clock", "SlidingWindowRateLimiter", "rate_limit_key"]
