"""
auth/throttle.py -- Per-identifier failed-login throttle.

Fixed window per identifier: the first attempt opens a window of
``window_seconds``. Every attempt is reserved before the password is checked
and only a successful login clears the count. Once ``max_failures`` attempts
have been counted inside the window, every further attempt for the identifier
is refused with Throttled -- even with the correct password -- until the
window elapses.

Counters are ephemeral and in-memory. Each identifier has its own lock so
attempts against unrelated accounts never contend; the small registry lock
is held only to create or drop per-identifier entries.

This complements the per-IP slowapi limit on POST /login (api/limiter.py):
the IP limit caps request volume, this caps guesses against one account.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field

from auth.errors import Throttled

logger = logging.getLogger("rolegate.auth")


@dataclass
class FailedAttemptCounter:
    count: int = 0
    window_start: float = 0.0
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)


class FailedAttemptThrottle:
    def __init__(
        self,
        max_failures: int = 5,
        window_seconds: float = 300,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if max_failures < 1:
            raise ValueError("max_failures must be at least 1")
        self.max_failures = max_failures
        self.window_seconds = window_seconds
        self._clock = clock
        self._counters: dict[str, FailedAttemptCounter] = {}
        self._registry_lock = threading.Lock()

    def _counter(self, identifier: str) -> FailedAttemptCounter:
        counter = self._counters.get(identifier)
        if counter is None:
            with self._registry_lock:
                counter = self._counters.setdefault(identifier, FailedAttemptCounter())
        return counter

    def _window_open(self, counter: FailedAttemptCounter, now: float) -> bool:
        return counter.count > 0 and now - counter.window_start < self.window_seconds

    def acquire(self, identifier: str) -> int:
        """Reserve one login attempt for ``identifier`` or raise Throttled.

        The attempt is counted as a failure up front, under the identifier's
        lock, so concurrent requests cannot all slip past the threshold
        before any of them has finished checking its password. A successful
        login calls reset(); an attempt that never reached the password check
        calls refund(). Returns the attempts counted in the current window.
        """
        counter = self._counter(identifier)
        now = self._clock()
        with counter.lock:
            if not self._window_open(counter, now):
                counter.count = 0
                counter.window_start = now
            if counter.count >= self.max_failures:
                retry_after = counter.window_start + self.window_seconds - now
                raise Throttled(retry_after=int(retry_after) + 1)
            counter.count += 1
            count = counter.count
        if count == self.max_failures:
            logger.warning("Login throttle threshold reached for identifier=%s (%d attempts)", identifier, count)
        return count

    def refund(self, identifier: str) -> None:
        """Give back an attempt reserved by acquire() that was never decided."""
        counter = self._counters.get(identifier)
        if counter is None:
            return
        with counter.lock:
            if counter.count > 0:
                counter.count -= 1

    def reset(self, identifier: str) -> None:
        """Clear the count after a successful login. purge() drops the entry later."""
        counter = self._counters.get(identifier)
        if counter is None:
            return
        with counter.lock:
            counter.count = 0

    def failures(self, identifier: str) -> int:
        counter = self._counters.get(identifier)
        if counter is None or not self._window_open(counter, self._clock()):
            return 0
        return counter.count

    def locked_out_count(self) -> int:
        """Number of identifiers currently refused with Throttled."""
        now = self._clock()
        return sum(
            1
            for counter in list(self._counters.values())
            if self._window_open(counter, now) and counter.count >= self.max_failures
        )

    def purge(self) -> int:
        """Drop counters whose window has elapsed. Returns the number removed."""
        now = self._clock()
        with self._registry_lock:
            stale = [key for key, counter in self._counters.items() if not self._window_open(counter, now)]
            for key in stale:
                del self._counters[key]
        return len(stale)
