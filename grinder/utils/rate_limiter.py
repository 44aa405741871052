"""Minimum-interval rate limiter with an optional growing delay."""

from __future__ import annotations

import logging
import time
from typing import Callable

logger = logging.getLogger(__name__)


class RateLimiter:
    """Space out calls to a rate-sensitive endpoint.

    ``wait()`` blocks until ``min_interval`` seconds have passed since the
    previous call. With ``increment`` > 0 the interval grows by that amount
    after every call, which is how redirect decoding backs off over a run.
    """

    def __init__(
        self,
        min_interval: float = 0.0,
        increment: float = 0.0,
        name: str = "",
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.min_interval = max(0.0, float(min_interval or 0.0))
        self.increment = max(0.0, float(increment or 0.0))
        self.name = name
        self._clock = clock
        self._sleep = sleep
        self._last_call: float | None = None
        self._current_interval = self.min_interval
        self.calls = 0

    @property
    def interval(self) -> float:
        return self._current_interval

    def remaining(self) -> float:
        """Seconds until the next call may go out."""
        if self._last_call is None:
            return 0.0
        elapsed = self._clock() - self._last_call
        return max(0.0, self._current_interval - elapsed)

    def ready(self) -> bool:
        return self.remaining() <= 0

    def wait(self) -> float:
        """Sleep as needed, then record the call. Returns seconds slept."""
        delay = self.remaining()
        if delay > 0:
            logger.debug(f"Rate limiter {self.name or 'default'} sleeping {delay:.2f}s")
            self._sleep(delay)
        self._mark()
        return delay

    def _mark(self) -> None:
        if self._last_call is not None:
            self._current_interval += self.increment
        self._last_call = self._clock()
        self.calls += 1

    def bump(self, seconds: float) -> None:
        """Push the next allowed call at least ``seconds`` into the future."""
        if seconds <= 0:
            return
        now = self._clock()
        self._last_call = max(self._last_call or now, now + seconds - self._current_interval)
