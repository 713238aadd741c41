import threading
import time
import logging
from typing import Callable, Protocol

from .metrics import limiter_wait_seconds

logger = logging.getLogger(__name__)


class RateLimiter(Protocol):
    def acquire(self) -> None:
        """Block until a token is available and consume it."""
        ...


class IntervalLimiter:
    """Emits one token every ``interval`` seconds, like a ticker.

    At most one token is buffered: ticks nobody consumed are dropped, so an
    idle limiter never allows a burst. The first token is available one
    interval after construction. Waiters are served one at a time and a
    blocked ``acquire`` cannot be interrupted.
    """

    def __init__(
        self,
        interval: float,
        name: str = "github",
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if interval <= 0:
            raise ValueError("interval must be positive")
        self.interval = interval
        self.name = name
        self._clock = clock
        self._sleep = sleep
        self._start = clock()
        self._last_tick = 0
        self._lock = threading.Lock()

    def acquire(self) -> None:
        with self._lock:
            now = self._clock()
            current = int((now - self._start) // self.interval)
            if current > self._last_tick:
                self._last_tick = current
                limiter_wait_seconds.labels(limiter=self.name).observe(0)
                return
            next_tick = self._last_tick + 1
            wait = self._start + next_tick * self.interval - now
            if logger.isEnabledFor(logging.DEBUG):
                logger.debug("limiter.wait: limiter=%s wait_ms=%d", self.name, int(wait * 1000))
            self._sleep(wait)
            self._last_tick = next_tick
            limiter_wait_seconds.labels(limiter=self.name).observe(wait)


class UnlimitedLimiter:
    """A limiter that never blocks; counts acquisitions."""

    def __init__(self, name: str = "unlimited"):
        self.name = name
        self.acquired = 0
        self._lock = threading.Lock()

    def acquire(self) -> None:
        with self._lock:
            self.acquired += 1
