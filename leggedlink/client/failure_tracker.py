"""
Failure detection feeding the connection state machine.

FailureTracker counts consecutive low-level transport failures shared by the
receive and send tasks. LivenessWatchdog measures time since the last server
heartbeat and raises LivenessTimeout once the response window is exceeded.
"""

import logging
import threading
import time

from ..errors import LivenessTimeout

logger = logging.getLogger(__name__)


class FailureTracker:
    """Consecutive-failure counter with a fixed budget."""

    def __init__(self, max_consecutive: int = 3) -> None:
        if max_consecutive < 1:
            raise ValueError("max_consecutive must be >= 1")
        self.max_consecutive = max_consecutive
        self._count = 0
        self._lock = threading.Lock()

    @property
    def count(self) -> int:
        with self._lock:
            return self._count

    def record_failure(self) -> bool:
        """
        Count one failure.

        Returns:
            True when the budget is exhausted (count >= max_consecutive).
        """
        with self._lock:
            self._count += 1
            exhausted = self._count >= self.max_consecutive
            count = self._count
        if exhausted:
            logger.error("%d consecutive transport failures, link considered lost", count)
        return exhausted

    def record_success(self) -> None:
        with self._lock:
            self._count = 0

    def reset(self) -> None:
        self.record_success()


class LivenessWatchdog:
    """
    Time-since-last-heartbeat watchdog.

    Unarmed until the first feed(); an unarmed watchdog never fires so a link
    still being verified is not declared lost.
    """

    def __init__(self, timeout_s: float = 2.5) -> None:
        self.timeout_s = timeout_s
        self._last_feed = 0.0
        self._lock = threading.Lock()

    def feed(self, now: float | None = None) -> None:
        with self._lock:
            self._last_feed = time.monotonic() if now is None else now

    def reset(self) -> None:
        with self._lock:
            self._last_feed = 0.0

    @property
    def armed(self) -> bool:
        with self._lock:
            return self._last_feed > 0

    def elapsed_s(self, now: float | None = None) -> float:
        with self._lock:
            last = self._last_feed
        if last <= 0:
            return 0.0
        return (time.monotonic() if now is None else now) - last

    def check(self, now: float | None = None) -> None:
        """
        Raises:
            LivenessTimeout: If armed and the last feed is older than timeout_s.
        """
        elapsed = self.elapsed_s(now)
        if elapsed > self.timeout_s:
            raise LivenessTimeout(elapsed, self.timeout_s)
