"""
Bounded FIFO with drop-oldest backpressure.

Producers never block: when the queue is full the oldest item is evicted to
make room, favouring the most recent control commands over a stale backlog.
Consumers block on get() for at most the given timeout.
"""

import threading
from collections import deque
from typing import Generic, TypeVar

T = TypeVar("T")


class DropOldestQueue(Generic[T]):
    """Thread-safe bounded queue; put() evicts the oldest item instead of blocking."""

    def __init__(self, capacity: int) -> None:
        if capacity < 1:
            raise ValueError("capacity must be >= 1")
        self.capacity = capacity
        self._items: deque[T] = deque()
        self._cond = threading.Condition(threading.Lock())
        self.dropped = 0

    def put(self, item: T) -> bool:
        """
        Append item, evicting the oldest entry if full.

        Returns:
            True if nothing was evicted, False if the oldest item was dropped.
        """
        with self._cond:
            evicted = False
            if len(self._items) >= self.capacity:
                self._items.popleft()
                self.dropped += 1
                evicted = True
            self._items.append(item)
            self._cond.notify()
            return not evicted

    def offer(self, item: T) -> bool:
        """Append item only if there is room. Returns False (item discarded) when full."""
        with self._cond:
            if len(self._items) >= self.capacity:
                self.dropped += 1
                return False
            self._items.append(item)
            self._cond.notify()
            return True

    def get(self, timeout: float | None = None) -> T | None:
        """Pop the oldest item, waiting up to timeout seconds. None on expiry."""
        with self._cond:
            if not self._items:
                self._cond.wait_for(lambda: bool(self._items), timeout)
            if not self._items:
                return None
            return self._items.popleft()

    def get_nowait(self) -> T | None:
        with self._cond:
            return self._items.popleft() if self._items else None

    def drain(self) -> list[T]:
        """Remove and return everything currently queued, oldest first."""
        with self._cond:
            items = list(self._items)
            self._items.clear()
            return items

    def clear(self) -> None:
        with self._cond:
            self._items.clear()

    def __len__(self) -> int:
        with self._cond:
            return len(self._items)
