"""Counting limiter bounding the number of in-flight request handlers."""

import threading
from typing import Optional


class PermitPool:
    """Blocking counterpart of a semaphore that also reports its usage.

    A capacity of 0 means unlimited: ``acquire`` never blocks, but permits are
    still counted so ``in_use`` stays meaningful.
    """

    def __init__(self, capacity: int) -> None:
        if capacity < 0:
            raise ValueError("capacity must not be negative")
        self._capacity = capacity
        self._in_use = 0
        self._condition = threading.Condition()

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def in_use(self) -> int:
        with self._condition:
            return self._in_use

    @property
    def available(self) -> Optional[int]:
        """Free permits, or None for an unlimited pool."""
        if not self._capacity:
            return None
        with self._condition:
            return self._capacity - self._in_use

    def acquire(self, timeout: Optional[float] = None) -> bool:
        """Take one permit, waiting up to ``timeout`` seconds (forever if None)."""
        with self._condition:
            if self._capacity:
                acquired = self._condition.wait_for(
                    lambda: self._in_use < self._capacity, timeout
                )
                if not acquired:
                    return False
            self._in_use += 1
            return True

    def release(self) -> None:
        with self._condition:
            if self._in_use == 0:
                raise RuntimeError("release called more times than acquire")
            self._in_use -= 1
            self._condition.notify()
