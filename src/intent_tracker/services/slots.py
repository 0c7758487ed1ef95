"""
Oracle slot manager.

A counting semaphore with two ceilings (global and per priority class) and an
earliest-start time that enforces the minimum gap between two oracle-backed
task starts. Waiters block on a condition variable until a slot is released
or the earliest-start time is reached.
"""

import logging
import threading
import time
from contextlib import contextmanager
from typing import Callable, Dict, Optional

logger = logging.getLogger(__name__)

CLASS_CRITICAL = "critical"
CLASS_IMPORTANT = "important"
CLASS_BACKGROUND = "background"

CRITICAL_PRIORITIES = frozenset({1, 2, 3})
IMPORTANT_PRIORITIES = frozenset({5, 6, 15, 17})


def priority_class(priority: int) -> str:
    if priority in CRITICAL_PRIORITIES:
        return CLASS_CRITICAL
    if priority in IMPORTANT_PRIORITIES:
        return CLASS_IMPORTANT
    return CLASS_BACKGROUND


class SlotLease:
    """Handle returned by ``acquire``; pass it back to ``release``."""

    def __init__(self, priority_cls: str, acquired_at: float):
        self.priority_class = priority_cls
        self.acquired_at = acquired_at
        self.released = False


class OracleSlotManager:
    def __init__(
        self,
        max_global: int = 2,
        class_limits: Optional[Dict[str, int]] = None,
        min_gap_seconds: float = 2.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.max_global = max_global
        self.class_limits = {
            CLASS_CRITICAL: 1,
            CLASS_IMPORTANT: 2,
            CLASS_BACKGROUND: 1,
        }
        if class_limits:
            self.class_limits.update(class_limits)
        self.min_gap_seconds = min_gap_seconds
        self._clock = clock
        self._cond = threading.Condition()
        self._active_global = 0
        self._active: Dict[str, int] = {c: 0 for c in self.class_limits}
        self._next_start_at = 0.0

    def _has_capacity(self, cls: str) -> bool:
        return (self._active_global < self.max_global
                and self._active[cls] < self.class_limits[cls])

    def acquire(self, priority: int, timeout: Optional[float] = None) -> SlotLease:
        """Block until a slot for ``priority`` is free and the gap has elapsed.

        Raises:
            TimeoutError: If ``timeout`` seconds pass without a slot.
        """
        cls = priority_class(priority)
        deadline = None if timeout is None else self._clock() + timeout
        with self._cond:
            while True:
                now = self._clock()
                if self._has_capacity(cls):
                    gap_wait = self._next_start_at - now
                    if gap_wait <= 0:
                        self._active_global += 1
                        self._active[cls] += 1
                        self._next_start_at = now + self.min_gap_seconds
                        return SlotLease(cls, now)
                    wait = gap_wait
                else:
                    wait = None
                if deadline is not None:
                    remaining = deadline - now
                    if remaining <= 0:
                        raise TimeoutError(f"No oracle slot for {cls} within {timeout}s")
                    wait = remaining if wait is None else min(wait, remaining)
                self._cond.wait(wait)

    def release(self, lease: SlotLease):
        with self._cond:
            if lease.released:
                return
            lease.released = True
            self._active_global -= 1
            self._active[lease.priority_class] -= 1
            self._cond.notify_all()

    @contextmanager
    def slot(self, priority: int):
        lease = self.acquire(priority)
        try:
            yield lease
        finally:
            self.release(lease)

    def snapshot(self) -> Dict:
        with self._cond:
            return {
                "active": self._active_global,
                "max_global": self.max_global,
                "by_class": dict(self._active),
                "class_limits": dict(self.class_limits),
                "min_gap_seconds": self.min_gap_seconds,
            }
