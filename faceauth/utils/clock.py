"""Time source used by enrollment and verification.

Both pipelines only ever ask for "now" and "wait up to N seconds"; routing these
through one object lets tests drive sessions with simulated time.
"""

from __future__ import annotations

import threading
import time

from typing import Optional


class Clock:
    """Monotonic wall clock with cancellable waits."""

    def now(self) -> float:
        return time.monotonic()

    def sleep(self, seconds: float, cancel_event: Optional[threading.Event] = None) -> bool:
        """Wait `seconds`. Returns True if `cancel_event` was set during the wait."""
        seconds = max(0.0, float(seconds))
        if cancel_event is None:
            time.sleep(seconds)
            return False
        return cancel_event.wait(seconds)


class ManualClock(Clock):
    """Clock whose time only moves when `sleep`/`advance` is called."""

    def __init__(self, start: float = 0.0):
        self._now = float(start)

    def now(self) -> float:
        return self._now

    def advance(self, seconds: float) -> None:
        self._now += float(seconds)

    def sleep(self, seconds: float, cancel_event: Optional[threading.Event] = None) -> bool:
        if cancel_event is not None and cancel_event.is_set():
            return True
        self.advance(max(0.0, float(seconds)))
        return cancel_event is not None and cancel_event.is_set()
