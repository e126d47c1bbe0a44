"""
Poll-with-timeout helpers shared by every "wait until visible / removed" check.

Polling happens on the orchestrator side rather than inside evaluated page
scripts, so each wait has an explicit interval, deadline and cancellation.
"""

from __future__ import annotations

import threading
import time
from typing import Callable, Optional, TypeVar


T = TypeVar("T")


class Deadline:
    """A wall-clock budget measured on the monotonic clock."""

    def __init__(self, seconds: Optional[float]):
        """
        Args:
            seconds: budget in seconds; ``None`` or ``0`` means unbounded
        """
        self.seconds = seconds if seconds and seconds > 0 else None
        self.started = time.monotonic()

    def remaining(self) -> Optional[float]:
        if self.seconds is None:
            return None
        return max(0.0, self.seconds - (time.monotonic() - self.started))

    def bound_ms(self, timeout_ms: int) -> int:
        """
        Clamp a Playwright-style timeout (``0`` = no timeout) to this deadline.

        Returns a value >= 1 when the deadline is bounded, otherwise the
        original timeout.
        """
        remaining = self.remaining()
        if remaining is None:
            return timeout_ms
        remaining_ms = max(1, int(remaining * 1000))
        if timeout_ms <= 0:
            return remaining_ms
        return min(timeout_ms, remaining_ms)


class CancelToken:
    """Thin wrapper over ``threading.Event`` used to abandon waits early."""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self):
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def wait(self, seconds: float) -> bool:
        """Sleep up to ``seconds``; return True if cancelled meanwhile."""
        return self._event.wait(max(0.0, seconds))


def poll_until(check: Callable[[], T],
               timeout_ms: int,
               interval_ms: int = 100,
               cancel: Optional[CancelToken] = None,
               swallow: tuple = ()) -> Optional[T]:
    """
    Call ``check`` until it returns a truthy value or the timeout elapses.

    Args:
        check: zero-argument callable; a truthy return ends the poll
        timeout_ms: overall budget in milliseconds
        interval_ms: pause between attempts
        cancel: optional token that ends the poll early
        swallow: exception types treated as a falsy result

    Returns:
        The first truthy value, or None on timeout/cancellation.
    """
    deadline = Deadline(max(0, timeout_ms) / 1000.0 or 0.001)
    interval = max(1, interval_ms) / 1000.0
    while True:
        try:
            result = check()
        except swallow:
            result = None
        if result:
            return result
        remaining = deadline.remaining()
        if remaining is not None and remaining <= 0:
            return None
        pause = min(interval, remaining) if remaining is not None else interval
        if cancel is not None:
            if cancel.wait(pause):
                return None
        else:
            time.sleep(pause)
