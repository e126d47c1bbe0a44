"""
Token-bucket pacing with jitter.

A worker acquires one token per job so consecutive captures against the same
queue keep a respectful average rate.
"""

from __future__ import annotations

import threading
import time
import random
from typing import Optional

from .polling import CancelToken


class TokenBucket:
    def __init__(self, rate_per_sec: float = 0.5, burst: int = 1, jitter_ms: int = 300):
        """
        Args:
            rate_per_sec: average tokens per second (e.g., 0.5 = 1 job / 2s)
            burst: bucket capacity
            jitter_ms: random jitter added after acquire to avoid lockstep
        """
        self.rate = rate_per_sec
        self.capacity = burst
        self.tokens = burst
        self.last = time.monotonic()
        self.lock = threading.Lock()
        self.jitter_ms = jitter_ms

    @classmethod
    def for_delay(cls, delay_secs: float, jitter_ms: int = 300) -> "TokenBucket":
        return cls(rate_per_sec=1.0 / max(delay_secs, 0.1), burst=1, jitter_ms=jitter_ms)

    def acquire(self, cancel: Optional[CancelToken] = None) -> bool:
        """Block until a token is available; False if cancelled while waiting."""
        while True:
            with self.lock:
                now = time.monotonic()
                elapsed = now - self.last
                self.tokens = min(self.capacity, self.tokens + elapsed * self.rate)
                self.last = now
                if self.tokens >= 1:
                    self.tokens -= 1
                    break
                wait = max((1 - self.tokens) / self.rate, 0.01)
            if cancel is not None:
                if cancel.wait(wait):
                    return False
            else:
                time.sleep(wait)

        if self.jitter_ms > 0:
            pause = random.uniform(0, self.jitter_ms) / 1000.0
            if cancel is not None:
                return not cancel.wait(pause)
            time.sleep(pause)
        return True
