from __future__ import annotations

import logging
import threading
import time
from typing import Callable, Optional, TypeVar

from kora_reclaim.errors import RpcError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RateLimiter:
    """
    Minimum-interval limiter shared by every RPC call of a process.

    wait() blocks until at least `min_interval_s` has passed since the
    previous call returned from wait().
    """

    def __init__(
        self,
        min_interval_s: float,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.min_interval_s = max(0.0, min_interval_s)
        self._clock = clock
        self._sleep = sleep
        self._last: Optional[float] = None
        self._lock = threading.Lock()

    @classmethod
    def from_ms(cls, delay_ms: int) -> "RateLimiter":
        return cls(delay_ms / 1000.0)

    def wait(self) -> None:
        with self._lock:
            now = self._clock()
            if self._last is not None:
                remaining = self.min_interval_s - (now - self._last)
                if remaining > 0:
                    self._sleep(remaining)
                    now = self._clock()
            self._last = now


def backoff_delay(attempt: int, base_s: float = 0.5, max_s: float = 16.0) -> float:
    """Delay before retry `attempt` (1-based): base * 2^(attempt-1), capped."""
    return min(base_s * (2 ** (attempt - 1)), max_s)


def with_backoff(
    fn: Callable[[], T],
    attempts: int = 5,
    base_s: float = 0.5,
    max_s: float = 16.0,
    sleep: Callable[[float], None] = time.sleep,
    label: str = "rpc call",
) -> T:
    """
    Call fn(), retrying retryable RpcErrors with exponential backoff.

    Non-retryable RpcErrors are raised immediately. After `attempts` failures the
    last error is re-raised.
    """
    attempt = 1
    while True:
        try:
            return fn()
        except RpcError as e:
            if not e.retryable or attempt >= attempts:
                raise
            delay = backoff_delay(attempt, base_s, max_s)
            logger.warning("%s failed (attempt %d/%d): %s; retrying in %.1fs", label, attempt, attempts, e, delay)
            sleep(delay)
            attempt += 1
