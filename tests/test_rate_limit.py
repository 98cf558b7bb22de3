from __future__ import annotations

import pytest

from kora_reclaim.errors import RpcError
from kora_reclaim.rate_limit import RateLimiter, backoff_delay, with_backoff


class FakeClock:
    def __init__(self):
        self.t = 0.0
        self.sleeps = []

    def __call__(self):
        return self.t

    def sleep(self, s):
        self.sleeps.append(s)
        self.t += s


def test_limiter_spaces_calls():
    clock = FakeClock()
    limiter = RateLimiter(0.2, clock=clock, sleep=clock.sleep)

    limiter.wait()
    limiter.wait()
    clock.t += 1.0
    limiter.wait()

    assert clock.sleeps == [pytest.approx(0.2)]


def test_backoff_delay_is_capped():
    assert [backoff_delay(n) for n in (1, 2, 3)] == [0.5, 1.0, 2.0]
    assert backoff_delay(20) == 16.0


def test_retryable_errors_are_retried():
    sleeps = []
    calls = []

    def flaky():
        calls.append(1)
        if len(calls) < 3:
            raise RpcError("HTTP 429", retryable=True, code=429)
        return "ok"

    assert with_backoff(flaky, attempts=5, sleep=sleeps.append) == "ok"
    assert sleeps == [0.5, 1.0]


def test_gives_up_after_attempts():
    sleeps = []

    def always_down():
        raise RpcError("timed out", retryable=True)

    with pytest.raises(RpcError):
        with_backoff(always_down, attempts=3, sleep=sleeps.append)
    assert len(sleeps) == 2


def test_non_retryable_raised_at_once():
    sleeps = []

    def bad_request():
        raise RpcError("invalid params", retryable=False, code=-32602)

    with pytest.raises(RpcError):
        with_backoff(bad_request, sleep=sleeps.append)
    assert sleeps == []
