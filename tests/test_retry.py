from __future__ import annotations

import asyncio

import pytest

from sound_design_pipeline.jobs.cancel import CancelToken, JobCancelled
from sound_design_pipeline.utils.retry import (
    FailureClass,
    TransientError,
    backoff_delay,
    classify_failure,
    retry_async,
)
from tests._helpers.collaborators import StatusError, no_sleep


class _Resp:
    def __init__(self, code: int) -> None:
        self.status_code = code


class _WithResponse(RuntimeError):
    def __init__(self, code: int) -> None:
        super().__init__("http error")
        self.response = _Resp(code)


@pytest.mark.parametrize(
    "ex, expected",
    [
        (TransientError("try again"), FailureClass.RETRYABLE),
        (TimeoutError(), FailureClass.RETRYABLE),
        (ConnectionResetError(), FailureClass.RETRYABLE),
        (StatusError("busy", 503), FailureClass.RETRYABLE),
        (StatusError("slow down", 429), FailureClass.RETRYABLE),
        (StatusError("timeout", 408), FailureClass.RETRYABLE),
        (StatusError("bad request", 400), FailureClass.FATAL),
        (StatusError("forbidden 429 in text", 403), FailureClass.FATAL),
        (_WithResponse(502), FailureClass.RETRYABLE),
        (RuntimeError("RESOURCE_EXHAUSTED: quota"), FailureClass.RETRYABLE),
        (RuntimeError("Rate limit exceeded"), FailureClass.RETRYABLE),
        (ValueError("schema mismatch"), FailureClass.FATAL),
        (JobCancelled("stop"), FailureClass.FATAL),
    ],
)
def test_classify_failure(ex: BaseException, expected: FailureClass) -> None:
    assert classify_failure(ex) is expected


def test_backoff_is_capped_exponential() -> None:
    assert backoff_delay(0, base=2.0, cap=30.0, jitter=False) == 2.0
    assert backoff_delay(2, base=2.0, cap=30.0, jitter=False) == 8.0
    assert backoff_delay(10, base=2.0, cap=30.0, jitter=False) == 30.0
    for _ in range(20):
        d = backoff_delay(1, base=1.0, cap=8.0, jitter=True)
        assert 1.0 <= d < 3.0


def test_retry_async_retries_transient_then_succeeds() -> None:
    calls = {"n": 0}
    delays: list[float] = []

    async def fn():
        calls["n"] += 1
        if calls["n"] < 3:
            raise TransientError("flaky")
        return "ok"

    async def sleep(d: float) -> None:
        delays.append(d)

    out = asyncio.run(retry_async(fn, retries=5, base=0.5, cap=10, jitter=False, sleep=sleep))
    assert out == "ok"
    assert calls["n"] == 3
    assert delays == [0.5, 1.0]


def test_retry_async_stops_on_fatal() -> None:
    calls = {"n": 0}

    async def fn():
        calls["n"] += 1
        raise ValueError("bad plan json")

    with pytest.raises(ValueError):
        asyncio.run(retry_async(fn, retries=5, sleep=no_sleep))
    assert calls["n"] == 1


def test_retry_async_exhausts_bound() -> None:
    calls = {"n": 0}

    async def fn():
        calls["n"] += 1
        raise TransientError("still down")

    with pytest.raises(TransientError):
        asyncio.run(retry_async(fn, retries=2, sleep=no_sleep))
    assert calls["n"] == 3


def test_retry_async_checks_cancel_before_each_attempt() -> None:
    tok = CancelToken()
    calls = {"n": 0}

    async def fn():
        calls["n"] += 1
        tok.cancel("user")
        raise TransientError("flaky")

    with pytest.raises(JobCancelled):
        asyncio.run(retry_async(fn, retries=3, cancel=tok, sleep=no_sleep))
    assert calls["n"] == 1


def test_cancel_token_sleep_wakes_early() -> None:
    tok = CancelToken()

    async def main():
        asyncio.get_running_loop().call_later(0.05, tok.cancel, "stop")
        await tok.sleep(5.0)

    with pytest.raises(JobCancelled):
        asyncio.run(asyncio.wait_for(main(), timeout=2.0))
