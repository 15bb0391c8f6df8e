from __future__ import annotations

import asyncio
import random
from collections.abc import Awaitable, Callable
from contextlib import suppress
from enum import Enum
from typing import Any, TypeVar

from sound_design_pipeline.jobs.cancel import CancelToken, JobCancelled

T = TypeVar("T")


class FailureClass(str, Enum):
    RETRYABLE = "retryable"
    FATAL = "fatal"


class TransientError(RuntimeError):
    """
    Raised by collaborators to mark a failure as safe to retry.
    """


RETRYABLE_STATUS = frozenset({408, 429})
RATE_LIMIT_MARKERS = ("RESOURCE_EXHAUSTED", "rate limit", "429")


def _status_of(ex: BaseException) -> int | None:
    for attr in ("status_code", "status", "http_status"):
        v = getattr(ex, attr, None)
        if isinstance(v, int):
            return v
    resp = getattr(ex, "response", None)
    v = getattr(resp, "status_code", None)
    if isinstance(v, int):
        return v
    return None


def classify_failure(ex: BaseException) -> FailureClass:
    """
    Decide whether a failed external call may be retried.

    Order matters: cancellation is never retried, explicit transient markers are,
    then HTTP status codes, then rate-limit wording in the message.
    """
    if isinstance(ex, (JobCancelled, asyncio.CancelledError)):
        return FailureClass.FATAL
    if isinstance(ex, (TransientError, TimeoutError, asyncio.TimeoutError, ConnectionError)):
        return FailureClass.RETRYABLE
    status = _status_of(ex)
    if status is not None:
        if status in RETRYABLE_STATUS or status >= 500:
            return FailureClass.RETRYABLE
        return FailureClass.FATAL
    msg = str(ex)
    if any(m.lower() in msg.lower() for m in RATE_LIMIT_MARKERS):
        return FailureClass.RETRYABLE
    return FailureClass.FATAL


def backoff_delay(attempt: int, *, base: float, cap: float, jitter: bool = True) -> float:
    delay = min(float(cap), float(base) * (2 ** int(attempt)))
    if jitter:
        delay = delay * (0.5 + random.random())
    return max(0.0, delay)


async def retry_async(
    fn: Callable[[], Awaitable[T]],
    *,
    retries: int = 3,
    base: float = 2.0,
    cap: float = 30.0,
    jitter: bool = True,
    cancel: CancelToken | None = None,
    classify: Callable[[BaseException], FailureClass] = classify_failure,
    on_retry: Callable[[int, float, BaseException], None] | None = None,
    sleep: Callable[[float], Awaitable[Any]] | None = None,
) -> T:
    """
    Await fn() with capped exponential backoff (+ optional jitter).

    retries: number of retry attempts (so total calls = 1 + retries).
    Only failures classified RETRYABLE are retried; others propagate immediately.
    """
    attempt = 0
    while True:
        if cancel is not None:
            cancel.raise_if_cancelled()
        try:
            return await fn()
        except Exception as ex:
            if attempt >= int(retries) or classify(ex) is not FailureClass.RETRYABLE:
                raise
            delay = backoff_delay(attempt, base=base, cap=cap, jitter=jitter)
            attempt += 1
            if on_retry is not None:
                with suppress(Exception):
                    on_retry(attempt, delay, ex)
            if sleep is not None:
                await sleep(delay)
            elif cancel is not None:
                await cancel.sleep(delay)
            else:
                await asyncio.sleep(delay)
