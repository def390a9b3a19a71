from __future__ import annotations

import asyncio
import errno
import logging
import random
from typing import Any, Awaitable, Callable, Optional, TypeVar

import httpx
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    before_sleep_log,
    retry_if_exception,
    stop_after_attempt,
)
from tenacity.wait import wait_base

from .exceptions import TransientError

T = TypeVar("T")

DEFAULT_MAX_ATTEMPTS = 5
DEFAULT_BASE_DELAY_SECONDS = 0.2
DEFAULT_MAX_DELAY_SECONDS = 3.0

_TEMPORARY_ERRNOS = frozenset(
    {errno.ETIMEDOUT, errno.EAGAIN, errno.EWOULDBLOCK, errno.ECONNRESET}
)

logger = logging.getLogger(__name__)


def _status_code_of(exc: BaseException) -> Optional[int]:
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code
    status = getattr(exc, "status_code", None)
    if isinstance(status, int) and not isinstance(status, bool):
        return status
    return None


def is_transient_error(exc: BaseException) -> bool:
    """Return True for rate limits, server errors and timeout/temporary network errors."""
    if isinstance(exc, asyncio.CancelledError):
        return False
    status = _status_code_of(exc)
    if status is not None:
        return status == 429 or status >= 500
    if isinstance(exc, (httpx.TimeoutException, httpx.NetworkError)):
        return True
    if isinstance(exc, TransientError):
        return True
    if isinstance(exc, (TimeoutError, ConnectionResetError, ConnectionAbortedError)):
        return True
    if isinstance(exc, OSError) and exc.errno in _TEMPORARY_ERRNOS:
        return True
    return False


class wait_exponential_half_jitter(wait_base):
    """``base * 2**(n-1)`` clamped to ``cap`` plus uniform jitter in ``[0, delay/2]``.

    A ``retry_after`` hint on the failing exception replaces the computed delay,
    clamped to ``cap`` like any other.
    """

    def __init__(
        self,
        base: float = DEFAULT_BASE_DELAY_SECONDS,
        cap: float = DEFAULT_MAX_DELAY_SECONDS,
        rand_float: Callable[[float, float], float] = random.uniform,
    ) -> None:
        self.base = base
        self.cap = cap
        self.rand_float = rand_float

    def backoff(self, attempt_number: int) -> float:
        delay = min(self.base * (2 ** max(attempt_number - 1, 0)), self.cap)
        return delay + self.rand_float(0.0, delay / 2.0)

    def __call__(self, retry_state: RetryCallState) -> float:
        outcome = retry_state.outcome
        if outcome is not None and outcome.failed:
            retry_after = getattr(outcome.exception(), "retry_after", None)
            if isinstance(retry_after, (int, float)) and retry_after > 0:
                return min(float(retry_after), self.cap)
        return self.backoff(retry_state.attempt_number)


async def retry_async(
    op: Callable[[], Awaitable[T]],
    *,
    classify: Callable[[BaseException], bool] = is_transient_error,
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    base_delay: float = DEFAULT_BASE_DELAY_SECONDS,
    max_delay: float = DEFAULT_MAX_DELAY_SECONDS,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    log: Optional[logging.Logger] = None,
) -> T:
    """Run ``op`` until it succeeds, a terminal error is raised, or attempts run out.

    The last exception is re-raised unchanged when retries are exhausted.
    Cancellation is never retried.
    """
    retrying = AsyncRetrying(
        stop=stop_after_attempt(max(max_attempts, 1)),
        wait=wait_exponential_half_jitter(base=base_delay, cap=max_delay),
        retry=retry_if_exception(classify),
        before_sleep=before_sleep_log(log or logger, logging.WARNING),
        sleep=sleep,
        reraise=True,
    )
    async for attempt in retrying:
        with attempt:
            return await op()
    raise AssertionError("unreachable: tenacity exits via return or reraise")


__all__ = [
    "DEFAULT_BASE_DELAY_SECONDS",
    "DEFAULT_MAX_ATTEMPTS",
    "DEFAULT_MAX_DELAY_SECONDS",
    "is_transient_error",
    "retry_async",
    "wait_exponential_half_jitter",
]
