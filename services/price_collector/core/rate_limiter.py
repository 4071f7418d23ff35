"""
Upstream Rate Limiter and Backoff

A sliding one-minute window enforces the upstream calls-per-minute
ceiling. Callers block in acquire() on asyncio.sleep until the budget
frees up. execute_with_retry() wraps a single upstream call with
classification-driven retries.

Usage:
    limiter = RateLimiter(calls_per_minute=30, backoff=BackoffStrategy())
    quotes = await limiter.execute_with_retry(lambda: source.fetch_quotes(ids))
"""

import asyncio
import logging
import random
import time
from collections import deque
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, TypeVar

import httpx

from .constants import RATE_LIMIT_WINDOW_SECONDS
from .errors import (
    AuthError,
    ErrorClass,
    NetworkError,
    RetryExhaustedError,
    ThrottledError,
    UpstreamServerError,
)
from .metrics import record_rate_limit_wait, record_retry

logger = logging.getLogger(__name__)

T = TypeVar("T")

RETRYABLE = {ErrorClass.THROTTLED, ErrorClass.SERVER, ErrorClass.NETWORK}


@dataclass
class BackoffStrategy:
    """
    Exponential backoff: base * multiplier^(attempt-1), capped at max_delay.

    Jitter only adds a fraction of the gap to the next step, so delays
    never decrease across attempts.
    """

    base_delay: float = 5.0
    multiplier: float = 2.0
    max_delay: float = 60.0
    jitter: float = 0.0

    def _raw(self, attempt: int) -> float:
        return min(self.max_delay, self.base_delay * (self.multiplier ** max(0, attempt - 1)))

    def next_delay(self, attempt: int) -> float:
        """Delay to wait after the given (1-based) failed attempt."""
        delay = self._raw(attempt)
        if self.jitter > 0:
            gap = self._raw(attempt + 1) - delay
            delay += gap * random.uniform(0, min(1.0, self.jitter))
        return min(self.max_delay, delay)


def classify_error(error: BaseException) -> ErrorClass:
    """Map an exception to its retry class."""
    if isinstance(error, ThrottledError):
        return ErrorClass.THROTTLED
    if isinstance(error, AuthError):
        return ErrorClass.AUTH
    if isinstance(error, UpstreamServerError):
        return ErrorClass.SERVER
    if isinstance(error, NetworkError):
        return ErrorClass.NETWORK
    if isinstance(error, httpx.HTTPStatusError):
        status = error.response.status_code
        if status == 429:
            return ErrorClass.THROTTLED
        if status in (401, 403):
            return ErrorClass.AUTH
        if status >= 500:
            return ErrorClass.SERVER
        return ErrorClass.UNKNOWN
    if isinstance(error, (httpx.TransportError, ConnectionError, asyncio.TimeoutError)):
        return ErrorClass.NETWORK
    return ErrorClass.UNKNOWN


class RateLimiter:
    """
    Shared call budget for every upstream request.

    Passed by reference to the components that call upstream; there is no
    module-level request state.
    """

    classify = staticmethod(classify_error)

    def __init__(
        self,
        calls_per_minute: int,
        min_interval_seconds: float = 0.0,
        backoff: Optional[BackoffStrategy] = None,
        max_attempts: int = 3,
        clock: Optional[Callable[[], float]] = None,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
    ):
        if calls_per_minute < 1:
            raise ValueError("calls_per_minute must be >= 1")
        self.calls_per_minute = calls_per_minute
        self.min_interval_seconds = min_interval_seconds
        self.backoff = backoff or BackoffStrategy()
        self.max_attempts = max_attempts
        self._clock = clock or time.monotonic
        self._sleep = sleep or asyncio.sleep
        self._calls: deque[float] = deque()
        self._paused_until: float = 0.0
        self._lock = asyncio.Lock()

    @property
    def calls_in_window(self) -> int:
        self._evict(self._clock())
        return len(self._calls)

    def pause_for(self, seconds: float) -> None:
        """Hold every caller for `seconds` (upstream Retry-After)."""
        if seconds > 0:
            self._paused_until = max(self._paused_until, self._clock() + seconds)

    def _evict(self, now: float) -> None:
        while self._calls and now - self._calls[0] >= RATE_LIMIT_WINDOW_SECONDS:
            self._calls.popleft()

    def _wait_needed(self, now: float) -> float:
        if self._paused_until > now:
            return self._paused_until - now
        if len(self._calls) >= self.calls_per_minute:
            return RATE_LIMIT_WINDOW_SECONDS - (now - self._calls[0])
        if self._calls and self.min_interval_seconds > 0:
            since_last = now - self._calls[-1]
            if since_last < self.min_interval_seconds:
                return self.min_interval_seconds - since_last
        return 0.0

    async def acquire(self) -> float:
        """Wait until a call slot is free, then claim it. Returns seconds waited."""
        waited = 0.0
        async with self._lock:
            while True:
                now = self._clock()
                self._evict(now)
                wait = self._wait_needed(now)
                if wait <= 0:
                    break
                await self._sleep(wait)
                waited += wait
            self._calls.append(self._clock())

        if waited > 0:
            record_rate_limit_wait(waited)
            if waited >= 1.0:
                logger.info(f"Rate limiter held call for {waited:.1f}s ({self.calls_per_minute}/min)")
        return waited

    def next_delay(self, attempt: int) -> float:
        return self.backoff.next_delay(attempt)

    async def execute_with_retry(
        self,
        operation: Callable[[], Awaitable[T]],
        max_attempts: Optional[int] = None,
        description: str = "upstream call",
    ) -> T:
        """
        Run `operation` under the rate limiter with retries.

        Retries throttled, server and network failures up to max_attempts.
        Auth failures propagate immediately. Unknown failures are retried
        once and then re-raised.

        Raises:
            RetryExhaustedError: every attempt failed with a retryable error
        """
        attempts = max_attempts or self.max_attempts
        previous_delay = 0.0
        unknown_failures = 0
        last_error: Optional[Exception] = None
        last_class = ErrorClass.UNKNOWN

        for attempt in range(1, attempts + 1):
            await self.acquire()
            try:
                return await operation()
            except Exception as e:
                error_class = classify_error(e)
                if error_class == ErrorClass.AUTH:
                    logger.error(f"{description}: authentication rejected, not retrying: {e}")
                    raise
                if error_class == ErrorClass.UNKNOWN:
                    unknown_failures += 1
                    if unknown_failures > 1:
                        logger.error(f"{description}: unclassified failure repeated, surfacing: {e}")
                        raise
                last_error = e
                last_class = error_class

                if attempt >= attempts:
                    break

                delay = max(previous_delay, self.next_delay(attempt))
                if isinstance(e, ThrottledError) and e.retry_after_seconds:
                    delay = max(delay, e.retry_after_seconds)
                    self.pause_for(e.retry_after_seconds)
                previous_delay = delay

                record_retry(error_class.value)
                logger.warning(
                    f"{description}: {error_class.value} error on attempt {attempt}/{attempts}, "
                    f"retrying in {delay:.1f}s: {e}"
                )
                await self._sleep(delay)

        assert last_error is not None
        raise RetryExhaustedError(attempts, last_class, last_error) from last_error
