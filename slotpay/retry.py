"""Retry policy for outbound calls (payment gateway, auth service).

The decision is a pure function of ``(attempt, error)`` so it can be unit
tested without sleeping; ``call_with_retries`` is the I/O loop around it.
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Awaitable, Callable, TypeVar

import httpx
import structlog

T = TypeVar("T")

MAX_ATTEMPTS = 3
BASE_DELAY_MS = 1000

_RETRYABLE_STATUS = {502, 503, 504}

logger = structlog.get_logger(component="retry")


@dataclass(frozen=True)
class RetryDecision:
    retry: bool
    delay_ms: int = 0


def is_network_error(error: BaseException) -> bool:
    if isinstance(error, httpx.TransportError):
        return True
    if isinstance(error, httpx.HTTPStatusError):
        return error.response.status_code in _RETRYABLE_STATUS
    msg = str(error).lower()
    return any(w in msg for w in ("network", "timeout", "fetch"))


def decide(
    attempt: int,
    error: BaseException,
    *,
    max_attempts: int = MAX_ATTEMPTS,
    base_delay_ms: int = BASE_DELAY_MS,
) -> RetryDecision:
    """``attempt`` is the number of attempts made so far (1 after the first
    failure). Network errors back off exponentially: 1s, 2s, 4s, ...
    """
    if attempt >= max_attempts:
        return RetryDecision(retry=False)
    if not is_network_error(error):
        return RetryDecision(retry=False)
    return RetryDecision(retry=True,
                         delay_ms=base_delay_ms * (2 ** (attempt - 1)))


async def call_with_retries(
    fn: Callable[[], Awaitable[T]],
    *,
    what: str,
    max_attempts: int = MAX_ATTEMPTS,
    base_delay_ms: int = BASE_DELAY_MS,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    attempt = 0
    while True:
        try:
            return await fn()
        except Exception as e:
            attempt += 1
            d = decide(attempt, e, max_attempts=max_attempts,
                       base_delay_ms=base_delay_ms)
            if not d.retry:
                raise
            logger.warning("retrying", what=what, attempt=attempt,
                           delay_ms=d.delay_ms, error=str(e))
            await sleep(d.delay_ms / 1000)
