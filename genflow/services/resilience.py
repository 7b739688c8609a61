from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

import httpx

from genflow.core.config import Settings


logger = logging.getLogger(__name__)


TransientException = (TimeoutError, OSError, httpx.TimeoutException, httpx.NetworkError)


def default_retryable(exc: Exception) -> bool:
    # Retry only transient network/timeout failures and 5xx responses.
    if isinstance(exc, TransientException):
        return True
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code >= 500
    return False


@dataclass(frozen=True)
class RetryPolicy:
    # Per-adapter retry contract; max_attempts=1 disables retries.
    max_attempts: int
    backoff_ms: int


NO_RETRY = RetryPolicy(max_attempts=1, backoff_ms=0)


def retry_policy_from_settings(settings: Settings) -> RetryPolicy:
    return RetryPolicy(
        max_attempts=max(1, settings.provider_retry_max_attempts),
        backoff_ms=settings.provider_retry_backoff_ms,
    )


async def retry_async(
    func: Callable[[], Awaitable[Any]],
    *,
    policy: RetryPolicy = NO_RETRY,
    retryable: Callable[[Exception], bool] | None = None,
    name: str = "call",
) -> Any:
    # Retry helper with jittered exponential backoff for transient failures only.
    retryable = retryable or default_retryable
    attempt = 1
    while True:
        try:
            return await func()
        except Exception as exc:  # noqa: BLE001 - caller handles non-transient failures
            if attempt >= max(policy.max_attempts, 1) or not retryable(exc):
                raise
            jitter = random.uniform(0.5, 1.5)
            sleep_s = (policy.backoff_ms / 1000.0) * (2 ** (attempt - 1)) * jitter
            logger.warning("provider_retry name=%s attempt=%s sleep_s=%.2f", name, attempt, sleep_s)
            await asyncio.sleep(sleep_s)
            attempt += 1
