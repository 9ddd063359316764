from __future__ import annotations

import asyncio
import logging
import os
from typing import Awaitable, Callable, Optional, TypeVar

from skinmentor.services.errors import ClassifiedError, classify

logger = logging.getLogger("skin-mentor.retry")

T = TypeVar("T")

DEFAULT_MAX_ATTEMPTS = int(os.getenv("RETRY_MAX_ATTEMPTS") or "3")
DEFAULT_INITIAL_DELAY_MS = float(os.getenv("RETRY_INITIAL_DELAY_MS") or "1000")

OnRetry = Callable[[int, int, float, ClassifiedError], None]


def backoff_delay_ms(attempt: int, initial_delay_ms: float) -> float:
    return initial_delay_ms * (2**attempt)


async def run_with_retry(
    operation: Callable[[], Awaitable[T]],
    *,
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    initial_delay_ms: float = DEFAULT_INITIAL_DELAY_MS,
    on_retry: Optional[OnRetry] = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """Run ``operation`` with exponential backoff on retryable failures.

    Every failure is classified; non-retryable kinds and the final attempt
    raise the ClassifiedError right away. Between attempts the executor waits
    ``initial_delay_ms * 2**attempt`` (no jitter). Cancelling the awaiting
    task interrupts the wait and no further attempt is made.

    ``max_attempts`` counts every call, the first one included: 3 means at
    most three calls with waits of 1x and 2x ``initial_delay_ms``. Callers
    used to counting retries after the first call should pass retries + 1.
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be >= 1")

    attempt = 0
    while True:
        try:
            return await operation()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            classified = classify(exc)

        if not classified.retryable:
            logger.info("retry_abort kind=%s attempt=%s reason=not_retryable", classified.kind.value, attempt + 1)
            raise classified from classified.cause
        if attempt + 1 >= max_attempts:
            logger.warning(
                "retry_exhausted kind=%s attempts=%s err=%s",
                classified.kind.value,
                max_attempts,
                classified.cause,
            )
            raise classified from classified.cause

        delay_ms = backoff_delay_ms(attempt, initial_delay_ms)
        logger.info(
            "retry_scheduled kind=%s attempt=%s max_attempts=%s delay_ms=%s",
            classified.kind.value,
            attempt + 1,
            max_attempts,
            delay_ms,
        )
        if on_retry is not None:
            on_retry(attempt + 1, max_attempts, delay_ms, classified)
        await sleep(delay_ms / 1000.0)
        attempt += 1
