"""Backoff for idempotent outbound reads (provider GET calls).

Only safe-to-repeat requests are wrapped. Job submission is never
retried here: a duplicate POST could create a second print job.
"""

from __future__ import annotations

import functools
import logging
import random
import time
from typing import Any, Callable

import httpx

logger = logging.getLogger(__name__)

RETRYABLE_STATUS_CODES = {429, 500, 502, 503, 504}


def retry_idempotent(
    max_retries: int = 2,
    base_delay: float = 0.5,
    max_delay: float = 5.0,
) -> Callable:
    """Decorator: retry transient HTTP failures with exponential backoff."""

    def decorator(fn: Callable) -> Callable:
        @functools.wraps(fn)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            for attempt in range(max_retries + 1):
                try:
                    return fn(*args, **kwargs)
                except httpx.HTTPStatusError as e:
                    if e.response.status_code not in RETRYABLE_STATUS_CODES or attempt == max_retries:
                        raise
                    reason = f"HTTP {e.response.status_code}"
                    delay = _delay(attempt, base_delay, max_delay, e.response)
                except (httpx.ConnectError, httpx.ReadTimeout) as e:
                    if attempt == max_retries:
                        raise
                    reason = type(e).__name__
                    delay = _delay(attempt, base_delay, max_delay)
                logger.warning(
                    "Retry %d/%d for %s (%s), waiting %.1fs",
                    attempt + 1, max_retries, fn.__name__, reason, delay,
                )
                time.sleep(delay)
            raise AssertionError("unreachable")

        return wrapper

    return decorator


def _delay(
    attempt: int,
    base_delay: float,
    max_delay: float,
    response: httpx.Response | None = None,
) -> float:
    """Exponential delay with +/-30% jitter, honouring Retry-After."""
    if response is not None:
        retry_after = response.headers.get("Retry-After")
        if retry_after:
            try:
                return min(float(retry_after), max_delay)
            except ValueError:
                pass
    delay = min(base_delay * (2**attempt), max_delay)
    delay += random.uniform(-0.3 * delay, 0.3 * delay)
    return max(0.05, delay)
