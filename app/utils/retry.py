"""
Async retry helper for idempotent external reads.

Policy:
- Exponential backoff with jitter
- Only exceptions listed in retry_on are retried; everything else propagates at once
- The original exception is raised after the last attempt
- No logging inside the helper (caller logs)

Only idempotent calls may be wrapped (Pi /me, GET /payments/{id}).
approve/complete POSTs are NEVER retried here: a lost response after a
successful POST would otherwise double-submit to the provider.
"""

import asyncio
import random
from typing import Any, Awaitable, Callable, Tuple, Type

import asyncpg
import httpx


DEFAULT_RETRIES = 2
DEFAULT_BASE_DELAY = 0.5
DEFAULT_MAX_DELAY = 5.0


# Transport-level failures: the request may not have reached the server.
# httpx.HTTPStatusError is deliberately absent (a 4xx/5xx answer is an answer).
TRANSIENT_EXCEPTIONS: Tuple[Type[Exception], ...] = (
    httpx.TransportError,
    asyncpg.exceptions.ConnectionDoesNotExistError,
    asyncpg.exceptions.CannotConnectNowError,
    asyncio.TimeoutError,
    ConnectionError,
)


def backoff_delay(attempt: int, base_delay: float, max_delay: float) -> float:
    """Delay before retry number attempt+1: base * 2^attempt, capped, +/-20% jitter."""
    delay = min(base_delay * (2 ** attempt), max_delay)
    jitter = delay * 0.2 * (random.random() * 2 - 1)
    return max(0.0, delay + jitter)


async def retry_async(
    fn: Callable[[], Awaitable[Any]],
    *,
    retries: int = DEFAULT_RETRIES,
    base_delay: float = DEFAULT_BASE_DELAY,
    max_delay: float = DEFAULT_MAX_DELAY,
    retry_on: Tuple[Type[Exception], ...] = TRANSIENT_EXCEPTIONS,
) -> Any:
    """
    Call fn() until it succeeds or the retry budget is spent.

    Args:
        fn: Zero-argument callable returning an awaitable
        retries: Extra attempts after the first (2 -> 3 attempts total)
        base_delay: Backoff base in seconds
        max_delay: Backoff cap in seconds
        retry_on: Exception types considered transient

    Returns:
        Whatever fn() resolves to

    Raises:
        The last exception once retries are exhausted; non-transient exceptions immediately
    """
    for attempt in range(retries + 1):
        try:
            return await fn()
        except retry_on:
            if attempt >= retries:
                raise
            await asyncio.sleep(backoff_delay(attempt, base_delay, max_delay))

    raise RuntimeError("retry_async: unexpected end of retry loop")
