"""Retry with exponential backoff and jitter."""

from __future__ import annotations

import asyncio
import logging
import random
from typing import Awaitable, Callable, TypeVar

from comrade_bridge.errors import BridgeError, ErrorCode

_logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_BASE_DELAY = 1.0  # seconds
MAX_DELAY = 30.0  # seconds
JITTER_RATIO = 0.1


def backoff_delay(
    attempt: int,
    base_delay: float = DEFAULT_BASE_DELAY,
    max_delay: float = MAX_DELAY,
    retry_after: float | None = None,
) -> float:
    """Delay before retry number ``attempt + 1``.

    ``base * 2**attempt`` plus up to 10% jitter, capped at *max_delay*.
    A provider-supplied ``retry_after`` replaces the computed value.
    """
    if retry_after is not None:
        return max(retry_after, 0.0)
    delay = base_delay * (2 ** attempt)
    delay += random.uniform(0, JITTER_RATIO * delay)
    return min(delay, max_delay)


async def _pause(delay: float, cancel_event: asyncio.Event | None) -> bool:
    """Sleep *delay* seconds.  Returns True if *cancel_event* fired first."""
    if cancel_event is None:
        await asyncio.sleep(delay)
        return False
    sleeper = asyncio.ensure_future(asyncio.sleep(delay))
    waiter = asyncio.ensure_future(cancel_event.wait())
    try:
        await asyncio.wait({sleeper, waiter}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        for task in (sleeper, waiter):
            if not task.done():
                task.cancel()
    return cancel_event.is_set()


async def retry(
    operation: Callable[[], Awaitable[T]],
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    base_delay: float = DEFAULT_BASE_DELAY,
    max_delay: float = MAX_DELAY,
    description: str = "request",
    cancel_event: asyncio.Event | None = None,
    provider: str = "unknown",
) -> T:
    """Run *operation*, retrying retryable ``BridgeError``s.

    *max_attempts* counts retries, so the operation runs at most
    ``max_attempts + 1`` times.  Non-retryable errors and anything that is
    not a ``BridgeError`` propagate immediately.  When retries run out the
    last error is re-raised unchanged.

    A set *cancel_event* is observed before every attempt and interrupts
    the backoff sleep, so cancelling never waits out a long ``Retry-After``.
    """
    attempt = 0
    while True:
        if cancel_event is not None and cancel_event.is_set():
            raise BridgeError(
                f"{description} cancelled",
                ErrorCode.CANCELLED,
                provider=provider,
            )
        try:
            return await operation()
        except BridgeError as e:
            if not e.retryable or attempt >= max_attempts:
                if e.retryable:
                    _logger.warning(
                        "%s failed after %d attempts: %s",
                        description, attempt + 1, e.message,
                    )
                raise
            delay = backoff_delay(attempt, base_delay, max_delay, e.retry_after)
            _logger.warning(
                "%s failed with %s (attempt %d/%d), retrying in %.2fs",
                description, e.to_dict()["code"],
                attempt + 1, max_attempts + 1, delay,
            )
            if await _pause(delay, cancel_event):
                raise BridgeError(
                    f"{description} cancelled during retry backoff",
                    ErrorCode.CANCELLED,
                    provider=provider,
                ) from e
            attempt += 1
