"""Exponential backoff for flaky engine calls.

The schedule grows by squaring: starting at 1 second it sleeps 1, 2, 4, 16, ...
Values below 1 move toward 1 by square roots. Retrying stops as soon as the
backoff value reaches the cap, regardless of how much wall time has passed.
"""

from __future__ import annotations

import asyncio
import logging
import math
import time
from collections.abc import Awaitable, Callable
from typing import TypeVar

from py_test_containers.errors import BackoffError

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_BACKOFF_STARTING_SECONDS = 1.0
DEFAULT_MAX_BACKOFF_SECONDS = 60.0

_MIN_SLEEP_SECONDS = 1e-9


def _next_backoff(current: float) -> float:
    if current == 1:
        return 2
    if current <= 0:
        return 1.0
    if current < 1:
        # Square roots stall just below 1
        root = math.sqrt(current)
        return root if current < root < 1 else 1.0
    return current * current


def backoff_schedule(
    backoff_starting_seconds: float = DEFAULT_BACKOFF_STARTING_SECONDS,
    max_backoff_seconds: float = DEFAULT_MAX_BACKOFF_SECONDS,
) -> list[float]:
    """Return the sleeps an always-failing operation would go through.

    The length of the list is the number of attempts made before giving up.
    """
    sleeps: list[float] = []
    current = backoff_starting_seconds
    while current < max_backoff_seconds:
        sleeps.append(max(_MIN_SLEEP_SECONDS, min(current, max_backoff_seconds)))
        current = _next_backoff(current)
    return sleeps


async def with_exponential_backoff(
    operation: Callable[[], Awaitable[T]],
    *,
    backoff_starting_seconds: float = DEFAULT_BACKOFF_STARTING_SECONDS,
    max_backoff_seconds: float = DEFAULT_MAX_BACKOFF_SECONDS,
) -> T:
    """Run operation until it succeeds or the backoff value reaches the cap.

    Args:
        operation: Zero-argument callable returning a fresh awaitable per attempt.
        backoff_starting_seconds: First sleep after a failure.
        max_backoff_seconds: Retrying stops once the backoff value reaches this.

    Returns:
        The first successful result.

    Raises:
        BackoffError: Every attempt failed. Carries all collected errors.
    """
    current = backoff_starting_seconds
    attempts = 0
    start = time.monotonic()
    errors: list[Exception] = []

    while current < max_backoff_seconds:
        attempts += 1
        try:
            return await operation()
        except Exception as e:
            errors.append(e)
            delay = max(_MIN_SLEEP_SECONDS, min(current, max_backoff_seconds))
            logger.debug(
                "Attempt %d failed (%s: %s), backing off %.3fs",
                attempts,
                type(e).__name__,
                e,
                delay,
            )
            await asyncio.sleep(delay)
            current = _next_backoff(current)

    raise BackoffError(
        total_duration=time.monotonic() - start,
        attempts=attempts,
        errors=errors,
    )
