"""Race an awaitable against a timer."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable
from typing import TypeVar

from py_test_containers.errors import OperationTimeoutError

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def _cancel_and_wait(tasks: set[asyncio.Future]) -> None:
    for task in tasks:
        task.cancel()
    # Let the losers unwind before returning.
    await asyncio.gather(*tasks, return_exceptions=True)


async def run_with_timeout(
    awaitable: Awaitable[T],
    timeout: float,
    operation: str | None = None,
) -> T:
    """Run awaitable and a timer side by side; the first to finish wins.

    The loser is cancelled. Errors raised by the operation propagate unchanged.

    Args:
        awaitable: The operation to bound.
        timeout: Deadline in seconds.
        operation: Optional name used in the timeout error message.

    Raises:
        OperationTimeoutError: The timer finished first.
    """
    op_task = asyncio.ensure_future(awaitable)
    timer_task = asyncio.ensure_future(asyncio.sleep(timeout))
    try:
        done, pending = await asyncio.wait(
            {op_task, timer_task}, return_when=asyncio.FIRST_COMPLETED
        )
    except asyncio.CancelledError:
        await _cancel_and_wait({op_task, timer_task})
        raise

    await _cancel_and_wait(pending)

    if op_task in done:
        return op_task.result()

    logger.debug("Task timed out after %s seconds", timeout)
    raise OperationTimeoutError(timeout, operation)
