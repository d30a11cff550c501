"""Bounded exponential backoff for transient collaborator failures."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import TypeVar

from shiftdeck.lib.logging_config import get_logger
from shiftdeck.models.deployment import RetryPolicy

logger = get_logger(__name__)

T = TypeVar("T")


async def retry_async(
    operation: Callable[[], Awaitable[T]],
    *,
    policy: RetryPolicy,
    retry_on: tuple[type[BaseException], ...],
    description: str,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """Run an async operation, retrying listed exceptions with backoff.

    Args:
        operation: Zero-argument coroutine factory, called once per attempt.
        policy: Attempt limit and delay schedule.
        retry_on: Exception types considered transient.
        description: Human-readable name used in log messages.
        sleep: Awaitable sleep, replaceable in tests.

    Returns:
        The operation's result.

    Raises:
        The last transient exception once attempts are exhausted, or any
        non-transient exception immediately.
    """
    for attempt in range(policy.max_attempts):
        try:
            return await operation()
        except retry_on as exc:
            if attempt == policy.max_attempts - 1:
                logger.warning(
                    f"{description} failed after {policy.max_attempts} attempts: {exc}"
                )
                raise
            delay = policy.delay_for(attempt)
            logger.warning(
                f"{description} failed (attempt {attempt + 1}/"
                f"{policy.max_attempts}), retrying in {delay:.2f}s: {exc}"
            )
            await sleep(delay)

    raise RuntimeError("retry_async exhausted without result")  # pragma: no cover
