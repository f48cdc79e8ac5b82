"""Retry with exponential backoff using Tenacity.

The policy fetcher wraps each polling cycle in :func:`backoff_retrying`
instead of a manual try/sleep loop:

    >>> async for attempt in backoff_retrying(config, retry_on=is_transient):
    ...     with attempt:
    ...         policy = await fetcher.fetch_once()
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
    wait_random,
)

logger = logging.getLogger(__name__)


@dataclass
class BackoffConfig:
    """Backoff for one retry cycle.

    Attempt ``n`` waits ``base * 2**(n-1)`` seconds, capped at ``max_wait``,
    plus a uniform jitter in ``[0, jitter]``.
    """

    max_attempts: int = 4
    base: float = 0.5
    max_wait: float = 10.0
    jitter: float = 0.5

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.base < 0 or self.max_wait < 0 or self.jitter < 0:
            raise ValueError("backoff delays must be non-negative")


def backoff_retrying(
    config: BackoffConfig,
    retry_on: Callable[[BaseException], bool],
    sleep: Optional[Callable[[float], Awaitable[Any]]] = None,
) -> AsyncRetrying:
    """Build an ``AsyncRetrying`` controller for ``config``.

    Args:
        config: Attempt count and delay shape.
        retry_on: Predicate selecting the exceptions worth retrying; anything
            else propagates on the first attempt.
        sleep: Awaitable sleep, replaceable in tests.

    Returns:
        Tenacity controller that re-raises the last exception once attempts
        are exhausted.
    """
    wait = wait_exponential(multiplier=config.base, exp_base=2, max=config.max_wait)
    if config.jitter > 0:
        wait = wait + wait_random(0, config.jitter)

    return AsyncRetrying(
        stop=stop_after_attempt(config.max_attempts),
        wait=wait,
        retry=retry_if_exception(retry_on),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        sleep=sleep or asyncio.sleep,
        reraise=True,
    )
