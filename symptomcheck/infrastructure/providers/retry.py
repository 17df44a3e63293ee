"""Bounded retry with exponential backoff for provider calls.

Only exceptions listed as retryable trigger another attempt; everything else
propagates on the first failure.
"""

from __future__ import annotations

import logging
import random
import time
from collections.abc import Callable
from typing import TypeVar

from pydantic import BaseModel, Field

from ...domain.errors import TransientAdapterError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RetryConfig(BaseModel):
    """Tuneable parameters for retry behaviour."""

    max_retries: int = Field(
        default=2,
        ge=0,
        description="Maximum number of retry attempts before re-raising.",
    )
    base_delay: float = Field(
        default=0.5,
        gt=0.0,
        description="Base delay in seconds for exponential backoff.",
    )
    max_delay: float = Field(
        default=8.0,
        gt=0.0,
        description="Upper bound on delay in seconds.",
    )
    jitter: bool = Field(
        default=True,
        description="When enabled, randomise the delay within [0.5x, 1.5x].",
    )


def _compute_delay(attempt: int, config: RetryConfig) -> float:
    """Return the backoff delay for ``attempt`` given ``config``."""
    delay: float = min(config.base_delay * (2**attempt), config.max_delay)
    if config.jitter:
        delay *= random.uniform(0.5, 1.5)  # noqa: S311
    return delay


def retry_with_backoff(
    fn: Callable[[], T],
    config: RetryConfig,
    retryable_exceptions: tuple[type[Exception], ...] = (TransientAdapterError,),
    *,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """
    Execute ``fn``, retrying retryable failures with exponential backoff.

    Args:
        fn: Zero-argument callable, invoked from scratch on each attempt
        config: Retry parameters
        retryable_exceptions: Exception types that trigger another attempt;
            terminal (4xx-class) failures surface immediately
        sleep: Sleep function, replaceable in tests

    Returns:
        The return value of ``fn`` on the first successful call

    Raises:
        Exception: The last exception raised by ``fn`` once attempts are exhausted
    """
    last_exception: Exception | None = None

    for attempt in range(config.max_retries + 1):
        try:
            return fn()
        except retryable_exceptions as exc:
            last_exception = exc
            if attempt >= config.max_retries:
                break
            delay = _compute_delay(attempt, config)
            logger.warning(
                "Retry %d/%d after %.1fs: %s",
                attempt + 1,
                config.max_retries,
                delay,
                exc,
            )
            sleep(delay)

    assert last_exception is not None  # noqa: S101
    raise last_exception
