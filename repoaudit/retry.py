"""Exponential backoff for retryable collaborator failures."""

from __future__ import annotations

import random
import time
from typing import Callable, Optional, TypeVar

from .errors import AuditError, RateLimitError
from .logging import get_logger

T = TypeVar("T")

_LOGGER = get_logger("retry")


def backoff_delay(
    attempt: int,
    *,
    initial_delay: float = 1.0,
    multiplier: float = 2.0,
    max_delay: float = 30.0,
    jitter: float = 0.1,
    rand: Callable[[], float] = random.random,
) -> float:
    """Delay before retry ``attempt`` (1-based), capped at ``max_delay`` with +/- jitter."""
    base = min(initial_delay * multiplier ** (attempt - 1), max_delay)
    spread = base * jitter
    return max(0.0, base + (rand() * 2 - 1) * spread)


def call_with_retry(
    func: Callable[[], T],
    *,
    attempts: int = 3,
    initial_delay: float = 1.0,
    multiplier: float = 2.0,
    max_delay: float = 30.0,
    description: str = "request",
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Call ``func`` until it succeeds, retrying only errors flagged ``retryable``.

    Non-retryable errors propagate immediately. After the final attempt the last
    error is re-raised unchanged. A ``RateLimitError.retry_after`` hint takes
    precedence over the computed backoff when it is longer.
    """
    attempts = max(1, attempts)
    for attempt in range(1, attempts + 1):
        try:
            return func()
        except AuditError as exc:
            if not exc.retryable or attempt == attempts:
                raise
            delay = backoff_delay(
                attempt,
                initial_delay=initial_delay,
                multiplier=multiplier,
                max_delay=max_delay,
            )
            hint: Optional[float] = getattr(exc, "retry_after", None)
            if isinstance(exc, RateLimitError) and hint:
                delay = min(max(delay, hint), max_delay)
            _LOGGER.info(
                "Retrying %s after %s (attempt %d/%d, waiting %.1fs)",
                description,
                exc.code,
                attempt + 1,
                attempts,
                delay,
            )
            sleep(delay)
    raise AssertionError("unreachable")  # pragma: no cover
