"""Bounded polling with exponential backoff.

Both the market and the activity layers confirm remote state by polling. The
helper here keeps those loops finite and deterministic: a fixed number of
attempts, ``base_delay * 2 ** attempt`` sleeps capped at ``max_delay``, and an
injectable ``sleep`` so tests never wait.
"""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable, TypeVar

from .errors import RetryExhausted

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(slots=True, frozen=True)
class Backoff:
    """Retry budget for a single polled transition."""

    attempts: int = 10
    base_delay: float = 0.5
    max_delay: float = 8.0

    def delay(self, attempt: int) -> float:
        return min(self.base_delay * (2 ** attempt), self.max_delay)


def poll_until(
    fetch: Callable[[], T],
    done: Callable[[T], bool],
    *,
    backoff: Backoff,
    sleep: Callable[[float], None] = time.sleep,
    label: str = "poll",
) -> T:
    """Call ``fetch`` until ``done(value)`` holds or the budget is spent.

    ``fetch`` may raise; such errors propagate immediately so callers decide
    which failures are fatal. Raises :class:`RetryExhausted` carrying the last
    fetched value when every attempt returned an unfinished value.
    """

    last: T | None = None
    for attempt in range(backoff.attempts):
        last = fetch()
        if done(last):
            return last
        if attempt + 1 < backoff.attempts:
            delay = backoff.delay(attempt)
            LOGGER.debug("%s not ready (attempt %s/%s), sleeping %.2fs", label, attempt + 1, backoff.attempts, delay)
            sleep(delay)
    raise RetryExhausted(backoff.attempts, last)


__all__ = ["Backoff", "poll_until"]
