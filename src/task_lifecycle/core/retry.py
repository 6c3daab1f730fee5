# src/task_lifecycle/core/retry.py

"""Bounded exponential backoff for transient store failures.

Only StoreUnavailable is retried. Domain errors (Unauthorized, InvalidTransition,
ValidationError, ...) and version conflicts pass straight through.
"""

from __future__ import annotations

import logging
import random
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, TypeVar

from .errors import StoreUnavailable

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    """
    Attributes:
        max_attempts: total attempts, including the first call.
        base_delay: delay before the second attempt, in seconds.
        max_delay: cap for any single delay.
        multiplier: exponential growth factor.
        jitter: random jitter as a fraction of the delay (0 disables it).
    """

    max_attempts: int = 3
    base_delay: float = 0.05
    max_delay: float = 1.0
    multiplier: float = 2.0
    jitter: float = 0.1
    sleep: Callable[[float], None] = time.sleep

    def delay_for(self, attempt: int) -> float:
        """Delay after the given (1-indexed) failed attempt."""
        delay = min(self.base_delay * (self.multiplier ** (attempt - 1)), self.max_delay)
        if self.jitter > 0:
            spread = delay * self.jitter
            delay = max(0.0, delay + random.uniform(-spread, spread))
        return delay

    def call(self, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        attempts = max(1, int(self.max_attempts))
        for attempt in range(1, attempts + 1):
            try:
                return fn(*args, **kwargs)
            except StoreUnavailable as e:
                name = getattr(fn, "__name__", repr(fn))
                if attempt >= attempts:
                    logger.warning("Store still unavailable after %d attempts (%s): %s", attempt, name, e)
                    raise
                delay = self.delay_for(attempt)
                logger.info("Store unavailable (%s), retry %d/%d in %.2fs", name, attempt, attempts, delay)
                self.sleep(delay)
        raise AssertionError("unreachable")


NO_RETRY = RetryPolicy(max_attempts=1)
