"""
Retry policy — exponential backoff with jitter for transient failures.

Only errors flagged ``retryable`` (registry unavailable) are retried.
Everything else propagates on the first attempt. Attempts are bounded;
the last error is re-raised once the budget is spent.
"""

from __future__ import annotations

import logging
import random
import time
from dataclasses import dataclass
from typing import Callable, TypeVar

from gitops_promoter.core.errors import PromotionError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded exponential backoff.

    Args:
        max_attempts: Total calls, including the first one.
        base_delay: Delay before the first retry, in seconds.
        max_delay: Upper bound for a single delay.
        jitter: Fraction of the delay added at random (0.3 = up to +30%).
    """

    max_attempts: int = 4
    base_delay: float = 0.5
    max_delay: float = 8.0
    jitter: float = 0.3

    def delay_for(self, attempt: int) -> float:
        """Delay after the given (1-based) failed attempt."""
        delay = min(self.base_delay * (2 ** (attempt - 1)), self.max_delay)
        return delay + random.uniform(0, delay * self.jitter)


def retry_call(
    fn: Callable[[], T],
    policy: RetryPolicy,
    *,
    label: str = "",
    sleep: Callable[[float], None] = time.sleep,
    stop_on: tuple[type[PromotionError], ...] = (),
) -> T:
    """Call ``fn`` until it succeeds, raises a non-retryable error, or the
    attempt budget runs out.

    Raises:
        PromotionError: The last retryable error when attempts are exhausted,
            or the first non-retryable one. Errors of a ``stop_on`` type are
            raised at once, retryable or not.
    """
    attempt = 0
    while True:
        attempt += 1
        try:
            return fn()
        except PromotionError as e:
            if isinstance(e, stop_on):
                raise
            if not e.retryable or attempt >= policy.max_attempts:
                if e.retryable:
                    logger.warning(
                        "%s: giving up after %d attempts: %s", label or "call", attempt, e
                    )
                raise
            delay = policy.delay_for(attempt)
            logger.debug(
                "%s: attempt %d/%d failed (%s), retrying in %.2fs",
                label or "call",
                attempt,
                policy.max_attempts,
                e.kind,
                delay,
            )
            sleep(delay)
