"""
Bounded retry with exponential backoff and jitter.

Only errors flagged ``retryable`` (``TransientFetchError``) are
retried; everything else propagates on the first attempt. When the
attempts run out, the last error propagates unchanged.
"""

from __future__ import annotations

import logging
import random
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import TypeVar

from nodeprov.core.errors import ProvisionError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    attempts: int = 3
    base_delay: float = 2.0
    max_delay: float = 30.0

    def delay_for(self, attempt: int) -> float:
        """Backoff before retry number ``attempt`` (1-based), jitter included."""
        delay = min(self.base_delay * (2 ** (attempt - 1)), self.max_delay)
        return delay + random.uniform(0, delay * 0.3)


NO_RETRY = RetryPolicy(attempts=1, base_delay=0.0, max_delay=0.0)


def call_with_retry(
    fn: Callable[[], T],
    policy: RetryPolicy,
    *,
    label: str = "operation",
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Call ``fn`` until it succeeds or the policy's attempts are used up."""
    attempt = 1
    while True:
        try:
            return fn()
        except ProvisionError as e:
            if not e.retryable or attempt >= policy.attempts:
                raise
            delay = policy.delay_for(attempt)
            logger.warning(
                "%s failed (attempt %d/%d): %s — retrying in %.1fs",
                label,
                attempt,
                policy.attempts,
                e,
                delay,
            )
            sleep(delay)
            attempt += 1
