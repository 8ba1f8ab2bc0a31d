"""Bounded retry with fixed backoff."""

import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional, Tuple, TypeVar

from .errors import ProvisionError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class RetryBudget:
    """
    Per-invocation retry state.

    Created fresh for every retried operation and discarded when it
    completes; never shared between operations.
    """
    max_attempts: int = 1
    backoff: float = 0.0
    attempts: int = 0

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {self.max_attempts}")
        if self.backoff < 0:
            raise ValueError(f"backoff must be >= 0, got {self.backoff}")

    @property
    def exhausted(self) -> bool:
        return self.attempts >= self.max_attempts

    @property
    def remaining(self) -> int:
        return self.max_attempts - self.attempts

    def consume(self) -> int:
        """Record one attempt and return its 1-based number."""
        if self.exhausted:
            raise RuntimeError(
                f"Retry budget exhausted ({self.attempts}/{self.max_attempts})"
            )
        self.attempts += 1
        return self.attempts


def run_with_retry(
    operation: Callable[[int], T],
    budget: RetryBudget,
    succeeded: Callable[[T], bool] = bool,
    sleep: Callable[[float], None] = time.sleep,
    label: str = "operation",
) -> Tuple[Optional[T], Optional[ProvisionError]]:
    """
    Run ``operation`` until it succeeds or the budget is spent.

    ``operation`` receives the attempt number. A ``ProvisionError`` or a
    value rejected by ``succeeded`` counts as a failed attempt; errors marked
    non-retryable end the loop at once. Other exceptions propagate.

    Returns:
        (last value, last error). On success the error is None.
    """
    value: Optional[T] = None
    error: Optional[ProvisionError] = None

    while not budget.exhausted:
        attempt = budget.consume()
        error = None
        try:
            value = operation(attempt)
        except ProvisionError as exc:
            value = None
            error = exc
            if not exc.retryable:
                logger.warning(f"{label}: {exc.reason} (not retryable)")
                return value, error
        else:
            if succeeded(value):
                return value, None

        if budget.exhausted:
            break
        logger.warning(
            f"{label}: attempt {attempt}/{budget.max_attempts} failed"
            + (f": {error.reason}" if error else "")
            + f", retrying in {budget.backoff:g}s..."
        )
        sleep(budget.backoff)

    logger.error(f"{label}: failed after {budget.attempts} attempt(s)")
    return value, error
