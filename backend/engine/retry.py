"""
Bounded retry with exponential backoff for store and market data calls.

Only transient failures are retried. Validation errors and lookup misses
surface on the first attempt.
"""
from dataclasses import dataclass, field
from typing import Any, Callable, Optional, Tuple, Type
import logging
import threading
import time

from storage.errors import StoreFailureError

logger = logging.getLogger(__name__)


@dataclass
class RetryPolicy:
    """Retry configuration."""

    max_attempts: int = 3
    initial_delay_seconds: float = 0.5
    max_delay_seconds: float = 5.0
    backoff_multiplier: float = 2.0
    retry_on: Tuple[Type[BaseException], ...] = field(
        default=(StoreFailureError, ConnectionError, TimeoutError)
    )

    @classmethod
    def from_settings(cls, settings: Any) -> "RetryPolicy":
        return cls(
            max_attempts=settings.retry_max_attempts,
            initial_delay_seconds=settings.retry_initial_delay_seconds,
            max_delay_seconds=settings.retry_max_delay_seconds,
            backoff_multiplier=settings.retry_backoff_multiplier,
        )

    @classmethod
    def no_retry(cls) -> "RetryPolicy":
        return cls(max_attempts=1)

    def delay_for(self, attempt: int) -> float:
        """Delay before retry number `attempt` (1-based)."""
        delay = self.initial_delay_seconds * (self.backoff_multiplier ** (attempt - 1))
        return min(delay, self.max_delay_seconds)

    def call(
        self,
        func: Callable[..., Any],
        *args: Any,
        description: str = "",
        stop_event: Optional[threading.Event] = None,
        sleep: Callable[[float], None] = time.sleep,
        **kwargs: Any,
    ) -> Any:
        """
        Call func, retrying transient failures up to max_attempts in total.

        A set stop_event ends the backoff wait early and re-raises the last error.
        """
        label = description or getattr(func, "__name__", "call")
        attempts = max(1, self.max_attempts)
        for attempt in range(1, attempts + 1):
            try:
                return func(*args, **kwargs)
            except self.retry_on as exc:
                if attempt >= attempts:
                    logger.error("%s failed after %d attempts: %s", label, attempt, exc)
                    raise
                delay = self.delay_for(attempt)
                logger.warning("%s failed (attempt %d/%d), retrying in %.2fs: %s",
                               label, attempt, attempts, delay, exc)
                if stop_event is not None:
                    if stop_event.wait(timeout=delay):
                        raise
                else:
                    sleep(delay)
