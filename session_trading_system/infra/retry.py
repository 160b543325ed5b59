"""Retry policy with exponential backoff for brokerage calls."""

from __future__ import annotations

import logging
import time
from functools import wraps
from typing import Any, Callable, Optional, TypeVar

import requests

from session_trading_system.config.models import ExecutionConfig
from session_trading_system.core.errors import ExecutionFailure

logger = logging.getLogger(__name__)
T = TypeVar("T")

# Network-level failures worth another attempt
TRANSIENT_ERRORS: tuple[type[BaseException], ...] = (
    requests.RequestException,
    TimeoutError,
    ConnectionError,
    OSError,
)


def is_transient(exc: BaseException) -> bool:
    """Return True when ``exc`` may succeed on a later attempt."""
    if isinstance(exc, ExecutionFailure):
        return exc.transient
    return isinstance(exc, TRANSIENT_ERRORS)


class RetryPolicy:
    """Synchronous retry policy with exponential backoff.

    Usable as a decorator or through ``call()``. Only transient failures are
    retried; anything else propagates on the first attempt.
    """

    def __init__(
        self,
        max_retries: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
        exponential_base: float = 2.0,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """Initialize retry policy.

        Args:
            max_retries: Maximum number of retry attempts after the first call.
            base_delay: Initial delay in seconds.
            max_delay: Maximum delay in seconds.
            exponential_base: Base for exponential backoff calculation.
            sleep: Function used to wait between attempts.
        """
        if max_retries < 0:
            raise ValueError(f"max_retries must be >= 0, got {max_retries}")
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.exponential_base = exponential_base
        self._sleep = sleep

    @classmethod
    def from_config(
        cls, config: ExecutionConfig, sleep: Callable[[float], None] = time.sleep
    ) -> RetryPolicy:
        return cls(
            max_retries=config.max_retries,
            base_delay=config.base_delay_seconds,
            max_delay=config.max_delay_seconds,
            sleep=sleep,
        )

    def delay_for(self, attempt: int) -> float:
        """Backoff before retry number ``attempt + 1`` (attempt is zero-based)."""
        return min(self.base_delay * (self.exponential_base**attempt), self.max_delay)

    def call(self, func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        """Invoke ``func`` with retries.

        Raises:
            The last exception once attempts are exhausted, or the first
            non-transient exception.
        """
        name = getattr(func, "__name__", repr(func))
        last_exception: Optional[BaseException] = None

        for attempt in range(self.max_retries + 1):
            try:
                if attempt > 0:
                    logger.debug("Retry attempt %d/%d for %s", attempt, self.max_retries, name)
                return func(*args, **kwargs)
            except Exception as e:
                if not is_transient(e):
                    logger.error("Non-retryable error in %s: %s: %s", name, type(e).__name__, e)
                    raise
                last_exception = e
                if attempt < self.max_retries:
                    delay = self.delay_for(attempt)
                    logger.warning(
                        "Attempt %d failed with %s: %s. Retrying in %.1fs...",
                        attempt + 1,
                        type(e).__name__,
                        e,
                        delay,
                    )
                    self._sleep(delay)
                else:
                    logger.error("All %d attempts failed for %s", self.max_retries + 1, name)

        if last_exception is not None:
            raise last_exception

        raise RuntimeError("Retry loop exhausted without exception or return")

    def __call__(self, func: Callable[..., T]) -> Callable[..., T]:
        """Decorator form of ``call()``."""

        @wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> T:
            return self.call(func, *args, **kwargs)

        return wrapper


__all__ = ["RetryPolicy", "TRANSIENT_ERRORS", "is_transient"]
