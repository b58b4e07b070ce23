"""Production hardening utilities for the Crucible pipeline.

Provides retry-with-backoff for operations that hit transient
failures (locked databases, dropped connections). Retries can be
bounded, or unbounded for writes that must eventually land.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Retry Logic
# ---------------------------------------------------------------------------

_DEFAULT_RETRYABLE = (IOError, OSError, TimeoutError, ConnectionError)


@dataclass
class RetryConfig:
    """Configuration for retry-with-backoff behavior.

    Attributes:
        max_attempts: Total number of attempts (including the first).
            None retries until the call succeeds.
        base_delay: Initial delay in seconds before first retry.
        max_delay: Upper bound on delay between retries.
        exponential_backoff: Double delay on each retry when True.
        retryable_exceptions: Tuple of exception types that trigger a retry.
        should_retry: Optional predicate that narrows retryable_exceptions.
            A caught exception it rejects is re-raised immediately.
    """

    max_attempts: int | None = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    exponential_backoff: bool = True
    retryable_exceptions: tuple[type[BaseException], ...] = _DEFAULT_RETRYABLE
    should_retry: Callable[[BaseException], bool] | None = None

    def __post_init__(self) -> None:
        """Reject attempt counts that would never call the function."""
        if self.max_attempts is not None and self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1 or None")


class RetriesExhaustedError(Exception):
    """Raised when all retry attempts have been exhausted.

    Attributes:
        last_error: The final exception that caused the failure.
        attempts: Total number of attempts made.
    """

    def __init__(self, last_error: Exception, attempts: int) -> None:
        self.last_error = last_error
        self.attempts = attempts
        super().__init__(f"All {attempts} attempts failed. Last error: {last_error}")


def _compute_delay(attempt: int, config: RetryConfig) -> float:
    """Compute the delay before the next retry attempt.

    Args:
        attempt: Zero-based attempt index (0 = first retry).
        config: Retry configuration.

    Returns:
        Delay in seconds, capped at config.max_delay.
    """
    if config.exponential_backoff:
        # Cap the exponent so unbounded retries never overflow.
        delay = config.base_delay * (2 ** min(attempt, 32))
    else:
        delay = config.base_delay
    return min(delay, config.max_delay)


def retry_with_backoff(
    func: Callable[..., Any],
    config: RetryConfig | None = None,
    *args: Any,
    sleep_func: Callable[[float], None] | None = None,
    **kwargs: Any,
) -> Any:
    """Execute *func* with exponential-backoff retry on transient failures.

    Args:
        func: Callable to invoke.
        config: Retry configuration. Uses defaults when None.
        *args: Positional arguments forwarded to *func*.
        sleep_func: Injectable sleep for testing. Defaults to time.sleep.
        **kwargs: Keyword arguments forwarded to *func*.

    Returns:
        Whatever *func* returns on success.

    Raises:
        RetriesExhaustedError: When all attempts fail with retryable errors.
        Exception: Immediately re-raised for non-retryable errors.
    """
    cfg = config or RetryConfig()
    do_sleep = sleep_func or time.sleep
    attempt = 0

    while True:
        try:
            return func(*args, **kwargs)
        except cfg.retryable_exceptions as exc:
            if cfg.should_retry is not None and not cfg.should_retry(exc):
                raise
            attempt += 1
            if cfg.max_attempts is not None and attempt >= cfg.max_attempts:
                raise RetriesExhaustedError(exc, attempt) from exc  # type: ignore[arg-type]
            delay = _compute_delay(attempt - 1, cfg)
            logger.warning(
                "Attempt %d/%s failed (%s). Retrying in %.1fs.",
                attempt,
                cfg.max_attempts if cfg.max_attempts is not None else "unbounded",
                exc,
                delay,
            )
            do_sleep(delay)
