"""Retry policy and bounded retry runner for activities.

Mirrors the semantics of the cloud workflow engine's activity retries:
exponential backoff from ``initial_interval`` multiplied by
``backoff_coefficient`` each attempt, capped at ``maximum_interval``,
stopped after ``maximum_attempts`` (0 means unlimited). Each attempt is
bounded by ``start_to_close_timeout``; a timeout counts as a retryable
failure.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, replace
from typing import Any, TypeVar

from .errors import is_non_retryable
from .models import WorkflowOptions

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """Retry settings for one activity invocation. Intervals are in seconds."""

    initial_interval: float = 1.0
    backoff_coefficient: float = 2.0
    maximum_interval: float = 10.0
    maximum_attempts: int = 2
    start_to_close_timeout: float = 120.0

    def __post_init__(self) -> None:
        if self.initial_interval <= 0:
            raise ValueError("initial_interval must be positive")
        if self.backoff_coefficient < 1.0:
            raise ValueError("backoff_coefficient must be at least 1.0")
        if self.maximum_interval < self.initial_interval:
            raise ValueError("maximum_interval must be >= initial_interval")
        if self.maximum_attempts < 0:
            raise ValueError("maximum_attempts cannot be negative")
        if self.start_to_close_timeout <= 0:
            raise ValueError("start_to_close_timeout must be positive")

    def backoff(self, attempt: int) -> float:
        """Delay to wait after the given (1-based) failed attempt."""
        delay = self.initial_interval * (self.backoff_coefficient ** (attempt - 1))
        return min(delay, self.maximum_interval)

    def allows_attempt(self, attempt: int) -> bool:
        return self.maximum_attempts == 0 or attempt <= self.maximum_attempts

    def with_options(self, options: WorkflowOptions | None) -> RetryPolicy:
        """Return a copy with any fields set in ``options`` overridden."""
        if options is None:
            return self

        overrides: dict[str, Any] = {
            key: value
            for key, value in options.model_dump().items()
            if value is not None and hasattr(self, key)
        }
        if not overrides:
            return self

        # A lowered initial interval should not trip the max >= initial check
        if "initial_interval" in overrides and "maximum_interval" not in overrides:
            overrides["maximum_interval"] = max(
                self.maximum_interval, overrides["initial_interval"]
            )
        return replace(self, **overrides)


# Default policies, matching the cloud-side workflow definitions
DEFAULT_ACTIVITY_POLICY = RetryPolicy(
    initial_interval=1.0,
    backoff_coefficient=2.0,
    maximum_interval=10.0,
    maximum_attempts=2,
    start_to_close_timeout=120.0,
)

# Inventory runs every few minutes, so it keeps the attempt count low
DEFAULT_INVENTORY_POLICY = RetryPolicy(
    initial_interval=2.0,
    backoff_coefficient=2.0,
    maximum_interval=10.0,
    maximum_attempts=2,
    start_to_close_timeout=120.0,
)

DEFAULT_PUBLISH_POLICY = RetryPolicy(
    initial_interval=1.0,
    backoff_coefficient=2.0,
    maximum_interval=60.0,
    maximum_attempts=3,
    start_to_close_timeout=20.0,
)


async def execute_with_retry(
    operation: Callable[[int], Awaitable[T]],
    policy: RetryPolicy,
    *,
    operation_name: str,
    log_extra: dict[str, Any] | None = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> T:
    """Run ``operation`` until it succeeds or the policy is exhausted.

    Args:
        operation: Coroutine factory receiving the 1-based attempt number.
        policy: Retry policy governing attempts and backoff.
        operation_name: Human-readable name for logging.
        log_extra: Extra structured fields for every log line.
        sleep: Awaitable sleep, replaceable in tests.

    Returns:
        The operation's result.

    Raises:
        The last error, unmodified, once the policy is exhausted or a
        non-retryable error is raised.
    """
    extra = dict(log_extra or {})
    attempt = 1

    while True:
        try:
            return await asyncio.wait_for(operation(attempt), timeout=policy.start_to_close_timeout)
        except TimeoutError as e:
            last_error: Exception = e
            logger.warning(
                f"{operation_name} timed out",
                extra={**extra, "attempt": attempt, "timeout_seconds": policy.start_to_close_timeout},
            )
        except Exception as e:
            last_error = e
            if is_non_retryable(e):
                logger.warning(
                    f"{operation_name} failed with non-retryable error",
                    extra={**extra, "attempt": attempt, "error": str(e)},
                )
                raise

        if not policy.allows_attempt(attempt + 1):
            logger.error(
                f"{operation_name} failed, retries exhausted",
                extra={
                    **extra,
                    "attempts": attempt,
                    "max_attempts": policy.maximum_attempts,
                    "error": str(last_error),
                },
            )
            raise last_error

        wait_time = policy.backoff(attempt)
        logger.warning(
            f"{operation_name} failed, retrying",
            extra={
                **extra,
                "attempt": attempt,
                "max_attempts": policy.maximum_attempts,
                "wait_seconds": wait_time,
                "error": str(last_error),
            },
        )
        await sleep(wait_time)
        attempt += 1
