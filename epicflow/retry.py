"""Retry with exponential backoff for transient agent and network faults.

Rate limiting, timeouts and gateway errors are retried with exponentially
growing, jittered delays up to a bounded count. Everything else is raised
immediately.
"""

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeVar

from epicflow.config import EpicflowConfig
from epicflow.errors import (
    AgentTimeoutError,
    CircuitBreakerError,
    CostBudgetExceededError,
    HumanInterventionRequired,
    PhaseCancelledError,
    RuleViolation,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

RETRYABLE_PATTERNS = (
    "econnreset",
    "etimedout",
    "enotfound",
    "rate_limit",
    "rate limit",
    "timeout",
    "timed out",
    "overloaded",
    "429",
    "503",
    "504",
)

# Never retried regardless of message text
FATAL_ERRORS = (
    CircuitBreakerError,
    CostBudgetExceededError,
    HumanInterventionRequired,
    PhaseCancelledError,
    RuleViolation,
)


@dataclass
class RetryPolicy:
    """Configuration for transient-fault retries.

    Attributes:
        max_retries: Retries after the first attempt
        initial_delay: Delay before the first retry in seconds
        multiplier: Growth factor per retry
        max_delay: Upper bound on any single delay in seconds
        jitter: Fractional +/- randomisation applied to each delay
    """

    max_retries: int = 3
    initial_delay: float = 1.0
    multiplier: float = 2.0
    max_delay: float = 30.0
    jitter: float = 0.25

    @classmethod
    def from_config(cls, config: EpicflowConfig) -> "RetryPolicy":
        return cls(
            max_retries=config.max_transient_retries,
            initial_delay=config.retry_initial_delay,
            multiplier=config.retry_multiplier,
            max_delay=config.retry_max_delay,
        )


def is_retryable_error(error: BaseException) -> bool:
    """Classify an error as transient."""
    if isinstance(error, FATAL_ERRORS):
        return False
    if isinstance(error, (AgentTimeoutError, asyncio.TimeoutError)):
        return True
    message = str(error).lower()
    return any(pattern in message for pattern in RETRYABLE_PATTERNS)


def calculate_delay(attempt: int, policy: RetryPolicy) -> float:
    """Delay before retrying after the given 1-based failed attempt."""
    delay = policy.initial_delay * (policy.multiplier ** (attempt - 1))
    if policy.jitter:
        delay *= 1 + policy.jitter * (2 * random.random() - 1)
    return min(policy.max_delay, delay)


async def retry_async(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    operation_name: str,
    is_retryable: Callable[[BaseException], bool] = is_retryable_error,
) -> T:
    """Await operation, retrying transient failures with backoff.

    Args:
        operation: Zero-argument coroutine factory, called once per attempt
        policy: Retry bounds and delays
        operation_name: Label used in log messages
        is_retryable: Classifier deciding whether an error is transient

    Returns:
        The operation's result

    Raises:
        The last error once retries are exhausted, or any non-transient
        error immediately
    """
    attempts = policy.max_retries + 1
    for attempt in range(1, attempts + 1):
        try:
            return await operation()
        except Exception as e:
            if attempt >= attempts or not is_retryable(e):
                raise
            delay = calculate_delay(attempt, policy)
            logger.warning(
                f"{operation_name} failed (attempt {attempt}/{attempts}): {e}. "
                f"Retrying in {delay:.1f}s"
            )
            await asyncio.sleep(delay)
    raise AssertionError("unreachable")
