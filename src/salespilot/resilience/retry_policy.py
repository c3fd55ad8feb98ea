"""Configurable retry policies per external dependency.

Implements exponential backoff with jitter and per-attempt timeouts. Retries
run *inside* the circuit breaker call, so the breaker sees one aggregate
outcome per logical call.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import random
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, Optional

import yaml
from pydantic import BaseModel, Field

from salespilot.errors import (
    CallTimeoutError,
    ConfigurationError,
    RateLimitedError,
    is_retryable,
    status_code_of,
)

logger = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[None]]


class RetryStrategy(str, Enum):
    """Retry strategy types for different backoff patterns."""

    EXPONENTIAL_BACKOFF = "exponential_backoff"  # 0.5s, 1s, 2s...
    LINEAR_BACKOFF = "linear_backoff"  # 0.5s, 1s, 1.5s...
    FIXED_DELAY = "fixed_delay"  # 0.5s, 0.5s, 0.5s...
    IMMEDIATE = "immediate"  # No delay (testing only)
    NO_RETRY = "no_retry"  # Fail immediately


class RetryPolicy(BaseModel):
    """Retry policy for one dependency.

    Attributes:
        dependency: Dependency name this policy applies to
        strategy: Backoff strategy to use
        max_attempts: Total attempts including the first one (1-10)
        base_delay_seconds: Base backoff delay
        max_delay_seconds: Cap applied before jitter
        jitter_factor: Random jitter factor (0.0-1.0)
        backoff_multiplier: Multiplier for exponential backoff
        attempt_timeout_seconds: Upper bound for each individual attempt
        rate_limit_delay_seconds: Base delay used after a 429
    """

    dependency: str = "default"
    strategy: RetryStrategy = RetryStrategy.EXPONENTIAL_BACKOFF
    max_attempts: int = Field(default=3, ge=1, le=10)
    base_delay_seconds: float = Field(default=0.5, ge=0, le=600)
    max_delay_seconds: float = Field(default=5.0, ge=0, le=3600)
    jitter_factor: float = Field(default=0.2, ge=0.0, le=1.0)
    backoff_multiplier: float = Field(default=2.0, ge=1.0, le=10.0)
    attempt_timeout_seconds: float = Field(default=2.0, gt=0, le=600)
    rate_limit_delay_seconds: Optional[float] = Field(default=None, ge=0, le=3600)

    @property
    def effective_attempts(self) -> int:
        if self.strategy == RetryStrategy.NO_RETRY:
            return 1
        return self.max_attempts

    def base_delay(self, attempt: int, rate_limited: bool = False) -> float:
        """Backoff delay before retry ``attempt`` (0-indexed), without jitter."""
        if rate_limited and self.rate_limit_delay_seconds is not None:
            base = self.rate_limit_delay_seconds
        else:
            base = self.base_delay_seconds

        if self.strategy == RetryStrategy.EXPONENTIAL_BACKOFF:
            delay = base * (self.backoff_multiplier**attempt)
        elif self.strategy == RetryStrategy.LINEAR_BACKOFF:
            delay = base * (attempt + 1)
        elif self.strategy == RetryStrategy.FIXED_DELAY:
            delay = base
        else:
            delay = 0.0

        return min(delay, self.max_delay_seconds)

    def calculate_delay(self, attempt: int, rate_limited: bool = False) -> float:
        """Calculate retry delay with jitter.

        Args:
            attempt: Current retry attempt number (0-indexed)
            rate_limited: Whether the last failure was a 429

        Returns:
            Delay in seconds with jitter applied
        """
        delay = self.base_delay(attempt, rate_limited)
        if self.jitter_factor > 0 and delay > 0:
            jitter_amount = delay * self.jitter_factor
            delay = max(0.0, delay + random.uniform(-jitter_amount, jitter_amount))
        return delay

    def budget_seconds(self) -> float:
        """Worst-case wall time of one logical call.

        Sum of every attempt timeout plus the largest possible backoff delay
        (including jitter) between attempts.
        """
        attempts = self.effective_attempts
        total = attempts * self.attempt_timeout_seconds
        for attempt in range(attempts - 1):
            longest = max(
                self.base_delay(attempt, rate_limited=False),
                self.base_delay(attempt, rate_limited=True),
            )
            total += longest * (1 + self.jitter_factor)
        return total


@dataclass
class RetryBudget:
    """Tracks attempts for a single logical call.

    Attributes:
        dependency: Dependency being called
        attempts: Number of attempts made so far
        first_attempt_at: Timestamp of first attempt
        last_attempt_at: Timestamp of most recent attempt
        total_delay_seconds: Cumulative backoff across retries
        last_error: Message of the most recent failure
    """

    dependency: str
    attempts: int = 0
    first_attempt_at: Optional[datetime] = None
    last_attempt_at: Optional[datetime] = None
    total_delay_seconds: float = 0.0
    last_error: Optional[str] = None

    def record_attempt(self) -> None:
        now = datetime.now(timezone.utc)
        if self.first_attempt_at is None:
            self.first_attempt_at = now
        self.last_attempt_at = now
        self.attempts += 1

    def can_retry(self, policy: RetryPolicy, exc: BaseException) -> bool:
        """Check if another attempt is allowed after ``exc``."""
        if not is_retryable(exc):
            return False
        return self.attempts < policy.effective_attempts

    def next_delay(self, policy: RetryPolicy, exc: BaseException) -> float:
        rate_limited = isinstance(exc, RateLimitedError) or status_code_of(exc) == 429
        delay = policy.calculate_delay(self.attempts - 1, rate_limited)
        self.total_delay_seconds += delay
        return delay


async def retry_call(
    policy: RetryPolicy,
    fn: Callable[..., Any],
    *args: Any,
    sleep: Sleep = asyncio.sleep,
    **kwargs: Any,
) -> Any:
    """Call ``fn`` until it succeeds, a non-retryable error occurs, or attempts run out.

    Each attempt is bounded by ``policy.attempt_timeout_seconds``; an expired
    attempt raises :class:`CallTimeoutError`, which is retryable.
    """
    budget = RetryBudget(dependency=policy.dependency)
    while True:
        budget.record_attempt()
        try:
            outcome = fn(*args, **kwargs)
            if inspect.isawaitable(outcome):
                try:
                    outcome = await asyncio.wait_for(outcome, policy.attempt_timeout_seconds)
                except asyncio.TimeoutError as exc:
                    raise CallTimeoutError(
                        f"Attempt {budget.attempts} against '{policy.dependency}' "
                        f"exceeded {policy.attempt_timeout_seconds}s",
                        details={"dependency": policy.dependency, "attempt": budget.attempts},
                    ) from exc
            return outcome
        except Exception as exc:
            budget.last_error = str(exc)
            if not budget.can_retry(policy, exc):
                if budget.attempts > 1:
                    logger.warning(
                        f"Giving up on '{policy.dependency}' after {budget.attempts} attempts",
                        extra={
                            "dependency": policy.dependency,
                            "attempts": budget.attempts,
                            "total_delay_seconds": budget.total_delay_seconds,
                            "error": budget.last_error,
                        },
                    )
                raise
            delay = budget.next_delay(policy, exc)
            logger.info(
                f"Retrying '{policy.dependency}' in {delay:.2f}s",
                extra={
                    "dependency": policy.dependency,
                    "attempt": budget.attempts,
                    "delay_seconds": delay,
                    "error": budget.last_error,
                },
            )
            await sleep(delay)


class RetryPolicyRegistry:
    """Manages retry policies per dependency.

    Provides defaults for the known services and supports loading overrides
    from a YAML file of the form::

        retry_policies:
          hubspot:
            max_attempts: 4
            base_delay_seconds: 0.25
    """

    DEFAULT_POLICIES: Dict[str, RetryPolicy] = {
        "hubspot": RetryPolicy(
            dependency="hubspot",
            max_attempts=3,
            base_delay_seconds=0.5,
            max_delay_seconds=2.0,
            attempt_timeout_seconds=2.0,
            rate_limit_delay_seconds=1.0,
        ),
        "lemlist": RetryPolicy(
            dependency="lemlist",
            max_attempts=3,
            base_delay_seconds=0.5,
            max_delay_seconds=2.0,
            attempt_timeout_seconds=3.0,
            rate_limit_delay_seconds=1.0,
        ),
        "explorium": RetryPolicy(
            dependency="explorium",
            max_attempts=3,
            base_delay_seconds=1.0,
            max_delay_seconds=4.0,
            attempt_timeout_seconds=6.0,
        ),
        "postmark": RetryPolicy(
            dependency="postmark",
            max_attempts=3,
            base_delay_seconds=0.25,
            max_delay_seconds=1.0,
            attempt_timeout_seconds=1.5,
        ),
        "phantombuster": RetryPolicy(
            dependency="phantombuster",
            max_attempts=3,
            base_delay_seconds=1.0,
            max_delay_seconds=3.0,
            attempt_timeout_seconds=4.0,
        ),
    }

    def __init__(self, config_path: Optional[Path] = None) -> None:
        self._policies = self.DEFAULT_POLICIES.copy()
        if config_path and config_path.exists():
            self._load_config(config_path)

    def get_policy(self, dependency: str) -> RetryPolicy:
        """Get retry policy for a dependency (default if not configured)."""
        return self._policies.get(dependency) or RetryPolicy(dependency=dependency)

    def set_policy(self, policy: RetryPolicy) -> None:
        self._policies[policy.dependency] = policy

    def list_policies(self) -> Dict[str, RetryPolicy]:
        return self._policies.copy()

    def _load_config(self, config_path: Path) -> None:
        """Load retry policy overrides from YAML.

        Raises:
            ConfigurationError: If configuration is invalid
        """
        try:
            with open(config_path, "r", encoding="utf-8") as f:
                config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML configuration: {e}") from e

        if not isinstance(config, dict) or "retry_policies" not in config:
            raise ConfigurationError("Configuration must contain 'retry_policies' key")

        policies_config = config["retry_policies"]
        if not isinstance(policies_config, dict):
            raise ConfigurationError("'retry_policies' must be a dictionary")

        for dependency, policy_dict in policies_config.items():
            try:
                policy = RetryPolicy(**{**(policy_dict or {}), "dependency": dependency})
            except ValueError as e:
                raise ConfigurationError(
                    f"Invalid retry policy for '{dependency}': {e}"
                ) from e
            self._policies[dependency] = policy


__all__ = [
    "RetryBudget",
    "RetryPolicy",
    "RetryPolicyRegistry",
    "RetryStrategy",
    "retry_call",
]
