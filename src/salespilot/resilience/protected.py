"""Breaker-wraps-retry composition for outbound dependency calls."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Dict

from salespilot.errors import ConfigurationError
from salespilot.resilience.circuit_breaker import CircuitBreaker, CircuitBreakerRegistry
from salespilot.resilience.retry_policy import (
    RetryPolicy,
    RetryPolicyRegistry,
    Sleep,
    retry_call,
)

logger = logging.getLogger(__name__)


class ProtectedDependency:
    """A named dependency whose calls go through its breaker, then its retry policy.

    Once the breaker opens no attempt (retried or not) reaches the dependency
    until the breaker lets a probe through.

    Raises:
        ConfigurationError: If the retry budget is not strictly less than the
            breaker's call timeout
    """

    def __init__(
        self,
        breaker: CircuitBreaker,
        policy: RetryPolicy,
        *,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        budget = policy.budget_seconds()
        if budget >= breaker.options.timeout_seconds:
            raise ConfigurationError(
                f"Retry budget for '{breaker.name}' ({budget:.2f}s) must be below "
                f"the breaker timeout ({breaker.options.timeout_seconds:.2f}s)",
                details={
                    "dependency": breaker.name,
                    "retry_budget_seconds": budget,
                    "breaker_timeout_seconds": breaker.options.timeout_seconds,
                },
            )
        self.breaker = breaker
        self.policy = policy
        self._sleep = sleep
        logger.debug(
            f"Protected dependency '{breaker.name}' ready",
            extra={"dependency": breaker.name, "retry_budget_seconds": budget},
        )

    @property
    def name(self) -> str:
        return self.breaker.name

    @property
    def is_open(self) -> bool:
        return self.breaker.is_open

    async def call(self, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        return await self.breaker.call(
            retry_call, self.policy, fn, *args, sleep=self._sleep, **kwargs
        )

    def snapshot(self) -> Dict[str, Any]:
        view = self.breaker.snapshot()
        view["retry"] = {
            "strategy": self.policy.strategy.value,
            "max_attempts": self.policy.max_attempts,
            "budget_seconds": self.policy.budget_seconds(),
        }
        return view

    @classmethod
    def from_registries(
        cls,
        name: str,
        breakers: CircuitBreakerRegistry,
        retries: RetryPolicyRegistry,
        *,
        sleep: Sleep = asyncio.sleep,
    ) -> "ProtectedDependency":
        return cls(breakers.get(name), retries.get_policy(name), sleep=sleep)
