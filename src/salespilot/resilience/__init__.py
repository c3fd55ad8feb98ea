"""Circuit breakers and retry policies for external dependencies."""

from .circuit_breaker import (
    SERVICE_PRESETS,
    BreakerOptions,
    CircuitBreaker,
    CircuitBreakerRegistry,
    CircuitState,
    default_error_filter,
)
from .protected import ProtectedDependency
from .retry_policy import RetryBudget, RetryPolicy, RetryPolicyRegistry, RetryStrategy, retry_call

__all__ = [
    "SERVICE_PRESETS",
    "BreakerOptions",
    "CircuitBreaker",
    "CircuitBreakerRegistry",
    "CircuitState",
    "ProtectedDependency",
    "RetryBudget",
    "RetryPolicy",
    "RetryPolicyRegistry",
    "RetryStrategy",
    "default_error_filter",
    "retry_call",
]
