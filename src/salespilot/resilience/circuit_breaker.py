"""Per-dependency circuit breakers with rolling-window statistics.

A breaker wraps one outbound call type. It counts outcomes in a rolling
window split into buckets and stops calling the dependency once the failure
rate crosses the configured threshold. After ``reset_timeout_seconds`` a single
probe call decides whether the circuit closes again.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import threading
import time
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional

from pydantic import BaseModel, Field

from salespilot.errors import (
    CallTimeoutError,
    CircuitOpenError,
    ClientError,
    RateLimitedError,
    status_code_of,
)

logger = logging.getLogger(__name__)

Clock = Callable[[], float]
ErrorFilter = Callable[[BaseException], bool]


class CircuitState(str, Enum):
    """Breaker states."""

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class BreakerOptions(BaseModel):
    """Tuning for a single circuit breaker.

    Attributes:
        timeout_seconds: Upper bound for one protected call
        error_threshold_percentage: Failure rate that trips the breaker
        reset_timeout_seconds: Time spent OPEN before a probe is allowed
        rolling_count_timeout_seconds: Length of the statistics window
        rolling_count_buckets: Number of buckets the window is split into
        volume_threshold: Minimum requests in the window before tripping
        count_rate_limits: Count HTTP 429 responses as failures
    """

    timeout_seconds: float = Field(default=10.0, gt=0)
    error_threshold_percentage: float = Field(default=50.0, ge=0, le=100)
    reset_timeout_seconds: float = Field(default=30.0, gt=0)
    rolling_count_timeout_seconds: float = Field(default=10.0, gt=0)
    rolling_count_buckets: int = Field(default=10, ge=1, le=1000)
    volume_threshold: int = Field(default=5, ge=0)
    count_rate_limits: bool = False


# Presets for the services the pipeline talks to.
SERVICE_PRESETS: Dict[str, BreakerOptions] = {
    "hubspot": BreakerOptions(
        timeout_seconds=10.0,
        error_threshold_percentage=50,
        reset_timeout_seconds=30.0,
        volume_threshold=10,
    ),
    "lemlist": BreakerOptions(
        timeout_seconds=15.0,
        error_threshold_percentage=60,
        reset_timeout_seconds=45.0,
        volume_threshold=5,
    ),
    "explorium": BreakerOptions(
        timeout_seconds=30.0,
        error_threshold_percentage=40,
        reset_timeout_seconds=60.0,
        volume_threshold=3,
    ),
    "postmark": BreakerOptions(
        timeout_seconds=8.0,
        error_threshold_percentage=50,
        reset_timeout_seconds=30.0,
        volume_threshold=10,
    ),
    "phantombuster": BreakerOptions(
        timeout_seconds=20.0,
        error_threshold_percentage=55,
        reset_timeout_seconds=45.0,
        volume_threshold=5,
    ),
}


@dataclass
class _Bucket:
    started_at: float
    requests: int = 0
    failures: int = 0
    successes: int = 0
    timeouts: int = 0
    rejections: int = 0


def default_error_filter(count_rate_limits: bool = False) -> ErrorFilter:
    """Build the filter that keeps caller mistakes out of breaker statistics.

    The returned callable answers True when the error must NOT be counted.
    """

    def _filter(exc: BaseException) -> bool:
        if isinstance(exc, ClientError):
            return True
        if isinstance(exc, RateLimitedError):
            return not count_rate_limits
        status = status_code_of(exc)
        if status is None:
            return False
        if status == 429:
            return not count_rate_limits
        return 400 <= status < 500

    return _filter


class CircuitBreaker:
    """Circuit breaker guarding one external dependency.

    All counter and state mutations happen under the breaker's own lock, so
    breakers for unrelated dependencies never contend. The lock is never held
    while the protected call is awaited.
    """

    def __init__(
        self,
        name: str,
        options: Optional[BreakerOptions] = None,
        *,
        error_filter: Optional[ErrorFilter] = None,
        clock: Clock = time.monotonic,
    ) -> None:
        self.name = name
        self.options = options or BreakerOptions()
        self._error_filter = error_filter or default_error_filter(
            self.options.count_rate_limits
        )
        self._clock = clock
        self._lock = threading.Lock()
        self._state = CircuitState.CLOSED
        self._buckets: Deque[_Bucket] = deque()
        self._opened_at: Optional[float] = None
        self._probe_in_flight = False
        self._bucket_span = (
            self.options.rolling_count_timeout_seconds / self.options.rolling_count_buckets
        )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def state(self) -> CircuitState:
        with self._lock:
            return self._state

    @property
    def is_open(self) -> bool:
        """True while calls would be rejected without reaching the dependency."""
        with self._lock:
            if self._state == CircuitState.HALF_OPEN:
                return self._probe_in_flight
            return self._state == CircuitState.OPEN and not self._reset_elapsed()

    @property
    def next_probe_at(self) -> Optional[float]:
        with self._lock:
            if self._opened_at is None or self._state != CircuitState.OPEN:
                return None
            return self._opened_at + self.options.reset_timeout_seconds

    async def call(self, fn: Callable[..., Awaitable[Any]], *args: Any, **kwargs: Any) -> Any:
        """Execute ``fn`` through the breaker.

        Raises:
            CircuitOpenError: The circuit is open (or a probe is in flight)
            CallTimeoutError: The call exceeded ``timeout_seconds``
        """
        probe = self._admit()
        try:
            outcome = fn(*args, **kwargs)
            if inspect.isawaitable(outcome):
                outcome = await asyncio.wait_for(outcome, self.options.timeout_seconds)
        except asyncio.TimeoutError as exc:
            self._record_failure(probe, timeout=True)
            raise CallTimeoutError(
                f"Call to '{self.name}' exceeded {self.options.timeout_seconds}s",
                details={"dependency": self.name},
            ) from exc
        except asyncio.CancelledError:
            self._release_probe(probe)
            raise
        except Exception as exc:
            if self._error_filter(exc):
                self._record_filtered(probe)
            else:
                self._record_failure(probe)
            raise
        self._record_success(probe)
        return outcome

    def stats(self) -> Dict[str, int]:
        """Totals over the current rolling window."""
        with self._lock:
            return self._totals(self._clock())

    def snapshot(self) -> Dict[str, Any]:
        """Serialisable view of the breaker."""
        with self._lock:
            now = self._clock()
            totals = self._totals(now)
            next_probe = (
                self._opened_at + self.options.reset_timeout_seconds
                if self._state == CircuitState.OPEN and self._opened_at is not None
                else None
            )
            return {
                "name": self.name,
                "state": self._state.value,
                "opened_at": self._opened_at,
                "next_probe_at": next_probe,
                "probe_in_flight": self._probe_in_flight,
                "failure_rate": _failure_rate(totals),
                "stats": totals,
                "options": self.options.model_dump(),
            }

    def reset(self) -> None:
        """Force the breaker back to CLOSED with an empty window."""
        with self._lock:
            self._transition(CircuitState.CLOSED)

    # ------------------------------------------------------------------
    # Internals (callers hold no lock; each method takes it once)
    # ------------------------------------------------------------------

    def _admit(self) -> bool:
        with self._lock:
            now = self._clock()
            if self._state == CircuitState.OPEN:
                if not self._reset_elapsed():
                    self._current_bucket(now).rejections += 1
                    raise CircuitOpenError(self.name)
                self._transition(CircuitState.HALF_OPEN)
                self._probe_in_flight = True
                return True
            if self._state == CircuitState.HALF_OPEN:
                if self._probe_in_flight:
                    self._current_bucket(now).rejections += 1
                    raise CircuitOpenError(
                        self.name, f"Circuit '{self.name}' is probing; call rejected"
                    )
                self._probe_in_flight = True
                return True
            return False

    def _record_success(self, probe: bool) -> None:
        with self._lock:
            bucket = self._current_bucket(self._clock())
            bucket.requests += 1
            bucket.successes += 1
            if probe:
                self._probe_in_flight = False
                self._transition(CircuitState.CLOSED)

    def _record_failure(self, probe: bool, *, timeout: bool = False) -> None:
        with self._lock:
            now = self._clock()
            bucket = self._current_bucket(now)
            bucket.requests += 1
            bucket.failures += 1
            if timeout:
                bucket.timeouts += 1
            if probe:
                self._probe_in_flight = False
                self._transition(CircuitState.OPEN)
                return
            if self._state != CircuitState.CLOSED:
                return
            totals = self._totals(now)
            if (
                totals["requests"] >= self.options.volume_threshold
                and _failure_rate(totals) > self.options.error_threshold_percentage
            ):
                self._transition(CircuitState.OPEN)

    def _record_filtered(self, probe: bool) -> None:
        if not probe:
            return
        # The dependency answered, so it is reachable again.
        with self._lock:
            self._probe_in_flight = False
            self._transition(CircuitState.CLOSED)

    def _release_probe(self, probe: bool) -> None:
        if not probe:
            return
        with self._lock:
            self._probe_in_flight = False

    def _transition(self, new_state: CircuitState) -> None:
        previous = self._state
        self._state = new_state
        if new_state == CircuitState.OPEN:
            self._opened_at = self._clock()
            logger.error(
                f"Circuit '{self.name}' opened",
                extra={
                    "breaker": self.name,
                    "from_state": previous.value,
                    "reset_timeout_seconds": self.options.reset_timeout_seconds,
                },
            )
        elif new_state == CircuitState.HALF_OPEN:
            logger.warning(
                f"Circuit '{self.name}' half-open; probing",
                extra={"breaker": self.name},
            )
        else:
            self._opened_at = None
            self._probe_in_flight = False
            self._buckets.clear()
            if previous != CircuitState.CLOSED:
                logger.info(
                    f"Circuit '{self.name}' closed",
                    extra={"breaker": self.name, "from_state": previous.value},
                )

    def _reset_elapsed(self) -> bool:
        if self._opened_at is None:
            return True
        return self._clock() - self._opened_at >= self.options.reset_timeout_seconds

    def _current_bucket(self, now: float) -> _Bucket:
        self._prune(now)
        if not self._buckets or now - self._buckets[-1].started_at >= self._bucket_span:
            self._buckets.append(_Bucket(started_at=now))
        return self._buckets[-1]

    def _prune(self, now: float) -> None:
        horizon = now - self.options.rolling_count_timeout_seconds
        while self._buckets and self._buckets[0].started_at <= horizon:
            self._buckets.popleft()

    def _totals(self, now: float) -> Dict[str, int]:
        self._prune(now)
        totals = {"requests": 0, "failures": 0, "successes": 0, "timeouts": 0, "rejections": 0}
        for bucket in self._buckets:
            for key in totals:
                totals[key] += getattr(bucket, key)
        return totals


def _failure_rate(totals: Dict[str, int]) -> float:
    if not totals["requests"]:
        return 0.0
    return totals["failures"] / totals["requests"] * 100.0


class CircuitBreakerRegistry:
    """One breaker per dependency name, created at process start."""

    def __init__(
        self,
        overrides: Optional[Dict[str, BreakerOptions]] = None,
        *,
        clock: Clock = time.monotonic,
    ) -> None:
        self._options: Dict[str, BreakerOptions] = dict(SERVICE_PRESETS)
        self._options.update(overrides or {})
        self._clock = clock
        self._breakers: Dict[str, CircuitBreaker] = {}
        self._lock = threading.Lock()

    def get(self, name: str) -> CircuitBreaker:
        """Return the breaker for ``name``, creating it on first use."""
        with self._lock:
            breaker = self._breakers.get(name)
            if breaker is None:
                breaker = CircuitBreaker(
                    name, self._options.get(name, BreakerOptions()), clock=self._clock
                )
                self._breakers[name] = breaker
            return breaker

    def register(self, breaker: CircuitBreaker) -> CircuitBreaker:
        with self._lock:
            self._breakers[breaker.name] = breaker
            return breaker

    def names(self) -> List[str]:
        with self._lock:
            return sorted(self._breakers)

    def open_circuits(self) -> List[str]:
        return [name for name in self.names() if self.get(name).is_open]

    def health(self) -> Dict[str, Dict[str, Any]]:
        """Snapshot of every breaker, keyed by dependency name."""
        return {name: self.get(name).snapshot() for name in self.names()}

    def reset_all(self) -> None:
        for name in self.names():
            self.get(name).reset()


__all__ = [
    "BreakerOptions",
    "CircuitBreaker",
    "CircuitBreakerRegistry",
    "CircuitState",
    "SERVICE_PRESETS",
    "default_error_filter",
]
