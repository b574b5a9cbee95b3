"""Endpoint circuit breaker - stop hammering endpoints that keep failing.

Each subscription gets its own breaker. After a run of consecutive
transient failures the circuit opens and the dispatcher postpones that
subscription's tasks until the cool-down has passed; a few trial
deliveries in the half-open state then decide whether to close again.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Dict, List, Optional
import logging
import threading

from .models import utcnow

logger = logging.getLogger(__name__)


class CircuitState(Enum):
    """Circuit breaker states."""

    CLOSED = "closed"      # Normal operation, deliveries pass through
    OPEN = "open"          # Endpoint failing, deliveries are postponed
    HALF_OPEN = "half_open"  # Trial deliveries probe for recovery


@dataclass
class CircuitStats:
    """Counters for one endpoint circuit."""

    consecutive_failures: int = 0
    half_open_successes: int = 0
    last_failure_time: Optional[datetime] = None
    state_changed_at: datetime = field(default_factory=utcnow)
    total_calls: int = 0
    total_failures: int = 0
    total_blocked: int = 0

    @property
    def failure_rate(self) -> float:
        """Failure rate as percentage over the breaker's lifetime."""
        if self.total_calls == 0:
            return 0.0
        return (self.total_failures / self.total_calls) * 100


class CircuitBreakerError(Exception):
    """Raised when a circuit is open and the delivery must wait."""

    def __init__(self, name: str, until: datetime):
        self.name = name
        self.until = until
        super().__init__(f"Circuit '{name}' is open until {until.isoformat()}")


@dataclass
class CircuitBreakerConfig:
    """Configuration for an endpoint circuit breaker."""

    failure_threshold: int = 5  # Consecutive failures before opening
    success_threshold: int = 2  # Successes in half-open before closing
    timeout_seconds: float = 60.0  # Cool-down before half-open
    half_open_max_calls: int = 2  # Concurrent trial deliveries in half-open


class CircuitBreaker:
    """Circuit breaker for a single webhook endpoint.

    Example:
        >>> breaker = CircuitBreaker("sub_123")
        >>> breaker.allow_request()      # raises CircuitBreakerError if open
        >>> breaker.record_failure()     # after a transient delivery failure
    """

    def __init__(self, name: str, config: Optional[CircuitBreakerConfig] = None):
        self.name = name
        self.config = config or CircuitBreakerConfig()
        self.state = CircuitState.CLOSED
        self.stats = CircuitStats()
        self._half_open_calls = 0
        self._lock = threading.Lock()

    @property
    def is_closed(self) -> bool:
        return self.state == CircuitState.CLOSED

    @property
    def is_open(self) -> bool:
        return self.state == CircuitState.OPEN

    @property
    def is_half_open(self) -> bool:
        return self.state == CircuitState.HALF_OPEN

    def _retry_at(self) -> datetime:
        last = self.stats.last_failure_time or self.stats.state_changed_at
        return last + timedelta(seconds=self.config.timeout_seconds)

    def _transition_to(self, new_state: CircuitState) -> None:
        old_state = self.state
        self.state = new_state
        self.stats.consecutive_failures = 0
        self.stats.half_open_successes = 0
        self.stats.state_changed_at = utcnow()
        self._half_open_calls = 0
        logger.info(f"Circuit '{self.name}': {old_state.value} -> {new_state.value}")

    def allow_request(self, now: Optional[datetime] = None) -> bool:
        """Check whether a delivery may proceed.

        Raises:
            CircuitBreakerError: If the circuit is open, or half-open with
                all trial slots taken.
        """
        now = now or utcnow()
        with self._lock:
            if self.state == CircuitState.CLOSED:
                return True

            if self.state == CircuitState.OPEN:
                if now >= self._retry_at():
                    self._transition_to(CircuitState.HALF_OPEN)
                else:
                    self.stats.total_blocked += 1
                    raise CircuitBreakerError(self.name, self._retry_at())

            if self._half_open_calls < self.config.half_open_max_calls:
                self._half_open_calls += 1
                return True

            self.stats.total_blocked += 1
            raise CircuitBreakerError(self.name, now + timedelta(seconds=min(5.0, self.config.timeout_seconds)))

    def record_success(self) -> None:
        """Record a delivery the endpoint answered (2xx or permanent 4xx)."""
        with self._lock:
            self.stats.total_calls += 1
            if self.state == CircuitState.HALF_OPEN:
                self._half_open_calls = max(0, self._half_open_calls - 1)
                self.stats.half_open_successes += 1
                if self.stats.half_open_successes >= self.config.success_threshold:
                    self._transition_to(CircuitState.CLOSED)
            else:
                self.stats.consecutive_failures = 0

    def record_failure(self) -> None:
        """Record a transient delivery failure."""
        with self._lock:
            self.stats.total_calls += 1
            self.stats.total_failures += 1
            self.stats.last_failure_time = utcnow()

            if self.state == CircuitState.HALF_OPEN:
                # Any failure in half-open reopens the circuit
                self._transition_to(CircuitState.OPEN)
                self.stats.last_failure_time = utcnow()
            elif self.state == CircuitState.CLOSED:
                self.stats.consecutive_failures += 1
                if self.stats.consecutive_failures >= self.config.failure_threshold:
                    self._transition_to(CircuitState.OPEN)
                    self.stats.last_failure_time = utcnow()

    def release_trial(self) -> None:
        """Free a half-open trial slot whose delivery never got an answer."""
        with self._lock:
            if self.state == CircuitState.HALF_OPEN and self._half_open_calls > 0:
                self._half_open_calls -= 1

    def reset(self) -> None:
        """Manually reset the circuit to closed state."""
        with self._lock:
            self._transition_to(CircuitState.CLOSED)


class CircuitBreakerRegistry:
    """One breaker per subscription, created on first use."""

    def __init__(self, default_config: Optional[CircuitBreakerConfig] = None):
        self._breakers: Dict[str, CircuitBreaker] = {}
        self._lock = threading.Lock()
        self.default_config = default_config or CircuitBreakerConfig()

    def get_or_create(self, name: str) -> CircuitBreaker:
        with self._lock:
            if name not in self._breakers:
                self._breakers[name] = CircuitBreaker(name, self.default_config)
            return self._breakers[name]

    def get(self, name: str) -> Optional[CircuitBreaker]:
        return self._breakers.get(name)

    def get_open_circuits(self) -> List[CircuitBreaker]:
        return [b for b in self._breakers.values() if b.is_open]

    def get_stats(self) -> Dict[str, dict]:
        """Statistics for all breakers, keyed by subscription id."""
        return {
            name: {
                "state": breaker.state.value,
                "consecutive_failures": breaker.stats.consecutive_failures,
                "total_calls": breaker.stats.total_calls,
                "total_blocked": breaker.stats.total_blocked,
                "failure_rate": breaker.stats.failure_rate,
            }
            for name, breaker in self._breakers.items()
        }
