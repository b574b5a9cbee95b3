"""Tests for the endpoint circuit breaker."""

from datetime import timedelta

import pytest

from carehooks.webhooks.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitBreakerError,
    CircuitBreakerRegistry,
    CircuitState,
)
from carehooks.webhooks.models import utcnow


class TestCircuitBreaker:
    """Tests for CircuitBreaker."""

    def test_initial_state(self):
        """Test initial state is closed."""
        breaker = CircuitBreaker("sub_1")

        assert breaker.is_closed
        assert not breaker.is_open
        assert breaker.state == CircuitState.CLOSED

    def test_allow_request_when_closed(self):
        breaker = CircuitBreaker("sub_1")

        assert breaker.allow_request() is True

    def test_opens_after_threshold_failures(self):
        """Test circuit opens after consecutive failure threshold."""
        breaker = CircuitBreaker("sub_1", CircuitBreakerConfig(failure_threshold=3))

        for _ in range(3):
            breaker.record_failure()

        assert breaker.is_open

    def test_success_resets_consecutive_failures(self):
        breaker = CircuitBreaker("sub_1", CircuitBreakerConfig(failure_threshold=3))

        breaker.record_failure()
        breaker.record_failure()
        breaker.record_success()
        breaker.record_failure()

        assert breaker.is_closed

    def test_blocks_requests_when_open(self):
        """Test requests blocked until the cool-down has passed."""
        breaker = CircuitBreaker("sub_1", CircuitBreakerConfig(failure_threshold=1, timeout_seconds=60))

        breaker.record_failure()

        with pytest.raises(CircuitBreakerError) as exc_info:
            breaker.allow_request()

        assert exc_info.value.name == "sub_1"
        assert exc_info.value.until > utcnow() + timedelta(seconds=50)
        assert breaker.stats.total_blocked == 1

    def test_half_open_after_timeout(self):
        breaker = CircuitBreaker("sub_1", CircuitBreakerConfig(failure_threshold=1, timeout_seconds=60))
        breaker.record_failure()

        breaker.allow_request(now=utcnow() + timedelta(seconds=61))

        assert breaker.is_half_open

    def test_half_open_limits_trial_calls(self):
        config = CircuitBreakerConfig(failure_threshold=1, timeout_seconds=0, half_open_max_calls=1)
        breaker = CircuitBreaker("sub_1", config)
        breaker.record_failure()

        breaker.allow_request()

        with pytest.raises(CircuitBreakerError):
            breaker.allow_request()

    def test_closes_after_success_in_half_open(self):
        """Test circuit closes after successes in half-open."""
        config = CircuitBreakerConfig(failure_threshold=1, success_threshold=2, timeout_seconds=0)
        breaker = CircuitBreaker("sub_1", config)

        breaker.record_failure()
        breaker.allow_request()
        assert breaker.is_half_open

        breaker.record_success()
        breaker.record_success()

        assert breaker.is_closed

    def test_sequential_trials_close_with_single_slot(self):
        """Test one trial slot still lets success_threshold trials run in turn."""
        config = CircuitBreakerConfig(
            failure_threshold=1, success_threshold=2, timeout_seconds=0, half_open_max_calls=1
        )
        breaker = CircuitBreaker("sub_1", config)
        breaker.record_failure()

        breaker.allow_request()
        breaker.record_success()
        breaker.allow_request()
        breaker.record_success()

        assert breaker.is_closed

    def test_release_trial_frees_slot(self):
        """Test an aborted trial does not hold its half-open slot."""
        config = CircuitBreakerConfig(failure_threshold=1, timeout_seconds=0, half_open_max_calls=1)
        breaker = CircuitBreaker("sub_1", config)
        breaker.record_failure()
        breaker.allow_request()

        breaker.release_trial()

        assert breaker.allow_request() is True
        assert breaker.is_half_open

    def test_reopens_on_failure_in_half_open(self):
        breaker = CircuitBreaker("sub_1", CircuitBreakerConfig(failure_threshold=1, timeout_seconds=0))

        breaker.record_failure()
        breaker.allow_request()
        breaker.record_failure()

        assert breaker.is_open

    def test_failure_rate(self):
        breaker = CircuitBreaker("sub_1", CircuitBreakerConfig(failure_threshold=10))

        breaker.record_success()
        breaker.record_failure()

        assert breaker.stats.failure_rate == 50.0

    def test_manual_reset(self):
        breaker = CircuitBreaker("sub_1", CircuitBreakerConfig(failure_threshold=1))

        breaker.record_failure()
        assert breaker.is_open

        breaker.reset()
        assert breaker.is_closed


class TestCircuitBreakerRegistry:
    """Tests for CircuitBreakerRegistry."""

    def test_get_or_create(self):
        registry = CircuitBreakerRegistry()

        assert registry.get_or_create("sub_a") is registry.get_or_create("sub_a")
        assert registry.get_or_create("sub_a") is not registry.get_or_create("sub_b")
        assert registry.get("sub_missing") is None

    def test_get_open_circuits(self):
        registry = CircuitBreakerRegistry(default_config=CircuitBreakerConfig(failure_threshold=1))
        registry.get_or_create("a").record_failure()
        registry.get_or_create("b")

        open_circuits = registry.get_open_circuits()

        assert [b.name for b in open_circuits] == ["a"]

    def test_get_stats(self):
        registry = CircuitBreakerRegistry()
        breaker = registry.get_or_create("sub_1")
        breaker.record_success()
        breaker.record_failure()

        stats = registry.get_stats()

        assert stats["sub_1"]["state"] == "closed"
        assert stats["sub_1"]["total_calls"] == 2
        assert stats["sub_1"]["consecutive_failures"] == 1
