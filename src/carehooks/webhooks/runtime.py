"""Wiring of the webhook components from settings."""

import logging
from dataclasses import dataclass
from typing import Optional, Sequence

import httpx

from ..core.settings import WebhookSettings, get_settings
from .bus import EventBus
from .circuit_breaker import CircuitBreakerConfig, CircuitBreakerRegistry
from .dispatcher import WebhookDispatcher
from .ledger import DeliveryLedger, InMemoryDeliveryLedger, SQLiteDeliveryLedger
from .queue import DeliveryQueue, InMemoryDeliveryQueue, SQLiteDeliveryQueue
from .registry import SubscriptionRegistry

logger = logging.getLogger(__name__)


@dataclass
class WebhookRuntime:
    """The registry, queue, ledger and bus sharing one configuration."""

    settings: WebhookSettings
    registry: SubscriptionRegistry
    queue: DeliveryQueue
    ledger: DeliveryLedger
    bus: EventBus
    circuit_breakers: Optional[CircuitBreakerRegistry] = None

    def create_dispatcher(
        self,
        client: Optional[httpx.AsyncClient] = None,
        partition: Optional[Sequence[str]] = None,
    ) -> WebhookDispatcher:
        """Build a dispatcher bound to this runtime's components."""
        s = self.settings
        return WebhookDispatcher(
            self.registry,
            self.queue,
            self.ledger,
            client=client,
            timeout_seconds=s.request_timeout_seconds,
            worker_concurrency=s.worker_concurrency,
            per_endpoint_concurrency=s.per_endpoint_concurrency,
            poll_interval_seconds=s.poll_interval_seconds,
            snapshot_refresh_seconds=s.snapshot_refresh_seconds,
            resolution_batch_size=s.resolution_batch_size,
            circuit_breakers=self.circuit_breakers,
            user_agent=s.user_agent,
            partition=partition,
        )


def build_runtime(settings: Optional[WebhookSettings] = None) -> WebhookRuntime:
    """Create all webhook components described by ``settings``."""
    settings = settings or get_settings()

    registry = SubscriptionRegistry(settings.database_path, settings.default_retry_policy)
    if settings.durable:
        queue: DeliveryQueue = SQLiteDeliveryQueue(
            settings.database_path,
            lease_timeout_seconds=settings.lease_timeout_seconds,
            strict_ordering=settings.strict_ordering,
        )
        ledger: DeliveryLedger = SQLiteDeliveryLedger(settings.database_path)
    else:
        logger.warning("Running with in-memory queue and ledger; pending deliveries are lost on restart")
        queue = InMemoryDeliveryQueue(
            lease_timeout_seconds=settings.lease_timeout_seconds,
            strict_ordering=settings.strict_ordering,
        )
        ledger = InMemoryDeliveryLedger()

    breakers = None
    if settings.circuit_breaker_enabled:
        breakers = CircuitBreakerRegistry(CircuitBreakerConfig(
            failure_threshold=settings.circuit_failure_threshold,
            timeout_seconds=settings.circuit_timeout_seconds,
        ))

    logger.info(f"Webhook runtime ready (database: {settings.database_path}, durable: {settings.durable})")
    return WebhookRuntime(
        settings=settings,
        registry=registry,
        queue=queue,
        ledger=ledger,
        bus=EventBus(queue),
        circuit_breakers=breakers,
    )


_runtime: Optional[WebhookRuntime] = None


def get_runtime() -> WebhookRuntime:
    """Get the process-wide runtime, building it on first use."""
    global _runtime
    if _runtime is None:
        _runtime = build_runtime()
    return _runtime


def set_runtime(runtime: Optional[WebhookRuntime]) -> None:
    """Replace the process-wide runtime (None resets it)."""
    global _runtime
    _runtime = runtime
