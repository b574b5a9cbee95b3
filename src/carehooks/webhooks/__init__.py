"""Webhook dispatch for hospital domain events.

Provides:
- Event intake through the EventBus
- Subscription registry with wildcard event filters
- Durable delivery queue with leases and retry scheduling
- Async dispatcher with signed requests, backoff and circuit breaker
- Delivery ledger and per-subscription health
- Subscriber-side receiver helper
"""

from .bus import EventBus
from .dispatcher import WebhookDispatcher
from .errors import (
    LeaseLostError,
    QueueUnavailableError,
    SignatureVerificationError,
    StorageUnavailableError,
    SubscriptionNotFoundError,
    TerminalDeliveryError,
    TransientDeliveryError,
    ValidationError,
    WebhookError,
)
from .ledger import DeliveryLedger, InMemoryDeliveryLedger, SQLiteDeliveryLedger
from .models import (
    DeliveryAttempt,
    DeliveryOutcome,
    DeliveryTask,
    Event,
    RetryPolicy,
    Subscription,
    SubscriptionCreate,
    SubscriptionUpdate,
    TaskState,
)
from .queue import DeliveryQueue, InMemoryDeliveryQueue, SQLiteDeliveryQueue
from .receiver import WebhookReceiver
from .registry import SubscriptionRegistry

__all__ = [
    "EventBus",
    "WebhookDispatcher",
    "WebhookReceiver",
    "SubscriptionRegistry",
    "DeliveryQueue",
    "SQLiteDeliveryQueue",
    "InMemoryDeliveryQueue",
    "DeliveryLedger",
    "SQLiteDeliveryLedger",
    "InMemoryDeliveryLedger",
    "Event",
    "Subscription",
    "SubscriptionCreate",
    "SubscriptionUpdate",
    "RetryPolicy",
    "DeliveryAttempt",
    "DeliveryOutcome",
    "DeliveryTask",
    "TaskState",
    "WebhookError",
    "ValidationError",
    "SignatureVerificationError",
    "TransientDeliveryError",
    "TerminalDeliveryError",
    "StorageUnavailableError",
    "QueueUnavailableError",
    "LeaseLostError",
    "SubscriptionNotFoundError",
]
