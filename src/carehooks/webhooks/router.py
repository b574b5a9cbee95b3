"""Webhook API routes.

FastAPI router for event intake, subscription administration and
delivery monitoring.
"""

import logging
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List

from fastapi import APIRouter, HTTPException, Query

from .errors import StorageUnavailableError, SubscriptionNotFoundError, ValidationError
from .models import (
    DeliveryAttempt,
    DeliveryHealth,
    EventSubmission,
    SubscriptionCreate,
    SubscriptionUpdate,
    SubscriptionView,
)
from .runtime import get_runtime

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/webhooks", tags=["webhooks"])


@contextmanager
def _http_errors() -> Iterator[None]:
    """Translate webhook errors into HTTP responses."""
    try:
        yield
    except SubscriptionNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ValidationError as e:
        raise HTTPException(status_code=422, detail=str(e))
    except StorageUnavailableError as e:
        logger.error(f"Storage unavailable: {e}")
        raise HTTPException(status_code=503, detail="Webhook storage unavailable")


# ============================================================================
# Event Intake
# ============================================================================

@router.post("/events", status_code=202)
def submit_event(submission: EventSubmission) -> Dict[str, str]:
    """Accept a domain event for delivery to matching subscriptions.

    Returns once the event is durably recorded; delivery is asynchronous.
    """
    with _http_errors():
        event_id = get_runtime().bus.submit(submission.type, submission.payload, submission.occurred_at)
    return {"event_id": event_id}


# ============================================================================
# Subscription Administration
# ============================================================================

@router.post("/subscriptions", status_code=201, response_model=SubscriptionView)
def create_subscription(request: SubscriptionCreate):
    """Register a new subscription."""
    with _http_errors():
        subscription = get_runtime().registry.create(request)
    return SubscriptionView.from_subscription(subscription)


@router.get("/subscriptions", response_model=List[SubscriptionView])
def list_subscriptions(active_only: bool = False):
    with _http_errors():
        subscriptions = get_runtime().registry.list(active_only=active_only)
    return [SubscriptionView.from_subscription(s) for s in subscriptions]


@router.get("/subscriptions/{subscription_id}", response_model=SubscriptionView)
def get_subscription(subscription_id: str):
    with _http_errors():
        subscription = get_runtime().registry.require(subscription_id)
    return SubscriptionView.from_subscription(subscription)


@router.patch("/subscriptions/{subscription_id}", response_model=SubscriptionView)
def update_subscription(subscription_id: str, changes: SubscriptionUpdate):
    """Partially update a subscription; omitted fields are unchanged."""
    with _http_errors():
        subscription = get_runtime().registry.update(subscription_id, changes)
    return SubscriptionView.from_subscription(subscription)


@router.post("/subscriptions/{subscription_id}/deactivate", response_model=SubscriptionView)
def deactivate_subscription(subscription_id: str):
    """Stop new deliveries and retries for a subscription."""
    with _http_errors():
        subscription = get_runtime().registry.deactivate(subscription_id)
    return SubscriptionView.from_subscription(subscription)


@router.post("/subscriptions/{subscription_id}/activate", response_model=SubscriptionView)
def activate_subscription(subscription_id: str):
    with _http_errors():
        subscription = get_runtime().registry.activate(subscription_id)
    return SubscriptionView.from_subscription(subscription)


@router.get("/subscriptions/{subscription_id}/health", response_model=DeliveryHealth)
def subscription_health(subscription_id: str):
    """Delivery success rate and latency for a subscription."""
    runtime = get_runtime()
    with _http_errors():
        runtime.registry.require(subscription_id)
        return runtime.ledger.health(subscription_id)


# ============================================================================
# Delivery Monitoring
# ============================================================================

@router.get("/deliveries/recent", response_model=List[DeliveryAttempt])
def recent_deliveries(limit: int = Query(50, ge=1, le=1000)):
    """Most recent delivery attempts across all subscriptions."""
    with _http_errors():
        return get_runtime().ledger.recent(limit=limit)


@router.get("/deliveries/{event_id}/{subscription_id}")
def delivery_status(event_id: str, subscription_id: str) -> Dict[str, Any]:
    """Task state, transitions and attempt history for one delivery."""
    runtime = get_runtime()
    with _http_errors():
        task = runtime.queue.find_task(event_id, subscription_id)
        attempts = runtime.ledger.history(event_id, subscription_id)
        if task is None and not attempts:
            raise HTTPException(status_code=404, detail="Delivery not found")
        transitions = runtime.queue.transitions(task.task_id) if task else []

    return {
        "event_id": event_id,
        "subscription_id": subscription_id,
        "task": None if task is None else {
            "task_id": task.task_id,
            "state": task.state.value,
            "attempt_count": task.attempt_count,
            "next_attempt_at": task.next_attempt_at.isoformat(),
        },
        "transitions": [
            {
                "from_state": t.from_state.value if t.from_state else None,
                "to_state": t.to_state.value,
                "at": t.at.isoformat(),
                "reason": t.reason,
            }
            for t in transitions
        ],
        "attempts": [a.model_dump(mode="json") for a in attempts],
    }


@router.get("/queue/stats")
def queue_stats() -> Dict[str, Any]:
    """Task counts per state and endpoint circuit status."""
    runtime = get_runtime()
    with _http_errors():
        tasks = runtime.queue.stats()
    circuits = runtime.circuit_breakers.get_stats() if runtime.circuit_breakers else {}
    return {"tasks": tasks, "circuits": circuits}
