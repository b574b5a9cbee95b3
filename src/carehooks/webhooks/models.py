"""Webhook data models.

Defines Pydantic schemas for events, subscriptions, retry policies and
delivery attempts, plus the transient DeliveryTask owned by the queue.
"""

import json
import random
import secrets
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, HttpUrl, field_validator, model_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_event_id() -> str:
    """Time-prefixed id so ids sort roughly by creation time."""
    return f"evt_{time.time_ns() // 1_000_000:012x}{secrets.token_hex(6)}"


def new_subscription_id() -> str:
    return f"sub_{uuid.uuid4().hex}"


def encode_payload(payload: Dict[str, Any]) -> bytes:
    """Serialize a payload to the exact bytes sent on the wire and signed."""
    return json.dumps(
        payload,
        separators=(",", ":"),
        ensure_ascii=False,
        allow_nan=False,
    ).encode("utf-8")


def check_header_value(value: str, what: str) -> str:
    """Reject values that cannot be sent verbatim in an HTTP header."""
    if not value.isascii() or not value.isprintable():
        raise ValueError(f"{what} must be printable ASCII")
    return value


def check_json_keys(value: Any, path: str = "payload") -> None:
    """Reject mappings with non-string keys anywhere in a JSON value."""
    if isinstance(value, dict):
        for key, item in value.items():
            if not isinstance(key, str):
                raise ValueError(f"{path} has a non-string key: {key!r}")
            check_json_keys(item, f"{path}.{key}")
    elif isinstance(value, (list, tuple)):
        for index, item in enumerate(value):
            check_json_keys(item, f"{path}[{index}]")


def validate_event_filter(value: str) -> str:
    """Check an event type filter: exact type, ``prefix.*`` or ``*``."""
    value = value.strip()
    if not value:
        raise ValueError("event_type_filter must not be empty")
    if any(ch.isspace() for ch in value):
        raise ValueError("event_type_filter must not contain whitespace")
    if value == "*":
        return value
    if "*" in value:
        if value.count("*") != 1 or not value.endswith(".*") or len(value) < 3:
            raise ValueError("wildcard is only allowed as a final '.*' segment")
    return value


def filter_matches(event_filter: str, event_type: str) -> bool:
    if event_filter == "*":
        return True
    if event_filter.endswith(".*"):
        return event_type.startswith(event_filter[:-1])
    return event_filter == event_type


class DeliveryOutcome(str, Enum):
    """Outcome recorded for a single delivery attempt."""

    PENDING = "pending"
    SUCCESS = "success"
    FAILED_RETRYABLE = "failed_retryable"
    FAILED_TERMINAL = "failed_terminal"
    # A success for a pair that already had one
    DUPLICATE = "duplicate"


class TaskState(str, Enum):
    """States of the per-task delivery state machine."""

    PENDING = "pending"
    IN_FLIGHT = "in_flight"
    SUCCESS = "success"
    FAILED_TERMINAL = "failed_terminal"

    @property
    def is_final(self) -> bool:
        return self in (TaskState.SUCCESS, TaskState.FAILED_TERMINAL)


class Event(BaseModel):
    """A single domain occurrence emitted by a hospital subsystem."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=new_event_id)
    type: str
    payload: Dict[str, Any] = Field(default_factory=dict)
    occurred_at: datetime = Field(default_factory=utcnow)

    @field_validator("type")
    @classmethod
    def _type_not_blank(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("event type must not be empty")
        # Sent as the X-Event-Type header
        return check_header_value(value, "event type")

    @field_validator("payload")
    @classmethod
    def _payload_serializable(cls, value: Dict[str, Any]) -> Dict[str, Any]:
        check_json_keys(value)
        # Round-trip detaches the payload from the caller's objects.
        try:
            return json.loads(encode_payload(value))
        except (TypeError, ValueError) as exc:
            raise ValueError(f"payload is not JSON serializable: {exc}") from exc

    @field_validator("occurred_at")
    @classmethod
    def _assume_utc(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    def raw_body(self) -> bytes:
        return encode_payload(self.payload)


class RetryPolicy(BaseModel):
    """How many times and how far apart failed deliveries are retried."""

    model_config = ConfigDict(frozen=True)

    max_attempts: int = Field(5, ge=1, le=50)
    base_delay_seconds: float = Field(2.0, ge=0)
    max_delay_seconds: float = Field(3600.0, ge=0)
    jitter_ratio: float = Field(0.2, ge=0, le=1 / 3)
    schedule: Optional[List[float]] = Field(
        None,
        description="Explicit delays in seconds; the last entry repeats",
    )

    @model_validator(mode="after")
    def _check_bounds(self) -> "RetryPolicy":
        if self.max_delay_seconds < self.base_delay_seconds:
            raise ValueError("max_delay_seconds must be >= base_delay_seconds")
        if self.schedule is not None:
            if not self.schedule:
                raise ValueError("schedule must not be empty")
            if any(delay < 0 for delay in self.schedule):
                raise ValueError("schedule delays must be >= 0")
            if any(b < a for a, b in zip(self.schedule, self.schedule[1:])):
                raise ValueError("schedule must be non-decreasing")
        return self

    def delay_for(self, attempt: int, rng: Optional[random.Random] = None) -> float:
        """Seconds to wait after the given (1-based) failed attempt.

        Jitter is bounded by ``jitter_ratio <= 1/3`` so the delay after
        attempt n+1 is never shorter than the delay after attempt n.
        """
        attempt = max(attempt, 1)
        if self.schedule:
            delay = self.schedule[min(attempt, len(self.schedule)) - 1]
            return min(delay, self.max_delay_seconds)

        base = self.base_delay_seconds * (2 ** (attempt - 1))
        spread = (rng or random).uniform(-self.jitter_ratio, self.jitter_ratio)
        return min(self.max_delay_seconds, max(0.0, base * (1 + spread)))


class Subscription(BaseModel):
    """An external endpoint's registration to receive events."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=new_subscription_id)
    name: Optional[str] = Field(None, description="Human-readable label")
    event_type_filter: str
    target_url: HttpUrl
    signing_secret: str = Field(..., repr=False)
    retry_policy: RetryPolicy = Field(default_factory=RetryPolicy)
    active: bool = True
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @field_validator("event_type_filter")
    @classmethod
    def _filter_well_formed(cls, value: str) -> str:
        return validate_event_filter(value)

    @field_validator("signing_secret")
    @classmethod
    def _secret_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("signing_secret must not be empty")
        return value

    def matches(self, event_type: str) -> bool:
        return filter_matches(self.event_type_filter, event_type)


class SubscriptionCreate(BaseModel):
    """Request to register a new subscription."""

    name: Optional[str] = None
    event_type_filter: str
    target_url: str
    signing_secret: str
    retry_policy: Optional[RetryPolicy] = None


class SubscriptionUpdate(BaseModel):
    """Partial update of a subscription; unset fields are left untouched."""

    name: Optional[str] = None
    event_type_filter: Optional[str] = None
    target_url: Optional[str] = None
    signing_secret: Optional[str] = None
    retry_policy: Optional[RetryPolicy] = None
    active: Optional[bool] = None


class SubscriptionView(BaseModel):
    """Subscription as returned by the API, without its secret."""

    id: str
    name: Optional[str]
    event_type_filter: str
    target_url: str
    retry_policy: RetryPolicy
    active: bool
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_subscription(cls, subscription: Subscription) -> "SubscriptionView":
        return cls(
            id=subscription.id,
            name=subscription.name,
            event_type_filter=subscription.event_type_filter,
            target_url=str(subscription.target_url),
            retry_policy=subscription.retry_policy,
            active=subscription.active,
            created_at=subscription.created_at,
            updated_at=subscription.updated_at,
        )


class EventSubmission(BaseModel):
    """Producer request body for the HTTP intake endpoint."""

    type: str
    payload: Dict[str, Any] = Field(default_factory=dict)
    occurred_at: Optional[datetime] = None


class DeliveryAttempt(BaseModel):
    """Record of one HTTP call made for one (event, subscription) pair."""

    id: Optional[int] = None
    event_id: str
    subscription_id: str
    attempt_number: int
    sent_at: datetime = Field(default_factory=utcnow)
    response_status: Optional[int] = None
    outcome: DeliveryOutcome
    reason: Optional[str] = None
    latency_ms: Optional[float] = None


class DeliveryHealth(BaseModel):
    """Aggregate delivery metrics for one subscription."""

    subscription_id: str
    attempts: int = 0
    successes: int = 0
    retryable_failures: int = 0
    terminal_failures: int = 0
    success_rate: float = 0.0
    avg_latency_ms: Optional[float] = None


@dataclass
class DeliveryTask:
    """Transient in-queue unit of work for one (event, subscription) pair."""

    task_id: str
    event: Event
    subscription_id: str
    next_attempt_at: datetime
    attempt_count: int = 0
    state: TaskState = TaskState.PENDING
    claim_token: Optional[str] = None
    lease_expires_at: Optional[datetime] = None

    @property
    def idempotency_key(self) -> str:
        return f"{self.event.id}:{self.subscription_id}"

    @classmethod
    def for_event(cls, event: Event, subscription_id: str, next_attempt_at: Optional[datetime] = None) -> "DeliveryTask":
        return cls(
            task_id=f"tsk_{uuid.uuid4().hex}",
            event=event,
            subscription_id=subscription_id,
            next_attempt_at=next_attempt_at or utcnow(),
        )


@dataclass(frozen=True)
class TaskTransition:
    """One recorded state change of a DeliveryTask."""

    task_id: str
    from_state: Optional[TaskState]
    to_state: TaskState
    reason: Optional[str]
    at: datetime
