"""Subscription registry.

Stores subscription records in SQLite and resolves event types to the
active subscriptions whose filter matches. The dispatcher reads through
immutable snapshots so administrative writes never block deliveries.
"""

from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import List, Optional, Tuple, Union
import json
import logging

from pydantic import ValidationError as PydanticValidationError

from .errors import StorageUnavailableError, SubscriptionNotFoundError, ValidationError
from .models import (
    RetryPolicy,
    Subscription,
    SubscriptionCreate,
    SubscriptionUpdate,
    utcnow,
)
from .storage import init_db, transaction

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SubscriptionSnapshot:
    """Immutable view of every subscription at one instant."""

    subscriptions: Tuple[Subscription, ...] = ()
    taken_at: datetime = field(default_factory=utcnow)

    def get(self, subscription_id: str) -> Optional[Subscription]:
        for subscription in self.subscriptions:
            if subscription.id == subscription_id:
                return subscription
        return None

    def resolve(self, event_type: str) -> List[Subscription]:
        """Active subscriptions matching an event type, in registration order."""
        return [
            s for s in self.subscriptions
            if s.active and s.matches(event_type)
        ]

    def age_seconds(self, now: Optional[datetime] = None) -> float:
        return ((now or utcnow()) - self.taken_at).total_seconds()


def _validation_error(exc: PydanticValidationError) -> ValidationError:
    problems = "; ".join(
        f"{'.'.join(str(p) for p in err['loc']) or 'subscription'}: {err['msg']}"
        for err in exc.errors()
    )
    return ValidationError(f"Invalid subscription: {problems}")


class SubscriptionRegistry:
    """SQLite-backed registry for webhook subscriptions.

    Example:
        registry = SubscriptionRegistry("data/carehooks.db")
        sub = registry.create(SubscriptionCreate(
            event_type_filter="billing.*",
            target_url="https://partner.example/hooks",
            signing_secret="s3cret",
        ))
        registry.resolve("billing.payment_succeeded")  # -> [sub]
    """

    def __init__(self, db_path: Union[str, Path], default_retry_policy: Optional[RetryPolicy] = None):
        self.db_path = Path(db_path)
        self.default_retry_policy = default_retry_policy or RetryPolicy()
        init_db(self.db_path, StorageUnavailableError)

    # ------------------------------------------------------------------
    # Administrative operations
    # ------------------------------------------------------------------

    def create(self, request: SubscriptionCreate) -> Subscription:
        """Register a new subscription.

        Raises:
            ValidationError: If the URL, secret or filter is malformed.
        """
        try:
            subscription = Subscription(
                name=request.name,
                event_type_filter=request.event_type_filter,
                target_url=request.target_url,
                signing_secret=request.signing_secret,
                retry_policy=request.retry_policy or self.default_retry_policy,
            )
        except PydanticValidationError as exc:
            raise _validation_error(exc) from exc

        with transaction(self.db_path) as conn:
            conn.execute(
                """
                INSERT INTO subscriptions (id, name, event_type_filter, target_url, signing_secret,
                                           retry_policy, active, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                self._to_row(subscription),
            )
        logger.info(
            f"Registered subscription {subscription.id} "
            f"for '{subscription.event_type_filter}' -> {subscription.target_url}"
        )
        return subscription

    def get(self, subscription_id: str) -> Optional[Subscription]:
        with transaction(self.db_path) as conn:
            row = conn.execute("SELECT * FROM subscriptions WHERE id = ?", (subscription_id,)).fetchone()
        return self._from_row(row) if row else None

    def require(self, subscription_id: str) -> Subscription:
        subscription = self.get(subscription_id)
        if subscription is None:
            raise SubscriptionNotFoundError(subscription_id)
        return subscription

    def list(self, active_only: bool = False) -> List[Subscription]:
        sql = "SELECT * FROM subscriptions"
        if active_only:
            sql += " WHERE active = 1"
        sql += " ORDER BY created_at ASC, rowid ASC"
        with transaction(self.db_path) as conn:
            rows = conn.execute(sql).fetchall()
        return [self._from_row(row) for row in rows]

    def update(self, subscription_id: str, changes: SubscriptionUpdate) -> Subscription:
        """Apply a partial update, re-validating the whole record.

        Raises:
            SubscriptionNotFoundError: If the id is unknown.
            ValidationError: If the resulting record is malformed.
        """
        updates = changes.model_dump(exclude_unset=True)

        with transaction(self.db_path, immediate=True) as conn:
            row = conn.execute("SELECT * FROM subscriptions WHERE id = ?", (subscription_id,)).fetchone()
            if row is None:
                raise SubscriptionNotFoundError(subscription_id)
            current = self._from_row(row)

            data = current.model_dump()
            data.update(updates)
            data["updated_at"] = utcnow()
            try:
                updated = Subscription(**data)
            except PydanticValidationError as exc:
                raise _validation_error(exc) from exc

            conn.execute(
                """
                UPDATE subscriptions
                SET name = ?, event_type_filter = ?, target_url = ?, signing_secret = ?,
                    retry_policy = ?, active = ?, updated_at = ?
                WHERE id = ?
                """,
                (
                    updated.name,
                    updated.event_type_filter,
                    str(updated.target_url),
                    updated.signing_secret,
                    updated.retry_policy.model_dump_json(),
                    int(updated.active),
                    updated.updated_at.isoformat(),
                    subscription_id,
                ),
            )

        logger.info(f"Updated subscription {subscription_id} ({', '.join(sorted(updates)) or 'no changes'})")
        return updated

    def deactivate(self, subscription_id: str) -> Subscription:
        """Stop future deliveries; in-flight attempts still complete."""
        return self.update(subscription_id, SubscriptionUpdate(active=False))

    def activate(self, subscription_id: str) -> Subscription:
        return self.update(subscription_id, SubscriptionUpdate(active=True))

    def is_active(self, subscription_id: str) -> bool:
        """Fresh read of the active flag, bypassing any snapshot."""
        with transaction(self.db_path) as conn:
            row = conn.execute("SELECT active FROM subscriptions WHERE id = ?", (subscription_id,)).fetchone()
        return bool(row and row["active"])

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------

    def snapshot(self) -> SubscriptionSnapshot:
        return SubscriptionSnapshot(subscriptions=tuple(self.list()))

    def resolve(self, event_type: str) -> List[Subscription]:
        """Return the ordered list of active subscriptions matching the type."""
        return self.snapshot().resolve(event_type)

    # ------------------------------------------------------------------
    # Row mapping
    # ------------------------------------------------------------------

    @staticmethod
    def _to_row(subscription: Subscription) -> tuple:
        return (
            subscription.id,
            subscription.name,
            subscription.event_type_filter,
            str(subscription.target_url),
            subscription.signing_secret,
            subscription.retry_policy.model_dump_json(),
            int(subscription.active),
            subscription.created_at.isoformat(),
            subscription.updated_at.isoformat(),
        )

    @staticmethod
    def _from_row(row) -> Subscription:
        return Subscription(
            id=row["id"],
            name=row["name"],
            event_type_filter=row["event_type_filter"],
            target_url=row["target_url"],
            signing_secret=row["signing_secret"],
            retry_policy=RetryPolicy(**json.loads(row["retry_policy"])),
            active=bool(row["active"]),
            created_at=datetime.fromisoformat(row["created_at"]),
            updated_at=datetime.fromisoformat(row["updated_at"]),
        )
