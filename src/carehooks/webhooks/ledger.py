"""Delivery ledger - append-only audit trail of delivery attempts.

One row per attempt. The ledger is also the idempotency record: a pair
never holds more than one ``success``; a later success for the same pair
is stored as ``duplicate``.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Tuple, Union
import logging
import sqlite3
import threading

from .errors import StorageUnavailableError
from .models import DeliveryAttempt, DeliveryHealth, DeliveryOutcome
from .storage import init_db, transaction

logger = logging.getLogger(__name__)


def summarize(subscription_id: str, attempts: List[DeliveryAttempt]) -> DeliveryHealth:
    """Compute aggregate health metrics from a subscription's attempts."""
    health = DeliveryHealth(subscription_id=subscription_id, attempts=len(attempts))
    latencies = []
    for attempt in attempts:
        if attempt.outcome in (DeliveryOutcome.SUCCESS, DeliveryOutcome.DUPLICATE):
            health.successes += 1
        elif attempt.outcome is DeliveryOutcome.FAILED_RETRYABLE:
            health.retryable_failures += 1
        elif attempt.outcome is DeliveryOutcome.FAILED_TERMINAL:
            health.terminal_failures += 1
        if attempt.latency_ms is not None:
            latencies.append(attempt.latency_ms)

    if attempts:
        health.success_rate = health.successes / len(attempts)
    if latencies:
        health.avg_latency_ms = sum(latencies) / len(latencies)
    return health


class DeliveryLedger(ABC):
    """Abstract base class for ledger backends."""

    @abstractmethod
    def append(self, attempt: DeliveryAttempt) -> DeliveryAttempt:
        """Record an attempt. Returns the stored row (with id and final outcome)."""

    @abstractmethod
    def history(self, event_id: str, subscription_id: str) -> List[DeliveryAttempt]:
        """Attempts for one pair, ordered by attempt number."""

    @abstractmethod
    def has_succeeded(self, event_id: str, subscription_id: str) -> bool:
        pass

    @abstractmethod
    def attempts_for_subscription(self, subscription_id: str) -> List[DeliveryAttempt]:
        pass

    @abstractmethod
    def recent(self, limit: int = 100) -> List[DeliveryAttempt]:
        """Most recent attempts, newest first."""

    def health(self, subscription_id: str) -> DeliveryHealth:
        return summarize(subscription_id, self.attempts_for_subscription(subscription_id))

    @staticmethod
    def _log_duplicate(attempt: DeliveryAttempt) -> None:
        logger.warning(
            f"Duplicate success for event {attempt.event_id} -> subscription "
            f"{attempt.subscription_id}; recorded as duplicate"
        )


class SQLiteDeliveryLedger(DeliveryLedger):
    """Ledger stored in SQLite alongside the queue."""

    def __init__(self, db_path: Union[str, Path]):
        self.db_path = Path(db_path)
        init_db(self.db_path, StorageUnavailableError)

    def append(self, attempt: DeliveryAttempt) -> DeliveryAttempt:
        with transaction(self.db_path, StorageUnavailableError) as conn:
            try:
                row_id = self._insert(conn, attempt)
            except sqlite3.IntegrityError:
                # The partial unique index allows one success per pair.
                self._log_duplicate(attempt)
                attempt = attempt.model_copy(update={"outcome": DeliveryOutcome.DUPLICATE})
                row_id = self._insert(conn, attempt)
        return attempt.model_copy(update={"id": row_id})

    def history(self, event_id: str, subscription_id: str) -> List[DeliveryAttempt]:
        return self._select(
            "WHERE event_id = ? AND subscription_id = ? ORDER BY attempt_number ASC, id ASC",
            (event_id, subscription_id),
        )

    def has_succeeded(self, event_id: str, subscription_id: str) -> bool:
        with transaction(self.db_path, StorageUnavailableError) as conn:
            row = conn.execute(
                "SELECT 1 FROM delivery_attempts WHERE event_id = ? AND subscription_id = ? AND outcome = ?",
                (event_id, subscription_id, DeliveryOutcome.SUCCESS.value),
            ).fetchone()
        return row is not None

    def attempts_for_subscription(self, subscription_id: str) -> List[DeliveryAttempt]:
        return self._select("WHERE subscription_id = ? ORDER BY id ASC", (subscription_id,))

    def recent(self, limit: int = 100) -> List[DeliveryAttempt]:
        return self._select("ORDER BY id DESC LIMIT ?", (limit,))

    @staticmethod
    def _insert(conn, attempt: DeliveryAttempt) -> int:
        cursor = conn.execute(
            """
            INSERT INTO delivery_attempts (event_id, subscription_id, attempt_number, sent_at,
                                           response_status, outcome, reason, latency_ms)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                attempt.event_id,
                attempt.subscription_id,
                attempt.attempt_number,
                attempt.sent_at.isoformat(),
                attempt.response_status,
                attempt.outcome.value,
                attempt.reason,
                attempt.latency_ms,
            ),
        )
        return cursor.lastrowid

    def _select(self, clause: str, params: tuple) -> List[DeliveryAttempt]:
        with transaction(self.db_path, StorageUnavailableError) as conn:
            rows = conn.execute(f"SELECT * FROM delivery_attempts {clause}", params).fetchall()
        return [
            DeliveryAttempt(
                id=row["id"],
                event_id=row["event_id"],
                subscription_id=row["subscription_id"],
                attempt_number=row["attempt_number"],
                sent_at=datetime.fromisoformat(row["sent_at"]),
                response_status=row["response_status"],
                outcome=DeliveryOutcome(row["outcome"]),
                reason=row["reason"],
                latency_ms=row["latency_ms"],
            )
            for row in rows
        ]


class InMemoryDeliveryLedger(DeliveryLedger):
    """Non-durable ledger kept in process memory."""

    def __init__(self):
        self._lock = threading.Lock()
        self._attempts: List[DeliveryAttempt] = []
        self._succeeded: Dict[Tuple[str, str], int] = {}

    def append(self, attempt: DeliveryAttempt) -> DeliveryAttempt:
        pair = (attempt.event_id, attempt.subscription_id)
        with self._lock:
            if attempt.outcome is DeliveryOutcome.SUCCESS:
                if pair in self._succeeded:
                    self._log_duplicate(attempt)
                    attempt = attempt.model_copy(update={"outcome": DeliveryOutcome.DUPLICATE})
                else:
                    self._succeeded[pair] = len(self._attempts) + 1
            stored = attempt.model_copy(update={"id": len(self._attempts) + 1})
            self._attempts.append(stored)
        return stored

    def history(self, event_id: str, subscription_id: str) -> List[DeliveryAttempt]:
        with self._lock:
            rows = [
                a for a in self._attempts
                if a.event_id == event_id and a.subscription_id == subscription_id
            ]
        return sorted(rows, key=lambda a: (a.attempt_number, a.id))

    def has_succeeded(self, event_id: str, subscription_id: str) -> bool:
        with self._lock:
            return (event_id, subscription_id) in self._succeeded

    def attempts_for_subscription(self, subscription_id: str) -> List[DeliveryAttempt]:
        with self._lock:
            return [a for a in self._attempts if a.subscription_id == subscription_id]

    def recent(self, limit: int = 100) -> List[DeliveryAttempt]:
        with self._lock:
            return list(reversed(self._attempts[-limit:]))
