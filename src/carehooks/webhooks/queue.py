"""Delivery queue - durable per-task state machine for pending deliveries.

Each (event, subscription) pair owns exactly one task. A task moves
through ``pending -> in_flight -> (pending | success | failed_terminal)``
and every move is recorded as a transition. Claims hand out a lease: a
worker that crashes mid-attempt loses it after ``lease_timeout_seconds``
and the task becomes ready again.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence, Union
import itertools
import json
import logging
import threading
import uuid

from .errors import LeaseLostError, QueueUnavailableError
from .models import DeliveryTask, Event, TaskState, TaskTransition, utcnow
from .storage import from_ts, init_db, to_ts, transaction

logger = logging.getLogger(__name__)

DEFAULT_LEASE_TIMEOUT_SECONDS = 60.0


class DeliveryQueue(ABC):
    """Abstract base class for delivery queue backends."""

    def __init__(self, lease_timeout_seconds: float = DEFAULT_LEASE_TIMEOUT_SECONDS, strict_ordering: bool = False):
        self.lease_timeout = timedelta(seconds=lease_timeout_seconds)
        self.strict_ordering = strict_ordering

    # Event intake -------------------------------------------------------

    @abstractmethod
    def record_event(self, event: Event) -> None:
        """Durably record an event awaiting fan-out."""

    @abstractmethod
    def unresolved_events(self, limit: int = 100) -> List[Event]:
        """Events recorded but not yet fanned out, oldest first."""

    @abstractmethod
    def fan_out(
        self,
        event: Event,
        subscription_ids: Sequence[str],
        next_attempt_at: Optional[datetime] = None,
    ) -> List[DeliveryTask]:
        """Create one task per subscription and mark the event resolved.

        Idempotent: pairs that already have a task are skipped.
        Returns the newly created tasks.
        """

    # Task lifecycle -----------------------------------------------------

    @abstractmethod
    def enqueue(self, task: DeliveryTask) -> bool:
        """Add a task. Returns False if its (event, subscription) pair exists."""

    @abstractmethod
    def claim_ready(
        self,
        now: Optional[datetime] = None,
        subscription_ids: Optional[Iterable[str]] = None,
    ) -> Optional[DeliveryTask]:
        """Atomically claim the oldest ready task, or None."""

    @abstractmethod
    def requeue(self, task: DeliveryTask, next_attempt_at: datetime, reason: Optional[str] = None) -> None:
        """Return a claimed task to pending.

        Raises:
            LeaseLostError: If the caller no longer owns the claim.
        """

    @abstractmethod
    def retire(self, task: DeliveryTask, state: TaskState, reason: Optional[str] = None) -> None:
        """Move a claimed task to a final state.

        Raises:
            LeaseLostError: If the caller no longer owns the claim.
        """

    # Inspection ---------------------------------------------------------

    @abstractmethod
    def get_task(self, task_id: str) -> Optional[DeliveryTask]:
        pass

    @abstractmethod
    def find_task(self, event_id: str, subscription_id: str) -> Optional[DeliveryTask]:
        pass

    @abstractmethod
    def transitions(self, task_id: str) -> List[TaskTransition]:
        pass

    @abstractmethod
    def stats(self) -> Dict[str, int]:
        """Task counts per state plus ``unresolved_events``."""

    @staticmethod
    def _check_final(state: TaskState) -> None:
        if not state.is_final:
            raise ValueError(f"Cannot retire a task into non-final state '{state.value}'")

    @staticmethod
    def _new_token() -> str:
        return uuid.uuid4().hex


_READY_SQL = (
    "((t.state = 'pending' AND t.next_attempt_at <= ?)"
    " OR (t.state = 'in_flight' AND t.lease_expires_at <= ?))"
)

# A task is claimable in strict mode only when no other unfinished task of
# the same subscription is older and none holds a live lease.
_STRICT_SQL = """
NOT EXISTS (
    SELECT 1 FROM delivery_tasks o
    WHERE o.subscription_id = t.subscription_id
      AND o.id != t.id
      AND (
        (o.state = 'in_flight' AND o.lease_expires_at > ?)
        OR (o.state IN ('pending', 'in_flight')
            AND (o.occurred_at_ts < t.occurred_at_ts
                 OR (o.occurred_at_ts = t.occurred_at_ts AND o.rowid < t.rowid)))
      )
)
"""

_TASK_SELECT = """
SELECT t.*, e.type AS event_type, e.payload AS event_payload, e.occurred_at AS event_occurred_at
FROM delivery_tasks t
JOIN events e ON e.id = t.event_id
"""


class SQLiteDeliveryQueue(DeliveryQueue):
    """Durable queue stored in SQLite.

    Survives process restarts; safe for many workers, including workers
    in separate processes sharing the database file.

    Example:
        >>> queue = SQLiteDeliveryQueue("data/carehooks.db")
        >>> queue.record_event(event)
        >>> queue.fan_out(event, ["sub_1", "sub_2"])
        >>> task = queue.claim_ready()
    """

    def __init__(
        self,
        db_path: Union[str, Path],
        lease_timeout_seconds: float = DEFAULT_LEASE_TIMEOUT_SECONDS,
        strict_ordering: bool = False,
    ):
        super().__init__(lease_timeout_seconds, strict_ordering)
        self.db_path = Path(db_path)
        init_db(self.db_path, QueueUnavailableError)

    def _tx(self, immediate: bool = False):
        return transaction(self.db_path, QueueUnavailableError, immediate=immediate)

    # Event intake -------------------------------------------------------

    def record_event(self, event: Event) -> None:
        with self._tx() as conn:
            self._insert_event(conn, event, resolved_at=None)

    def unresolved_events(self, limit: int = 100) -> List[Event]:
        with self._tx() as conn:
            rows = conn.execute(
                "SELECT * FROM events WHERE resolved_at IS NULL ORDER BY recorded_at ASC, rowid ASC LIMIT ?",
                (limit,),
            ).fetchall()
        return [
            Event(
                id=row["id"],
                type=row["type"],
                payload=json.loads(row["payload"]),
                occurred_at=datetime.fromisoformat(row["occurred_at"]),
            )
            for row in rows
        ]

    def fan_out(
        self,
        event: Event,
        subscription_ids: Sequence[str],
        next_attempt_at: Optional[datetime] = None,
    ) -> List[DeliveryTask]:
        now = utcnow()
        created = []
        with self._tx(immediate=True) as conn:
            self._insert_event(conn, event, resolved_at=None)
            for subscription_id in subscription_ids:
                task = DeliveryTask.for_event(event, subscription_id, next_attempt_at or now)
                if self._insert_task(conn, task, now):
                    created.append(task)
            conn.execute(
                "UPDATE events SET resolved_at = ? WHERE id = ? AND resolved_at IS NULL",
                (to_ts(now), event.id),
            )
        return created

    # Task lifecycle -----------------------------------------------------

    def enqueue(self, task: DeliveryTask) -> bool:
        now = utcnow()
        with self._tx(immediate=True) as conn:
            self._insert_event(conn, task.event, resolved_at=to_ts(now))
            return self._insert_task(conn, task, now)

    def claim_ready(
        self,
        now: Optional[datetime] = None,
        subscription_ids: Optional[Iterable[str]] = None,
    ) -> Optional[DeliveryTask]:
        now = now or utcnow()
        now_ts = to_ts(now)
        clauses = [_READY_SQL]
        params: list = [now_ts, now_ts]

        if subscription_ids is not None:
            keys = list(subscription_ids)
            if not keys:
                return None
            clauses.append(f"t.subscription_id IN ({', '.join('?' for _ in keys)})")
            params.extend(keys)

        if self.strict_ordering:
            clauses.append(_STRICT_SQL)
            params.append(now_ts)

        sql = f"{_TASK_SELECT} WHERE {' AND '.join(clauses)} ORDER BY t.occurred_at_ts ASC, t.rowid ASC LIMIT 1"
        token = self._new_token()
        lease_expires_at = now + self.lease_timeout

        with self._tx(immediate=True) as conn:
            row = conn.execute(sql, params).fetchone()
            if row is None:
                return None

            from_state = TaskState(row["state"])
            conn.execute(
                """
                UPDATE delivery_tasks
                SET state = ?, attempt_count = attempt_count + 1, claim_token = ?,
                    lease_expires_at = ?, updated_at = ?
                WHERE id = ?
                """,
                (TaskState.IN_FLIGHT.value, token, to_ts(lease_expires_at), now_ts, row["id"]),
            )
            reason = "lease expired" if from_state is TaskState.IN_FLIGHT else None
            self._insert_transition(conn, row["id"], from_state, TaskState.IN_FLIGHT, reason, now_ts)

        if reason:
            logger.warning(f"Reclaimed task {row['id']} after lease expiry")

        task = self._task_from_row(row)
        task.state = TaskState.IN_FLIGHT
        task.attempt_count += 1
        task.claim_token = token
        task.lease_expires_at = lease_expires_at
        return task

    def requeue(self, task: DeliveryTask, next_attempt_at: datetime, reason: Optional[str] = None) -> None:
        now_ts = to_ts(utcnow())
        with self._tx(immediate=True) as conn:
            cursor = conn.execute(
                """
                UPDATE delivery_tasks
                SET state = ?, attempt_count = ?, next_attempt_at = ?, claim_token = NULL,
                    lease_expires_at = NULL, updated_at = ?
                WHERE id = ? AND state = ? AND claim_token = ?
                """,
                (
                    TaskState.PENDING.value,
                    task.attempt_count,
                    to_ts(next_attempt_at),
                    now_ts,
                    task.task_id,
                    TaskState.IN_FLIGHT.value,
                    task.claim_token,
                ),
            )
            if cursor.rowcount == 0:
                raise LeaseLostError(task.task_id)
            self._insert_transition(conn, task.task_id, TaskState.IN_FLIGHT, TaskState.PENDING, reason, now_ts)

        task.state = TaskState.PENDING
        task.next_attempt_at = next_attempt_at
        task.claim_token = None
        task.lease_expires_at = None

    def retire(self, task: DeliveryTask, state: TaskState, reason: Optional[str] = None) -> None:
        self._check_final(state)
        now_ts = to_ts(utcnow())
        with self._tx(immediate=True) as conn:
            cursor = conn.execute(
                """
                UPDATE delivery_tasks
                SET state = ?, claim_token = NULL, lease_expires_at = NULL, updated_at = ?
                WHERE id = ? AND state = ? AND claim_token = ?
                """,
                (state.value, now_ts, task.task_id, TaskState.IN_FLIGHT.value, task.claim_token),
            )
            if cursor.rowcount == 0:
                raise LeaseLostError(task.task_id)
            self._insert_transition(conn, task.task_id, TaskState.IN_FLIGHT, state, reason, now_ts)

        task.state = state
        task.claim_token = None
        task.lease_expires_at = None

    # Inspection ---------------------------------------------------------

    def get_task(self, task_id: str) -> Optional[DeliveryTask]:
        with self._tx() as conn:
            row = conn.execute(f"{_TASK_SELECT} WHERE t.id = ?", (task_id,)).fetchone()
        return self._task_from_row(row) if row else None

    def find_task(self, event_id: str, subscription_id: str) -> Optional[DeliveryTask]:
        with self._tx() as conn:
            row = conn.execute(
                f"{_TASK_SELECT} WHERE t.event_id = ? AND t.subscription_id = ?",
                (event_id, subscription_id),
            ).fetchone()
        return self._task_from_row(row) if row else None

    def transitions(self, task_id: str) -> List[TaskTransition]:
        with self._tx() as conn:
            rows = conn.execute(
                "SELECT * FROM task_transitions WHERE task_id = ? ORDER BY id ASC",
                (task_id,),
            ).fetchall()
        return [
            TaskTransition(
                task_id=row["task_id"],
                from_state=TaskState(row["from_state"]) if row["from_state"] else None,
                to_state=TaskState(row["to_state"]),
                reason=row["reason"],
                at=from_ts(row["at"]),
            )
            for row in rows
        ]

    def stats(self) -> Dict[str, int]:
        counts = {state.value: 0 for state in TaskState}
        with self._tx() as conn:
            for row in conn.execute("SELECT state, COUNT(*) AS n FROM delivery_tasks GROUP BY state"):
                counts[row["state"]] = row["n"]
            unresolved = conn.execute("SELECT COUNT(*) FROM events WHERE resolved_at IS NULL").fetchone()[0]
        counts["unresolved_events"] = unresolved
        return counts

    # Helpers ------------------------------------------------------------

    @staticmethod
    def _insert_event(conn, event: Event, resolved_at: Optional[float]) -> None:
        conn.execute(
            """
            INSERT OR IGNORE INTO events (id, type, payload, occurred_at, occurred_at_ts, recorded_at, resolved_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                event.id,
                event.type,
                event.raw_body().decode("utf-8"),
                event.occurred_at.isoformat(),
                to_ts(event.occurred_at),
                to_ts(utcnow()),
                resolved_at,
            ),
        )

    @staticmethod
    def _insert_task(conn, task: DeliveryTask, now: datetime) -> bool:
        cursor = conn.execute(
            """
            INSERT OR IGNORE INTO delivery_tasks (id, event_id, subscription_id, occurred_at_ts, state,
                                                  attempt_count, next_attempt_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                task.task_id,
                task.event.id,
                task.subscription_id,
                to_ts(task.event.occurred_at),
                TaskState.PENDING.value,
                task.attempt_count,
                to_ts(task.next_attempt_at),
                to_ts(now),
            ),
        )
        if cursor.rowcount == 0:
            return False
        SQLiteDeliveryQueue._insert_transition(conn, task.task_id, None, TaskState.PENDING, "enqueued", to_ts(now))
        return True

    @staticmethod
    def _insert_transition(conn, task_id: str, from_state: Optional[TaskState], to_state: TaskState,
                           reason: Optional[str], at: float) -> None:
        conn.execute(
            "INSERT INTO task_transitions (task_id, from_state, to_state, reason, at) VALUES (?, ?, ?, ?, ?)",
            (task_id, from_state.value if from_state else None, to_state.value, reason, at),
        )

    @staticmethod
    def _task_from_row(row) -> DeliveryTask:
        event = Event(
            id=row["event_id"],
            type=row["event_type"],
            payload=json.loads(row["event_payload"]),
            occurred_at=datetime.fromisoformat(row["event_occurred_at"]),
        )
        return DeliveryTask(
            task_id=row["id"],
            event=event,
            subscription_id=row["subscription_id"],
            next_attempt_at=from_ts(row["next_attempt_at"]),
            attempt_count=row["attempt_count"],
            state=TaskState(row["state"]),
            claim_token=row["claim_token"],
            lease_expires_at=from_ts(row["lease_expires_at"]),
        )


@dataclass
class _MemoryEntry:
    task: DeliveryTask
    seq: int


class InMemoryDeliveryQueue(DeliveryQueue):
    """Non-durable queue for tests and explicitly ephemeral deployments.

    State is lost when the process exits.
    """

    def __init__(self, lease_timeout_seconds: float = DEFAULT_LEASE_TIMEOUT_SECONDS, strict_ordering: bool = False):
        super().__init__(lease_timeout_seconds, strict_ordering)
        self._lock = threading.Lock()
        self._seq = itertools.count()
        self._events: Dict[str, Event] = {}
        self._unresolved: Dict[str, int] = {}
        self._tasks: Dict[str, _MemoryEntry] = {}
        self._pairs: Dict[tuple, str] = {}
        self._transitions: Dict[str, List[TaskTransition]] = {}

    def record_event(self, event: Event) -> None:
        with self._lock:
            if event.id not in self._events:
                self._events[event.id] = event
                self._unresolved[event.id] = next(self._seq)

    def unresolved_events(self, limit: int = 100) -> List[Event]:
        with self._lock:
            ordered = sorted(self._unresolved.items(), key=lambda item: item[1])
            return [self._events[event_id] for event_id, _ in ordered[:limit]]

    def fan_out(
        self,
        event: Event,
        subscription_ids: Sequence[str],
        next_attempt_at: Optional[datetime] = None,
    ) -> List[DeliveryTask]:
        now = utcnow()
        created = []
        with self._lock:
            self._events.setdefault(event.id, event)
            for subscription_id in subscription_ids:
                task = DeliveryTask.for_event(event, subscription_id, next_attempt_at or now)
                if self._add(task, now):
                    created.append(replace(task))
            self._unresolved.pop(event.id, None)
        return created

    def enqueue(self, task: DeliveryTask) -> bool:
        with self._lock:
            self._events.setdefault(task.event.id, task.event)
            return self._add(replace(task), utcnow())

    def claim_ready(
        self,
        now: Optional[datetime] = None,
        subscription_ids: Optional[Iterable[str]] = None,
    ) -> Optional[DeliveryTask]:
        now = now or utcnow()
        keys = set(subscription_ids) if subscription_ids is not None else None

        with self._lock:
            candidates = sorted(
                (e for e in self._tasks.values() if self._is_ready(e.task, now)),
                key=lambda e: (e.task.event.occurred_at, e.seq),
            )
            for entry in candidates:
                task = entry.task
                if keys is not None and task.subscription_id not in keys:
                    continue
                if self.strict_ordering and self._blocked(entry, now):
                    continue

                from_state = task.state
                task.state = TaskState.IN_FLIGHT
                task.attempt_count += 1
                task.claim_token = self._new_token()
                task.lease_expires_at = now + self.lease_timeout
                reason = "lease expired" if from_state is TaskState.IN_FLIGHT else None
                self._transition(task.task_id, from_state, TaskState.IN_FLIGHT, reason, now)
                if reason:
                    logger.warning(f"Reclaimed task {task.task_id} after lease expiry")
                return replace(task)
        return None

    def requeue(self, task: DeliveryTask, next_attempt_at: datetime, reason: Optional[str] = None) -> None:
        with self._lock:
            stored = self._owned(task)
            stored.state = TaskState.PENDING
            stored.attempt_count = task.attempt_count
            stored.next_attempt_at = next_attempt_at
            stored.claim_token = None
            stored.lease_expires_at = None
            self._transition(task.task_id, TaskState.IN_FLIGHT, TaskState.PENDING, reason, utcnow())

        task.state = TaskState.PENDING
        task.next_attempt_at = next_attempt_at
        task.claim_token = None
        task.lease_expires_at = None

    def retire(self, task: DeliveryTask, state: TaskState, reason: Optional[str] = None) -> None:
        self._check_final(state)
        with self._lock:
            stored = self._owned(task)
            stored.state = state
            stored.claim_token = None
            stored.lease_expires_at = None
            self._transition(task.task_id, TaskState.IN_FLIGHT, state, reason, utcnow())

        task.state = state
        task.claim_token = None
        task.lease_expires_at = None

    def get_task(self, task_id: str) -> Optional[DeliveryTask]:
        with self._lock:
            entry = self._tasks.get(task_id)
            return replace(entry.task) if entry else None

    def find_task(self, event_id: str, subscription_id: str) -> Optional[DeliveryTask]:
        with self._lock:
            task_id = self._pairs.get((event_id, subscription_id))
            return replace(self._tasks[task_id].task) if task_id else None

    def transitions(self, task_id: str) -> List[TaskTransition]:
        with self._lock:
            return list(self._transitions.get(task_id, []))

    def stats(self) -> Dict[str, int]:
        with self._lock:
            counts = {state.value: 0 for state in TaskState}
            for entry in self._tasks.values():
                counts[entry.task.state.value] += 1
            counts["unresolved_events"] = len(self._unresolved)
            return counts

    # Helpers (caller holds the lock) ------------------------------------

    def _add(self, task: DeliveryTask, now: datetime) -> bool:
        pair = (task.event.id, task.subscription_id)
        if pair in self._pairs:
            return False
        task.state = TaskState.PENDING
        self._tasks[task.task_id] = _MemoryEntry(task=task, seq=next(self._seq))
        self._pairs[pair] = task.task_id
        self._transition(task.task_id, None, TaskState.PENDING, "enqueued", now)
        return True

    @staticmethod
    def _is_ready(task: DeliveryTask, now: datetime) -> bool:
        if task.state is TaskState.PENDING:
            return task.next_attempt_at <= now
        if task.state is TaskState.IN_FLIGHT:
            return task.lease_expires_at is not None and task.lease_expires_at <= now
        return False

    def _blocked(self, entry: _MemoryEntry, now: datetime) -> bool:
        task = entry.task
        order = (task.event.occurred_at, entry.seq)
        for other in self._tasks.values():
            if other is entry or other.task.subscription_id != task.subscription_id:
                continue
            if other.task.state is TaskState.IN_FLIGHT and other.task.lease_expires_at > now:
                return True
            if not other.task.state.is_final and (other.task.event.occurred_at, other.seq) < order:
                return True
        return False

    def _owned(self, task: DeliveryTask) -> DeliveryTask:
        entry = self._tasks.get(task.task_id)
        if (
            entry is None
            or entry.task.state is not TaskState.IN_FLIGHT
            or entry.task.claim_token != task.claim_token
        ):
            raise LeaseLostError(task.task_id)
        return entry.task

    def _transition(self, task_id: str, from_state: Optional[TaskState], to_state: TaskState,
                    reason: Optional[str], at: datetime) -> None:
        self._transitions.setdefault(task_id, []).append(
            TaskTransition(task_id=task_id, from_state=from_state, to_state=to_state, reason=reason, at=at)
        )
