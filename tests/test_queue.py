"""Tests for the delivery queue backends."""

from datetime import datetime, timedelta, timezone

import pytest

from carehooks.webhooks.errors import LeaseLostError
from carehooks.webhooks.models import DeliveryTask, Event, TaskState, utcnow
from carehooks.webhooks.queue import InMemoryDeliveryQueue, SQLiteDeliveryQueue


def _event(event_type: str = "appointment.created", offset_seconds: int = 0, **payload) -> Event:
    occurred = datetime(2024, 1, 1, tzinfo=timezone.utc) + timedelta(seconds=offset_seconds)
    return Event(type=event_type, payload=payload, occurred_at=occurred)


@pytest.fixture(params=["sqlite", "memory"])
def make_queue(request, tmp_path):
    """Factory building either queue backend."""
    def factory(**kwargs):
        if request.param == "sqlite":
            return SQLiteDeliveryQueue(tmp_path / "queue.db", **kwargs)
        return InMemoryDeliveryQueue(**kwargs)
    return factory


class TestEventIntake:
    """Tests for recording and resolving events."""

    def test_recorded_event_is_unresolved(self, make_queue):
        queue = make_queue()
        event = _event(patient_id=42)

        queue.record_event(event)
        pending = queue.unresolved_events()

        assert [e.id for e in pending] == [event.id]
        assert pending[0].payload == {"patient_id": 42}
        assert queue.stats()["unresolved_events"] == 1

    def test_fan_out_resolves_event(self, make_queue):
        queue = make_queue()
        event = _event()
        queue.record_event(event)

        created = queue.fan_out(event, ["sub_a", "sub_b"])

        assert {t.subscription_id for t in created} == {"sub_a", "sub_b"}
        assert queue.unresolved_events() == []
        assert queue.stats()["pending"] == 2

    def test_fan_out_idempotent(self, make_queue):
        """Test re-running fan-out never duplicates a pair."""
        queue = make_queue()
        event = _event()
        queue.record_event(event)

        queue.fan_out(event, ["sub_a"])
        again = queue.fan_out(event, ["sub_a", "sub_b"])

        assert [t.subscription_id for t in again] == ["sub_b"]
        assert queue.stats()["pending"] == 2

    def test_fan_out_with_no_subscribers(self, make_queue):
        queue = make_queue()
        event = _event()
        queue.record_event(event)

        assert queue.fan_out(event, []) == []
        assert queue.unresolved_events() == []

    def test_enqueue_rejects_duplicate_pair(self, make_queue):
        queue = make_queue()
        event = _event()

        assert queue.enqueue(DeliveryTask.for_event(event, "sub_a")) is True
        assert queue.enqueue(DeliveryTask.for_event(event, "sub_a")) is False


class TestClaiming:
    """Tests for claim, requeue and retire."""

    def test_claim_increments_attempt(self, make_queue):
        queue = make_queue()
        queue.enqueue(DeliveryTask.for_event(_event(), "sub_a"))

        task = queue.claim_ready()

        assert task.state is TaskState.IN_FLIGHT
        assert task.attempt_count == 1
        assert task.claim_token
        assert queue.claim_ready() is None

    def test_claim_empty_queue(self, make_queue):
        assert make_queue().claim_ready() is None

    def test_future_task_not_ready(self, make_queue):
        queue = make_queue()
        later = utcnow() + timedelta(minutes=5)
        queue.enqueue(DeliveryTask.for_event(_event(), "sub_a", next_attempt_at=later))

        assert queue.claim_ready() is None
        assert queue.claim_ready(now=later) is not None

    def test_claims_oldest_event_first(self, make_queue):
        queue = make_queue()
        newer = _event(offset_seconds=10)
        older = _event(offset_seconds=0)
        queue.enqueue(DeliveryTask.for_event(newer, "sub_a"))
        queue.enqueue(DeliveryTask.for_event(older, "sub_b"))

        assert queue.claim_ready().event.id == older.id

    def test_claim_filtered_by_subscription(self, make_queue):
        queue = make_queue()
        queue.enqueue(DeliveryTask.for_event(_event(), "sub_a"))
        queue.enqueue(DeliveryTask.for_event(_event(offset_seconds=1), "sub_b"))

        task = queue.claim_ready(subscription_ids=["sub_b"])

        assert task.subscription_id == "sub_b"
        assert queue.claim_ready(subscription_ids=[]) is None

    def test_requeue_schedules_retry(self, make_queue):
        queue = make_queue()
        queue.enqueue(DeliveryTask.for_event(_event(), "sub_a"))
        task = queue.claim_ready()
        retry_at = utcnow() + timedelta(seconds=30)

        queue.requeue(task, retry_at, reason="HTTP 500")

        assert queue.claim_ready() is None
        again = queue.claim_ready(now=retry_at + timedelta(seconds=1))
        assert again.attempt_count == 2

    def test_retire_is_final(self, make_queue):
        queue = make_queue()
        queue.enqueue(DeliveryTask.for_event(_event(), "sub_a"))
        task = queue.claim_ready()

        queue.retire(task, TaskState.SUCCESS)

        stored = queue.get_task(task.task_id)
        assert stored.state is TaskState.SUCCESS
        assert queue.claim_ready(now=utcnow() + timedelta(days=1)) is None

    def test_retire_requires_final_state(self, make_queue):
        queue = make_queue()
        queue.enqueue(DeliveryTask.for_event(_event(), "sub_a"))
        task = queue.claim_ready()

        with pytest.raises(ValueError):
            queue.retire(task, TaskState.PENDING)

    def test_transitions_recorded(self, make_queue):
        queue = make_queue()
        queue.enqueue(DeliveryTask.for_event(_event(), "sub_a"))
        task = queue.claim_ready()
        queue.requeue(task, utcnow(), reason="HTTP 503")
        task = queue.claim_ready()
        queue.retire(task, TaskState.FAILED_TERMINAL, reason="HTTP 404")

        history = queue.transitions(task.task_id)

        assert [(t.from_state, t.to_state) for t in history] == [
            (None, TaskState.PENDING),
            (TaskState.PENDING, TaskState.IN_FLIGHT),
            (TaskState.IN_FLIGHT, TaskState.PENDING),
            (TaskState.PENDING, TaskState.IN_FLIGHT),
            (TaskState.IN_FLIGHT, TaskState.FAILED_TERMINAL),
        ]
        assert history[2].reason == "HTTP 503"
        assert history[-1].reason == "HTTP 404"

    def test_find_task_by_pair(self, make_queue):
        queue = make_queue()
        event = _event()
        queue.enqueue(DeliveryTask.for_event(event, "sub_a"))

        assert queue.find_task(event.id, "sub_a").subscription_id == "sub_a"
        assert queue.find_task(event.id, "sub_b") is None


class TestLeases:
    """Tests for crash recovery through lease expiry."""

    def test_expired_lease_returns_task(self, make_queue):
        queue = make_queue(lease_timeout_seconds=30)
        queue.enqueue(DeliveryTask.for_event(_event(), "sub_a"))
        first = queue.claim_ready()

        later = utcnow() + timedelta(seconds=31)
        second = queue.claim_ready(now=later)

        assert second.task_id == first.task_id
        assert second.attempt_count == 2
        assert second.claim_token != first.claim_token
        assert queue.transitions(first.task_id)[-1].reason == "lease expired"

    def test_stale_worker_ack_raises(self, make_queue):
        """Test a worker whose lease expired cannot acknowledge."""
        queue = make_queue(lease_timeout_seconds=30)
        queue.enqueue(DeliveryTask.for_event(_event(), "sub_a"))
        stale = queue.claim_ready()
        fresh = queue.claim_ready(now=utcnow() + timedelta(seconds=31))

        with pytest.raises(LeaseLostError):
            queue.retire(stale, TaskState.SUCCESS)
        with pytest.raises(LeaseLostError):
            queue.requeue(stale, utcnow())

        queue.retire(fresh, TaskState.SUCCESS)
        assert queue.get_task(fresh.task_id).state is TaskState.SUCCESS

    def test_live_lease_not_reclaimed(self, make_queue):
        queue = make_queue(lease_timeout_seconds=30)
        queue.enqueue(DeliveryTask.for_event(_event(), "sub_a"))
        queue.claim_ready()

        assert queue.claim_ready(now=utcnow() + timedelta(seconds=10)) is None


class TestStrictOrdering:
    """Tests for per-subscription FIFO delivery."""

    def test_younger_task_blocked_while_older_in_flight(self, make_queue):
        queue = make_queue(strict_ordering=True)
        first, second = _event(offset_seconds=0), _event(offset_seconds=1)
        queue.enqueue(DeliveryTask.for_event(first, "sub_a"))
        queue.enqueue(DeliveryTask.for_event(second, "sub_a"))

        claimed = queue.claim_ready()

        assert claimed.event.id == first.id
        assert queue.claim_ready() is None

        queue.retire(claimed, TaskState.SUCCESS)
        assert queue.claim_ready().event.id == second.id

    def test_younger_task_blocked_while_older_waits_for_retry(self, make_queue):
        queue = make_queue(strict_ordering=True)
        first, second = _event(offset_seconds=0), _event(offset_seconds=1)
        queue.enqueue(DeliveryTask.for_event(first, "sub_a"))
        queue.enqueue(DeliveryTask.for_event(second, "sub_a"))

        claimed = queue.claim_ready()
        queue.requeue(claimed, utcnow() + timedelta(minutes=1))

        assert queue.claim_ready() is None

    def test_other_subscriptions_unaffected(self, make_queue):
        queue = make_queue(strict_ordering=True)
        queue.enqueue(DeliveryTask.for_event(_event(offset_seconds=0), "sub_a"))
        queue.enqueue(DeliveryTask.for_event(_event(offset_seconds=1), "sub_a"))
        queue.enqueue(DeliveryTask.for_event(_event(offset_seconds=2), "sub_b"))

        queue.claim_ready()

        assert queue.claim_ready().subscription_id == "sub_b"

    def test_unordered_mode_allows_parallel_claims(self, make_queue):
        queue = make_queue()
        queue.enqueue(DeliveryTask.for_event(_event(offset_seconds=0), "sub_a"))
        queue.enqueue(DeliveryTask.for_event(_event(offset_seconds=1), "sub_a"))

        assert queue.claim_ready() is not None
        assert queue.claim_ready() is not None


class TestSQLiteDurability:
    """Tests specific to the SQLite backend."""

    def test_state_survives_reopen(self, tmp_path):
        path = tmp_path / "queue.db"
        event = _event(patient_id=7)
        SQLiteDeliveryQueue(path).enqueue(DeliveryTask.for_event(event, "sub_a"))

        reopened = SQLiteDeliveryQueue(path)
        task = reopened.claim_ready()

        assert task.event.id == event.id
        assert task.event.payload == {"patient_id": 7}
