"""Tests for the delivery ledger and the event bus."""

from unittest.mock import MagicMock

import pytest

from carehooks.webhooks.bus import EventBus
from carehooks.webhooks.errors import QueueUnavailableError, ValidationError
from carehooks.webhooks.ledger import InMemoryDeliveryLedger, SQLiteDeliveryLedger, summarize
from carehooks.webhooks.models import DeliveryAttempt, DeliveryOutcome
from carehooks.webhooks.queue import InMemoryDeliveryQueue, SQLiteDeliveryQueue


def _attempt(outcome, number=1, event_id="evt_1", subscription_id="sub_1", status=None, latency=None):
    return DeliveryAttempt(
        event_id=event_id,
        subscription_id=subscription_id,
        attempt_number=number,
        outcome=outcome,
        response_status=status,
        latency_ms=latency,
    )


@pytest.fixture(params=["sqlite", "memory"])
def ledger(request, tmp_path):
    if request.param == "sqlite":
        return SQLiteDeliveryLedger(tmp_path / "ledger.db")
    return InMemoryDeliveryLedger()


class TestDeliveryLedger:
    """Tests for append-only attempt records."""

    def test_append_and_history(self, ledger):
        ledger.append(_attempt(DeliveryOutcome.FAILED_RETRYABLE, 1, status=500))
        ledger.append(_attempt(DeliveryOutcome.SUCCESS, 2, status=200))

        history = ledger.history("evt_1", "sub_1")

        assert [a.outcome for a in history] == [DeliveryOutcome.FAILED_RETRYABLE, DeliveryOutcome.SUCCESS]
        assert [a.response_status for a in history] == [500, 200]
        assert all(a.id is not None for a in history)

    def test_has_succeeded(self, ledger):
        ledger.append(_attempt(DeliveryOutcome.FAILED_RETRYABLE))
        assert ledger.has_succeeded("evt_1", "sub_1") is False

        ledger.append(_attempt(DeliveryOutcome.SUCCESS, 2))
        assert ledger.has_succeeded("evt_1", "sub_1") is True
        assert ledger.has_succeeded("evt_1", "sub_2") is False

    def test_second_success_recorded_as_duplicate(self, ledger):
        """Test a pair never holds two success rows."""
        ledger.append(_attempt(DeliveryOutcome.SUCCESS, 1))

        stored = ledger.append(_attempt(DeliveryOutcome.SUCCESS, 2))

        assert stored.outcome is DeliveryOutcome.DUPLICATE
        outcomes = [a.outcome for a in ledger.history("evt_1", "sub_1")]
        assert outcomes.count(DeliveryOutcome.SUCCESS) == 1
        assert outcomes.count(DeliveryOutcome.DUPLICATE) == 1

    def test_success_per_pair_independent(self, ledger):
        ledger.append(_attempt(DeliveryOutcome.SUCCESS, subscription_id="sub_1"))
        stored = ledger.append(_attempt(DeliveryOutcome.SUCCESS, subscription_id="sub_2"))

        assert stored.outcome is DeliveryOutcome.SUCCESS

    def test_recent_newest_first(self, ledger):
        for n in range(1, 4):
            ledger.append(_attempt(DeliveryOutcome.FAILED_RETRYABLE, n))

        recent = ledger.recent(limit=2)

        assert [a.attempt_number for a in recent] == [3, 2]

    def test_health(self, ledger):
        ledger.append(_attempt(DeliveryOutcome.FAILED_RETRYABLE, 1, latency=100.0))
        ledger.append(_attempt(DeliveryOutcome.SUCCESS, 2, latency=50.0))
        ledger.append(_attempt(DeliveryOutcome.FAILED_TERMINAL, 1, event_id="evt_2"))
        ledger.append(_attempt(DeliveryOutcome.SUCCESS, 1, subscription_id="sub_other"))

        health = ledger.health("sub_1")

        assert health.attempts == 3
        assert health.successes == 1
        assert health.retryable_failures == 1
        assert health.terminal_failures == 1
        assert health.success_rate == pytest.approx(1 / 3)
        assert health.avg_latency_ms == pytest.approx(75.0)


class TestSummarize:
    def test_empty(self):
        health = summarize("sub_1", [])

        assert health.attempts == 0
        assert health.success_rate == 0.0
        assert health.avg_latency_ms is None


class TestEventBus:
    """Tests for producer event intake."""

    @pytest.fixture(params=["sqlite", "memory"])
    def queue(self, request, tmp_path):
        if request.param == "sqlite":
            return SQLiteDeliveryQueue(tmp_path / "bus.db")
        return InMemoryDeliveryQueue()

    def test_submit_records_event(self, queue):
        bus = EventBus(queue)

        event_id = bus.submit("appointment.created", {"patient_id": 42})

        pending = queue.unresolved_events()
        assert [e.id for e in pending] == [event_id]
        assert pending[0].type == "appointment.created"
        assert pending[0].payload == {"patient_id": 42}

    def test_submit_defaults_payload(self, queue):
        event_id = EventBus(queue).submit("lab.result")

        assert queue.unresolved_events()[0].id == event_id
        assert queue.unresolved_events()[0].payload == {}

    def test_event_ids_unique(self, queue):
        bus = EventBus(queue)

        ids = {bus.submit("lab.result", {"n": n}) for n in range(20)}

        assert len(ids) == 20

    @pytest.mark.parametrize("event_type, payload", [
        ("", {}),
        ("lab.result", {"bad": {1, 2}}),
        ("lab.result", {"nan": float("inf")}),
        ("rendez-vous.créé", {}),
        ("lab\nresult", {}),
        ("lab.result", {"nested": {1: "one"}}),
    ])
    def test_invalid_event_rejected(self, queue, event_type, payload):
        with pytest.raises(ValidationError):
            EventBus(queue).submit(event_type, payload)
        assert queue.unresolved_events() == []

    def test_queue_failure_propagates(self):
        queue = MagicMock()
        queue.record_event.side_effect = QueueUnavailableError("disk full")

        with pytest.raises(QueueUnavailableError):
            EventBus(queue).submit("lab.result", {})
