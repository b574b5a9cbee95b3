"""Event bus adapter - producer intake for hospital domain events.

Validates events, assigns ids and records them durably before returning,
so an acknowledged event is never lost. Fan-out to subscriptions happens
later in the dispatcher's resolution step.
"""

from datetime import datetime
from typing import Any, Dict, Optional
import logging

from pydantic import ValidationError as PydanticValidationError

from .errors import ValidationError
from .models import Event
from .queue import DeliveryQueue

logger = logging.getLogger(__name__)


class EventBus:
    """Accepts ``(event_type, payload, occurred_at)`` tuples from producers.

    Example:
        bus = EventBus(queue)
        event_id = bus.submit("appointment.created", {"patient_id": 42})
    """

    def __init__(self, queue: DeliveryQueue):
        self.queue = queue

    def submit(
        self,
        event_type: str,
        payload: Optional[Dict[str, Any]] = None,
        occurred_at: Optional[datetime] = None,
    ) -> str:
        """Validate and durably record an event.

        Args:
            event_type: Type tag, e.g. "appointment.created".
            payload: JSON-serializable map; defaults to empty.
            occurred_at: When it happened; defaults to now.

        Returns:
            The assigned event id.

        Raises:
            ValidationError: If the type is empty or the payload is not serializable.
            QueueUnavailableError: If the event could not be recorded.
        """
        fields: Dict[str, Any] = {"type": event_type, "payload": {} if payload is None else payload}
        if occurred_at is not None:
            fields["occurred_at"] = occurred_at
        try:
            event = Event(**fields)
        except PydanticValidationError as exc:
            problems = "; ".join(
                f"{'.'.join(str(p) for p in err['loc']) or 'event'}: {err['msg']}"
                for err in exc.errors()
            )
            raise ValidationError(f"Invalid event: {problems}") from exc
        return self.submit_event(event)

    def submit_event(self, event: Event) -> str:
        """Durably record an already constructed event."""
        self.queue.record_event(event)
        logger.info(f"Accepted event {event.id} ({event.type})")
        return event.id
