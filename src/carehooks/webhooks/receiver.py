"""Subscriber-side webhook receiver.

Helper for services consuming CareHooks deliveries: verifies the
X-Signature header, drops redeliveries of the same event, and routes
the decoded payload to a handler registered for its event type.
"""

import json
import logging
from collections import OrderedDict
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional, Union

from .errors import SignatureVerificationError, ValidationError
from .security import (
    EVENT_ID_HEADER,
    EVENT_TYPE_HEADER,
    SIGNATURE_HEADER,
    SUBSCRIPTION_ID_HEADER,
    verify_signature,
)

logger = logging.getLogger(__name__)

# Handlers receive (event_type, payload)
WebhookHandler = Callable[[str, Dict[str, Any]], Awaitable[None]]


def _header(headers: Mapping[str, str], name: str) -> Optional[str]:
    value = headers.get(name)
    if value is not None:
        return value
    lowered = name.lower()
    for key, candidate in headers.items():
        if key.lower() == lowered:
            return candidate
    return None


class WebhookReceiver:
    """Receives and processes inbound webhook deliveries.

    Example:
        receiver = WebhookReceiver()

        @receiver.handler("appointment.created")
        async def on_appointment(event_type: str, payload: dict):
            ...

        result = await receiver.process(body, request.headers, secret="...")
    """

    def __init__(self, dedup_window_size: int = 1000):
        """Initialize receiver.

        Args:
            dedup_window_size: Max number of delivery keys remembered.
        """
        self._handlers: Dict[str, WebhookHandler] = {}
        self._default_handler: Optional[WebhookHandler] = None
        self._processed_keys: "OrderedDict[str, None]" = OrderedDict()
        self._dedup_window_size = dedup_window_size

    def handler(self, event_type: str):
        """Decorator to register a handler for an event type."""
        def decorator(func: WebhookHandler) -> WebhookHandler:
            self.register_handler(event_type, func)
            return func
        return decorator

    def register_handler(self, event_type: str, handler: WebhookHandler):
        self._handlers[event_type] = handler
        logger.info(f"Registered handler for event: {event_type}")

    def set_default_handler(self, handler: WebhookHandler):
        """Set a handler for event types without a dedicated one."""
        self._default_handler = handler
        logger.info("Set default webhook handler")

    def _remember(self, key: str) -> bool:
        """Track a delivery key; False if it was already seen."""
        if key in self._processed_keys:
            self._processed_keys.move_to_end(key)
            return False
        self._processed_keys[key] = None
        while len(self._processed_keys) > self._dedup_window_size:
            self._processed_keys.popitem(last=False)
        return True

    async def process(
        self,
        raw_body: Union[bytes, str],
        headers: Mapping[str, str],
        secret: str,
    ) -> Dict[str, Any]:
        """Verify, deduplicate and dispatch one delivery.

        Args:
            raw_body: Request body exactly as received.
            headers: Request headers.
            secret: The subscription's signing secret.

        Returns:
            Dict with processing result status.

        Raises:
            SignatureVerificationError: Missing or invalid signature.
            ValidationError: Body is not a JSON object or the event type header is missing.
        """
        body = raw_body.encode("utf-8") if isinstance(raw_body, str) else raw_body

        signature = _header(headers, SIGNATURE_HEADER)
        if not signature or not verify_signature(body, signature, secret):
            logger.warning("Rejected webhook delivery with invalid signature")
            raise SignatureVerificationError("Invalid webhook signature")

        event_type = _header(headers, EVENT_TYPE_HEADER)
        if not event_type:
            raise ValidationError(f"Missing {EVENT_TYPE_HEADER} header")

        try:
            payload = json.loads(body.decode("utf-8"))
        except (UnicodeDecodeError, ValueError) as e:
            raise ValidationError(f"Webhook body is not valid JSON: {e}") from e
        if not isinstance(payload, dict):
            raise ValidationError("Webhook body must be a JSON object")

        event_id = _header(headers, EVENT_ID_HEADER)
        key = None
        if event_id:
            key = f"{event_id}:{_header(headers, SUBSCRIPTION_ID_HEADER) or ''}"
            if not self._remember(key):
                logger.info(f"Duplicate webhook ignored: {event_id}")
                return {
                    "status": "duplicate",
                    "message": "Event already processed",
                    "event_id": event_id,
                }

        handler = self._handlers.get(event_type, self._default_handler)
        if handler is None:
            logger.warning(f"No handler for webhook event: {event_type}")
            return {
                "status": "unhandled",
                "message": f"No handler for event type: {event_type}",
                "event_type": event_type,
            }

        try:
            await handler(event_type, payload)
        except Exception as e:
            logger.exception(f"Error processing webhook {event_type}")
            if key:
                # Allow the sender's retry to be processed
                self._processed_keys.pop(key, None)
            return {"status": "error", "message": str(e), "event_type": event_type}

        logger.info(f"Processed webhook event: {event_type}")
        return {
            "status": "success",
            "message": "Event processed successfully",
            "event_type": event_type,
        }

    def get_registered_handlers(self) -> Dict[str, str]:
        """Map of event types to handler function names."""
        return {
            event_type: handler.__name__
            for event_type, handler in self._handlers.items()
        }
