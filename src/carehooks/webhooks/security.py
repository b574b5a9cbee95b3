"""Webhook security utilities.

Provides HMAC signature generation and verification for
outbound deliveries and for receivers validating them.
"""

import hmac
import hashlib
from typing import Dict, Union

SIGNATURE_HEADER = "X-Signature"
EVENT_ID_HEADER = "X-Event-Id"
EVENT_TYPE_HEADER = "X-Event-Type"
SUBSCRIPTION_ID_HEADER = "X-Subscription-Id"
ATTEMPT_HEADER = "X-Delivery-Attempt"

DEFAULT_USER_AGENT = "CareHooks-Webhook/1.0"


def _as_bytes(value: Union[str, bytes]) -> bytes:
    if isinstance(value, bytes):
        return value
    return value.encode("utf-8")


def generate_signature(body: Union[str, bytes], secret: str) -> str:
    """Generate a hex HMAC-SHA256 signature over the raw body.

    Args:
        body: The exact request body bytes (str is UTF-8 encoded).
        secret: The subscription's signing secret.

    Returns:
        Lowercase hex digest for the X-Signature header.
    """
    return hmac.new(
        secret.encode("utf-8"),
        _as_bytes(body),
        hashlib.sha256
    ).hexdigest()


def verify_signature(body: Union[str, bytes], signature: str, secret: str) -> bool:
    """Verify an X-Signature header against the raw body.

    Args:
        body: The raw request body as received.
        signature: The hex signature from the X-Signature header.
        secret: The shared signing secret.

    Returns:
        True if the signature matches.
    """
    if not signature:
        return False
    expected = generate_signature(body, secret)
    # Constant-time comparison to prevent timing attacks
    return hmac.compare_digest(signature.strip().lower(), expected)


def generate_webhook_headers(
    body: bytes,
    secret: str,
    event_id: str,
    event_type: str,
    subscription_id: str,
    attempt: int,
    user_agent: str = DEFAULT_USER_AGENT,
) -> Dict[str, str]:
    """Generate headers for an outbound webhook request.

    Args:
        body: The serialized payload bytes.
        secret: The subscription's signing secret.
        event_id: Id of the event being delivered.
        event_type: Type tag of the event.
        subscription_id: Id of the receiving subscription.
        attempt: 1-based attempt number.
        user_agent: User-Agent header value.

    Returns:
        Dict of headers to include in the webhook request.
    """
    return {
        "Content-Type": "application/json",
        "User-Agent": user_agent,
        EVENT_ID_HEADER: event_id,
        EVENT_TYPE_HEADER: event_type,
        SUBSCRIPTION_ID_HEADER: subscription_id,
        ATTEMPT_HEADER: str(attempt),
        SIGNATURE_HEADER: generate_signature(body, secret),
    }
