"""Webhook payload construction and HMAC signing.

The signature is an HMAC-SHA256 hex digest over the exact body bytes that
are sent. Receivers must verify against the raw request body, not a
re-serialisation of the parsed JSON.

Examples:
    Verifying a notification on the receiving side::

        body = await request.body()
        if not verify_signature(body, request.headers[SIGNATURE_HEADER], secret):
            return Response(status_code=401)
"""

import hashlib
import hmac
import json
from typing import Any

from consent_lifecycle.clock import format_timestamp
from consent_lifecycle.models import ConsentRecord, WebhookEvent

SIGNATURE_HEADER = "X-Consent-Signature"
EVENT_HEADER = "X-Consent-Event"


def build_payload(record: ConsentRecord, event: WebhookEvent) -> dict[str, Any]:
    """Build the notification payload for a record.

    Args:
        record: The record after the transition.
        event: The event being announced.

    Returns:
        A JSON-serialisable dict with a fixed key order.
    """
    return {
        "event": event.value,
        "subjectId": record.subject_id,
        "requestId": record.request_id,
        "state": record.state.value,
        "createdAt": format_timestamp(record.created_at),
        "expiresAt": format_timestamp(record.expires_at),
        "openedAt": format_timestamp(record.opened_at),
        "acceptedAt": format_timestamp(record.accepted_at),
        "metadata": record.metadata,
    }


def serialize_payload(payload: dict[str, Any]) -> bytes:
    """Serialise a payload to the exact bytes that are signed and sent."""
    return json.dumps(payload, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def sign_payload(body: bytes, secret: str) -> str:
    """Return the HMAC-SHA256 hex digest of ``body`` under ``secret``."""
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def verify_signature(body: bytes, signature: str, secret: str) -> bool:
    """Check a signature in constant time."""
    expected = sign_payload(body, secret)
    return hmac.compare_digest(expected, signature.strip().lower())


def signed_headers(body: bytes, event: WebhookEvent, secret: str) -> dict[str, str]:
    """Build the request headers for a signed notification."""
    return {
        "Content-Type": "application/json",
        SIGNATURE_HEADER: sign_payload(body, secret),
        EVENT_HEADER: event.value,
    }
