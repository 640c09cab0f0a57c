"""Signed webhook notifications for consent request transitions."""

from consent_lifecycle.webhooks.dispatcher import WebhookDispatcher
from consent_lifecycle.webhooks.signing import (
    EVENT_HEADER,
    SIGNATURE_HEADER,
    build_payload,
    serialize_payload,
    sign_payload,
    signed_headers,
    verify_signature,
)

__all__ = [
    "EVENT_HEADER",
    "SIGNATURE_HEADER",
    "WebhookDispatcher",
    "build_payload",
    "serialize_payload",
    "sign_payload",
    "signed_headers",
    "verify_signature",
]
