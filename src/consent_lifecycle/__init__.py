"""
Consent request lifecycle engine.

This package manages short-lived, token-addressed consent requests: creation,
first open, at-most-once acceptance, expiry, and signed webhook notifications
for the accepted and expired transitions.
"""

__version__ = "0.1.0"

from consent_lifecycle.config import ConsentConfig
from consent_lifecycle.core.lifecycle import ConsentLifecycle
from consent_lifecycle.core.sweeper import ExpirationSweeper
from consent_lifecycle.models import ConsentRecord, ConsentState, WebhookEvent

__all__ = [
    "__version__",
    "ConsentConfig",
    "ConsentLifecycle",
    "ConsentRecord",
    "ConsentState",
    "ExpirationSweeper",
    "WebhookEvent",
]
