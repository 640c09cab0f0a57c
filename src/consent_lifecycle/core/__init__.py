"""Core consent lifecycle logic.

- Lifecycle: the state machine (CREATED -> OPENED -> ACCEPTED / EXPIRED)
- Sweeper: manually triggered force-expiry of overdue requests

The core is framework-agnostic; adapters wrap it for HTTP frameworks.
"""

from consent_lifecycle.core.lifecycle import ConsentLifecycle
from consent_lifecycle.core.sweeper import ExpirationSweeper

__all__ = ["ConsentLifecycle", "ExpirationSweeper"]
