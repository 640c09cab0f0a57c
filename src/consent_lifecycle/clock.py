"""Time source and identifier generation.

The engine never calls ``datetime.now()`` directly; it asks a ``Clock``. This
keeps expiry decisions testable without sleeping.

Examples:
    Advancing a manual clock past a request's expiry::

        clock = ManualClock(datetime(2024, 1, 1, tzinfo=UTC))
        engine = ConsentLifecycle(store, cache, dispatcher, config, clock=clock)
        created = await engine.create(request)
        clock.advance(minutes=61)
        await engine.read(created.token)  # raises ExpiredError
"""

import hashlib
import secrets
import uuid
from datetime import UTC, datetime, timedelta
from typing import Protocol, runtime_checkable

# 16 random bytes -> 32 hex characters, 128 bits of entropy
TOKEN_BYTES = 16
REQUEST_ID_PREFIX = "CR-"


@runtime_checkable
class Clock(Protocol):
    """Source of the current time as a timezone-aware UTC datetime."""

    def now(self) -> datetime:
        """Return the current time."""
        ...


class SystemClock:
    """Wall-clock time."""

    def now(self) -> datetime:
        return datetime.now(UTC)


class ManualClock:
    """A clock that only moves when told to.

    Attributes:
        current: The time returned by ``now()``.
    """

    def __init__(self, start: datetime | None = None) -> None:
        self.current = start if start is not None else datetime.now(UTC)
        if self.current.tzinfo is None:
            raise ValueError("ManualClock requires a timezone-aware datetime")

    def now(self) -> datetime:
        return self.current

    def advance(self, **delta: float) -> datetime:
        """Move the clock forward by a ``timedelta(**delta)`` and return the new time."""
        self.current = self.current + timedelta(**delta)
        return self.current

    def set(self, value: datetime) -> None:
        self.current = value


def format_timestamp(value: datetime | None) -> str | None:
    """Render a datetime as ISO-8601 UTC with millisecond precision.

    Args:
        value: A timezone-aware datetime, or None.

    Returns:
        A string such as ``"2024-01-01T10:30:00.000Z"``, or None.

    Examples:
        >>> format_timestamp(datetime(2024, 1, 1, 10, 30, tzinfo=UTC))
        '2024-01-01T10:30:00.000Z'
    """
    if value is None:
        return None
    return value.astimezone(UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def generate_token() -> str:
    """Generate an unguessable public lookup token."""
    return secrets.token_hex(TOKEN_BYTES)


def digest_token(token: str) -> str:
    """Return the SHA-256 hex digest of a token."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def generate_request_id() -> str:
    """Generate a globally unique request identifier."""
    return f"{REQUEST_ID_PREFIX}{uuid.uuid4().hex}"


def token_hint(token: str) -> str:
    """Return a short, non-secret prefix of a token for log correlation."""
    return token[:6]
