"""Core type definitions and models for the consent lifecycle engine.

This module provides the data structures shared by the engine, the store
adapters, the cache and the webhook dispatcher: the request states, the
consent record itself, creation input, and the results of conditional writes
and engine operations.

Examples:
    Creating a consent record::

        from datetime import UTC, datetime, timedelta
        from consent_lifecycle.models import ConsentRecord, ConsentState

        now = datetime.now(UTC)
        record = ConsentRecord(
            request_id="CR-0f8e...",
            subject_id="client-42",
            channel="WHATSAPP",
            token=token,
            token_digest=digest_token(token),
            state=ConsentState.CREATED,
            created_at=now,
            expires_at=now + timedelta(minutes=60),
            notify_target="https://hooks.example.com/consent",
        )

    Parsing untrusted creation input::

        request = parse_create_request({"subjectId": "client-42", "notifyTarget": url})
"""

import math
from datetime import datetime
from enum import Enum
from typing import Any
from urllib.parse import urlparse

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from pydantic.alias_generators import to_camel

from consent_lifecycle.exceptions import ConsentValidationError


class ConsentState(str, Enum):
    """Lifecycle state of a consent request.

    Attributes:
        CREATED: Issued, link not opened yet.
        OPENED: Link opened at least once before expiry.
        ACCEPTED: Accepted by the subject. Terminal.
        EXPIRED: Passed its expiry without acceptance. Terminal.
    """

    CREATED = "CREATED"
    OPENED = "OPENED"
    ACCEPTED = "ACCEPTED"
    EXPIRED = "EXPIRED"

    @property
    def is_terminal(self) -> bool:
        return self in (ConsentState.ACCEPTED, ConsentState.EXPIRED)


# States from which a request may still be accepted or expired
PENDING_STATES = frozenset({ConsentState.CREATED, ConsentState.OPENED})

# Longest lifetime a caller may request (7 days), same bound as the default
MAX_TTL_MINUTES = 10080


class WebhookEvent(str, Enum):
    """Event names carried by outbound notifications."""

    ACCEPTED = "accepted"
    EXPIRED = "expired"


class ConsentRecord(BaseModel):
    """Complete record of a consent request.

    Attributes:
        request_id: Opaque, globally unique identifier. Immutable.
        subject_id: Identifier of the party whose consent is sought. Immutable.
        channel: Delivery channel label. Immutable.
        token: Public lookup credential. Immutable, never logged.
        token_digest: SHA-256 hex digest of ``token``.
        state: Current lifecycle state.
        created_at: Creation time.
        expires_at: ``created_at + ttl``.
        opened_at: First successful read before expiry. Write-once.
        accepted_at: Acceptance time. Write-once.
        accepted_by: Client network address recorded on acceptance.
        accepted_agent: Client-supplied agent descriptor recorded on acceptance.
        notify_target: Webhook destination URL. Immutable.
        metadata: Opaque caller payload, echoed in notifications.
    """

    request_id: str = Field(..., min_length=1, max_length=255)
    subject_id: str = Field(..., min_length=1, max_length=255)
    channel: str = Field(..., min_length=1, max_length=64)
    token: str = Field(..., min_length=1)
    token_digest: str = Field(..., pattern=r"^[a-f0-9]{64}$")
    state: ConsentState
    created_at: datetime
    expires_at: datetime
    opened_at: datetime | None = None
    accepted_at: datetime | None = None
    accepted_by: str | None = None
    accepted_agent: str | None = None
    notify_target: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator("expires_at")
    @classmethod
    def validate_expires_after_created(cls, v: datetime, info: Any) -> datetime:
        """Validate that expires_at is after created_at.

        Raises:
            ValueError: If expires_at is not after created_at.
        """
        if "created_at" in info.data and v <= info.data["created_at"]:
            raise ValueError("expires_at must be after created_at")
        return v

    def is_past_expiry(self, now: datetime) -> bool:
        """Return True if ``now`` is strictly later than ``expires_at``."""
        return now > self.expires_at

    def is_due_for_expiry(self, now: datetime) -> bool:
        """Return True if the record is pending and past its expiry."""
        return self.state in PENDING_STATES and self.is_past_expiry(now)


class CreateConsentRequest(BaseModel):
    """Validated creation input.

    Accepts camelCase keys (``subjectId``, ``notifyTarget``) as well as
    snake_case field names.

    Attributes:
        subject_id: Required subject identifier. Numbers are coerced to strings.
        channel: Optional channel label; blank means "use the default".
        ttl: Optional lifetime in minutes, at most ``MAX_TTL_MINUTES``.
            Non-numbers and non-positive numbers mean "use the default";
            infinite, NaN and over-long values are rejected.
        notify_target: Required http(s) webhook URL.
        metadata: Optional opaque object.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    subject_id: str = Field(..., min_length=1, max_length=255)
    channel: str | None = None
    ttl: float | None = None
    notify_target: str = Field(..., min_length=1)
    metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator("subject_id", mode="before")
    @classmethod
    def coerce_subject_id(cls, v: Any) -> Any:
        if isinstance(v, int) and not isinstance(v, bool):
            return str(v)
        if isinstance(v, str):
            return v.strip()
        return v

    @field_validator("channel", mode="before")
    @classmethod
    def blank_channel_is_unset(cls, v: Any) -> Any:
        if isinstance(v, str) and not v.strip():
            return None
        return v

    @field_validator("ttl", mode="before")
    @classmethod
    def non_positive_ttl_is_unset(cls, v: Any) -> float | None:
        if isinstance(v, bool) or not isinstance(v, int | float):
            return None
        if isinstance(v, float) and not math.isfinite(v):
            raise ValueError("ttl must be a finite number of minutes")
        if v <= 0:
            return None
        if v > MAX_TTL_MINUTES:
            raise ValueError(f"ttl must be at most {MAX_TTL_MINUTES} minutes")
        return float(v)

    @field_validator("notify_target", mode="before")
    @classmethod
    def validate_notify_target(cls, v: Any) -> Any:
        if not isinstance(v, str):
            return v
        v = v.strip()
        if not v:
            return v
        parsed = urlparse(v)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise ValueError("notifyTarget must be an absolute http(s) URL")
        return v

    @field_validator("metadata", mode="before")
    @classmethod
    def none_metadata_is_empty(cls, v: Any) -> Any:
        return {} if v is None else v


def parse_create_request(data: Any) -> CreateConsentRequest:
    """Validate raw creation input.

    Args:
        data: Decoded JSON body (expected to be an object).

    Returns:
        The validated request.

    Raises:
        ConsentValidationError: If a required field is missing or a field is malformed.
    """
    if not isinstance(data, dict):
        raise ConsentValidationError("Request body must be a JSON object")
    try:
        return CreateConsentRequest.model_validate(data)
    except ValidationError as e:
        error = e.errors()[0]
        loc = str(error["loc"][0]) if error["loc"] else ""
        field_name = _INPUT_NAMES.get(loc, loc) or None
        if error["type"] == "missing" or (
            field_name in _REQUIRED_INPUTS and error["type"] == "string_too_short"
        ):
            message = f"{field_name} is required"
        else:
            detail = error["msg"].removeprefix("Value error, ")
            message = f"{field_name}: {detail}" if field_name and field_name not in detail else detail
        raise ConsentValidationError(message, field=field_name) from e


# Field name -> public (camelCase) input name
_INPUT_NAMES = {
    "subject_id": "subjectId",
    "notify_target": "notifyTarget",
}
_REQUIRED_INPUTS = frozenset({"subjectId", "notifyTarget"})


class WriteResult(BaseModel):
    """Result of a conditional store write.

    Attributes:
        applied: Whether the write matched its precondition and was applied.
        record: The stored record after the attempt. None only when the token
            is unknown to the store.

    Examples:
        A losing concurrent accept::

            result = await store.conditional_update(
                token,
                expected_states=PENDING_STATES,
                changes={"state": ConsentState.ACCEPTED, "accepted_at": now},
            )
            if not result.applied and result.record.state is ConsentState.ACCEPTED:
                # somebody else won, report their acceptance
                ...
    """

    applied: bool
    record: ConsentRecord | None = None

    @field_validator("record")
    @classmethod
    def validate_record_with_applied(
        cls, v: ConsentRecord | None, info: Any
    ) -> ConsentRecord | None:
        if info.data.get("applied") and v is None:
            raise ValueError("record must be provided when applied is True")
        return v


class CreateOutcome(BaseModel):
    """Result of a successful creation."""

    record: ConsentRecord
    url: str


class AcceptOutcome(BaseModel):
    """Result of an accept call.

    Attributes:
        record: The accepted record.
        already_accepted: True if this call did not perform the acceptance.
    """

    record: ConsentRecord
    already_accepted: bool


class SweepResult(BaseModel):
    """Result of one expiration sweep.

    Attributes:
        expired_count: Records this pass moved to EXPIRED.
        failed_count: Records whose expiry could not be persisted.
        scanned_count: Records inspected.
    """

    expired_count: int = Field(default=0, ge=0)
    failed_count: int = Field(default=0, ge=0)
    scanned_count: int = Field(default=0, ge=0)


class DeliveryResult(BaseModel):
    """Outcome of one webhook delivery attempt."""

    event: WebhookEvent
    request_id: str
    delivered: bool
    status_code: int | None = None
    error: str | None = None
    elapsed_ms: int = Field(default=0, ge=0)
