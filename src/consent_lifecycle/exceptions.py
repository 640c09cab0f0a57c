"""Custom exceptions for the consent lifecycle engine.

The hierarchy mirrors the outcomes a caller can observe:

- ``ConsentValidationError``: creation input rejected before any persistence.
- ``NotFoundError``: the token does not resolve to a request.
- ``ExpiredError``: the request is past its expiry and was not accepted.
- ``PersistenceError``: the durable store could not complete an operation.
- ``DispatchError``: a webhook could not be delivered (logged, never surfaced).
- ``ConfigurationError``: the process is missing required settings.

Examples:
    Mapping engine errors to a result::

        from consent_lifecycle.exceptions import ExpiredError, NotFoundError

        try:
            record = await engine.read(token)
        except NotFoundError:
            return {"ok": False, "error": "Link not found"}, 404
        except ExpiredError:
            return {"ok": False, "error": "Link expired"}, 410
"""


class ConsentError(Exception):
    """Base exception for all consent lifecycle errors.

    Attributes:
        message: Human-readable error description. Safe to show to end users.
    """

    def __init__(self, message: str) -> None:
        """Initialize the exception with a message.

        Args:
            message: Human-readable error description.
        """
        self.message = message
        super().__init__(message)


class ConsentValidationError(ConsentError):
    """Creation input is missing or malformed.

    Attributes:
        message: Human-readable error description.
        field: Name of the offending input field, if known.
    """

    def __init__(self, message: str, field: str | None = None) -> None:
        super().__init__(message)
        self.field = field


class NotFoundError(ConsentError):
    """No consent request exists for the given token.

    Attributes:
        message: Human-readable error description.
        token_hint: Leading characters of the token, for log correlation only.
    """

    def __init__(self, message: str, token_hint: str | None = None) -> None:
        super().__init__(message)
        self.token_hint = token_hint


class ExpiredError(ConsentError):
    """The consent request expired before it was accepted.

    Raised on every read or accept of an expired request. Only the attempt
    that performs the EXPIRED transition triggers a notification.

    Attributes:
        message: Human-readable error description.
        request_id: Identifier of the expired request.
    """

    def __init__(self, message: str, request_id: str) -> None:
        super().__init__(message)
        self.request_id = request_id


class PersistenceError(ConsentError):
    """The durable store failed to complete an operation.

    Store adapters wrap backend-specific exceptions in this type so the
    engine never has to know which backend is in use.

    Attributes:
        message: Human-readable error description.
        cause: The underlying exception, if any.

    Examples:
        Wrapping a backend failure::

            try:
                payload = path.read_text()
            except OSError as e:
                raise PersistenceError(f"Failed to read record: {e}", cause=e) from e
    """

    def __init__(self, message: str, cause: Exception | None = None) -> None:
        super().__init__(message)
        self.cause = cause


class DispatchError(ConsentError):
    """A webhook notification could not be delivered.

    Attributes:
        message: Human-readable error description.
        event: The webhook event name.
        target: The notification URL.
        status_code: HTTP status returned by the target, if a response arrived.
    """

    def __init__(
        self,
        message: str,
        event: str,
        target: str,
        status_code: int | None = None,
    ) -> None:
        super().__init__(message)
        self.event = event
        self.target = target
        self.status_code = status_code


class ConfigurationError(ConsentError):
    """Required configuration is missing or unusable."""
