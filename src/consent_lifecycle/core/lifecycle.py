"""Consent request lifecycle engine.

This module owns the state machine:

    CREATED --read--> OPENED
    CREATED/OPENED --accept--> ACCEPTED          (terminal)
    CREATED/OPENED --read/accept after expiry--> EXPIRED   (terminal)

Every read or accept follows the same order:

1. Load the record, cache first, falling back to the durable store.
2. If it is EXPIRED, fail. If it is not ACCEPTED and past ``expires_at``,
   commit the EXPIRED transition, notify once, and fail.
3. Apply the operation's own transition.

Every transition is a conditional store write. When several callers race on
one token exactly one write applies; the others read the winner's record
back from the store and report it as an idempotent success (or as expired,
if the winner expired it). Notifications are only dispatched by the caller
whose write applied, so each request produces at most one "accepted" and at
most one "expired" notification.

The cache is written only after the store acknowledges a change. If the
store write fails the cache still records the change as unpersisted so this
process stays consistent, and the failure is surfaced: raised for creation,
acceptance and expiry, logged for the opened-at bookkeeping.

Examples:
    Creating and accepting a request::

        engine = ConsentLifecycle(store, RequestCache(), dispatcher, config)

        created = await engine.create(
            parse_create_request({"subjectId": "client-42", "notifyTarget": hook_url})
        )
        record = await engine.read(created.record.token)
        outcome = await engine.accept(
            created.record.token,
            client_address="203.0.113.7",
            user_agent="Mozilla/5.0",
        )
        assert outcome.record.state is ConsentState.ACCEPTED
"""

from datetime import datetime, timedelta
from typing import Any

from consent_lifecycle.cache import RequestCache
from consent_lifecycle.clock import (
    Clock,
    SystemClock,
    digest_token,
    generate_request_id,
    generate_token,
    token_hint,
)
from consent_lifecycle.config import ConsentConfig
from consent_lifecycle.exceptions import ExpiredError, NotFoundError, PersistenceError
from consent_lifecycle.models import (
    PENDING_STATES,
    AcceptOutcome,
    ConsentRecord,
    ConsentState,
    CreateConsentRequest,
    CreateOutcome,
    WebhookEvent,
)
from consent_lifecycle.observability.logging import get_logger
from consent_lifecycle.observability.metrics import (
    record_operation,
    record_persistence_failure,
    record_transition,
)
from consent_lifecycle.storage.base import MUTABLE_FIELDS, ConsentStore
from consent_lifecycle.webhooks.dispatcher import WebhookDispatcher

logger = get_logger(__name__)

EXPIRED_MESSAGE = "This link has expired. Please request a new one."
NOT_FOUND_MESSAGE = "This link does not exist or is no longer valid."


class ConsentLifecycle:
    """Creates consent requests and drives them through their states.

    Attributes:
        store: Durable store, the source of truth.
        cache: Process-local request cache.
        dispatcher: Webhook dispatcher for accepted/expired notifications.
        config: Engine configuration.
        clock: Time source.
    """

    def __init__(
        self,
        store: ConsentStore,
        cache: RequestCache,
        dispatcher: WebhookDispatcher,
        config: ConsentConfig,
        clock: Clock | None = None,
    ) -> None:
        self.store = store
        self.cache = cache
        self.dispatcher = dispatcher
        self.config = config
        self.clock = clock if clock is not None else SystemClock()

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def create(self, request: CreateConsentRequest) -> CreateOutcome:
        """Create and persist a new consent request.

        Args:
            request: Validated creation input.

        Returns:
            CreateOutcome with the new record and the public link.

        Raises:
            PersistenceError: If the store rejects the record. Nothing is cached.
        """
        now = self.clock.now()
        ttl_minutes = request.ttl if request.ttl is not None else self.config.default_ttl_minutes
        token = generate_token()

        record = ConsentRecord(
            request_id=generate_request_id(),
            subject_id=request.subject_id,
            channel=request.channel or self.config.default_channel,
            token=token,
            token_digest=digest_token(token),
            state=ConsentState.CREATED,
            created_at=now,
            expires_at=now + timedelta(minutes=ttl_minutes),
            notify_target=request.notify_target,
            metadata=request.metadata,
        )

        try:
            await self.store.insert(record)
        except PersistenceError as e:
            record_persistence_failure("create")
            record_operation("create", "persistence_error")
            logger.error(
                "consent.persist_failed",
                operation="create",
                request_id=record.request_id,
                subject_id=record.subject_id,
                error=e.message,
            )
            raise

        self.cache.put(record)
        record_transition(ConsentState.CREATED.value)
        record_operation("create", "ok")
        logger.info(
            "consent.created",
            request_id=record.request_id,
            subject_id=record.subject_id,
            channel=record.channel,
            expires_at=record.expires_at.isoformat(),
        )
        return CreateOutcome(record=record, url=self.config.build_consent_url(token))

    async def read(self, token: str) -> ConsentRecord:
        """Resolve a token for display, opening the request on first read.

        Args:
            token: Public request token.

        Returns:
            The current record.

        Raises:
            NotFoundError: If the token is unknown.
            ExpiredError: If the request has expired.
            PersistenceError: If the store is unreachable and nothing is cached,
                the expiry transition could not be persisted, or the only
                evidence of an acceptance is an unconfirmed cache entry.
        """
        try:
            record = await self._load(token)
            record = await self._enforce_expiry(record)

            if record.state is ConsentState.CREATED:
                record = await self._mark_opened(record)
            elif record.state is ConsentState.ACCEPTED:
                self._require_confirmed(record)
        except (NotFoundError, ExpiredError) as e:
            record_operation("read", "not_found" if isinstance(e, NotFoundError) else "expired")
            raise

        record_operation("read", "ok")
        return record

    async def accept(
        self,
        token: str,
        client_address: str | None = None,
        user_agent: str | None = None,
    ) -> AcceptOutcome:
        """Accept a consent request. Idempotent.

        Args:
            token: Public request token.
            client_address: Network address of the accepting client.
            user_agent: Client-supplied agent descriptor.

        Returns:
            AcceptOutcome; ``already_accepted`` is True when this call did not
            perform the acceptance. The record always carries the original
            ``accepted_at``.

        Raises:
            NotFoundError: If the token is unknown.
            ExpiredError: If the request has expired.
            PersistenceError: If the acceptance could not be persisted.
        """
        try:
            record = await self._load(token)
            record = await self._enforce_expiry(record)

            if record.state is ConsentState.ACCEPTED:
                self._require_confirmed(record)
                record_operation("accept", "already_accepted")
                return AcceptOutcome(record=record, already_accepted=True)

            now = self.clock.now()
            changes: dict[str, Any] = {
                "state": ConsentState.ACCEPTED,
                "accepted_at": now,
                "accepted_by": client_address,
                "accepted_agent": user_agent,
            }

            try:
                result = await self.store.conditional_update(
                    token,
                    expected_states=PENDING_STATES,
                    changes=changes,
                    require_unset=("accepted_at",),
                )
            except PersistenceError as e:
                self._persist_failed("accept", record, e, changes)
                raise

            if result.record is None:
                raise NotFoundError(NOT_FOUND_MESSAGE, token_hint=token_hint(token))

            if not result.applied:
                current = self._refresh(result.record)
                if current.state is ConsentState.ACCEPTED:
                    record_operation("accept", "already_accepted")
                    return AcceptOutcome(record=current, already_accepted=True)
                if current.state is ConsentState.EXPIRED:
                    raise ExpiredError(EXPIRED_MESSAGE, request_id=current.request_id)
                # The store holds a state the precondition should have matched
                raise PersistenceError(
                    f"Conditional accept was rejected in state {current.state.value}"
                )

            accepted = self._commit(token, result.record)
        except (NotFoundError, ExpiredError) as e:
            record_operation("accept", "not_found" if isinstance(e, NotFoundError) else "expired")
            raise

        record_transition(ConsentState.ACCEPTED.value)
        record_operation("accept", "ok")
        logger.info(
            "consent.accepted",
            request_id=accepted.request_id,
            subject_id=accepted.subject_id,
            accepted_at=now.isoformat(),
            accepted_by=client_address,
        )
        self.dispatcher.dispatch(accepted, WebhookEvent.ACCEPTED)
        return AcceptOutcome(record=accepted, already_accepted=False)

    async def expire_if_due(self, record: ConsentRecord, now: datetime | None = None) -> bool:
        """Commit the EXPIRED transition for a record past its expiry.

        Used by the expiration sweeper. Only the caller whose conditional write
        applies dispatches the "expired" notification.

        Args:
            record: A record, typically from the cache or a store scan.
            now: Reference time; defaults to the clock.

        Returns:
            True if this call performed the transition.

        Raises:
            PersistenceError: If the transition could not be persisted.
        """
        now = now if now is not None else self.clock.now()
        if not record.is_due_for_expiry(now):
            return False
        _, applied = await self._expire(record)
        return applied

    async def reconcile(self, token: str) -> ConsentRecord:
        """Replace the cached view of a request with the store's record.

        Used for cache entries holding changes the store never confirmed, so
        that a failed transition is retried from the durable state.

        Raises:
            NotFoundError: If the store does not know the token.
            PersistenceError: If the store is unreachable.
        """
        try:
            record = await self.store.get_by_token(token)
        except PersistenceError:
            record_persistence_failure("load")
            raise
        if record is None:
            raise NotFoundError(NOT_FOUND_MESSAGE, token_hint=token_hint(token))
        self.cache.put(record)
        return record

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _load(self, token: str) -> ConsentRecord:
        """Return the current record, cache first.

        Unpersisted cache entries are only trusted while the store is down.
        """
        cached = self.cache.get(token)
        if cached is not None and self.cache.is_persisted(token):
            return cached

        try:
            record = await self.store.get_by_token(token)
        except PersistenceError as e:
            record_persistence_failure("load")
            if cached is not None:
                logger.warning(
                    "consent.store_unavailable",
                    request_id=cached.request_id,
                    fallback="cache",
                    error=e.message,
                )
                return cached
            logger.error("consent.load_failed", token_hint=token_hint(token), error=e.message)
            raise

        if record is None:
            if cached is not None:
                # Never confirmed by the store; the cached view is all there is
                return cached
            logger.info("consent.not_found", token_hint=token_hint(token))
            raise NotFoundError(NOT_FOUND_MESSAGE, token_hint=token_hint(token))

        self.cache.put(record)
        return record

    async def _enforce_expiry(self, record: ConsentRecord) -> ConsentRecord:
        """Fail on expired requests, performing the transition if it is due.

        Returns:
            The record, possibly refreshed, when it is still usable.

        Raises:
            ExpiredError: If the request is or just became EXPIRED.
        """
        if record.state is ConsentState.EXPIRED:
            raise ExpiredError(EXPIRED_MESSAGE, request_id=record.request_id)

        if record.state is ConsentState.ACCEPTED or not record.is_past_expiry(self.clock.now()):
            return record

        current, _ = await self._expire(record)
        if current.state is ConsentState.EXPIRED:
            raise ExpiredError(EXPIRED_MESSAGE, request_id=current.request_id)
        # A concurrent accept committed before the deadline was enforced
        return current

    async def _expire(self, record: ConsentRecord) -> tuple[ConsentRecord, bool]:
        """Conditionally move a pending record to EXPIRED.

        Returns:
            The current record and whether this call applied the transition.
        """
        changes: dict[str, Any] = {"state": ConsentState.EXPIRED}
        try:
            result = await self.store.conditional_update(
                record.token,
                expected_states=PENDING_STATES,
                changes=changes,
            )
        except PersistenceError as e:
            self._persist_failed("expire", record, e, changes)
            raise

        if result.record is None:
            raise NotFoundError(NOT_FOUND_MESSAGE, token_hint=token_hint(record.token))

        if not result.applied:
            return self._refresh(result.record), False

        expired = self._commit(record.token, result.record)
        record_transition(ConsentState.EXPIRED.value)
        logger.info(
            "consent.expired",
            request_id=expired.request_id,
            subject_id=expired.subject_id,
            expires_at=expired.expires_at.isoformat(),
        )
        self.dispatcher.dispatch(expired, WebhookEvent.EXPIRED)
        return expired, True

    async def _mark_opened(self, record: ConsentRecord) -> ConsentRecord:
        """Record the first open. Best effort: store failures are logged only."""
        changes: dict[str, Any] = {
            "state": ConsentState.OPENED,
            "opened_at": self.clock.now(),
        }
        try:
            result = await self.store.conditional_update(
                record.token,
                expected_states=(ConsentState.CREATED,),
                changes=changes,
                require_unset=("opened_at",),
            )
        except PersistenceError as e:
            self._persist_failed("open", record, e, changes)
            return self.cache.get(record.token) or record.model_copy(update=changes)

        if result.record is None:
            raise NotFoundError(NOT_FOUND_MESSAGE, token_hint=token_hint(record.token))

        if not result.applied:
            current = self._refresh(result.record)
            if current.state is ConsentState.EXPIRED:
                raise ExpiredError(EXPIRED_MESSAGE, request_id=current.request_id)
            return current

        opened = self._commit(record.token, result.record)
        record_transition(ConsentState.OPENED.value)
        logger.info(
            "consent.opened",
            request_id=opened.request_id,
            subject_id=opened.subject_id,
        )
        return opened

    def _commit(self, token: str, stored: ConsentRecord) -> ConsentRecord:
        """Mirror an acknowledged store write into the cache.

        Only the mutable fields that differ from the cached view are merged.
        """
        cached = self.cache.get(token)
        if cached is None or not self.cache.is_persisted(token):
            self.cache.put(stored)
            return stored
        changed = {
            name: getattr(stored, name)
            for name in MUTABLE_FIELDS
            if getattr(stored, name) != getattr(cached, name)
        }
        updated = self.cache.apply(token, changed)
        return updated if updated is not None else stored

    def _require_confirmed(self, record: ConsentRecord) -> None:
        """Refuse to report an acceptance the store never acknowledged."""
        if record.token in self.cache and not self.cache.is_persisted(record.token):
            raise PersistenceError("The acceptance has not been confirmed by the store")

    def _refresh(self, stored: ConsentRecord) -> ConsentRecord:
        """Replace the cached view with the store's record after losing a race."""
        self.cache.put(stored)
        return stored

    def _persist_failed(
        self,
        operation: str,
        record: ConsentRecord,
        error: PersistenceError,
        changes: dict[str, Any],
    ) -> None:
        record_persistence_failure(operation)
        if record.token not in self.cache:
            self.cache.put(record, persisted=False)
        self.cache.apply(record.token, changes, persisted=False)
        logger.error(
            "consent.persist_failed",
            operation=operation,
            request_id=record.request_id,
            subject_id=record.subject_id,
            error=error.message,
        )
