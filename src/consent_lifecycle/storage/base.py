"""Store adapter protocol for consent requests.

The durable store is the source of truth. Every state-changing write the
engine performs is a conditional write: it names the states the record must
currently be in, and optionally fields that must still be null. Exactly one
of several concurrent writers with the same precondition wins; the others get
``applied=False`` together with the record as it is now stored, and treat the
outcome as an idempotent no-op.

Examples:
    First-writer-wins acceptance::

        result = await store.conditional_update(
            token,
            expected_states=PENDING_STATES,
            changes={"state": ConsentState.ACCEPTED, "accepted_at": now},
            require_unset=("accepted_at",),
        )
        if result.applied:
            dispatcher.dispatch(result.record, WebhookEvent.ACCEPTED)

Thread Safety and Atomicity Requirements:
    All ConsentStore implementations MUST guarantee:

    1. **Atomic compare-and-set**: conditional_update() checks the
       precondition and applies the change as one step.

    2. **Unique tokens**: insert() rejects a second record with the same token.

    3. **No shared objects**: returned records are copies; callers may keep
       them without observing later writes.

    4. **Wrapped failures**: backend errors are raised as PersistenceError.
"""

import asyncio
from collections.abc import AsyncIterator, Iterable
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Protocol, runtime_checkable

from consent_lifecycle.models import ConsentRecord, ConsentState, WriteResult

# Fields a conditional write may change; everything else is immutable
MUTABLE_FIELDS = frozenset(
    {"state", "opened_at", "accepted_at", "accepted_by", "accepted_agent"}
)


def check_changes(changes: dict[str, Any]) -> None:
    """Reject writes to immutable fields.

    Raises:
        ValueError: If ``changes`` names a field outside MUTABLE_FIELDS.
    """
    illegal = set(changes) - MUTABLE_FIELDS
    if illegal:
        raise ValueError(f"Immutable fields cannot be updated: {', '.join(sorted(illegal))}")


def precondition_holds(
    record: ConsentRecord,
    expected_states: Iterable[ConsentState],
    require_unset: Iterable[str],
) -> bool:
    """Return True if ``record`` satisfies a conditional write's precondition."""
    if record.state not in set(expected_states):
        return False
    return all(getattr(record, name) is None for name in require_unset)


class TokenLocks:
    """Per-digest asyncio locks for serialising writes to one record.

    A lock exists only while some task holds or waits for it, so the table
    stays as small as the number of records currently being written.
    Lookup and reference counting never await, which keeps them atomic on
    the event loop.
    """

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._users: dict[str, int] = {}

    def __len__(self) -> int:
        return len(self._locks)

    @asynccontextmanager
    async def hold(self, digest: str) -> AsyncIterator[None]:
        lock = self._locks.get(digest)
        if lock is None:
            lock = self._locks[digest] = asyncio.Lock()
        self._users[digest] = self._users.get(digest, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[digest] -= 1
            if not self._users[digest]:
                del self._users[digest]
                del self._locks[digest]


@runtime_checkable
class ConsentStore(Protocol):
    """Protocol defining the interface for durable consent request storage.

    All methods are async and must be safe to call concurrently from multiple
    asyncio tasks.

    Error Handling:
        Methods raise PersistenceError for backend failures. Implementations
        should NOT raise backend-specific exceptions directly.
    """

    async def insert(self, record: ConsentRecord) -> None:
        """Persist a new record.

        Raises:
            PersistenceError: If the token already exists or the backend fails.
        """
        ...

    async def get_by_token(self, token: str) -> ConsentRecord | None:
        """Retrieve a record by its public token.

        Returns:
            A copy of the record, or None if no record has this token.
        """
        ...

    async def conditional_update(
        self,
        token: str,
        expected_states: Iterable[ConsentState],
        changes: dict[str, Any],
        require_unset: Iterable[str] = (),
    ) -> WriteResult:
        """Atomically apply ``changes`` if the precondition holds.

        Args:
            token: Public token of the record.
            expected_states: States the stored record must currently be in.
            changes: Field updates; only MUTABLE_FIELDS may be named.
            require_unset: Fields that must currently be None.

        Returns:
            WriteResult with ``applied`` and the stored record after the attempt.
        """
        ...

    async def list_expirable(self, now: datetime) -> list[ConsentRecord]:
        """Return every CREATED or OPENED record whose expiry is before ``now``."""
        ...
