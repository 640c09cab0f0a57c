"""In-memory store adapter with asyncio concurrency control.

Suitable for single-process deployments, development and tests. Records do
not survive a restart; use FileConsentStore or a database-backed adapter for
that.

Thread Safety:
    - Each token digest has its own asyncio.Lock while it is being written
    - A global lock serialises inserts
    - Callers only ever receive copies of stored records

Examples:
    Concurrent acceptance resolves to a single winner::

        store = MemoryConsentStore()
        await store.insert(record)

        results = await asyncio.gather(
            store.conditional_update(token, PENDING_STATES, accept_changes),
            store.conditional_update(token, PENDING_STATES, accept_changes),
        )
        assert sum(r.applied for r in results) == 1
"""

import asyncio
from collections.abc import Iterable
from datetime import datetime
from typing import Any

from consent_lifecycle.clock import digest_token
from consent_lifecycle.exceptions import PersistenceError
from consent_lifecycle.models import PENDING_STATES, ConsentRecord, ConsentState, WriteResult
from consent_lifecycle.storage.base import (
    ConsentStore,
    TokenLocks,
    check_changes,
    precondition_holds,
)


class MemoryConsentStore(ConsentStore):
    """In-memory store adapter keyed by token digest.

    Attributes:
        _records: Dictionary mapping token digests to ConsentRecord objects.
        _request_ids: Request ids already in use.
        _locks: Per-digest write locks.
        _global_lock: Lock serialising inserts.
    """

    def __init__(self) -> None:
        self._records: dict[str, ConsentRecord] = {}
        self._request_ids: set[str] = set()
        self._locks = TokenLocks()
        self._global_lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._records)

    async def insert(self, record: ConsentRecord) -> None:
        async with self._global_lock:
            if record.token_digest in self._records:
                raise PersistenceError("A consent request with this token already exists")
            if record.request_id in self._request_ids:
                raise PersistenceError(f"Request id {record.request_id} already exists")
            self._records[record.token_digest] = record.model_copy(deep=True)
            self._request_ids.add(record.request_id)

    async def get_by_token(self, token: str) -> ConsentRecord | None:
        record = self._records.get(digest_token(token))
        return record.model_copy(deep=True) if record is not None else None

    async def conditional_update(
        self,
        token: str,
        expected_states: Iterable[ConsentState],
        changes: dict[str, Any],
        require_unset: Iterable[str] = (),
    ) -> WriteResult:
        check_changes(changes)
        digest = digest_token(token)
        async with self._locks.hold(digest):
            current = self._records.get(digest)
            if current is None:
                return WriteResult(applied=False, record=None)

            if not precondition_holds(current, expected_states, require_unset):
                return WriteResult(applied=False, record=current.model_copy(deep=True))

            updated = current.model_copy(update=changes)
            self._records[digest] = updated
            return WriteResult(applied=True, record=updated.model_copy(deep=True))

    async def list_expirable(self, now: datetime) -> list[ConsentRecord]:
        return [
            record.model_copy(deep=True)
            for record in list(self._records.values())
            if record.state in PENDING_STATES and record.expires_at < now
        ]
