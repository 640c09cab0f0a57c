"""Process-local cache of consent requests keyed by token.

The cache is a fast path in front of the durable store and the working set
scanned by a cache-scoped sweep. It is never the only copy of a
correctness-relevant field: the engine writes the store first and mirrors
the committed change here afterwards.

When a store write fails the engine may still mirror the change so that the
current process behaves consistently, but the entry is then marked
*unpersisted*. The engine treats unpersisted entries as hints and re-reads
the store before trusting them.

Examples:
    >>> cache = RequestCache(max_entries=10_000)
    >>> cache.put(record)
    >>> cache.apply(record.token, {"state": ConsentState.OPENED, "opened_at": now})
    >>> cache.get(record.token).state
    <ConsentState.OPENED: 'OPENED'>
"""

from collections import OrderedDict
from typing import Any

from consent_lifecycle.models import ConsentRecord


class _Entry:
    __slots__ = ("record", "persisted")

    def __init__(self, record: ConsentRecord, persisted: bool) -> None:
        self.record = record
        self.persisted = persisted


class RequestCache:
    """Token-keyed map of consent records with an optional LRU bound.

    All access happens on the event loop thread and no method awaits, so
    individual operations are atomic with respect to other tasks.

    Attributes:
        max_entries: Maximum number of cached requests; 0 means unbounded.
    """

    def __init__(self, max_entries: int = 0) -> None:
        if max_entries < 0:
            raise ValueError(f"max_entries must be >= 0, got {max_entries}")
        self.max_entries = max_entries
        self._entries: OrderedDict[str, _Entry] = OrderedDict()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, token: object) -> bool:
        return token in self._entries

    def get(self, token: str) -> ConsentRecord | None:
        """Return the cached record for ``token``, or None."""
        entry = self._entries.get(token)
        if entry is None:
            return None
        self._entries.move_to_end(token)
        return entry.record

    def is_persisted(self, token: str) -> bool:
        """Return False if the cached view holds a change the store has not confirmed."""
        entry = self._entries.get(token)
        return entry is not None and entry.persisted

    def put(self, record: ConsentRecord, persisted: bool = True) -> None:
        """Cache a full record, replacing any previous entry for its token."""
        self._entries[record.token] = _Entry(record, persisted)
        self._entries.move_to_end(record.token)
        self._evict()

    def apply(
        self, token: str, changes: dict[str, Any], persisted: bool = True
    ) -> ConsentRecord | None:
        """Merge changed fields into the cached record.

        Args:
            token: Token of the cached record.
            changes: Field updates to merge.
            persisted: Whether the store has acknowledged these changes.

        Returns:
            The updated record, or None if the token is not cached.
        """
        entry = self._entries.get(token)
        if entry is None:
            return None
        entry.record = entry.record.model_copy(update=changes)
        # Once unpersisted, an entry stays a hint until fully rehydrated by put()
        entry.persisted = entry.persisted and persisted
        self._entries.move_to_end(token)
        return entry.record

    def discard(self, token: str) -> None:
        self._entries.pop(token, None)

    def snapshot(self) -> list[ConsentRecord]:
        """Return the cached records at this instant."""
        return [entry.record for entry in self._entries.values()]

    def clear(self) -> None:
        self._entries.clear()

    def _evict(self) -> None:
        if not self.max_entries:
            return
        while len(self._entries) > self.max_entries:
            self._entries.popitem(last=False)
