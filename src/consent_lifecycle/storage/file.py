"""File-backed store adapter.

Each consent request is one JSON document named after its token digest, so
the raw token never appears in a file name. Writes go to a temporary file
that is then atomically renamed over the target. Blocking file I/O runs in a
worker thread so the event loop is never stalled.

Conditional writes are serialised per token with asyncio locks, which makes
this adapter safe for one process. Several processes sharing a directory
need a store with native compare-and-set (a SQL ``UPDATE ... WHERE state IN``
or equivalent).
"""

import asyncio
import os
import tempfile
from collections.abc import Iterable
from datetime import datetime
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from consent_lifecycle.clock import digest_token
from consent_lifecycle.exceptions import PersistenceError
from consent_lifecycle.models import PENDING_STATES, ConsentRecord, ConsentState, WriteResult
from consent_lifecycle.observability.logging import get_logger
from consent_lifecycle.storage.base import (
    ConsentStore,
    TokenLocks,
    check_changes,
    precondition_holds,
)

logger = get_logger(__name__)


class FileConsentStore(ConsentStore):
    """Store adapter persisting records as JSON files under one directory.

    Attributes:
        root: Directory holding the record files.
    """

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root)
        self._locks = TokenLocks()

    def _path(self, digest: str) -> Path:
        return self.root / f"{digest}.json"

    def _read(self, path: Path) -> ConsentRecord | None:
        try:
            payload = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as e:
            raise PersistenceError(f"Failed to read consent request: {e}", cause=e) from e
        try:
            return ConsentRecord.model_validate_json(payload)
        except ValidationError as e:
            raise PersistenceError(f"Corrupt consent request file {path.name}", cause=e) from e

    def _write(self, path: Path, record: ConsentRecord, exclusive: bool = False) -> None:
        try:
            self.root.mkdir(parents=True, exist_ok=True)
            if exclusive and path.exists():
                raise PersistenceError("A consent request with this token already exists")
            fd, tmp_name = tempfile.mkstemp(dir=self.root, suffix=".tmp")
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as fh:
                    fh.write(record.model_dump_json())
                os.replace(tmp_name, path)
            except BaseException:
                Path(tmp_name).unlink(missing_ok=True)
                raise
        except OSError as e:
            raise PersistenceError(f"Failed to write consent request: {e}", cause=e) from e

    def _scan(self) -> list[ConsentRecord]:
        if not self.root.exists():
            return []
        records = []
        for path in sorted(self.root.glob("*.json")):
            try:
                record = self._read(path)
            except PersistenceError as e:
                logger.warning("store.file.skipped", file=path.name, error=e.message)
                continue
            if record is not None:
                records.append(record)
        return records

    async def insert(self, record: ConsentRecord) -> None:
        async with self._locks.hold(record.token_digest):
            await asyncio.to_thread(self._write, self._path(record.token_digest), record, True)

    async def get_by_token(self, token: str) -> ConsentRecord | None:
        return await asyncio.to_thread(self._read, self._path(digest_token(token)))

    async def conditional_update(
        self,
        token: str,
        expected_states: Iterable[ConsentState],
        changes: dict[str, Any],
        require_unset: Iterable[str] = (),
    ) -> WriteResult:
        check_changes(changes)
        digest = digest_token(token)
        path = self._path(digest)
        async with self._locks.hold(digest):
            current = await asyncio.to_thread(self._read, path)
            if current is None:
                return WriteResult(applied=False, record=None)
            if not precondition_holds(current, expected_states, require_unset):
                return WriteResult(applied=False, record=current)

            updated = current.model_copy(update=changes)
            await asyncio.to_thread(self._write, path, updated)
            return WriteResult(applied=True, record=updated)

    async def list_expirable(self, now: datetime) -> list[ConsentRecord]:
        records = await asyncio.to_thread(self._scan)
        return [r for r in records if r.state in PENDING_STATES and r.expires_at < now]
