"""Expiration sweep for consent requests.

A sweep moves every overdue CREATED or OPENED request to EXPIRED and sends
its "expired" notification. It does not schedule itself: an external
scheduler (cron, a workflow engine, an operator) triggers it through the
internal sweep endpoint or by calling ``ExpirationSweeper.sweep()``.

Scope:
    - ``"cache"``: requests resident in this process's cache. Cheap, but a
      request that was never loaded by this process is not seen.
    - ``"store"``: every expirable request the durable store knows about.

The sweep is safe to run alongside ordinary traffic. It uses the same
conditional write as reads and accepts, so a request expired or accepted
concurrently by another caller is skipped and never notified twice.

Examples:
    >>> sweeper = ExpirationSweeper(engine, scope="cache")
    >>> result = await sweeper.sweep()
    >>> result.expired_count
    2
"""

from typing import Literal

from consent_lifecycle.core.lifecycle import ConsentLifecycle
from consent_lifecycle.exceptions import NotFoundError, PersistenceError
from consent_lifecycle.models import ConsentRecord, SweepResult
from consent_lifecycle.observability.logging import get_logger
from consent_lifecycle.observability.metrics import record_sweep

logger = get_logger(__name__)


class ExpirationSweeper:
    """Force-expires overdue consent requests.

    Attributes:
        engine: The lifecycle engine whose store, cache and dispatcher are used.
        scope: Which requests to scan, "cache" or "store".
    """

    def __init__(
        self,
        engine: ConsentLifecycle,
        scope: Literal["cache", "store"] = "cache",
    ) -> None:
        if scope not in ("cache", "store"):
            raise ValueError(f"Unknown sweep scope: {scope}")
        self.engine = engine
        self.scope = scope

    async def _candidates(self) -> list[ConsentRecord]:
        now = self.engine.clock.now()
        if self.scope == "store":
            return await self.engine.store.list_expirable(now)
        return self.engine.cache.snapshot()

    async def sweep(self) -> SweepResult:
        """Run one sweep pass.

        Per-request store failures are logged and counted; they do not abort
        the pass.

        Returns:
            SweepResult with the number of requests expired by this pass.

        Raises:
            PersistenceError: If a store-scoped sweep cannot list candidates.
        """
        now = self.engine.clock.now()
        candidates = await self._candidates()
        expired = 0
        failed = 0

        for record in candidates:
            try:
                if self.scope == "cache" and not self.engine.cache.is_persisted(record.token):
                    # A failed transition left an unconfirmed view; sweep the stored one
                    record = await self.engine.reconcile(record.token)
                if not record.is_due_for_expiry(now):
                    continue
                if await self.engine.expire_if_due(record, now):
                    expired += 1
            except PersistenceError as e:
                failed += 1
                logger.error(
                    "sweep.expire_failed",
                    request_id=record.request_id,
                    error=e.message,
                )
            except NotFoundError:
                # Cached but unknown to the store; nothing durable to expire
                failed += 1
                logger.warning("sweep.record_missing", request_id=record.request_id)

        record_sweep(expired)
        if expired or failed:
            logger.info(
                "sweep.completed",
                scope=self.scope,
                scanned=len(candidates),
                expired=expired,
                failed=failed,
            )
        else:
            logger.debug("sweep.completed", scope=self.scope, scanned=len(candidates), expired=0)

        return SweepResult(expired_count=expired, failed_count=failed, scanned_count=len(candidates))
