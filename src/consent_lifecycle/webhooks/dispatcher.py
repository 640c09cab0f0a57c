"""Fire-and-forget webhook delivery.

The dispatcher owns an asyncio queue served by a small pool of worker tasks.
``dispatch()`` snapshots the record and enqueues it without awaiting
anything, so the request that triggered a transition never waits on, or
fails because of, the notification. Each delivery is a single HTTP POST
with a bounded timeout; failures are logged and counted, never retried.

Deliveries still queued when the process dies are lost. ``stop()`` drains
the queue first, so an orderly shutdown delivers everything already
dispatched.

Examples:
    Wiring into an application lifespan::

        dispatcher = WebhookDispatcher(secret=config.resolve_webhook_secret())
        await dispatcher.start()
        try:
            yield
        finally:
            await dispatcher.stop()

    Testing with an in-process endpoint::

        received = []

        def handler(request: httpx.Request) -> httpx.Response:
            received.append(request)
            return httpx.Response(204)

        dispatcher = WebhookDispatcher("secret", transport=httpx.MockTransport(handler))
"""

import asyncio
import time

import httpx

from consent_lifecycle.exceptions import DispatchError
from consent_lifecycle.models import ConsentRecord, DeliveryResult, WebhookEvent
from consent_lifecycle.observability.logging import get_logger
from consent_lifecycle.observability.metrics import record_delivery
from consent_lifecycle.webhooks.signing import build_payload, serialize_payload, signed_headers

logger = get_logger(__name__)


class WebhookDispatcher:
    """Signs and delivers consent notifications.

    Attributes:
        secret: Shared HMAC secret.
        timeout_seconds: Send timeout for one delivery.
        workers: Number of concurrent delivery tasks.
    """

    def __init__(
        self,
        secret: str,
        timeout_seconds: float = 5.0,
        workers: int = 1,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        if not secret:
            raise ValueError("A webhook signing secret is required")
        if workers < 1:
            raise ValueError(f"workers must be >= 1, got {workers}")
        self.secret = secret
        self.timeout_seconds = timeout_seconds
        self.workers = workers
        self._transport = transport
        self._client: httpx.AsyncClient | None = None
        self._queue: asyncio.Queue[tuple[ConsentRecord, WebhookEvent]] | None = None
        self._tasks: list[asyncio.Task[None]] = []
        self._closed = False

    @property
    def pending(self) -> int:
        """Number of notifications waiting for a worker."""
        return self._queue.qsize() if self._queue is not None else 0

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout_seconds),
                transport=self._transport,
            )
        return self._client

    async def start(self) -> None:
        """Start the delivery workers on the running event loop."""
        self._closed = False
        self._ensure_workers()

    def _ensure_workers(self) -> asyncio.Queue[tuple[ConsentRecord, WebhookEvent]]:
        if self._queue is None:
            self._queue = asyncio.Queue()
        self._tasks = [task for task in self._tasks if not task.done()]
        while len(self._tasks) < self.workers:
            self._tasks.append(
                asyncio.create_task(self._worker(self._queue), name="webhook-dispatcher")
            )
        return self._queue

    def dispatch(self, record: ConsentRecord, event: WebhookEvent) -> None:
        """Queue a notification and return immediately.

        A record without a notify target is silently skipped.
        """
        if not record.notify_target:
            logger.debug("webhook.skipped", request_id=record.request_id, event=event.value)
            return
        if self._closed:
            logger.warning(
                "webhook.dropped",
                request_id=record.request_id,
                event=event.value,
                reason="dispatcher stopped",
            )
            return
        queue = self._ensure_workers()
        queue.put_nowait((record.model_copy(deep=True), event))

    async def _worker(self, queue: asyncio.Queue[tuple[ConsentRecord, WebhookEvent]]) -> None:
        while True:
            record, event = await queue.get()
            try:
                await self.deliver(record, event)
            except Exception as e:
                logger.error(
                    "webhook.worker_error",
                    request_id=record.request_id,
                    event=event.value,
                    error=str(e),
                    error_type=type(e).__name__,
                )
            finally:
                queue.task_done()

    async def deliver(self, record: ConsentRecord, event: WebhookEvent) -> DeliveryResult:
        """Deliver one notification now.

        Returns:
            DeliveryResult describing the attempt. Delivery errors are logged
            and reported in the result, never raised.
        """
        if not record.notify_target:
            return DeliveryResult(
                event=event,
                request_id=record.request_id,
                delivered=False,
                error="no notify target",
            )

        body = serialize_payload(build_payload(record, event))
        headers = signed_headers(body, event, self.secret)
        start = time.monotonic()

        try:
            status_code = await self._post(record.notify_target, body, headers, event)
        except DispatchError as e:
            elapsed_ms = int((time.monotonic() - start) * 1000)
            record_delivery(event.value, "failed", elapsed_ms)
            logger.error(
                "webhook.failed",
                request_id=record.request_id,
                subject_id=record.subject_id,
                event=event.value,
                status_code=e.status_code,
                error=e.message,
                elapsed_ms=elapsed_ms,
            )
            return DeliveryResult(
                event=event,
                request_id=record.request_id,
                delivered=False,
                status_code=e.status_code,
                error=e.message,
                elapsed_ms=elapsed_ms,
            )

        elapsed_ms = int((time.monotonic() - start) * 1000)
        record_delivery(event.value, "delivered", elapsed_ms)
        logger.info(
            "webhook.delivered",
            request_id=record.request_id,
            subject_id=record.subject_id,
            event=event.value,
            status_code=status_code,
            elapsed_ms=elapsed_ms,
        )
        return DeliveryResult(
            event=event,
            request_id=record.request_id,
            delivered=True,
            status_code=status_code,
            elapsed_ms=elapsed_ms,
        )

    async def _post(
        self, url: str, body: bytes, headers: dict[str, str], event: WebhookEvent
    ) -> int:
        try:
            response = await self._get_client().post(url, content=body, headers=headers)
        except httpx.TimeoutException as e:
            raise DispatchError(
                f"Webhook timed out after {self.timeout_seconds}s",
                event=event.value,
                target=url,
            ) from e
        except httpx.HTTPError as e:
            raise DispatchError(
                f"Webhook request failed: {e}",
                event=event.value,
                target=url,
            ) from e

        if not response.is_success:
            raise DispatchError(
                f"Webhook returned HTTP {response.status_code}",
                event=event.value,
                target=url,
                status_code=response.status_code,
            )
        return response.status_code

    async def drain(self) -> None:
        """Wait until every queued notification has been attempted."""
        if self._queue is not None and self._tasks:
            await self._queue.join()

    async def stop(self, drain: bool = True, timeout: float | None = 10.0) -> None:
        """Stop accepting notifications and shut the workers down.

        Args:
            drain: Deliver everything already queued before stopping.
            timeout: Upper bound on the drain, in seconds.
        """
        self._closed = True
        if drain:
            try:
                await asyncio.wait_for(self.drain(), timeout=timeout)
            except asyncio.TimeoutError:
                logger.warning("webhook.stop_timeout", pending=self.pending)

        for task in self._tasks:
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        self._queue = None

        if self._client is not None:
            await self._client.aclose()
            self._client = None
