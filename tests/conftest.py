"""
Pytest configuration and shared fixtures for consent_lifecycle tests.
"""

import asyncio
import json
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import Any

import httpx
import pytest
import pytest_asyncio

from consent_lifecycle.cache import RequestCache
from consent_lifecycle.clock import ManualClock, digest_token, generate_request_id, generate_token
from consent_lifecycle.config import ConsentConfig
from consent_lifecycle.core.lifecycle import ConsentLifecycle
from consent_lifecycle.exceptions import PersistenceError
from consent_lifecycle.models import ConsentRecord, ConsentState, CreateConsentRequest
from consent_lifecycle.storage.memory import MemoryConsentStore
from consent_lifecycle.webhooks.dispatcher import WebhookDispatcher

START = datetime(2024, 1, 1, 12, 0, tzinfo=UTC)
WEBHOOK_SECRET = "test-webhook-secret"
INTERNAL_SECRET = "test-internal-secret"
NOTIFY_TARGET = "https://hooks.example.com/consent"
PUBLIC_BASE_URL = "https://consent.example.com"


class WebhookRecorder:
    """httpx.MockTransport handler that records every delivery."""

    def __init__(self, status_code: int = 204) -> None:
        self.status_code = status_code
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return httpx.Response(self.status_code)

    @property
    def payloads(self) -> list[dict[str, Any]]:
        return [json.loads(request.content) for request in self.requests]

    def events(self, event: str) -> list[dict[str, Any]]:
        return [payload for payload in self.payloads if payload["event"] == event]


class FlakyStore(MemoryConsentStore):
    """Memory store whose operations can be switched to fail."""

    def __init__(self) -> None:
        super().__init__()
        self.fail_insert = False
        self.fail_get = False
        self.fail_update = False
        self.fail_list = False

    async def insert(self, record: ConsentRecord) -> None:
        if self.fail_insert:
            raise PersistenceError("store unavailable")
        await super().insert(record)

    async def get_by_token(self, token: str) -> ConsentRecord | None:
        if self.fail_get:
            raise PersistenceError("store unavailable")
        return await super().get_by_token(token)

    async def conditional_update(self, token, expected_states, changes, require_unset=()):
        if self.fail_update:
            raise PersistenceError("store unavailable")
        return await super().conditional_update(token, expected_states, changes, require_unset)

    async def list_expirable(self, now: datetime) -> list[ConsentRecord]:
        if self.fail_list:
            raise PersistenceError("store unavailable")
        return await super().list_expirable(now)


class SlowStore(MemoryConsentStore):
    """Memory store that yields before every conditional write.

    Lets concurrent callers all pass the pre-write checks before any of them
    reaches the store, so the conditional write is what settles the race.
    """

    def __init__(self, delay: float = 0.01) -> None:
        super().__init__()
        self.delay = delay
        self.update_calls = 0
        self.applied_updates = 0

    async def conditional_update(self, token, expected_states, changes, require_unset=()):
        self.update_calls += 1
        await asyncio.sleep(self.delay)
        result = await super().conditional_update(token, expected_states, changes, require_unset)
        if result.applied:
            self.applied_updates += 1
        return result


@pytest.fixture
def clock() -> ManualClock:
    """A manual clock starting at a fixed instant."""
    return ManualClock(START)


@pytest.fixture
def store() -> MemoryConsentStore:
    return MemoryConsentStore()


@pytest.fixture
def cache() -> RequestCache:
    return RequestCache()


@pytest.fixture
def config() -> ConsentConfig:
    return ConsentConfig(
        public_base_url=PUBLIC_BASE_URL,
        webhook_secret=WEBHOOK_SECRET,
        internal_api_secret=INTERNAL_SECRET,
    )


@pytest.fixture
def webhook_recorder() -> WebhookRecorder:
    return WebhookRecorder()


@pytest_asyncio.fixture
async def dispatcher(webhook_recorder: WebhookRecorder):
    """A dispatcher delivering into the webhook recorder."""
    dispatcher = WebhookDispatcher(
        WEBHOOK_SECRET,
        timeout_seconds=1.0,
        transport=httpx.MockTransport(webhook_recorder),
    )
    await dispatcher.start()
    yield dispatcher
    await dispatcher.stop()


@pytest.fixture
def build_engine(
    cache: RequestCache,
    dispatcher: WebhookDispatcher,
    config: ConsentConfig,
    clock: ManualClock,
) -> Callable[[Any], ConsentLifecycle]:
    """Factory for an engine over a given store, sharing the other fixtures."""

    def _build(store: Any) -> ConsentLifecycle:
        return ConsentLifecycle(store, cache, dispatcher, config, clock=clock)

    return _build


@pytest.fixture
def engine(build_engine, store: MemoryConsentStore) -> ConsentLifecycle:
    return build_engine(store)


@pytest.fixture
def consent_input() -> Callable[..., CreateConsentRequest]:
    """Factory for validated creation input."""

    def _make(**overrides: Any) -> CreateConsentRequest:
        data: dict[str, Any] = {
            "subject_id": "client-42",
            "notify_target": NOTIFY_TARGET,
        }
        data.update(overrides)
        return CreateConsentRequest(**data)

    return _make


@pytest.fixture
def make_record(clock: ManualClock) -> Callable[..., ConsentRecord]:
    """Factory for stored records, created now and expiring in an hour."""

    def _make(**overrides: Any) -> ConsentRecord:
        token = overrides.pop("token", None) or generate_token()
        created_at = overrides.pop("created_at", clock.now())
        data: dict[str, Any] = {
            "request_id": generate_request_id(),
            "subject_id": "client-42",
            "channel": "WHATSAPP",
            "token": token,
            "token_digest": digest_token(token),
            "state": ConsentState.CREATED,
            "created_at": created_at,
            "expires_at": created_at + timedelta(minutes=60),
            "notify_target": NOTIFY_TARGET,
        }
        data.update(overrides)
        return ConsentRecord(**data)

    return _make
