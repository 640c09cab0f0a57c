"""Fixtures shared by the HTTP scenarios."""

from collections.abc import Callable
from typing import Any

import httpx
import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from conftest import NOTIFY_TARGET
from consent_lifecycle.adapters.http import create_app


@pytest.fixture
def make_app(config, clock, webhook_recorder) -> Callable[..., FastAPI]:
    """Factory for an app wired to the manual clock and the webhook recorder."""

    def _make(store: Any = None, **config_overrides: Any) -> FastAPI:
        app_config = config.model_copy(update=config_overrides) if config_overrides else config
        return create_app(
            app_config,
            store=store,
            clock=clock,
            transport=httpx.MockTransport(webhook_recorder),
        )

    return _make


@pytest.fixture
def create_body() -> Callable[..., dict[str, Any]]:
    def _make(**overrides: Any) -> dict[str, Any]:
        body: dict[str, Any] = {"subjectId": "client-42", "notifyTarget": NOTIFY_TARGET}
        body.update(overrides)
        return body

    return _make


@pytest.fixture
def drain() -> Callable[[TestClient], None]:
    """Wait for queued webhooks while a client's lifespan is still running."""

    def _drain(client: TestClient) -> None:
        client.portal.call(client.app.state.engine.dispatcher.drain)

    return _drain
