"""FastAPI adapter for the consent lifecycle engine.

This module exposes the engine over HTTP:

- ``POST /api/consents``: create a request (called by the integrating system)
- ``GET {consent_path}/{token}``: read a request for display, opening it
- ``POST /api/consents/{token}/accept``: accept a request
- ``POST /api/consents/sweep``: expire overdue requests (internal only)
- ``GET /api/health``: liveness check

Rendering the consent page is left to the front end; the read endpoint
returns the request state as JSON. Every response body carries an ``ok``
flag; failures carry a human-readable ``error`` and never internal details.

Examples:
    Running the application::

        from consent_lifecycle.adapters.http import create_app
        from consent_lifecycle.config import ConsentConfig

        app = create_app(ConsentConfig.from_env())

    Testing against an in-process webhook receiver::

        app = create_app(config, clock=ManualClock(), transport=httpx.MockTransport(handler))
        with TestClient(app) as client:
            client.post("/api/consents", json={...})
"""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

import httpx
from fastapi import APIRouter, Depends, FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel
from starlette.exceptions import HTTPException as StarletteHTTPException

from consent_lifecycle import __version__
from consent_lifecycle.adapters.auth import require_internal_secret
from consent_lifecycle.cache import RequestCache
from consent_lifecycle.clock import Clock, format_timestamp
from consent_lifecycle.config import ConsentConfig
from consent_lifecycle.core.lifecycle import ConsentLifecycle
from consent_lifecycle.core.sweeper import ExpirationSweeper
from consent_lifecycle.exceptions import (
    ConfigurationError,
    ConsentValidationError,
    ExpiredError,
    NotFoundError,
    PersistenceError,
)
from consent_lifecycle.models import ConsentRecord, parse_create_request
from consent_lifecycle.observability.logging import get_logger
from consent_lifecycle.storage import create_store
from consent_lifecycle.storage.base import ConsentStore
from consent_lifecycle.utils.headers import USER_AGENT_HEADER, client_address, get_header
from consent_lifecycle.webhooks.dispatcher import WebhookDispatcher

logger = get_logger(__name__)

ACCEPTED_MESSAGE = "Acceptance recorded"
ALREADY_ACCEPTED_MESSAGE = "This request had already been accepted."
SERVICE_ERROR_MESSAGE = "The service could not complete the request. Please try again later."
SERVICE_NAME = "consent-lifecycle"


# Response models


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class CreateResponse(_CamelModel):
    ok: bool = True
    request_id: str
    subject_id: str
    url: str
    token: str
    expires_at: str


class ConsentView(_CamelModel):
    ok: bool = True
    request_id: str
    subject_id: str
    channel: str
    state: str
    created_at: str
    expires_at: str
    opened_at: str | None = None
    accepted_at: str | None = None
    metadata: dict[str, Any]

    @classmethod
    def from_record(cls, record: ConsentRecord) -> "ConsentView":
        return cls(
            request_id=record.request_id,
            subject_id=record.subject_id,
            channel=record.channel,
            state=record.state.value,
            created_at=format_timestamp(record.created_at),
            expires_at=format_timestamp(record.expires_at),
            opened_at=format_timestamp(record.opened_at),
            accepted_at=format_timestamp(record.accepted_at),
            metadata=record.metadata,
        )


class AcceptResponse(_CamelModel):
    ok: bool = True
    message: str
    subject_id: str
    request_id: str
    accepted_at: str | None
    accepted_by: str | None


class SweepResponse(_CamelModel):
    ok: bool = True
    expired_count: int
    failed_count: int = 0


class HealthResponse(_CamelModel):
    ok: bool = True
    service: str = SERVICE_NAME
    version: str = __version__


def _json(model: BaseModel, status_code: int = 200) -> JSONResponse:
    return JSONResponse(model.model_dump(by_alias=True), status_code=status_code)


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse({"ok": False, "error": message}, status_code=status_code)


# Dependencies


def get_engine(request: Request) -> ConsentLifecycle:
    return request.app.state.engine


def get_sweeper(request: Request) -> ExpirationSweeper:
    return request.app.state.sweeper


# Routes


def build_router(consent_path: str) -> APIRouter:
    """Build the consent routes.

    Args:
        consent_path: Path prefix of the public consent page.
    """
    router = APIRouter()

    @router.get("/api/health")
    async def health() -> JSONResponse:
        return _json(HealthResponse())

    @router.post("/api/consents")
    async def create_consent(
        request: Request,
        engine: ConsentLifecycle = Depends(get_engine),
    ) -> JSONResponse:
        try:
            data = await request.json()
        except ValueError as e:
            raise ConsentValidationError("Request body must be valid JSON") from e

        outcome = await engine.create(parse_create_request(data))
        record = outcome.record
        return _json(
            CreateResponse(
                request_id=record.request_id,
                subject_id=record.subject_id,
                url=outcome.url,
                token=record.token,
                expires_at=format_timestamp(record.expires_at),
            )
        )

    @router.post("/api/consents/sweep", dependencies=[Depends(require_internal_secret)])
    async def sweep_consents(
        sweeper: ExpirationSweeper = Depends(get_sweeper),
    ) -> JSONResponse:
        result = await sweeper.sweep()
        return _json(
            SweepResponse(expired_count=result.expired_count, failed_count=result.failed_count)
        )

    @router.post("/api/consents/{token}/accept")
    async def accept_consent(
        token: str,
        request: Request,
        engine: ConsentLifecycle = Depends(get_engine),
    ) -> JSONResponse:
        peer = request.client.host if request.client else None
        outcome = await engine.accept(
            token,
            client_address=client_address(request.headers, peer),
            user_agent=get_header(request.headers, USER_AGENT_HEADER),
        )
        record = outcome.record
        return _json(
            AcceptResponse(
                message=ALREADY_ACCEPTED_MESSAGE if outcome.already_accepted else ACCEPTED_MESSAGE,
                subject_id=record.subject_id,
                request_id=record.request_id,
                accepted_at=format_timestamp(record.accepted_at),
                accepted_by=record.accepted_by,
            )
        )

    @router.get(consent_path + "/{token}")
    async def read_consent(
        token: str,
        engine: ConsentLifecycle = Depends(get_engine),
    ) -> JSONResponse:
        record = await engine.read(token)
        return _json(ConsentView.from_record(record))

    return router


# Error mapping


async def _validation_error(_: Request, exc: ConsentValidationError) -> JSONResponse:
    return _error(400, exc.message)


async def _not_found(_: Request, exc: NotFoundError) -> JSONResponse:
    return _error(404, exc.message)


async def _expired(_: Request, exc: ExpiredError) -> JSONResponse:
    return _error(410, exc.message)


async def _service_error(request: Request, exc: PersistenceError | ConfigurationError) -> JSONResponse:
    logger.error(
        "http.service_error",
        path=request.url.path,
        error=exc.message,
        error_type=type(exc).__name__,
    )
    return _error(500, SERVICE_ERROR_MESSAGE)


async def _http_error(_: Request, exc: StarletteHTTPException) -> JSONResponse:
    return JSONResponse(
        {"ok": False, "error": str(exc.detail)},
        status_code=exc.status_code,
        headers=getattr(exc, "headers", None),
    )


def create_app(
    config: ConsentConfig | None = None,
    store: ConsentStore | None = None,
    clock: Clock | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> FastAPI:
    """Build the FastAPI application.

    Args:
        config: Engine configuration; read from the environment if omitted.
        store: Durable store; built from ``config.storage_adapter`` if omitted.
        clock: Time source; wall clock if omitted.
        transport: httpx transport for webhook delivery (tests).

    Returns:
        A FastAPI application whose lifespan starts and drains the dispatcher.

    Raises:
        ConfigurationError: If no webhook secret is configured and the
            development fallback is not enabled.
    """
    config = config or ConsentConfig.from_env()
    dispatcher = WebhookDispatcher(
        secret=config.resolve_webhook_secret(),
        timeout_seconds=config.webhook_timeout_seconds,
        workers=config.webhook_workers,
        transport=transport,
    )
    if store is None:
        store = create_store(config.storage_adapter, config.file_storage_path)
    engine = ConsentLifecycle(
        store=store,
        cache=RequestCache(max_entries=config.cache_max_entries),
        dispatcher=dispatcher,
        config=config,
        clock=clock,
    )
    sweeper = ExpirationSweeper(engine, scope=config.sweep_scope)

    @asynccontextmanager
    async def lifespan(_: FastAPI) -> AsyncIterator[None]:
        await dispatcher.start()
        logger.info(
            "app.started",
            storage_adapter=config.storage_adapter,
            sweep_scope=config.sweep_scope,
        )
        try:
            yield
        finally:
            await dispatcher.stop()
            logger.info("app.stopped")

    app = FastAPI(
        title="Consent Lifecycle Service",
        description="Token-addressed consent requests with signed webhook notifications",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.config = config
    app.state.engine = engine
    app.state.sweeper = sweeper

    app.include_router(build_router(config.consent_path))
    app.add_exception_handler(ConsentValidationError, _validation_error)  # type: ignore[arg-type]
    app.add_exception_handler(NotFoundError, _not_found)  # type: ignore[arg-type]
    app.add_exception_handler(ExpiredError, _expired)  # type: ignore[arg-type]
    app.add_exception_handler(PersistenceError, _service_error)  # type: ignore[arg-type]
    app.add_exception_handler(ConfigurationError, _service_error)  # type: ignore[arg-type]
    app.add_exception_handler(StarletteHTTPException, _http_error)  # type: ignore[arg-type]
    return app
