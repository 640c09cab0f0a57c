"""Shared-secret guard for internal endpoints."""

from fastapi import HTTPException, Request

from consent_lifecycle.observability.logging import get_logger
from consent_lifecycle.utils.headers import INTERNAL_SECRET_HEADER, get_header, secrets_match

logger = get_logger(__name__)


async def require_internal_secret(request: Request) -> None:
    """Reject calls that do not carry the configured internal secret.

    Raises:
        HTTPException: 500 if no internal secret is configured, 401 if the
            X-Internal-Secret header is missing or does not match.
    """
    configured = request.app.state.config.internal_api_secret
    if configured is None:
        logger.error("auth.internal_secret_unconfigured", path=request.url.path)
        raise HTTPException(status_code=500, detail="Internal secret is not configured")

    provided = get_header(request.headers, INTERNAL_SECRET_HEADER)
    if not secrets_match(provided, configured):
        logger.warning("auth.internal_secret_rejected", path=request.url.path)
        raise HTTPException(status_code=401, detail="Unauthorized")
