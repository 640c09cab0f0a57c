"""Framework adapters for the consent lifecycle engine.

This package exposes the framework-agnostic engine over HTTP:

- http.py: FastAPI application and routes
- auth.py: Shared-secret guard for internal endpoints
"""

from consent_lifecycle.adapters.http import build_router, create_app

__all__ = ["build_router", "create_app"]
