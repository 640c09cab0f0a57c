"""Utility modules for the consent lifecycle engine."""

from .headers import (
    FORWARDED_FOR_HEADER,
    INTERNAL_SECRET_HEADER,
    client_address,
    get_header,
    secrets_match,
)

__all__ = [
    "FORWARDED_FOR_HEADER",
    "INTERNAL_SECRET_HEADER",
    "client_address",
    "get_header",
    "secrets_match",
]
