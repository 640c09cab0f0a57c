"""Request header helpers.

This module provides functions for:
- Case-insensitive header lookup
- Resolving the accepting client's network address
- Comparing shared secrets from internal-call headers
"""

import hmac
from collections.abc import Mapping

FORWARDED_FOR_HEADER = "x-forwarded-for"
INTERNAL_SECRET_HEADER = "x-internal-secret"
USER_AGENT_HEADER = "user-agent"


def get_header(headers: Mapping[str, str], name: str) -> str | None:
    """Look up a header value case-insensitively.

    Example:
        >>> get_header({"User-Agent": "curl/8.0"}, "user-agent")
        'curl/8.0'
    """
    wanted = name.lower()
    for key, value in headers.items():
        if key.lower() == wanted:
            return value
    return None


def client_address(headers: Mapping[str, str], peer: str | None) -> str | None:
    """Return the originating client address.

    The first entry of X-Forwarded-For wins; otherwise the socket peer.

    Args:
        headers: Request headers
        peer: Address of the directly connected peer, if known

    Example:
        >>> client_address({"X-Forwarded-For": "203.0.113.7, 10.0.0.2"}, "10.0.0.2")
        '203.0.113.7'
    """
    forwarded = get_header(headers, FORWARDED_FOR_HEADER)
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    return peer


def secrets_match(provided: str | None, configured: str) -> bool:
    """Compare a supplied secret with the configured one in constant time."""
    if not provided:
        return False
    return hmac.compare_digest(provided.encode("utf-8"), configured.encode("utf-8"))
