"""Client identity extraction and one-way IP hashing."""

import hashlib
import hmac
from typing import Any

from aiohttp import web

FALLBACK_IP = "127.0.0.1"


def get_client_ip(request: web.Request, trusted_proxy_hops: int = 0) -> str:
    """
    Extract the client IP address from a request.

    With no trusted proxy hops configured the first `X-Forwarded-For` entry
    is used, matching what the hosting platform's edge sets.  With N hops
    the Nth address from the right is taken, so that entries prepended by
    the client cannot spoof the identity.

    Args:
        request: Incoming aiohttp request
        trusted_proxy_hops: Number of reverse proxies in front of the service

    Returns:
        Client IP string (never empty)
    """
    forwarded = request.headers.get("X-Forwarded-For", "")
    chain = [part.strip() for part in forwarded.split(",") if part.strip()]
    if chain:
        if trusted_proxy_hops <= 0:
            return chain[0]
        index = max(len(chain) - trusted_proxy_hops, 0)
        return chain[index]
    return request.remote or FALLBACK_IP


def hash_ip(ip: str, salt: str) -> str:
    """Hex SHA-256 of salt + ip. The raw address is never stored."""
    return hashlib.sha256(f"{salt}{ip}".encode("utf-8")).hexdigest()


def timing_safe_equal(a: Any, b: Any) -> bool:
    """
    Compare two strings in constant time.

    Returns False (never raises) for non-string inputs or differing lengths.
    """
    if not isinstance(a, str) or not isinstance(b, str):
        return False
    a_bytes = a.encode("utf-8")
    b_bytes = b.encode("utf-8")
    if len(a_bytes) != len(b_bytes):
        return False
    return hmac.compare_digest(a_bytes, b_bytes)
