"""Admin password hashing and cookie sessions."""

import asyncio
import hashlib
import logging
import secrets
from typing import TYPE_CHECKING, Any

from aiohttp import web

from nkshield.errors import NkShieldError, ValidationError
from nkshield.identity import timing_safe_equal
from nkshield.models import utc_now_iso
from nkshield.settings import SecuritySettings
from nkshield.store import KVStore

if TYPE_CHECKING:
    from nkshield.services import DefenseServices

logger = logging.getLogger("nkshield.auth")

PASSWORD_HASH_KEY = "admin-password-hash"
SESSION_PREFIX = "session:"
SESSION_COOKIE = "nk-session"

MIN_PASSWORD_LENGTH = 8
MAX_PASSWORD_LENGTH = 200

# scrypt cost parameters (16 MiB of memory per hash)
SCRYPT_N = 16384
SCRYPT_R = 8
SCRYPT_P = 1
SCRYPT_DKLEN = 64


def _scrypt(password: str, salt: str) -> str:
    derived = hashlib.scrypt(
        password.encode("utf-8"),
        salt=salt.encode("utf-8"),
        n=SCRYPT_N,
        r=SCRYPT_R,
        p=SCRYPT_P,
        dklen=SCRYPT_DKLEN,
    )
    return derived.hex()


def hash_password(password: str) -> str:
    """Hash a password as `scrypt:<salt_hex>:<derived_key_hex>`."""
    salt = secrets.token_hex(16)
    return f"scrypt:{salt}:{_scrypt(password, salt)}"


def verify_password(password: str, stored: Any) -> bool:
    """Check a password against a stored scrypt hash in constant time."""
    if not isinstance(password, str) or not isinstance(stored, str):
        return False
    parts = stored.split(":")
    if len(parts) != 3 or parts[0] != "scrypt":
        return False
    _, salt, expected = parts
    return timing_safe_equal(_scrypt(password, salt), expected)


def check_password_policy(password: Any) -> str:
    if not isinstance(password, str) or not MIN_PASSWORD_LENGTH <= len(password) <= MAX_PASSWORD_LENGTH:
        raise ValidationError(
            f"Password must be {MIN_PASSWORD_LENGTH}-{MAX_PASSWORD_LENGTH} characters"
        )
    return password


async def set_admin_password(store: KVStore, password: str) -> None:
    """Validate and store a new admin password hash."""
    check_password_policy(password)
    await store.set(PASSWORD_HASH_KEY, await asyncio.to_thread(hash_password, password))
    logger.info("Admin password updated")


async def has_admin_password(store: KVStore) -> bool:
    return bool(await store.get(PASSWORD_HASH_KEY))


async def check_admin_password(store: KVStore, password: str) -> bool:
    stored = await store.get(PASSWORD_HASH_KEY)
    return await asyncio.to_thread(verify_password, password, stored)


def session_ttl(services: "DefenseServices", settings: SecuritySettings) -> int:
    """Effective session lifetime: the admin setting, capped by the service config."""
    return min(settings.session_ttl_seconds, services.config.session_ttl_seconds)


async def create_session(services: "DefenseServices", hashed_ip: str, ttl_seconds: int) -> str:
    """Store a new session bound to the identity and return its token."""
    token = secrets.token_hex(32)
    await services.store.set(
        f"{SESSION_PREFIX}{token}",
        {"hashedIp": hashed_ip, "createdAt": utc_now_iso()},
        ex=ttl_seconds,
    )
    return token


def get_session_token(request: web.Request) -> str | None:
    token = request.cookies.get(SESSION_COOKIE)
    if not token or len(token) > 128:
        return None
    return token


async def is_admin_request(
    services: "DefenseServices", request: web.Request, hashed_ip: str, settings: SecuritySettings
) -> bool:
    """
    Check whether the request carries a valid admin session.

    With session binding enabled the session is only valid from the
    identity that created it.  Store errors count as "not admin".
    """
    token = get_session_token(request)
    if token is None:
        return False
    try:
        session = await services.store.get(f"{SESSION_PREFIX}{token}")
    except NkShieldError as e:
        logger.warning(f"Session lookup failed: {e}")
        return False
    if not isinstance(session, dict):
        return False
    if settings.session_binding_enabled and not timing_safe_equal(session.get("hashedIp"), hashed_ip):
        logger.warning(f"Session presented from a different identity: {hashed_ip[:12]}")
        return False
    return True


async def destroy_session(services: "DefenseServices", request: web.Request) -> None:
    token = get_session_token(request)
    if token:
        await services.store.delete(f"{SESSION_PREFIX}{token}")


def set_session_cookie(response: web.StreamResponse, token: str, ttl_seconds: int, secure: bool) -> None:
    response.set_cookie(
        SESSION_COOKIE,
        token,
        max_age=ttl_seconds,
        path="/",
        httponly=True,
        secure=secure,
        samesite="Strict",
    )


def clear_session_cookie(response: web.StreamResponse, secure: bool) -> None:
    response.set_cookie(
        SESSION_COOKIE,
        "",
        max_age=0,
        path="/",
        httponly=True,
        secure=secure,
        samesite="Strict",
    )
