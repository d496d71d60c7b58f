"""Generic content store endpoint (/api/kv)."""

import logging
from enum import Enum
from typing import Any

from aiohttp import web

from nkshield.api.common import check_text, get_services, read_json, require_admin
from nkshield.auth import PASSWORD_HASH_KEY, SESSION_PREFIX
from nkshield.errors import AuthorizationError, ValidationError
from nkshield.honeytokens import is_honeytoken

logger = logging.getLogger("nkshield.api.kv")

MAX_KEY_LENGTH = 200
BAND_DATA_KEY = "band-data"
ADMIN_ONLY_FIELDS = {BAND_DATA_KEY: ("terminalCommands",)}

SENSITIVE_KEYS = frozenset({PASSWORD_HASH_KEY, "contact-messages"})
SENSITIVE_PREFIXES = (SESSION_PREFIX, "nk-", "img-cache:")
SENSITIVE_SUBSTRINGS = ("token", "secret")
# Public site content whose names happen to contain a sensitive word.
PUBLIC_EXEMPT_KEYS = frozenset({"secretcode"})


class KeyNamespace(Enum):
    """Who may touch a KV key through the public endpoint."""

    PUBLIC = "public"
    SENSITIVE = "sensitive"
    HONEYTOKEN = "honeytoken"


def classify_key(key: str) -> KeyNamespace:
    """
    Place a key in its namespace.

    Sensitive keys are the admin password hash, anything under the
    `session:`, `nk-` or `img-cache:` namespaces, and any key containing
    `token` or `secret` in any case (`githubToken`, `jwt.secret`).  Only
    the keys in `PUBLIC_EXEMPT_KEYS` escape the substring rule.
    """
    lowered = key.lower()
    if is_honeytoken(lowered):
        return KeyNamespace.HONEYTOKEN
    if lowered in SENSITIVE_KEYS or lowered.startswith(SENSITIVE_PREFIXES):
        return KeyNamespace.SENSITIVE
    if lowered not in PUBLIC_EXEMPT_KEYS and any(word in lowered for word in SENSITIVE_SUBSTRINGS):
        return KeyNamespace.SENSITIVE
    return KeyNamespace.PUBLIC


def validate_key(key: Any) -> str:
    """
    Raises:
        ValidationError: For a missing, oversized or control-character key
    """
    return check_text(key, "key", MAX_KEY_LENGTH)


def strip_admin_fields(key: str, value: Any) -> Any:
    fields = ADMIN_ONLY_FIELDS.get(key)
    if not fields or not isinstance(value, dict):
        return value
    return {k: v for k, v in value.items() if k not in fields}


async def kv_get(request: web.Request) -> web.Response:
    key = validate_key(request.query.get("key"))
    namespace = classify_key(key)
    if namespace is KeyNamespace.HONEYTOKEN:
        # The pipeline raises the alarm; answer as if the key never existed
        return web.json_response({"error": "Not found"}, status=404)
    if namespace is KeyNamespace.SENSITIVE:
        raise AuthorizationError("Forbidden")

    value = await get_services(request).store.get(key)
    if not request.get("is_admin", False):
        value = strip_admin_fields(key, value)
    return web.json_response({"value": value})


async def kv_post(request: web.Request) -> web.Response:
    require_admin(request)
    body = await read_json(request)
    key = validate_key(body.get("key"))
    if "value" not in body:
        raise ValidationError("value is required")
    if classify_key(key) is not KeyNamespace.PUBLIC:
        raise AuthorizationError("Forbidden")

    await get_services(request).store.set(key, body["value"])
    logger.info(f"KV key updated: {key}")
    return web.json_response({"success": True})


def setup_routes(app: web.Application) -> None:
    app.router.add_get("/api/kv", kv_get)
    app.router.add_post("/api/kv", kv_post)
