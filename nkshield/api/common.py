"""Helpers shared by the API handlers."""

import json
import re
from typing import Any

from aiohttp import web

from nkshield.errors import AuthorizationError, ValidationError
from nkshield.services import DefenseServices
from nkshield.settings import SecuritySettings

SERVICES = web.AppKey("services", DefenseServices)

CONTROL_CHARS = re.compile(r"[\x00-\x1f\x7f]")


def get_services(request: web.Request) -> DefenseServices:
    return request.app[SERVICES]


def hashed_ip_of(request: web.Request) -> str:
    """Hashed identity set by the defense middleware."""
    return request["hashed_ip"]


async def settings_of(request: web.Request) -> SecuritySettings:
    settings = request.get("settings")
    if settings is None:
        settings = await get_services(request).settings.load()
    return settings


def require_admin(request: web.Request) -> None:
    """
    Reject callers without a valid admin session.

    Raises:
        AuthorizationError: If the request is not from an admin
    """
    if not request.get("is_admin", False):
        raise AuthorizationError("Unauthorized")


async def read_json(request: web.Request) -> dict[str, Any]:
    """
    Parse a JSON object body.

    Raises:
        ValidationError: If the body is missing or not a JSON object
    """
    try:
        body = json.loads(await request.text())
    except ValueError:
        raise ValidationError("Request body is required") from None
    if not isinstance(body, dict):
        raise ValidationError("Request body is required")
    return body


def query_int(request: web.Request, name: str, default: int, lo: int, hi: int) -> int:
    """Read a bounded integer query parameter."""
    raw = request.query.get(name)
    if raw is None or raw == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ValidationError(f"{name} must be an integer") from None
    if not lo <= value <= hi:
        raise ValidationError(f"{name} must be between {lo} and {hi}")
    return value


def check_text(value: Any, name: str, max_length: int, min_length: int = 1) -> str:
    """Validate a bounded string without control characters."""
    if not isinstance(value, str):
        raise ValidationError(f"{name} is required")
    if not min_length <= len(value) <= max_length:
        raise ValidationError(f"{name} must be {min_length}-{max_length} characters")
    if CONTROL_CHARS.search(value):
        raise ValidationError(f"{name} contains invalid characters")
    return value
