"""Dashboard endpoints: blocklist, incidents, settings, profiles, canary alerts.

Every handler requires an admin session.  Non-admin callers have already
been rate limited by the pipeline before reaching them.
"""

import logging
import re
from typing import Any

from aiohttp import web

from nkshield.api.common import check_text, get_services, read_json, require_admin, query_int
from nkshield.blocklist import BLOCK_TTL, MAX_BLOCK_TTL, MIN_BLOCK_TTL
from nkshield.canary import MAX_CANARY_ALERTS, list_canary_alerts
from nkshield.errors import ValidationError
from nkshield.profiles import analyze_user_agents

logger = logging.getLogger("nkshield.api.admin")

HASHED_IP_PATTERN = re.compile(r"^[A-Za-z0-9]{8,64}$")
MAX_REASON_LENGTH = 200
MAX_PROFILE_PAGE = 100


def validate_hashed_ip(value: Any) -> str:
    if not isinstance(value, str) or not HASHED_IP_PATTERN.match(value):
        raise ValidationError("hashedIp must be 8-64 alphanumeric characters")
    return value


def validate_ttl(value: Any) -> int:
    if value is None:
        return BLOCK_TTL
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError("ttlSeconds must be an integer")
    if not MIN_BLOCK_TTL <= value <= MAX_BLOCK_TTL:
        raise ValidationError(f"ttlSeconds must be between {MIN_BLOCK_TTL} and {MAX_BLOCK_TTL}")
    return value


# ----------------------------------------------------------------------
# Blocklist
# ----------------------------------------------------------------------


async def blocklist_get(request: web.Request) -> web.Response:
    require_admin(request)
    entries = await get_services(request).blocklist.get_all_blocked()
    return web.json_response(
        {"blocked": [e.to_dict() for e in entries], "total": len(entries)}
    )


async def blocklist_post(request: web.Request) -> web.Response:
    require_admin(request)
    body = await read_json(request)
    hashed_ip = validate_hashed_ip(body.get("hashedIp"))
    reason = body.get("reason", "manual")
    reason = check_text(reason, "reason", MAX_REASON_LENGTH)
    ttl = validate_ttl(body.get("ttlSeconds"))

    entry = await get_services(request).blocklist.block_ip(hashed_ip, reason=reason, ttl_seconds=ttl)
    return web.json_response({"success": True, "entry": entry.to_dict()})


async def blocklist_delete(request: web.Request) -> web.Response:
    require_admin(request)
    hashed_ip = request.query.get("hashedIp")
    if hashed_ip is None and request.can_read_body:
        hashed_ip = (await read_json(request)).get("hashedIp")
    hashed_ip = validate_hashed_ip(hashed_ip)

    services = get_services(request)
    await services.blocklist.unblock_ip(hashed_ip)
    # A lingering score would re-block the identity on its next signal
    await services.scorer.reset(hashed_ip)
    return web.json_response({"success": True})


# ----------------------------------------------------------------------
# Incidents
# ----------------------------------------------------------------------


async def incidents_get(request: web.Request) -> web.Response:
    require_admin(request)
    services = get_services(request)
    settings = await services.settings.load()
    limit = query_int(request, "limit", settings.max_alerts_stored, 1, settings.max_alerts_stored)
    incidents = await services.incidents.list(limit)
    return web.json_response({"incidents": incidents, "total": len(incidents)})


async def incidents_delete(request: web.Request) -> web.Response:
    require_admin(request)
    await get_services(request).incidents.clear()
    return web.json_response({"success": True})


# ----------------------------------------------------------------------
# Security settings
# ----------------------------------------------------------------------


async def settings_get(request: web.Request) -> web.Response:
    require_admin(request)
    settings = await get_services(request).settings.load()
    return web.json_response(settings.to_dict())


async def settings_post(request: web.Request) -> web.Response:
    require_admin(request)
    body = await read_json(request)
    partial = body.get("settings", body)
    updated = await get_services(request).settings.save(partial)
    return web.json_response({"success": True, "settings": updated.to_dict()})


# ----------------------------------------------------------------------
# Attacker profiles
# ----------------------------------------------------------------------


async def profile_get(request: web.Request) -> web.Response:
    require_admin(request)
    profiles = get_services(request).profiles
    hashed_ip = request.query.get("hashedIp")
    if hashed_ip is not None:
        profile = await profiles.get_profile(validate_hashed_ip(hashed_ip))
        if profile is None:
            return web.json_response({"error": "Profile not found"}, status=404)
        return web.json_response(
            {**profile.to_dict(), "userAgentAnalysis": analyze_user_agents(profile)}
        )

    limit = query_int(request, "limit", 50, 1, MAX_PROFILE_PAGE)
    offset = query_int(request, "offset", 0, 0, 1_000_000)
    return web.json_response(await profiles.get_all_profiles(limit, offset))


async def profile_delete(request: web.Request) -> web.Response:
    require_admin(request)
    hashed_ip = validate_hashed_ip(request.query.get("hashedIp"))
    deleted = await get_services(request).profiles.delete_profile(hashed_ip)
    if not deleted:
        return web.json_response({"error": "Could not delete profile"}, status=503)
    return web.json_response({"success": True})


# ----------------------------------------------------------------------
# Canary alerts
# ----------------------------------------------------------------------


async def canary_alerts_get(request: web.Request) -> web.Response:
    require_admin(request)
    limit = query_int(request, "limit", MAX_CANARY_ALERTS, 1, MAX_CANARY_ALERTS)
    alerts = await list_canary_alerts(get_services(request), limit)
    return web.json_response({"alerts": alerts, "total": len(alerts)})


def setup_routes(app: web.Application) -> None:
    app.router.add_get("/api/blocklist", blocklist_get)
    app.router.add_post("/api/blocklist", blocklist_post)
    app.router.add_delete("/api/blocklist", blocklist_delete)
    app.router.add_get("/api/security-incidents", incidents_get)
    app.router.add_delete("/api/security-incidents", incidents_delete)
    app.router.add_get("/api/security-settings", settings_get)
    app.router.add_post("/api/security-settings", settings_post)
    app.router.add_get("/api/attacker-profile", profile_get)
    app.router.add_delete("/api/attacker-profile", profile_delete)
    app.router.add_get("/api/canary-alerts", canary_alerts_get)
