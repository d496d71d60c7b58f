"""Admin login, session status, password setup/change and logout (/api/auth)."""

import logging

from aiohttp import web

from nkshield.api.common import get_services, hashed_ip_of, read_json, settings_of
from nkshield.auth import (
    PASSWORD_HASH_KEY,
    check_admin_password,
    check_password_policy,
    clear_session_cookie,
    create_session,
    destroy_session,
    has_admin_password,
    session_ttl,
    set_admin_password,
    set_session_cookie,
)
from nkshield.errors import ValidationError

logger = logging.getLogger("nkshield.api.auth")


def _unauthorized(message: str) -> web.Response:
    return web.json_response({"error": message}, status=401)


async def _login_response(request: web.Request) -> web.Response:
    services = get_services(request)
    ttl = session_ttl(services, await settings_of(request))
    token = await create_session(services, hashed_ip_of(request), ttl)
    response = web.json_response({"success": True})
    set_session_cookie(response, token, ttl, services.config.secure_cookies)
    return response


async def auth_get(request: web.Request) -> web.Response:
    services = get_services(request)
    return web.json_response(
        {
            "authenticated": request.get("is_admin", False),
            "needsSetup": not await has_admin_password(services.store),
        }
    )


async def auth_post(request: web.Request) -> web.Response:
    """
    Handle the three POST flows:

    - `{"action": "setup", "password"}`: first password, only while none exists
    - `{"newPassword", "currentPassword"?}`: change password (admin session)
    - `{"password"}`: log in
    """
    services = get_services(request)
    body = await read_json(request)

    if body.get("action") == "setup":
        password = check_password_policy(body.get("password"))
        if await has_admin_password(services.store):
            return web.json_response({"error": "Password already configured"}, status=409)
        await set_admin_password(services.store, password)
        return await _login_response(request)

    if "newPassword" in body:
        if not request.get("is_admin", False):
            return _unauthorized("Authentication required")
        if not await has_admin_password(services.store):
            raise ValidationError("No password set")
        current = body.get("currentPassword")
        if current is not None and not await check_admin_password(services.store, current):
            return web.json_response({"error": "Current password is incorrect"}, status=403)
        await set_admin_password(services.store, body.get("newPassword"))
        return web.json_response({"success": True})

    password = body.get("password")
    if isinstance(password, str) and password:
        if len(password) > 200:
            raise ValidationError("Invalid password")
        if not await services.store.get(PASSWORD_HASH_KEY):
            return _unauthorized("No password configured")
        if not await check_admin_password(services.store, password):
            logger.warning(f"Failed admin login from {hashed_ip_of(request)[:12]}")
            return _unauthorized("Invalid password")
        logger.info(f"Admin login from {hashed_ip_of(request)[:12]}")
        return await _login_response(request)

    raise ValidationError("Invalid request")


async def auth_delete(request: web.Request) -> web.Response:
    services = get_services(request)
    await destroy_session(services, request)
    response = web.json_response({"success": True})
    clear_session_cookie(response, services.config.secure_cookies)
    return response


def setup_routes(app: web.Application) -> None:
    app.router.add_get("/api/auth", auth_get)
    app.router.add_post("/api/auth", auth_post)
    app.router.add_delete("/api/auth", auth_delete)
