"""Public endpoints: contact form, image proxy, canary callback and crawler traps."""

import html
import logging
from datetime import datetime, timezone

import aiohttp
import validators
from aiohttp import web

from nkshield.api.common import check_text, get_services, hashed_ip_of, read_json
from nkshield.canary import handle_canary_callback
from nkshield.errors import ValidationError
from nkshield.honeytokens import fingerprint_pixel_response
from nkshield.image_proxy import UpstreamError
from nkshield.models import utc_now_iso
from nkshield.traps import render_robots_txt, render_trap_sitemap

logger = logging.getLogger("nkshield.api.public")

CONTACT_MESSAGES_KEY = "contact-messages"
MAX_CONTACT_MESSAGES = 500
MAX_EMAIL_LENGTH = 254

# Fixed at import so the sitemap looks stable to crawlers
SITEMAP_LASTMOD = datetime.now(timezone.utc).date().isoformat()


# ----------------------------------------------------------------------
# Contact form
# ----------------------------------------------------------------------


def validate_contact(body: dict) -> dict[str, str]:
    """
    Validate and HTML-escape a contact submission.

    Raises:
        ValidationError: If any field is missing or out of bounds
    """
    name = check_text(body.get("name"), "name", 100)
    email = body.get("email")
    if not isinstance(email, str) or len(email) > MAX_EMAIL_LENGTH or not validators.email(email):
        raise ValidationError("A valid email is required")
    subject = check_text(body.get("subject"), "subject", 200)
    message = body.get("message")
    if not isinstance(message, str) or not 1 <= len(message) <= 5000:
        raise ValidationError("message must be 1-5000 characters")
    return {
        "name": html.escape(name.strip()),
        "email": html.escape(email.strip()),
        "subject": html.escape(subject.strip()),
        "message": html.escape(message.strip()),
    }


async def contact_post(request: web.Request) -> web.Response:
    services = get_services(request)
    fields = validate_contact(await read_json(request))
    entry = {**fields, "timestamp": utc_now_iso(), "hashedIp": hashed_ip_of(request), "read": False}

    await services.store.lpush(CONTACT_MESSAGES_KEY, entry)
    await services.store.ltrim(CONTACT_MESSAGES_KEY, 0, MAX_CONTACT_MESSAGES - 1)

    config = services.config
    if config.resend_api_key and config.contact_email_to:
        body = (
            f"<p><b>From:</b> {fields['name']} &lt;{fields['email']}&gt;</p>"
            f"<p><b>Subject:</b> {fields['subject']}</p>"
            f"<p>{fields['message'].replace(chr(10), '<br>')}</p>"
        )
        try:
            await services.alerts.send_email(
                config.contact_email_to,
                f"[Contact] {fields['subject']}",
                body,
                reply_to=html.unescape(fields["email"]),
            )
        except aiohttp.ClientError as e:
            logger.error(f"Contact forwarding failed: {e}")
    return web.json_response({"success": True})


# ----------------------------------------------------------------------
# Image proxy
# ----------------------------------------------------------------------


async def image_proxy_get(request: web.Request) -> web.Response:
    services = get_services(request)
    try:
        image = await services.image_proxy.fetch(request.query.get("url", ""))
    except UpstreamError as e:
        logger.warning(f"Image proxy upstream failure: {e}")
        return web.json_response({"error": "Failed to fetch image"}, status=502)
    return web.Response(
        body=image.body,
        content_type=image.content_type,
        headers={
            "Cache-Control": "public, max-age=86400, s-maxage=2592000",
            "X-Content-Type-Options": "nosniff",
        },
    )


# ----------------------------------------------------------------------
# Canary callback and crawler traps
# ----------------------------------------------------------------------


async def canary_callback(request: web.Request) -> web.Response:
    return await handle_canary_callback(get_services(request), request, hashed_ip_of(request))


async def pixel_get(request: web.Request) -> web.Response:
    logger.debug(f"Fingerprint pixel requested by {hashed_ip_of(request)[:12]}")
    return fingerprint_pixel_response()


async def robots_txt(request: web.Request) -> web.Response:
    site_url = get_services(request).config.site_url
    return web.Response(
        text=render_robots_txt(site_url),
        content_type="text/plain",
        headers={"Cache-Control": "public, max-age=3600"},
    )


async def trap_sitemap(request: web.Request) -> web.Response:
    site_url = get_services(request).config.site_url
    return web.Response(
        text=render_trap_sitemap(site_url, SITEMAP_LASTMOD),
        content_type="application/xml",
        headers={"Cache-Control": "public, max-age=3600"},
    )


def setup_routes(app: web.Application) -> None:
    app.router.add_post("/api/contact", contact_post)
    app.router.add_get("/api/image-proxy", image_proxy_get)
    app.router.add_get("/api/canary-callback", canary_callback)
    app.router.add_post("/api/canary-callback", canary_callback)
    app.router.add_get("/api/pixel.png", pixel_get)
    app.router.add_get("/robots.txt", robots_txt)
    app.router.add_get("/sitemap-extended.xml", trap_sitemap)
