"""Canary documents: trackable decoy files served from tarpit paths.

Each download gets a unique token embedded in the document.  When the
document is opened it calls back to `/api/canary-callback`, which links
the downloader to the opener and collects a browser fingerprint.
"""

import html
import json
import logging
import re
import secrets
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import validators
from aiohttp import web

from nkshield.errors import NkShieldError
from nkshield.honeytokens import PIXEL_PNG
from nkshield.logging_setup import log_event
from nkshield.models import Incident, ThreatLevel, ThreatReason, utc_now_iso
from nkshield.scoring import Thresholds, reason_points_from_settings

if TYPE_CHECKING:
    from nkshield.services import DefenseServices

logger = logging.getLogger("nkshield.canary")

CANARY_TOKEN_PREFIX = "nk-canary:"
CANARY_ALERTS_KEY = "nk-canary-alerts"
CANARY_TOKEN_TTL = 604800  # 7 days
MAX_CANARY_ALERTS = 500
TOKEN_PATTERN = re.compile(r"^[a-f0-9]{32}$")
CALLBACK_PATH = "/api/canary-callback"


@dataclass(frozen=True)
class CanaryDocument:
    name: str
    path: str
    description: str
    content_type: str = "text/html"


CANARY_DOCUMENTS: dict[str, CanaryDocument] = {
    doc.name: doc
    for doc in (
        CanaryDocument("db-export.html", "/admin/backup/db-export.html", "Database export (HTML)"),
        CanaryDocument("credentials.html", "/admin/backup/credentials.html", "Credentials file (HTML)"),
        CanaryDocument("config-backup.html", "/config/backup/config-backup.html", "Configuration backup (HTML)"),
        CanaryDocument("api-keys.html", "/private/api-keys.html", "API keys document (HTML)"),
        CanaryDocument("admin-notes.html", "/internal/admin-notes.html", "Admin notes (HTML)"),
    )
}


def find_canary_document(path: str) -> CanaryDocument | None:
    """Match a request path against the canary catalog."""
    for doc in CANARY_DOCUMENTS.values():
        if path == doc.path or path.endswith(doc.path):
            return doc
    return None


async def generate_canary_token(
    services: "DefenseServices", hashed_ip: str, user_agent: str, document_path: str
) -> str:
    """Create a download token and store its metadata (best-effort)."""
    token = secrets.token_hex(16)
    metadata = {
        "token": token,
        "hashedIp": hashed_ip,
        "userAgent": user_agent[:200],
        "downloadedAt": utc_now_iso(),
        "documentPath": document_path,
        "opened": False,
    }
    try:
        await services.store.set(f"{CANARY_TOKEN_PREFIX}{token}", metadata, ex=CANARY_TOKEN_TTL)
    except NkShieldError as e:
        logger.warning(f"Canary token storage failed: {e}")
    return token


def render_canary_html(token: str, document_name: str, phone_home: bool = True, fingerprint: bool = True) -> str:
    """
    Render a decoy document with embedded callbacks.

    Args:
        token: Download token (32 hex chars)
        document_name: File name shown in the title (escaped)
        phone_home: Embed the tracking image
        fingerprint: Embed the fingerprinting script and WebRTC STUN probe

    Returns:
        The HTML document
    """
    name = html.escape(document_name)
    callback_url = f"{CALLBACK_PATH}?t={token}"
    now = utc_now_iso()

    tracker = ""
    if phone_home:
        tracker = (
            f'<img src="{callback_url}&e=img" width="1" height="1" '
            'style="position:absolute;left:-9999px" alt="">\n'
        )

    script = ""
    if fingerprint:
        script = f"""<script>
(function(){{
  var d={{t:"{token}",ts:Date.now(),tz:Intl.DateTimeFormat().resolvedOptions().timeZone,
    lang:navigator.language,plat:navigator.platform,cores:navigator.hardwareConcurrency||0,
    mem:navigator.deviceMemory||0,sw:screen.width,sh:screen.height,cd:screen.colorDepth,
    touch:'ontouchstart'in window}};
  try{{var c=document.createElement('canvas');var g=c.getContext('2d');
    g.textBaseline='top';g.font='14px Arial';g.fillText('fp',2,2);
    d.cvs=c.toDataURL().slice(-32)}}catch(e){{}}
  try{{var r=new RTCPeerConnection({{iceServers:[{{urls:'stun:stun.l.google.com:19302'}},{{urls:'stun:stun1.l.google.com:19302'}}]}});
    r.createDataChannel('');r.createOffer().then(function(o){{r.setLocalDescription(o)}});
    r.onicecandidate=function(e){{if(e.candidate){{
      var m=e.candidate.candidate.match(/([0-9]{{1,3}}(\\.[0-9]{{1,3}}){{3}})/);
      if(m){{d.realIp=m[1];send()}}}}}}}}catch(e){{}}
  function send(){{var x=new XMLHttpRequest();x.open('POST',"{callback_url}&e=js");
    x.setRequestHeader('Content-Type','application/json');x.send(JSON.stringify(d))}}
  setTimeout(send,2000);
}})();
</script>
"""

    return f"""<!DOCTYPE html>
<html lang="en">
<head>
<meta charset="utf-8">
<title>Internal Document — {name}</title>
<style>
body{{font-family:Consolas,monospace;background:#1a1a2e;color:#c4c4c4;margin:2rem;line-height:1.6}}
h1{{color:#e94560;border-bottom:1px solid #333;padding-bottom:.5rem}}
table{{border-collapse:collapse;width:100%;margin:1rem 0}}
td,th{{border:1px solid #333;padding:.5rem;text-align:left}}
th{{background:#16213e;color:#e94560}}
.warn{{color:#ff6b35;font-size:.85rem;margin-top:2rem}}
.footer{{color:#555;font-size:.75rem;margin-top:3rem}}
</style>
</head>
<body>
<h1>CONFIDENTIAL — {name}</h1>
<p>Internal backup document. Last updated: {now}</p>
<table>
<tr><th>Key</th><th>Value</th></tr>
<tr><td>DB Host</td><td>prod-db.internal.cluster</td></tr>
<tr><td>DB User</td><td>admin_rw</td></tr>
<tr><td>DB Password</td><td>S3cure_Pr0d_{secrets.token_hex(4)}</td></tr>
<tr><td>API Master Key</td><td>sk_live_{secrets.token_hex(16)}</td></tr>
<tr><td>Backup Encryption</td><td>AES-256-GCM</td></tr>
</table>
<p class="warn">⚠ This document is monitored. Unauthorized access will be logged and reported.</p>
<p class="footer">Document ID: {token} | Generated: {now}</p>
{tracker}{script}</body>
</html>"""


async def serve_canary_document(
    services: "DefenseServices", request: web.Request, hashed_ip: str
) -> web.Response | None:
    """
    Serve a canary document if the path matches and the feature is enabled.

    Returns:
        The document response, or None to continue processing
    """
    settings = await services.settings.load()
    if not settings.canary_documents_enabled:
        return None
    doc = find_canary_document(request.path)
    if doc is None:
        return None

    user_agent = request.headers.get("User-Agent", "")
    token = await generate_canary_token(services, hashed_ip, user_agent, request.path)
    body = render_canary_html(
        token,
        doc.name,
        phone_home=settings.canary_phone_home_on_open,
        fingerprint=settings.canary_collect_fingerprint,
    )
    logger.info(f"Served canary document {doc.name} to {hashed_ip[:12]}")
    return web.Response(
        text=body,
        content_type=doc.content_type,
        headers={
            "Content-Disposition": f'inline; filename="{doc.name}"',
            "Cache-Control": "no-store",
        },
    )


def _clip(value: Any, length: int) -> str | None:
    return value[:length] if isinstance(value, str) else None


def _number(value: Any) -> int | float | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return value


def parse_js_fingerprint(body: Any, hash_fn) -> dict[str, Any] | None:
    """
    Sanitize the fingerprint posted by the canary script.

    The WebRTC-reported address is validated as IPv4 and hashed; the raw
    address is never stored.
    """
    if not isinstance(body, dict):
        return None
    raw_ip = body.get("realIp")
    real_ip = None
    if isinstance(raw_ip, str) and validators.ipv4(raw_ip):
        real_ip = hash_fn(raw_ip)
    touch = body.get("touch")
    return {
        "timezone": _clip(body.get("tz"), 100),
        "language": _clip(body.get("lang"), 50),
        "platform": _clip(body.get("plat"), 100),
        "cores": _number(body.get("cores")),
        "memory": _number(body.get("mem")),
        "screenWidth": _number(body.get("sw")),
        "screenHeight": _number(body.get("sh")),
        "colorDepth": _number(body.get("cd")),
        "touchSupport": touch if isinstance(touch, bool) else None,
        "canvasHash": _clip(body.get("cvs"), 64),
        "realIp": real_ip,
    }


async def handle_canary_callback(
    services: "DefenseServices", request: web.Request, hashed_ip: str
) -> web.Response:
    """
    Record that a canary document was opened.

    Every step after token validation is best-effort: the caller always gets
    the pixel (`e=img`) or 204, never an error revealing the trap.
    """
    token = request.query.get("t", "")
    if not TOKEN_PATTERN.match(token):
        return web.json_response({"error": "Not found"}, status=404)

    event = request.query.get("e", "unknown")[:20]
    settings = await services.settings.load()
    token_key = f"{CANARY_TOKEN_PREFIX}{token}"

    token_data = None
    try:
        token_data = await services.store.get(token_key)
    except NkShieldError as e:
        logger.warning(f"Canary token lookup failed: {e}")
    if not isinstance(token_data, dict):
        token_data = None

    js_fingerprint = None
    if request.method == "POST" and request.can_read_body:
        try:
            body = json.loads(await request.text())
        except ValueError:
            body = None
        js_fingerprint = parse_js_fingerprint(body, services.hash_ip)

    fingerprint = {
        "token": token,
        "hashedIp": hashed_ip,
        "openerIp": hashed_ip,
        "downloaderIp": (token_data or {}).get("hashedIp", "unknown"),
        "userAgent": request.headers.get("User-Agent", "")[:200],
        "acceptLanguage": request.headers.get("Accept-Language", "")[:100],
        "event": event,
        "timestamp": utc_now_iso(),
        "documentPath": (token_data or {}).get("documentPath", "unknown"),
        "jsFingerprint": js_fingerprint,
    }

    try:
        if token_data is not None:
            opened = {
                **token_data,
                "opened": True,
                "openedAt": fingerprint["timestamp"],
                "openerFingerprint": fingerprint,
            }
            await services.store.set(token_key, opened, ex=CANARY_TOKEN_TTL)
        await services.store.lpush(CANARY_ALERTS_KEY, fingerprint)
        await services.store.ltrim(CANARY_ALERTS_KEY, 0, MAX_CANARY_ALERTS - 1)
    except NkShieldError as e:
        logger.warning(f"Canary alert persistence failed: {e}")

    log_event(
        logger,
        "CANARY CALLBACK",
        {"token": token, "hashedIp": hashed_ip, "event": event, "timestamp": fingerprint["timestamp"]},
    )

    thresholds = Thresholds.from_settings(settings)
    result = await services.scorer.increment(
        hashed_ip,
        [ThreatReason.CANARY_DOCUMENT_OPENED],
        reason_points_from_settings(settings),
        thresholds,
    )
    if result.level is ThreatLevel.BLOCK and settings.hard_block_enabled:
        try:
            await services.blocklist.block_ip(
                hashed_ip,
                reason=ThreatReason.CANARY_DOCUMENT_OPENED.value,
                auto_blocked=True,
                score=result.score,
            )
        except NkShieldError as e:
            logger.warning(f"Auto block after canary callback failed: {e}")

    incident = Incident(
        type=ThreatReason.CANARY_DOCUMENT_OPENED.value,
        key=f"canary:{fingerprint['documentPath']}",
        method=request.method,
        user_agent=fingerprint["userAgent"],
        threat_score=result.score,
        threat_level=result.level.value,
        countermeasure="log_only",
        timestamp=fingerprint["timestamp"],
        hashed_ip=hashed_ip,
        request_details={"token": token, "event": event},
    )
    await services.incidents.append(incident, tag="CANARY OPENED", max_entries=settings.max_alerts_stored)
    await services.profiles.record_incident(hashed_ip, incident)
    await services.profiles.add_forensic_data(
        hashed_ip,
        {
            "token": token,
            "event": event,
            "timestamp": fingerprint["timestamp"],
            "documentPath": fingerprint["documentPath"],
            "userAgent": fingerprint["userAgent"],
            "acceptLanguage": fingerprint["acceptLanguage"],
            "openerIp": hashed_ip,
            "downloaderIp": fingerprint["downloaderIp"],
            "jsFingerprint": js_fingerprint,
        },
    )

    if settings.canary_alert_on_callback:
        alert = Incident(
            type="CANARY DOCUMENT OPENED",
            key=incident.key,
            method=request.method,
            user_agent=incident.user_agent,
            threat_score=result.score,
            threat_level=result.level.value,
            timestamp=incident.timestamp,
            hashed_ip=hashed_ip,
        )
        await services.alerts.send(alert, settings, severity="critical")

    if event == "img":
        return web.Response(
            body=PIXEL_PNG, content_type="image/png", headers={"Cache-Control": "no-store"}
        )
    return web.Response(status=204)


async def list_canary_alerts(services: "DefenseServices", limit: int = MAX_CANARY_ALERTS) -> list[dict]:
    raw = await services.store.lrange(CANARY_ALERTS_KEY, 0, limit - 1)
    return [entry for entry in raw if isinstance(entry, dict)]
