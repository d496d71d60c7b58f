"""Deduplicated outbound security alerts (Discord webhook and e-mail)."""

import asyncio
import html
import logging
from typing import TYPE_CHECKING

import aiohttp

from nkshield.errors import NkShieldError
from nkshield.models import Incident, utc_now_iso
from nkshield.settings import SecuritySettings
from nkshield.store import KVStore

if TYPE_CHECKING:
    from nkshield.config import ServiceConfig

logger = logging.getLogger("nkshield.alerting")

ALERT_DEDUP_PREFIX = "nk-alert-dedup:"
ALERT_DEDUP_TTL = 300
RESEND_API_URL = "https://api.resend.com/emails"
REQUEST_TIMEOUT = aiohttp.ClientTimeout(total=10)

SEVERITY_COLORS = {
    "critical": 0xFF0000,
    "high": 0xFF6600,
}
DEFAULT_COLOR = 0xFFCC00


def build_discord_payload(event: Incident, severity: str, site_url: str) -> dict:
    """Build the Discord webhook body for an incident."""
    hashed = f"`{event.hashed_ip[:12]}…`" if event.hashed_ip else "—"
    ua = f"`{event.user_agent[:100]}`" if event.user_agent else "—"
    score = f"{event.threat_score} ({event.threat_level or '?'})" if event.threat_score else "—"
    return {
        "username": "NEUROKLAST IDS",
        "embeds": [
            {
                "title": f"🚨 SECURITY ALERT — {event.type or 'THREAT DETECTED'}",
                "color": SEVERITY_COLORS.get(severity, DEFAULT_COLOR),
                "fields": [
                    {"name": "Event Type", "value": event.key or "—", "inline": True},
                    {"name": "Method", "value": event.method or "—", "inline": True},
                    {"name": "IP Hash", "value": hashed, "inline": True},
                    {"name": "User Agent", "value": ua, "inline": False},
                    {"name": "Threat Score", "value": score, "inline": True},
                    {"name": "Site", "value": site_url, "inline": True},
                ],
                "timestamp": event.timestamp or utc_now_iso(),
                "footer": {"text": "NEUROKLAST IDS • Active Defense System"},
            }
        ],
    }


def build_email_html(event: Incident, site_url: str) -> str:
    """Render the alert e-mail body with every value HTML-escaped."""
    rows = [
        ("Event", event.key),
        ("Type", event.type),
        ("Method", event.method),
        ("IP Hash", event.hashed_ip),
        ("User Agent", event.user_agent),
        ("Threat Score", f"{event.threat_score} ({event.threat_level})" if event.threat_score else None),
        ("Timestamp", event.timestamp),
        ("Site", site_url),
    ]
    cells = "".join(
        f"<tr><td><b>{label}</b></td><td>{html.escape(str(value)) if value else '—'}</td></tr>"
        for label, value in rows
    )
    return (
        '<h2 style="color:#ff0000">🚨 NEUROKLAST IDS ALERT</h2>'
        '<table border="1" cellpadding="6" style="border-collapse:collapse;font-family:monospace">'
        f"{cells}</table>"
        '<p style="color:#666;font-size:12px">NEUROKLAST IDS • Active Defense System</p>'
    )


class AlertDispatcher:
    """Sends alerts to the configured channels, at most once per identity and key per window."""

    def __init__(self, store: KVStore, config: "ServiceConfig") -> None:
        self.store = store
        self.config = config
        self._session: aiohttp.ClientSession | None = None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=REQUEST_TIMEOUT)
        return self._session

    async def close(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()

    async def _claim(self, event: Incident) -> bool:
        """Reserve the dedup slot; False if an alert already went out."""
        dedup_key = f"{ALERT_DEDUP_PREFIX}{event.hashed_ip}:{event.type}"
        try:
            if await self.store.get(dedup_key):
                return False
            await self.store.set(dedup_key, 1, ex=ALERT_DEDUP_TTL)
        except NkShieldError as e:
            logger.warning(f"Alert dedup unavailable, sending anyway: {e}")
        return True

    async def _post_discord(self, url: str, payload: dict) -> None:
        session = await self._get_session()
        async with session.post(url, json=payload) as resp:
            resp.raise_for_status()

    async def _send_email(self, to: str, event: Incident) -> None:
        await self.send_email(
            to,
            f"🚨 [NEUROKLAST IDS] {event.type or 'Security Alert'} — {event.key}",
            build_email_html(event, self.config.site_url),
        )

    async def send_email(self, to: str, subject: str, html_body: str, reply_to: str | None = None) -> None:
        """
        Send one e-mail through the Resend API.

        Raises:
            aiohttp.ClientError: If the API call fails
        """
        session = await self._get_session()
        body = {"from": self.config.email_from, "to": to, "subject": subject, "html": html_body}
        if reply_to:
            body["reply_to"] = reply_to
        headers = {"Authorization": f"Bearer {self.config.resend_api_key}"}
        async with session.post(RESEND_API_URL, json=body, headers=headers) as resp:
            resp.raise_for_status()

    async def send(
        self,
        event: Incident,
        settings: SecuritySettings,
        severity: str = "high",
    ) -> int:
        """
        Deliver an alert for an incident. Never raises.

        Args:
            event: The incident that triggered the alert
            settings: Current security settings (toggle and channel overrides)
            severity: critical, high or medium (embed color)

        Returns:
            Number of channels the alert was delivered to
        """
        if not settings.alerting_enabled:
            return 0
        if not await self._claim(event):
            logger.debug(f"Alert suppressed (duplicate): {event.key}")
            return 0

        tasks = []
        channels = []
        webhook_url = settings.discord_webhook_url or self.config.discord_webhook_url
        if webhook_url:
            payload = build_discord_payload(event, severity, self.config.site_url)
            tasks.append(self._post_discord(webhook_url, payload))
            channels.append("discord")

        alert_email = settings.alert_email or self.config.admin_alert_email
        if self.config.resend_api_key and alert_email:
            tasks.append(self._send_email(alert_email, event))
            channels.append("email")

        if not tasks:
            logger.debug("Alerting enabled but no channel configured")
            return 0

        results = await asyncio.gather(*tasks, return_exceptions=True)
        delivered = 0
        for channel, result in zip(channels, results):
            if isinstance(result, Exception):
                logger.error(f"{channel} alert failed: {result}")
            else:
                delivered += 1
        return delivered
