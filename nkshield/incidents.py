"""Bounded, most-recent-first security incident log."""

import logging
from typing import Any

from nkshield.errors import NkShieldError
from nkshield.honeytokens import is_honeytoken
from nkshield.logging_setup import log_event
from nkshield.models import Incident
from nkshield.store import KVStore

logger = logging.getLogger("nkshield.incidents")

INCIDENT_LOG_KEY = "nk-honeytoken-alerts"
DEFAULT_MAX_ENTRIES = 500

INCIDENT_LABELS = (
    "robots_violation",
    "threat_escalation",
    "hard_block",
    "honeytoken_access",
    "security_event",
)

# Incident key prefix -> dashboard label
_PREFIX_LABELS = {
    "robots:": "robots_violation",
    "threat:": "threat_escalation",
    "block:": "hard_block",
    "honeytoken:": "honeytoken_access",
}


def classify_incident(key: Any) -> str:
    """
    Label an incident by inspecting its key.

    Bare honeytoken names (the key a scanner asked for) are labelled
    honeytoken_access; unrecognised keys are generic security events.
    """
    if not isinstance(key, str):
        return "security_event"
    for prefix, label in _PREFIX_LABELS.items():
        if key.startswith(prefix):
            return label
    if is_honeytoken(key):
        return "honeytoken_access"
    return "security_event"


class IncidentLog:
    """Capped list of incidents stored newest first."""

    def __init__(self, store: KVStore, max_entries: int = DEFAULT_MAX_ENTRIES):
        self.store = store
        self.max_entries = max_entries

    async def append(
        self, incident: Incident, tag: str = "SECURITY EVENT", max_entries: int | None = None
    ) -> bool:
        """
        Log and persist an incident. Persistence is best-effort.

        Args:
            incident: The incident to record
            tag: Log drain tag for the event line
            max_entries: Cap override (the maxAlertsStored setting)

        Returns:
            True if the incident was stored
        """
        entry = incident.to_dict()
        log_event(logger, tag, entry)
        try:
            await self.store.lpush(INCIDENT_LOG_KEY, entry)
            await self.store.ltrim(INCIDENT_LOG_KEY, 0, (max_entries or self.max_entries) - 1)
        except NkShieldError as e:
            logger.warning(f"Incident persistence failed: {e}")
            return False
        return True

    async def list(self, limit: int | None = None) -> list[dict[str, Any]]:
        """Most recent incidents first, each with a dashboard label."""
        count = limit or self.max_entries
        raw = await self.store.lrange(INCIDENT_LOG_KEY, 0, count - 1)
        incidents = []
        for entry in raw:
            if not isinstance(entry, dict):
                entry = {"key": str(entry)}
            incidents.append({**entry, "label": classify_incident(entry.get("key"))})
        return incidents

    async def clear(self) -> None:
        await self.store.delete(INCIDENT_LOG_KEY)
        logger.info("Security incident log cleared")
