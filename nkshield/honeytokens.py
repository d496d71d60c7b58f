"""Honeytokens, attacker flagging, noise headers and the fingerprint pixel.

Honeytokens are decoy records planted in the content store.  They look
like real credentials or backup data but no legitimate code path ever
reads them, so any access is treated as confirmed malicious intent.  The
alarm is silent: callers answer with a plausible error so the attacker
does not learn they were detected.
"""

import base64
import logging
import secrets
from typing import TYPE_CHECKING, Optional

from aiohttp import web

from nkshield.errors import NkShieldError
from nkshield.models import Incident
from nkshield.store import KVStore

if TYPE_CHECKING:
    from nkshield.incidents import IncidentLog
    from nkshield.profiles import ProfileStore

logger = logging.getLogger("nkshield.honeytokens")

HONEYTOKEN_KEYS = (
    "admin_backup",
    "admin-backup-hash",
    "db-credentials",
    "api-master-key",
    "backup-admin-password",
)

DECOY_VALUES = {
    "admin_backup": "b2a4f8e1c3d5a7b9e0f2c4d6a8b0e1f3c5d7a9b1e3f5c7d9a1b3e5f7c9d1a3",
    "admin-backup-hash": "9f86d081884c7d659a2feaa0c55ad015a3bf4f1b2b0b822cd15d6c15b0f00a08",
    "db-credentials": '{"host":"internal-db.prod","user":"root","pass":"s3cret-fake"}',
    "api-master-key": "sk_live_fake_4eC39HqLyjWDarjtT1zdp7dc",
    "backup-admin-password": "e3b0c44298fc1c149afbf4c8996fb92427ae41e4649b934ca495991b7852b855",
}

FLAG_PREFIX = "nk-flagged:"
FLAG_TTL = 86400  # 24 hours

ENTROPY_HEADER_PREFIX = "X-Neural-Noise-"
DEFAULT_ENTROPY_HEADERS = 200

TAUNT_MESSAGES = (
    "Nice try, mf. Your IP hash is now a permanent resident in our blacklist.",
    "CONNECTION_TERMINATED: You're not half as fast as you think you are.",
    "FATAL_ERROR: Neural link severed. Go back to the playground.",
    "NOOB_DETECTED: Next time, try changing your User-Agent before hacking a band.",
)

DEFENSE_HEADERS = {
    "X-Neural-Defense": "Active. Target identified.",
    "X-Netrunner-Status": "Nice try, but you're barking up the wrong tree.",
    "X-Warning": "Stop poking the Baphomet. It might poke back.",
}

CLIENT_HINTS = (
    "Sec-CH-UA, Sec-CH-UA-Mobile, Sec-CH-UA-Platform, Sec-CH-UA-Platform-Version, "
    "Sec-CH-UA-Full-Version-List, Sec-CH-UA-Model, Sec-CH-UA-Arch, Sec-CH-UA-Bitness"
)
CRITICAL_CLIENT_HINTS = "Sec-CH-UA, Sec-CH-UA-Platform"

# 1x1 transparent PNG
PIXEL_PNG = base64.b64decode(
    "iVBORw0KGgoAAAANSUhEUgAAAAEAAAABCAYAAAAfFcSJAAAAC0lEQVQI12NgAAIABQABNl7BcQAAAABJRU5ErkJggg=="
)


def is_honeytoken(key: object) -> bool:
    """Check whether a key is a honeytoken (case-insensitive)."""
    if not isinstance(key, str):
        return False
    return key.lower() in HONEYTOKEN_KEYS


async def seed_honeytokens(store: KVStore) -> int:
    """
    Plant decoy values for every honeytoken key that is not already set.

    Returns:
        Number of keys written
    """
    written = 0
    for key, value in DECOY_VALUES.items():
        try:
            if await store.get(key) is None:
                await store.set(key, value)
                written += 1
        except NkShieldError as e:
            logger.warning(f"Could not seed honeytoken {key}: {e}")
    logger.info(f"Seeded {written} honeytoken(s)")
    return written


async def mark_attacker(store: KVStore, hashed_ip: str) -> None:
    """Flag an identity as a confirmed attacker for 24 hours. Never raises."""
    try:
        await store.set(f"{FLAG_PREFIX}{hashed_ip}", True, ex=FLAG_TTL)
    except NkShieldError as e:
        logger.warning(f"Could not flag attacker {hashed_ip[:12]}: {e}")


async def is_marked_attacker(store: KVStore, hashed_ip: str) -> bool:
    """Check the attacker flag; store errors read as not flagged."""
    try:
        return bool(await store.get(f"{FLAG_PREFIX}{hashed_ip}"))
    except NkShieldError:
        return False


async def trigger_honeytoken_alarm(
    store: KVStore,
    incident_log: "IncidentLog",
    hashed_ip: str,
    key: str,
    method: str,
    user_agent: str,
    profiles: Optional["ProfileStore"] = None,
    threat_score: int | None = None,
    threat_level: str | None = None,
    countermeasure: str = "log_only",
    max_entries: int | None = None,
) -> Incident:
    """
    Raise the silent alarm for a honeytoken access.

    Flags the identity and records a `honeytoken_access` incident regardless
    of its current score.  Every write is best-effort.  `max_entries` caps
    the incident log like the maxAlertsStored setting does elsewhere.

    Returns:
        The recorded incident
    """
    incident = Incident(
        type="honeytoken_access",
        key=key,
        method=method,
        user_agent=user_agent[:200],
        threat_score=threat_score,
        threat_level=threat_level,
        countermeasure=countermeasure,
        hashed_ip=hashed_ip,
    )
    await mark_attacker(store, hashed_ip)
    await incident_log.append(incident, tag="HONEYTOKEN ALERT", max_entries=max_entries)
    if profiles is not None:
        await profiles.record_incident(hashed_ip, incident)
    return incident


def entropy_headers(count: int = DEFAULT_ENTROPY_HEADERS) -> dict[str, str]:
    """Noise headers with 32 hex chars of cryptographically random data each."""
    return {f"{ENTROPY_HEADER_PREFIX}{i:03d}": secrets.token_hex(16) for i in range(count)}


def defense_headers() -> dict[str, str]:
    return dict(DEFENSE_HEADERS)


def random_taunt() -> str:
    return secrets.choice(TAUNT_MESSAGES)


def fingerprint_pixel_response() -> web.Response:
    """1x1 PNG that asks the client for its extended client hints."""
    headers = {
        "Cache-Control": "no-store, no-cache, must-revalidate",
        "Accept-CH": CLIENT_HINTS,
        "Critical-CH": CRITICAL_CLIENT_HINTS,
        **DEFENSE_HEADERS,
    }
    return web.Response(body=PIXEL_PNG, status=200, content_type="image/png", headers=headers)
