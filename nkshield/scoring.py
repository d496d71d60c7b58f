"""Threat scoring: request signals, cumulative scores and threat levels."""

import logging
from dataclasses import dataclass
from typing import Mapping

from nkshield.errors import NkShieldError
from nkshield.models import DEFAULT_REASON_POINTS, ScoreResult, ThreatLevel, ThreatReason
from nkshield.settings import SecuritySettings, SettingsStore
from nkshield.store import KVStore

logger = logging.getLogger("nkshield.scoring")

THREAT_SCORE_PREFIX = "nk-threat:"
THREAT_SCORE_TTL = 3600

# Substrings identifying offensive tooling (matched case-insensitively)
ATTACK_TOOL_SIGNATURES = (
    "sqlmap",
    "nikto",
    "wfuzz",
    "nmap",
    "masscan",
    "zgrab",
    "gobuster",
    "dirbuster",
    "dirb/",
    "feroxbuster",
    "ffuf",
    "nuclei",
    "hydra",
    "acunetix",
    "nessus",
    "openvas",
    "w3af",
    "whatweb",
    "burpsuite",
    "havij",
    "jaeles",
)

MIN_UA_LENGTH = 10


@dataclass(frozen=True)
class Thresholds:
    """Score boundaries for each escalation tier."""

    warn: int = 3
    tarpit: int = 7
    block: int = 12

    @classmethod
    def from_settings(cls, settings: SecuritySettings) -> "Thresholds":
        return cls(
            warn=settings.warn_threshold,
            tarpit=settings.tarpit_threshold,
            block=settings.auto_block_threshold,
        )


DEFAULT_THRESHOLDS = Thresholds()


def classify_threat_level(score: int, thresholds: Thresholds | None = None) -> ThreatLevel:
    """
    Map a cumulative score to a threat level.

    A score equal to a threshold maps to the higher level.

    Args:
        score: Cumulative threat score
        thresholds: Tier boundaries (defaults when omitted)

    Returns:
        The threat level for the score
    """
    t = thresholds or DEFAULT_THRESHOLDS
    if score < t.warn:
        return ThreatLevel.CLEAN
    if score < t.tarpit:
        return ThreatLevel.WARN
    if score < t.block:
        return ThreatLevel.TARPIT
    return ThreatLevel.BLOCK


def reason_points_from_settings(settings: SecuritySettings) -> dict[ThreatReason, int]:
    """Per-reason point values configured in settings."""
    return {
        ThreatReason.ROBOTS_VIOLATION: settings.points_robots_violation,
        ThreatReason.HONEYTOKEN_ACCESS: settings.points_honeytoken_access,
        ThreatReason.SUSPICIOUS_UA: settings.points_suspicious_ua,
        ThreatReason.MISSING_BROWSER_HEADERS: settings.points_missing_headers,
        ThreatReason.GENERIC_ACCEPT: settings.points_generic_accept,
        ThreatReason.RATE_LIMIT_EXCEEDED: settings.points_rate_limit_exceeded,
        ThreatReason.CANARY_DOCUMENT_OPENED: settings.points_canary_opened,
        ThreatReason.SQL_INJECTION_PROBE: settings.points_sql_injection_probe,
    }


async def get_effective_thresholds(settings_store: SettingsStore) -> Thresholds:
    """Thresholds from settings, or the defaults on any error."""
    try:
        return Thresholds.from_settings(await settings_store.load())
    except Exception as e:
        logger.warning(f"Falling back to default thresholds: {e}")
        return DEFAULT_THRESHOLDS


async def get_effective_reason_points(settings_store: SettingsStore) -> dict[ThreatReason, int]:
    """Reason points from settings, or the defaults on any error."""
    try:
        return reason_points_from_settings(await settings_store.load())
    except Exception as e:
        logger.warning(f"Falling back to default reason points: {e}")
        return dict(DEFAULT_REASON_POINTS)


def is_attack_tool(user_agent: str) -> bool:
    """Check whether a user agent names a known offensive tool."""
    ua = user_agent.lower()
    return any(sig in ua for sig in ATTACK_TOOL_SIGNATURES)


def detect_signals(headers: Mapping[str, str]) -> list[ThreatReason]:
    """
    Derive header-based threat signals for one request.

    Args:
        headers: Request headers (any case)

    Returns:
        Detected reasons, in catalog order
    """
    lowered = {str(k).lower(): str(v) for k, v in headers.items()}
    reasons: list[ThreatReason] = []

    ua = lowered.get("user-agent", "").strip()
    if len(ua) < MIN_UA_LENGTH or is_attack_tool(ua):
        reasons.append(ThreatReason.SUSPICIOUS_UA)

    if "accept-language" not in lowered and "accept-encoding" not in lowered:
        reasons.append(ThreatReason.MISSING_BROWSER_HEADERS)

    accept = lowered.get("accept", "").strip()
    if not accept or accept == "*/*":
        reasons.append(ThreatReason.GENERIC_ACCEPT)

    return reasons


class ThreatScorer:
    """Cumulative per-identity threat score on top of the KV store."""

    def __init__(self, store: KVStore):
        self.store = store

    def _key(self, hashed_ip: str) -> str:
        return f"{THREAT_SCORE_PREFIX}{hashed_ip}"

    async def increment(
        self,
        hashed_ip: str,
        reasons: list[ThreatReason],
        points: Mapping[ThreatReason, int] | None = None,
        thresholds: Thresholds | None = None,
    ) -> ScoreResult:
        """
        Add the points of every reason to the identity's score.

        The increment is a single atomic `incrby`, so concurrent requests
        never lose points.  Store failures degrade to score 0 / CLEAN.

        Args:
            hashed_ip: Hashed client identity
            reasons: Signals detected for this request
            points: Point value per reason (defaults when omitted)
            thresholds: Tier boundaries (defaults when omitted)

        Returns:
            ScoreResult with the updated score and level
        """
        table = points or DEFAULT_REASON_POINTS
        total = sum(max(int(table.get(r, DEFAULT_REASON_POINTS[r])), 0) for r in reasons)
        if total <= 0:
            return await self.current(hashed_ip, thresholds, reasons)

        key = self._key(hashed_ip)
        try:
            score = await self.store.incrby(key, total)
            await self.store.expire(key, THREAT_SCORE_TTL)
        except NkShieldError as e:
            logger.warning(f"Threat score update failed for {hashed_ip[:12]}: {e}")
            return ScoreResult(score=0, level=ThreatLevel.CLEAN, reasons=list(reasons))

        level = classify_threat_level(score, thresholds)
        logger.debug(
            f"Score {hashed_ip[:12]} +{total} -> {score} ({level.value}): "
            f"{', '.join(r.value for r in reasons)}"
        )
        return ScoreResult(score=score, level=level, reasons=list(reasons))

    async def current(
        self,
        hashed_ip: str,
        thresholds: Thresholds | None = None,
        reasons: list[ThreatReason] | None = None,
    ) -> ScoreResult:
        """Read the current score without changing it."""
        try:
            raw = await self.store.get(self._key(hashed_ip))
            score = int(raw or 0)
        except (NkShieldError, TypeError, ValueError) as e:
            logger.warning(f"Threat score read failed for {hashed_ip[:12]}: {e}")
            score = 0
        return ScoreResult(
            score=score,
            level=classify_threat_level(score, thresholds),
            reasons=list(reasons or []),
        )

    async def reset(self, hashed_ip: str) -> None:
        """Clear the identity's score (used on manual unblock)."""
        await self.store.delete(self._key(hashed_ip))
