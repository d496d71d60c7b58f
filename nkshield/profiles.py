"""Attacker profiles: per-identity incident history and behavioral analysis."""

import logging
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any

from nkshield.errors import NkShieldError
from nkshield.models import (
    AttackerProfile,
    BehavioralPattern,
    Incident,
    ThreatScoreEntry,
    parse_timestamp,
    utc_now_iso,
)
from nkshield.store import KVStore

logger = logging.getLogger("nkshield.profiles")

PROFILE_PREFIX = "nk-profile:"
PROFILE_COUNT_PREFIX = "nk-profile-count:"
PROFILE_LIST_KEY = "nk-profile-list"
PROFILE_TTL = 2592000  # 30 days
MAX_HISTORY_ENTRIES = 100
MAX_PROFILE_INCIDENTS = 50
MAX_FORENSIC_ENTRIES = 50
MAX_UA_KEY_LENGTH = 100

RAPID_STEP_JUMP = 8
RAPID_WINDOW_DELTA = 5
AUTOMATED_SCAN_SAMPLE = 5
AUTOMATED_SCAN_MAX_AVG_MS = 5000

# Category -> substrings, checked in order (first match wins)
UA_CATEGORIES: list[tuple[str, tuple[str, ...]]] = [
    (
        "attack_tool",
        (
            "sqlmap", "nikto", "wfuzz", "nmap", "masscan", "zgrab", "gobuster",
            "dirbuster", "feroxbuster", "ffuf", "nuclei", "hydra", "acunetix",
            "nessus", "openvas", "w3af", "whatweb", "burpsuite", "havij",
        ),
    ),
    ("bot", ("googlebot", "bingbot", "crawler", "spider", "bot")),
    (
        "script",
        (
            "curl", "wget", "python-requests", "python", "go-http-client",
            "aiohttp", "httpie", "okhttp", "java/", "libwww-perl", "node-fetch", "axios",
        ),
    ),
    ("api_client", ("postman", "insomnia")),
    ("browser", ("mozilla", "chrome", "firefox", "safari", "edg/", "opera")),
]


def classify_user_agent(user_agent: str) -> str:
    """Categorize a user agent string; attack tools are matched first."""
    ua = user_agent.lower()
    for category, needles in UA_CATEGORIES:
        if any(needle in ua for needle in needles):
            return category
    return "unknown"


def _hours_between(first: str, last: str) -> float | None:
    start = parse_timestamp(first)
    end = parse_timestamp(last)
    if start is None or end is None:
        return None
    return (end - start).total_seconds() / 3600


def analyze_behavioral_patterns(profile: AttackerProfile) -> list[BehavioralPattern]:
    """
    Derive behavioral labels from a profile (pure, never stored).

    Args:
        profile: Attacker profile as stored

    Returns:
        Detected patterns, in a fixed order
    """
    patterns: list[BehavioralPattern] = []

    history = profile.threat_score_history
    if len(history) >= 2:
        first_score = history[0].score
        last_score = history[-1].score
        max_step = max(b.score - a.score for a, b in zip(history, history[1:]))
        hours = _hours_between(profile.first_seen, profile.last_seen)
        delta = last_score - first_score
        fast_window = hours is not None and hours < 1 and delta >= RAPID_WINDOW_DELTA
        if max_step >= RAPID_STEP_JUMP or fast_window:
            patterns.append(
                BehavioralPattern(
                    type="rapid_escalation",
                    severity="high",
                    description="Threat score increased rapidly",
                    details={
                        "scoreDelta": delta,
                        "maxStepJump": max_step,
                        "timeHours": round(hours, 3) if hours is not None else None,
                    },
                )
            )

    attack_types = [name for name, count in profile.attack_types.items() if count >= 1]
    if len(attack_types) >= 3:
        patterns.append(
            BehavioralPattern(
                type="diverse_attacks",
                severity="high",
                description=f"Using {len(attack_types)} different attack types",
                details={"attackTypes": sorted(attack_types)},
            )
        )

    ua_count = len(profile.user_agents)
    if ua_count >= 3:
        patterns.append(
            BehavioralPattern(
                type="ua_rotation",
                severity="medium",
                description=f"Rotating between {ua_count} different User-Agents",
                details={"userAgentCount": ua_count},
            )
        )

    if profile.total_incidents >= 10:
        patterns.append(
            BehavioralPattern(
                type="persistent",
                severity="high",
                description=f"{profile.total_incidents} incidents recorded",
                details={"totalIncidents": profile.total_incidents},
            )
        )

    if len(profile.incidents) >= AUTOMATED_SCAN_SAMPLE:
        stamps = [parse_timestamp(i.timestamp) for i in profile.incidents[-AUTOMATED_SCAN_SAMPLE:]]
        if all(s is not None for s in stamps):
            intervals = [(b - a).total_seconds() * 1000 for a, b in zip(stamps, stamps[1:])]
            avg_ms = sum(intervals) / len(intervals)
            if avg_ms < AUTOMATED_SCAN_MAX_AVG_MS:
                patterns.append(
                    BehavioralPattern(
                        type="automated_scan",
                        severity="high",
                        description="Automated scanning pattern detected (rapid requests)",
                        details={"avgIntervalMs": round(avg_ms)},
                    )
                )

    return patterns


def analyze_user_agents(profile: AttackerProfile | None) -> dict[str, Any]:
    """
    Rank and categorize the user agents seen for a profile.

    Returns:
        Dict with total, unique, userAgents (ranked), topUserAgent and
        diversity (unique / total, three decimals)
    """
    if profile is None or not profile.user_agents:
        return {"total": 0, "unique": 0, "userAgents": [], "topUserAgent": None, "diversity": "0.000"}

    ranked = sorted(profile.user_agents.items(), key=lambda item: item[1], reverse=True)
    classified = [
        {"userAgent": ua, "count": count, "category": classify_user_agent(ua)}
        for ua, count in ranked
    ]
    total = sum(profile.user_agents.values())
    diversity = len(classified) / total if total else 0.0
    return {
        "total": total,
        "unique": len(classified),
        "userAgents": classified,
        "topUserAgent": classified[0],
        "diversity": f"{diversity:.3f}",
    }


class ProfileStore:
    """Read-modify-write profile persistence on the KV store.

    `totalIncidents` is backed by an atomic side counter so concurrent
    writers never lose a count.  The other merged fields are last-write-wins:
    two overlapping writes for the same identity can drop one history entry.
    """

    def __init__(self, store: KVStore):
        self.store = store

    def _key(self, hashed_ip: str) -> str:
        return f"{PROFILE_PREFIX}{hashed_ip}"

    async def _load(self, hashed_ip: str) -> AttackerProfile | None:
        raw = await self.store.get(self._key(hashed_ip))
        if not isinstance(raw, dict):
            return None
        return AttackerProfile.from_dict(raw)

    async def _save(self, profile: AttackerProfile) -> None:
        data = profile.to_dict()
        data.pop("behavioralPatterns", None)
        await self.store.set(self._key(profile.hashed_ip), data, ex=PROFILE_TTL)
        await self.store.sadd(PROFILE_LIST_KEY, profile.hashed_ip)

    async def _next_incident_count(self, hashed_ip: str, stored_total: int) -> int:
        counter_key = f"{PROFILE_COUNT_PREFIX}{hashed_ip}"
        count = await self.store.incrby(counter_key, 1)
        if count <= stored_total:
            # Counter lost (expired or predates the profile); resync upward
            count = stored_total + 1
            await self.store.set(counter_key, count)
        await self.store.expire(counter_key, PROFILE_TTL)
        return count

    async def record_incident(self, hashed_ip: str, incident: Incident) -> AttackerProfile | None:
        """
        Merge an incident into the identity's profile.

        Failures are logged and reported as None; they never reach the caller.

        Args:
            hashed_ip: Hashed client identity
            incident: The incident to merge

        Returns:
            The updated profile, or None if the write failed
        """
        try:
            timestamp = incident.timestamp or utc_now_iso()
            profile = await self._load(hashed_ip)
            if profile is None:
                profile = AttackerProfile(hashed_ip=hashed_ip, first_seen=timestamp, last_seen=timestamp)

            profile.last_seen = timestamp
            profile.total_incidents = await self._next_incident_count(hashed_ip, profile.total_incidents)

            attack_type = incident.type or "unknown"
            profile.attack_types[attack_type] = profile.attack_types.get(attack_type, 0) + 1

            ua_key = (incident.user_agent or "unknown")[:MAX_UA_KEY_LENGTH]
            profile.user_agents[ua_key] = profile.user_agents.get(ua_key, 0) + 1

            if incident.threat_score is not None:
                profile.threat_score_history.append(
                    ThreatScoreEntry(
                        score=incident.threat_score,
                        level=incident.threat_level or "CLEAN",
                        timestamp=timestamp,
                        reason=attack_type,
                    )
                )
                profile.threat_score_history = profile.threat_score_history[-MAX_HISTORY_ENTRIES:]

            profile.incidents.append(
                replace(incident, type=attack_type, timestamp=timestamp, hashed_ip=None, request_details=None)
            )
            profile.incidents = profile.incidents[-MAX_PROFILE_INCIDENTS:]

            await self._save(profile)
            return profile
        except NkShieldError as e:
            logger.error(f"Failed to record incident for {hashed_ip[:12]}: {e}")
            return None
        except Exception as e:
            logger.error(f"Unexpected error recording incident for {hashed_ip[:12]}: {e}")
            return None

    async def get_profile(self, hashed_ip: str) -> AttackerProfile | None:
        """Load a profile with its behavioral patterns computed."""
        profile = await self._load(hashed_ip)
        if profile is None:
            return None
        profile.behavioral_patterns = analyze_behavioral_patterns(profile)
        return profile

    async def get_all_profiles(self, limit: int = 50, offset: int = 0) -> dict[str, Any]:
        """
        List profiles by most recent activity, pruning expired index entries.

        Returns:
            Dict with profiles (serialized), total, limit and offset
        """
        profiles: list[AttackerProfile] = []
        try:
            hashes = await self.store.smembers(PROFILE_LIST_KEY)
            for hashed_ip in hashes:
                profile = await self.get_profile(hashed_ip)
                if profile is None:
                    await self.store.srem(PROFILE_LIST_KEY, hashed_ip)
                    continue
                profiles.append(profile)
        except NkShieldError as e:
            logger.error(f"Failed to list profiles: {e}")
            return {"profiles": [], "total": 0, "limit": limit, "offset": offset}

        epoch = datetime.min.replace(tzinfo=timezone.utc)
        profiles.sort(key=lambda p: parse_timestamp(p.last_seen) or epoch, reverse=True)
        page = profiles[offset : offset + limit]
        return {
            "profiles": [p.to_dict() for p in page],
            "total": len(profiles),
            "limit": limit,
            "offset": offset,
        }

    async def add_forensic_data(self, hashed_ip: str, entry: dict[str, Any]) -> AttackerProfile | None:
        """Append canary forensic data, creating a minimal profile if needed."""
        try:
            profile = await self._load(hashed_ip)
            if profile is None:
                timestamp = entry.get("timestamp") or utc_now_iso()
                profile = AttackerProfile(hashed_ip=hashed_ip, first_seen=timestamp, last_seen=timestamp)
            profile.forensic_data.append(entry)
            profile.forensic_data = profile.forensic_data[-MAX_FORENSIC_ENTRIES:]
            await self._save(profile)
            return profile
        except NkShieldError as e:
            logger.error(f"Failed to add forensic data for {hashed_ip[:12]}: {e}")
            return None

    async def delete_profile(self, hashed_ip: str) -> bool:
        try:
            await self.store.delete(self._key(hashed_ip))
            await self.store.delete(f"{PROFILE_COUNT_PREFIX}{hashed_ip}")
            await self.store.srem(PROFILE_LIST_KEY, hashed_ip)
        except NkShieldError as e:
            logger.error(f"Failed to delete profile {hashed_ip[:12]}: {e}")
            return False
        logger.info(f"Deleted attacker profile {hashed_ip[:12]}")
        return True
