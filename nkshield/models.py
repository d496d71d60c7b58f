"""Data models for threat scoring, incidents and attacker profiles."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional


def utc_now_iso() -> str:
    """Current UTC time as an ISO-8601 string."""
    return datetime.now(timezone.utc).isoformat()


def parse_timestamp(value: str) -> Optional[datetime]:
    """Parse an ISO-8601 timestamp, returning None when malformed."""
    if not isinstance(value, str):
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class ThreatLevel(Enum):
    """Escalation tiers, ordered from least to most severe."""

    CLEAN = "CLEAN"
    WARN = "WARN"
    TARPIT = "TARPIT"
    BLOCK = "BLOCK"


class ThreatReason(Enum):
    """Signal kinds that add points to a client's threat score."""

    HONEYTOKEN_ACCESS = "honeytoken_access"
    SUSPICIOUS_UA = "suspicious_ua"
    ROBOTS_VIOLATION = "robots_violation"
    MISSING_BROWSER_HEADERS = "missing_browser_headers"
    RATE_LIMIT_EXCEEDED = "rate_limit_exceeded"
    GENERIC_ACCEPT = "generic_accept"
    CANARY_DOCUMENT_OPENED = "canary_document_opened"
    SQL_INJECTION_PROBE = "sql_injection_probe"


DEFAULT_REASON_POINTS: dict[ThreatReason, int] = {
    ThreatReason.ROBOTS_VIOLATION: 3,
    ThreatReason.HONEYTOKEN_ACCESS: 5,
    ThreatReason.SUSPICIOUS_UA: 4,
    ThreatReason.MISSING_BROWSER_HEADERS: 2,
    ThreatReason.GENERIC_ACCEPT: 1,
    ThreatReason.RATE_LIMIT_EXCEEDED: 2,
    ThreatReason.CANARY_DOCUMENT_OPENED: 5,
    ThreatReason.SQL_INJECTION_PROBE: 4,
}


@dataclass
class ScoreResult:
    """Outcome of a score update for one request."""

    score: int
    level: ThreatLevel
    reasons: list[ThreatReason] = field(default_factory=list)


@dataclass
class ThreatScoreEntry:
    """One point on an identity's threat-score timeline."""

    score: int
    level: str
    timestamp: str
    reason: str = "unknown"

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "score": self.score,
            "level": self.level,
            "timestamp": self.timestamp,
            "reason": self.reason,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ThreatScoreEntry":
        return cls(
            score=int(data.get("score", 0)),
            level=str(data.get("level", ThreatLevel.CLEAN.value)),
            timestamp=str(data.get("timestamp", "")),
            reason=str(data.get("reason", "unknown")),
        )


@dataclass
class Incident:
    """A single consequential security event."""

    type: str
    key: str = ""
    method: str = "GET"
    user_agent: str = ""
    threat_score: Optional[int] = None
    threat_level: Optional[str] = None
    countermeasure: str = "log_only"
    timestamp: str = field(default_factory=utc_now_iso)
    hashed_ip: Optional[str] = None
    request_details: Optional[dict[str, Any]] = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        data: dict[str, Any] = {
            "type": self.type,
            "key": self.key,
            "method": self.method,
            "userAgent": self.user_agent,
            "threatScore": self.threat_score,
            "threatLevel": self.threat_level,
            "countermeasure": self.countermeasure,
            "timestamp": self.timestamp,
        }
        if self.hashed_ip is not None:
            data["hashedIp"] = self.hashed_ip
        if self.request_details is not None:
            data["requestDetails"] = self.request_details
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Incident":
        return cls(
            type=str(data.get("type", "unknown")),
            key=str(data.get("key", "")),
            method=str(data.get("method", "GET")),
            user_agent=str(data.get("userAgent", "")),
            threat_score=data.get("threatScore"),
            threat_level=data.get("threatLevel"),
            countermeasure=str(data.get("countermeasure", "log_only")),
            timestamp=str(data.get("timestamp", "")),
            hashed_ip=data.get("hashedIp"),
            request_details=data.get("requestDetails"),
        )


@dataclass
class BlocklistEntry:
    """A hard block on one hashed identity."""

    hashed_ip: str
    reason: str
    blocked_at: str
    auto_blocked: bool = False
    ttl_seconds: int = 604800
    score: Optional[int] = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        data: dict[str, Any] = {
            "hashedIp": self.hashed_ip,
            "reason": self.reason,
            "blockedAt": self.blocked_at,
            "autoBlocked": self.auto_blocked,
            "ttlSeconds": self.ttl_seconds,
        }
        if self.score is not None:
            data["score"] = self.score
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "BlocklistEntry":
        return cls(
            hashed_ip=str(data.get("hashedIp", "")),
            reason=str(data.get("reason", "manual")),
            blocked_at=str(data.get("blockedAt", "")),
            auto_blocked=bool(data.get("autoBlocked", False)),
            ttl_seconds=int(data.get("ttlSeconds", 604800)),
            score=data.get("score"),
        )


@dataclass
class BehavioralPattern:
    """Derived behavioral label computed on profile read."""

    type: str
    severity: str
    description: str
    details: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "severity": self.severity,
            "description": self.description,
            "details": self.details,
        }


@dataclass
class AttackerProfile:
    """Accumulated history for one hashed identity."""

    hashed_ip: str
    first_seen: str
    last_seen: str
    total_incidents: int = 0
    attack_types: dict[str, int] = field(default_factory=dict)
    user_agents: dict[str, int] = field(default_factory=dict)
    threat_score_history: list[ThreatScoreEntry] = field(default_factory=list)
    incidents: list[Incident] = field(default_factory=list)
    forensic_data: list[dict[str, Any]] = field(default_factory=list)
    behavioral_patterns: list[BehavioralPattern] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "hashedIp": self.hashed_ip,
            "firstSeen": self.first_seen,
            "lastSeen": self.last_seen,
            "totalIncidents": self.total_incidents,
            "attackTypes": dict(self.attack_types),
            "userAgents": dict(self.user_agents),
            "threatScoreHistory": [e.to_dict() for e in self.threat_score_history],
            "incidents": [i.to_dict() for i in self.incidents],
            "forensicData": list(self.forensic_data),
            "behavioralPatterns": [p.to_dict() for p in self.behavioral_patterns],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "AttackerProfile":
        """Rebuild a profile from its stored form (derived fields are dropped)."""
        return cls(
            hashed_ip=str(data.get("hashedIp", "")),
            first_seen=str(data.get("firstSeen", "")),
            last_seen=str(data.get("lastSeen", "")),
            total_incidents=int(data.get("totalIncidents", 0) or 0),
            attack_types=dict(data.get("attackTypes") or {}),
            user_agents=dict(data.get("userAgents") or {}),
            threat_score_history=[
                ThreatScoreEntry.from_dict(e) for e in data.get("threatScoreHistory") or []
            ],
            incidents=[Incident.from_dict(i) for i in data.get("incidents") or []],
            forensic_data=list(data.get("forensicData") or []),
        )
