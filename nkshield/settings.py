"""Server-side security settings (admin-editable singleton)."""

import logging
from dataclasses import dataclass, field, fields, replace
from typing import Any

import validators

from nkshield.errors import NkShieldError, ValidationError
from nkshield.store import KVStore

logger = logging.getLogger("nkshield.settings")

SETTINGS_KEY = "nk-security-settings"
SCHEMA_VERSION = 1


def _opt(wire: str, default: Any, lo: int | None = None, hi: int | None = None):
    """Declare a settings field with its camelCase wire name and bounds."""
    return field(default=default, metadata={"wire": wire, "range": (lo, hi)})


@dataclass(frozen=True)
class SecuritySettings:
    """Every tunable of the defense engine, each with a compiled-in default."""

    # Module toggles
    honeytokens_enabled: bool = _opt("honeytokensEnabled", True)
    rate_limit_enabled: bool = _opt("rateLimitEnabled", True)
    robots_trap_enabled: bool = _opt("robotsTrapEnabled", True)
    entropy_injection_enabled: bool = _opt("entropyInjectionEnabled", True)
    suspicious_ua_blocking_enabled: bool = _opt("suspiciousUaBlockingEnabled", True)
    session_binding_enabled: bool = _opt("sessionBindingEnabled", True)
    threat_scoring_enabled: bool = _opt("threatScoringEnabled", True)
    hard_block_enabled: bool = _opt("hardBlockEnabled", True)
    zip_bomb_enabled: bool = _opt("zipBombEnabled", False)
    alerting_enabled: bool = _opt("alertingEnabled", False)
    sql_backfire_enabled: bool = _opt("sqlBackfireEnabled", False)
    canary_documents_enabled: bool = _opt("canaryDocumentsEnabled", False)
    log_poisoning_enabled: bool = _opt("logPoisoningEnabled", False)

    # Storage and timing
    max_alerts_stored: int = _opt("maxAlertsStored", 500, 10, 10000)
    tarpit_min_ms: int = _opt("tarpitMinMs", 3000, 0, 30000)
    tarpit_max_ms: int = _opt("tarpitMaxMs", 8000, 0, 60000)
    session_ttl_seconds: int = _opt("sessionTtlSeconds", 14400, 300, 86400)

    # Thresholds
    warn_threshold: int = _opt("warnThreshold", 3, 1, 50)
    tarpit_threshold: int = _opt("tarpitThreshold", 7, 1, 50)
    auto_block_threshold: int = _opt("autoBlockThreshold", 12, 3, 50)

    # Per-reason points
    points_robots_violation: int = _opt("pointsRobotsViolation", 3, 0, 100)
    points_honeytoken_access: int = _opt("pointsHoneytokenAccess", 5, 0, 100)
    points_suspicious_ua: int = _opt("pointsSuspiciousUa", 4, 0, 100)
    points_missing_headers: int = _opt("pointsMissingHeaders", 2, 0, 100)
    points_generic_accept: int = _opt("pointsGenericAccept", 1, 0, 100)
    points_rate_limit_exceeded: int = _opt("pointsRateLimitExceeded", 2, 0, 100)
    points_canary_opened: int = _opt("pointsCanaryOpened", 5, 0, 100)
    points_sql_injection_probe: int = _opt("pointsSqlInjectionProbe", 4, 0, 100)

    # Tarpit rules
    tarpit_on_warn: bool = _opt("tarpitOnWarn", True)
    tarpit_on_suspicious_ua: bool = _opt("tarpitOnSuspiciousUa", True)
    tarpit_on_robots_violation: bool = _opt("tarpitOnRobotsViolation", True)
    tarpit_on_honeytoken: bool = _opt("tarpitOnHoneytoken", False)
    tarpit_on_block: bool = _opt("tarpitOnBlock", False)

    # Zip bomb rules
    zip_bomb_on_block: bool = _opt("zipBombOnBlock", False)
    zip_bomb_on_honeytoken: bool = _opt("zipBombOnHoneytoken", False)
    zip_bomb_on_repeat_offender: bool = _opt("zipBombOnRepeatOffender", False)
    zip_bomb_on_robots_violation: bool = _opt("zipBombOnRobotsViolation", False)
    zip_bomb_on_suspicious_ua: bool = _opt("zipBombOnSuspiciousUa", False)
    zip_bomb_on_rate_limit: bool = _opt("zipBombOnRateLimit", False)

    # SQL backfire rules
    sql_backfire_on_scanner_detection: bool = _opt("sqlBackfireOnScannerDetection", True)
    sql_backfire_on_honeytoken_access: bool = _opt("sqlBackfireOnHoneytokenAccess", False)

    # Canary document rules
    canary_phone_home_on_open: bool = _opt("canaryPhoneHomeOnOpen", True)
    canary_collect_fingerprint: bool = _opt("canaryCollectFingerprint", True)
    canary_alert_on_callback: bool = _opt("canaryAlertOnCallback", True)

    # Log poisoning rules
    log_poison_fake_headers: bool = _opt("logPoisonFakeHeaders", True)
    log_poison_terminal_escape: bool = _opt("logPoisonTerminalEscape", True)
    log_poison_fake_paths: bool = _opt("logPoisonFakePaths", True)

    # Alert channels (empty = use environment configuration)
    discord_webhook_url: str = _opt("discordWebhookUrl", "")
    alert_email: str = _opt("alertEmail", "")

    schema_version: int = _opt("schemaVersion", SCHEMA_VERSION, 1, None)

    def to_dict(self) -> dict[str, Any]:
        """Convert to the camelCase wire format."""
        return {f.metadata["wire"]: getattr(self, f.name) for f in fields(self)}


_WIRE_FIELDS = {f.metadata["wire"]: f for f in fields(SecuritySettings)}


def _check_value(wire: str, value: Any) -> str | None:
    """Return an error message if value is not acceptable for the field."""
    option = _WIRE_FIELDS[wire]
    expected = type(option.default)
    if expected is bool:
        if not isinstance(value, bool):
            return f"{wire} must be a boolean"
        return None
    if expected is int:
        if isinstance(value, bool) or not isinstance(value, int):
            return f"{wire} must be an integer"
        lo, hi = option.metadata["range"]
        if lo is not None and value < lo:
            return f"{wire} must be >= {lo}"
        if hi is not None and value > hi:
            return f"{wire} must be <= {hi}"
        return None
    if not isinstance(value, str):
        return f"{wire} must be a string"
    if len(value) > 500:
        return f"{wire} is too long"
    return None


def merge_settings(base: SecuritySettings, partial: Any) -> SecuritySettings:
    """
    Merge a persisted partial dict over base, field by field.

    Unknown keys and values of the wrong type or range are skipped, so a
    corrupt record degrades to defaults instead of breaking the defense.
    """
    if not isinstance(partial, dict):
        return base
    updates: dict[str, Any] = {}
    for wire, value in partial.items():
        if wire not in _WIRE_FIELDS:
            continue
        if _check_value(wire, value) is not None:
            logger.debug(f"Ignoring invalid stored setting {wire}={value!r}")
            continue
        updates[_WIRE_FIELDS[wire].name] = value
    return replace(base, **updates) if updates else base


def validate_partial(partial: Any) -> dict[str, Any]:
    """
    Validate an admin-submitted settings update.

    Args:
        partial: Decoded JSON body (camelCase keys)

    Returns:
        The accepted subset (unknown keys dropped)

    Raises:
        ValidationError: On a mistyped, out-of-range or malformed value
    """
    if not isinstance(partial, dict):
        raise ValidationError("Request body must be a JSON object")

    accepted: dict[str, Any] = {}
    for wire, value in partial.items():
        if wire not in _WIRE_FIELDS or wire == "schemaVersion":
            continue
        error = _check_value(wire, value)
        if error:
            raise ValidationError(error)
        accepted[wire] = value

    webhook = accepted.get("discordWebhookUrl")
    if webhook and not validators.url(webhook):
        raise ValidationError("discordWebhookUrl must be a valid URL")
    email = accepted.get("alertEmail")
    if email and not validators.email(email):
        raise ValidationError("alertEmail must be a valid email address")
    return accepted


def _check_consistency(settings: SecuritySettings) -> None:
    if not settings.warn_threshold < settings.tarpit_threshold < settings.auto_block_threshold:
        raise ValidationError(
            "Thresholds must satisfy warnThreshold < tarpitThreshold < autoBlockThreshold"
        )
    if settings.tarpit_min_ms > settings.tarpit_max_ms:
        raise ValidationError("tarpitMinMs must not exceed tarpitMaxMs")


class SettingsStore:
    """Loads and persists the security settings singleton."""

    def __init__(self, store: KVStore):
        self.store = store

    async def load(self) -> SecuritySettings:
        """Read settings, falling back to defaults on any error. Never raises."""
        try:
            stored = await self.store.get(SETTINGS_KEY)
        except NkShieldError as e:
            logger.warning(f"Settings read failed, using defaults: {e}")
            return SecuritySettings()
        except Exception as e:
            logger.error(f"Unexpected settings read failure, using defaults: {e}")
            return SecuritySettings()
        return merge_settings(SecuritySettings(), stored)

    async def save(self, partial: Any) -> SecuritySettings:
        """
        Validate and merge an update over the current settings (last write wins).

        Raises:
            ValidationError: If the update is malformed or inconsistent
            StoreUnavailableError: If the store cannot be written
        """
        accepted = validate_partial(partial)
        current = await self.load()
        updated = merge_settings(current, accepted)
        _check_consistency(updated)
        await self.store.set(SETTINGS_KEY, updated.to_dict())
        logger.info(f"Security settings updated: {sorted(accepted)}")
        return updated
