"""Configuration loader for the nkshield service."""

import os
from dataclasses import dataclass
from typing import Optional

DEFAULT_SALT = "nk-default-rate-limit-salt-change-me"


def _bool_from_str(value: str, default: bool = False) -> bool:
    """Convert string to boolean."""
    return value.lower() in ("true", "1", "yes") if value else default


def _int_from_env(name: str, default: int, minimum: int = 0) -> int:
    """Read a non-negative integer environment variable."""
    raw = os.environ.get(name)
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ValueError(f"Invalid {name}: '{raw}'. Must be an integer") from None
    if value < minimum:
        raise ValueError(f"Invalid {name}: {value}. Must be >= {minimum}")
    return value


@dataclass
class ServiceConfig:
    """Service configuration from environment variables."""

    # Identity hashing
    rate_limit_salt: str = DEFAULT_SALT
    trusted_proxy_hops: int = 0

    # Backing store (None = in-memory)
    redis_url: Optional[str] = None

    # Rate limiter (sliding window)
    rate_limit_requests: int = 5
    rate_limit_window: int = 10

    # Upper bound for any tarpit delay, below the platform request timeout
    tarpit_hard_cap_ms: int = 10000

    # Admin sessions
    session_ttl_seconds: int = 86400
    secure_cookies: bool = True

    # Alert channels (security settings may override the webhook/email)
    discord_webhook_url: Optional[str] = None
    resend_api_key: Optional[str] = None
    admin_alert_email: Optional[str] = None
    email_from: str = "noreply@neuroklast.com"
    site_url: str = "https://neuroklast.com"

    # Contact form forwarding
    contact_email_to: Optional[str] = None

    # HTTP server
    listen_host: str = "0.0.0.0"
    listen_port: int = 8080


def load_config() -> ServiceConfig:
    """Load configuration from environment variables."""
    environment = os.environ.get("NKSHIELD_ENV", "development").lower()
    salt = os.environ.get("RATE_LIMIT_SALT")

    # A static fallback salt would let anyone with the source rebuild IP hashes
    if not salt and environment == "production":
        raise KeyError("RATE_LIMIT_SALT is required when NKSHIELD_ENV=production")

    return ServiceConfig(
        rate_limit_salt=salt or DEFAULT_SALT,
        trusted_proxy_hops=_int_from_env("TRUSTED_PROXY_HOPS", 0),
        redis_url=os.environ.get("REDIS_URL") or None,
        rate_limit_requests=_int_from_env("RATE_LIMIT_REQUESTS", 5, minimum=1),
        rate_limit_window=_int_from_env("RATE_LIMIT_WINDOW", 10, minimum=1),
        tarpit_hard_cap_ms=_int_from_env("TARPIT_HARD_CAP_MS", 10000),
        session_ttl_seconds=_int_from_env("SESSION_TTL_SECONDS", 86400, minimum=60),
        secure_cookies=_bool_from_str(
            os.environ.get("SECURE_COOKIES", ""), default=environment == "production"
        ),
        discord_webhook_url=os.environ.get("DISCORD_WEBHOOK_URL") or None,
        resend_api_key=os.environ.get("RESEND_API_KEY") or None,
        admin_alert_email=os.environ.get("ADMIN_ALERT_EMAIL") or None,
        email_from=os.environ.get("EMAIL_FROM", "noreply@neuroklast.com"),
        site_url=os.environ.get("SITE_URL", "https://neuroklast.com"),
        contact_email_to=os.environ.get("CONTACT_EMAIL_TO") or None,
        listen_host=os.environ.get("LISTEN_HOST", "0.0.0.0"),
        listen_port=_int_from_env("LISTEN_PORT", 8080, minimum=1),
    )
