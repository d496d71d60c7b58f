"""SSRF guard for server-side fetches of user-supplied URLs."""

import ipaddress
import re
from urllib.parse import urlsplit

import validators

from nkshield.errors import ValidationError

BLOCKED_HOSTNAMES = frozenset(
    {
        "localhost",
        "metadata",
        "metadata.google.internal",
        "metadata.goog",
        "instance-data",
        "instance-data.ec2.internal",
    }
)
BLOCKED_SUFFIXES = (".localhost", ".internal", ".local")

_NUMERIC_PART = re.compile(r"^(0x[0-9a-f]*|[0-9]+)$", re.IGNORECASE)


def _parse_numeric_part(part: str) -> int:
    lowered = part.lower()
    if lowered.startswith("0x"):
        return int(lowered[2:] or "0", 16)
    if len(part) > 1 and part.startswith("0"):
        return int(part, 8)
    return int(part, 10)


def parse_obfuscated_ipv4(host: str) -> ipaddress.IPv4Address | None:
    """
    Decode the address forms `inet_aton` accepts: dword (`2130706433`),
    hex (`0x7f000001`), octal (`0177.0.0.1`) and short forms (`127.1`).

    Returns:
        The decoded address, or None if host is not a numeric IPv4 form
    """
    parts = host.rstrip(".").split(".")
    if not 1 <= len(parts) <= 4 or not all(_NUMERIC_PART.match(p) for p in parts):
        return None
    try:
        values = [_parse_numeric_part(p) for p in parts]
    except ValueError:
        return None

    *head, last = values
    if any(v > 255 for v in head) or last >= 256 ** (5 - len(values)):
        return None
    number = 0
    for value in head:
        number = number * 256 + value
    number = number * 256 ** (5 - len(values)) + last
    return ipaddress.IPv4Address(number)


def is_blocked_address(address: ipaddress.IPv4Address | ipaddress.IPv6Address) -> bool:
    if isinstance(address, ipaddress.IPv6Address) and address.ipv4_mapped is not None:
        address = address.ipv4_mapped
    return (
        address.is_loopback
        or address.is_private
        or address.is_link_local
        or address.is_unspecified
        or address.is_reserved
        or address.is_multicast
        or not address.is_global
    )


def is_blocked_host(hostname: str) -> bool:
    """Check a hostname against internal names and non-public addresses."""
    host = hostname.strip().lower().rstrip(".")
    if not host:
        return True
    if host in BLOCKED_HOSTNAMES or host.endswith(BLOCKED_SUFFIXES):
        return True
    try:
        return is_blocked_address(ipaddress.ip_address(host))
    except ValueError:
        pass
    numeric = parse_obfuscated_ipv4(host)
    if numeric is not None:
        # Any non-canonical numeric form is an evasion attempt
        return True
    return False


def validate_proxy_url(url: str) -> str:
    """
    Validate a URL for server-side fetching.

    Raises:
        ValidationError: If the URL is malformed or targets an internal host
    """
    if not isinstance(url, str) or not url or len(url) > 2048:
        raise ValidationError("url parameter is required")
    parts = urlsplit(url)
    if parts.scheme.lower() not in ("http", "https") or not parts.hostname:
        raise ValidationError("Invalid URL")
    if parts.username or parts.password:
        raise ValidationError("Invalid URL")
    if is_blocked_host(parts.hostname):
        raise ValidationError("Blocked host")
    if not validators.url(url):
        raise ValidationError("Invalid URL")
    return url
