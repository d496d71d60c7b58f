"""Log poisoning: misleading headers for flagged attackers.

Fake backend banners and internal routes corrupt reconnaissance output;
ANSI escape sequences garble terminal-based log viewers.  Browsers ignore
all of it.
"""

import random
import secrets

from nkshield.countermeasures.base import Decoration, DispatchContext

FAKE_INTERNAL_PATHS = (
    "/internal/api/v2/users/export",
    "/internal/graphql?query={users{id,email,password}}",
    "/api/v3/admin/database/dump",
    "/debug/pprof/heap",
    "/actuator/env",
    "/.well-known/openid-configuration",
    "/api/internal/keys/rotate",
    "/admin/phpmyadmin/sql.php",
    "/wp-json/wp/v2/users",
    "/api/v1/secrets/list",
)

FAKE_SERVER_HEADERS = (
    ("X-Powered-By", lambda: "Express/4.18.2"),
    ("X-AspNet-Version", lambda: "4.0.30319"),
    ("X-Backend", lambda: "Apache/2.4.54 (Ubuntu)"),
    ("X-Debug-Token", lambda: secrets.token_hex(16)),
    ("X-Request-Id", lambda: f"req_{secrets.token_hex(12)}"),
    ("X-Upstream", lambda: "backend-01.prod.internal:8443"),
    ("X-Cache-Key", lambda: f"cache:{secrets.token_hex(8)}:prod"),
)

TERMINAL_POISON_STRINGS = (
    "\x1b[2J\x1b[H",
    "\x1b]0;SCAN_DETECTED\x07",
    "\x1b[?25l",
    "\x1b[31m[CRITICAL]\x1b[0m Your scanner has been detected and logged.",
    "\x1b[5m[!] WARNING: Intrusion countermeasures activated\x1b[0m",
)


def log_poison_headers(fake_headers: bool = True, fake_paths: bool = True, terminal_escape: bool = True) -> dict[str, str]:
    """Build the poisoned header set for one response."""
    headers: dict[str, str] = {}
    if fake_headers:
        name, value = random.choice(FAKE_SERVER_HEADERS)
        headers[name] = value()
        headers["X-Trace-Auth"] = f"Bearer {secrets.token_urlsafe(32)}"
    if fake_paths:
        headers["X-Debug-Route"] = random.choice(FAKE_INTERNAL_PATHS)
    if terminal_escape:
        headers["X-Log-Trace"] = random.choice(TERMINAL_POISON_STRINGS)
    return headers


class LogPoisoning(Decoration):
    name = "log_poisoning"

    def applies(self, ctx: DispatchContext) -> bool:
        return ctx.flagged and ctx.settings.log_poisoning_enabled

    def headers(self, ctx: DispatchContext) -> dict[str, str]:
        s = ctx.settings
        return log_poison_headers(
            fake_headers=s.log_poison_fake_headers,
            fake_paths=s.log_poison_fake_paths,
            terminal_escape=s.log_poison_terminal_escape,
        )
