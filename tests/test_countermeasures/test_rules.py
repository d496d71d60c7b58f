"""Tests for the individual countermeasure rules."""

import gzip
import json
from unittest.mock import patch

import pytest

from nkshield.countermeasures import DispatchContext
from nkshield.countermeasures.log_poisoning import (
    FAKE_INTERNAL_PATHS,
    TERMINAL_POISON_STRINGS,
    log_poison_headers,
)
from nkshield.countermeasures.sql_backfire import (
    BACKFIRE_HEADERS,
    SqlBackfire,
    backfire_body,
    collect_probe_values,
    detect_sql_injection,
)
from nkshield.countermeasures.tarpit import Tarpit, tarpit_delay_ms
from nkshield.countermeasures.zipbomb import ZIP_BOMB_SIZE, ZipBomb, zip_bomb_payload
from nkshield.models import ScoreResult, ThreatLevel, ThreatReason
from nkshield.settings import SecuritySettings

SCANNER = [ThreatReason.SUSPICIOUS_UA, ThreatReason.MISSING_BROWSER_HEADERS]


def _ctx(settings, level=ThreatLevel.CLEAN, reasons=None, **kwargs) -> DispatchContext:
    return DispatchContext(
        hashed_ip="abc123",
        settings=settings,
        score=ScoreResult(score=0, level=level, reasons=list(reasons or [])),
        **kwargs,
    )


# ---------------------------------------------------------------------------
# Zip bomb
# ---------------------------------------------------------------------------


class TestZipBomb:
    """Tests for the zip bomb rule."""

    def test_payload_inflates_to_10_mib(self):
        """Test the payload is small and decompresses to 10 MiB of zeros."""
        payload = zip_bomb_payload()
        inflated = gzip.decompress(payload)

        assert len(payload) < 64 * 1024
        assert len(inflated) == ZIP_BOMB_SIZE
        assert inflated.count(0) == ZIP_BOMB_SIZE

    def test_payload_built_once(self):
        """Test the payload is cached per process."""
        assert zip_bomb_payload() is zip_bomb_payload()

    def test_disabled_by_default(self, services):
        """Test the rule is off unless zipBombEnabled."""
        settings = SecuritySettings(zip_bomb_on_suspicious_ua=True)

        assert not ZipBomb(services).applies(_ctx(settings, reasons=SCANNER))

    def test_never_for_browsers(self, services):
        """Test requests with no header signal are never bombed."""
        settings = SecuritySettings(zip_bomb_enabled=True, zip_bomb_on_honeytoken=True)
        ctx = _ctx(settings, reasons=[ThreatReason.HONEYTOKEN_ACCESS], honeytoken=True)

        assert not ZipBomb(services).applies(ctx)

    @pytest.mark.parametrize(
        "flag,kwargs",
        [
            ("zip_bomb_on_block", {"level": ThreatLevel.BLOCK}),
            ("zip_bomb_on_honeytoken", {"honeytoken": True}),
            ("zip_bomb_on_repeat_offender", {"prior_blocks": 3}),
            ("zip_bomb_on_robots_violation", {"reasons": SCANNER + [ThreatReason.ROBOTS_VIOLATION]}),
            ("zip_bomb_on_suspicious_ua", {}),
            ("zip_bomb_on_rate_limit", {"reasons": SCANNER + [ThreatReason.RATE_LIMIT_EXCEEDED]}),
        ],
    )
    def test_each_trigger(self, services, flag, kwargs):
        """Test every trigger flag fires on its own condition."""
        settings = SecuritySettings(zip_bomb_enabled=True, **{flag: True})
        kwargs.setdefault("reasons", SCANNER)

        assert ZipBomb(services).applies(_ctx(settings, **kwargs))

    def test_repeat_offender_needs_three_blocks(self, services):
        """Test two prior blocks are not enough."""
        settings = SecuritySettings(zip_bomb_enabled=True, zip_bomb_on_repeat_offender=True)

        assert not ZipBomb(services).applies(_ctx(settings, reasons=SCANNER, prior_blocks=2))

    @pytest.mark.asyncio
    async def test_action_response(self, services):
        """Test the response advertises gzip encoding."""
        settings = SecuritySettings(zip_bomb_enabled=True, zip_bomb_on_suspicious_ua=True)

        action = await ZipBomb(services).action(_ctx(settings, reasons=SCANNER))

        assert action.response.headers["Content-Encoding"] == "gzip"
        assert action.response.body == zip_bomb_payload()


# ---------------------------------------------------------------------------
# SQL backfire
# ---------------------------------------------------------------------------


class TestSqlInjectionDetection:
    """Tests for detect_sql_injection."""

    @pytest.mark.parametrize(
        "value",
        [
            "1 UNION SELECT username, password FROM users",
            "' OR '1'='1",
            "1; DROP TABLE users",
            "admin'; --",
            "1 AND SLEEP(5)",
            "1; WAITFOR DELAY '0:0:5'",
            "select * from information_schema.tables",
            "CHAR(65,66,67)",
        ],
    )
    def test_probes_detected(self, value):
        """Test common injection payloads are detected."""
        assert detect_sql_injection([value])

    @pytest.mark.parametrize(
        "value",
        ["Hello there", "O'Brien", "/api/kv?key=band-data", "select a release"],
    )
    def test_benign_values(self, value):
        """Test ordinary text is not mistaken for a probe."""
        assert not detect_sql_injection([value])

    def test_non_strings_ignored(self):
        """Test non-string values are skipped."""
        assert not detect_sql_injection([None, 42, {"a": "UNION SELECT"}])

    def test_collect_probe_values(self):
        """Test the URL, query values, string body fields and cookie are gathered."""
        values = collect_probe_values(
            "/api/kv?key=x",
            {"key": "x"},
            {"name": "n", "count": 3},
            "sid=1",
        )

        assert values == ["/api/kv?key=x", "x", "n", "sid=1"]


class TestSqlBackfire:
    """Tests for the SQL backfire rule."""

    def test_applies_on_probe(self, services):
        """Test scanner detection triggers the backfire."""
        settings = SecuritySettings(sql_backfire_enabled=True)

        assert SqlBackfire(services).applies(_ctx(settings, sql_probe=True))
        assert not SqlBackfire(services).applies(_ctx(settings))

    def test_honeytoken_trigger_opt_in(self, services):
        """Test honeytoken access only triggers when configured."""
        off = SecuritySettings(sql_backfire_enabled=True)
        on = SecuritySettings(sql_backfire_enabled=True, sql_backfire_on_honeytoken_access=True)

        assert not SqlBackfire(services).applies(_ctx(off, honeytoken=True))
        assert SqlBackfire(services).applies(_ctx(on, honeytoken=True))

    def test_disabled(self, services):
        """Test the module toggle wins."""
        assert not SqlBackfire(services).applies(_ctx(SecuritySettings(), sql_probe=True))

    @pytest.mark.asyncio
    async def test_response(self, services):
        """Test the 500 response carries poisoned headers and body."""
        settings = SecuritySettings(sql_backfire_enabled=True)

        action = await SqlBackfire(services).action(_ctx(settings, sql_probe=True))

        assert action.response.status == 500
        for name in BACKFIRE_HEADERS:
            assert name in action.response.headers
        body = json.loads(action.response.body)
        assert body["error"] == "Database error"
        assert "DROP TABLE" in body["debug"]["db_version"]

    def test_backfire_body_fields(self):
        """Test every payload field is populated."""
        body = backfire_body()

        assert len(body["details"]) == 3
        assert body["message"] in body["stack"]


# ---------------------------------------------------------------------------
# Tarpit
# ---------------------------------------------------------------------------


class TestTarpit:
    """Tests for the tarpit rule."""

    def test_delay_within_range(self):
        """Test delays fall inside the configured range."""
        for _ in range(50):
            assert 100 <= tarpit_delay_ms(100, 200, 10000) <= 200

    def test_delay_clamped_to_cap(self):
        """Test the hard cap bounds the delay."""
        assert tarpit_delay_ms(20000, 30000, 10000) == 10000

    def test_inverted_range_tolerated(self):
        """Test an inverted range is normalised."""
        assert 100 <= tarpit_delay_ms(200, 100, 10000) <= 200

    @pytest.mark.parametrize(
        "flag,kwargs",
        [
            ("tarpit_on_warn", {"level": ThreatLevel.WARN}),
            ("tarpit_on_warn", {"level": ThreatLevel.TARPIT}),
            ("tarpit_on_suspicious_ua", {"reasons": [ThreatReason.SUSPICIOUS_UA]}),
            ("tarpit_on_robots_violation", {"reasons": [ThreatReason.ROBOTS_VIOLATION]}),
            ("tarpit_on_honeytoken", {"honeytoken": True}),
            ("tarpit_on_block", {"level": ThreatLevel.BLOCK}),
        ],
    )
    def test_each_trigger(self, services, flag, kwargs):
        """Test each rule flag fires alone."""
        base = {
            "tarpit_on_warn": False,
            "tarpit_on_suspicious_ua": False,
            "tarpit_on_robots_violation": False,
            "tarpit_on_honeytoken": False,
            "tarpit_on_block": False,
        }
        base[flag] = True
        settings = SecuritySettings(**base)

        assert Tarpit(services).applies(_ctx(settings, **kwargs))

    def test_clean_not_tarpitted(self, services):
        """Test a clean request is not delayed."""
        assert not Tarpit(services).applies(_ctx(SecuritySettings()))

    @pytest.mark.asyncio
    async def test_action_uses_hard_cap(self, services):
        """Test the configured hard cap applies to the delay."""
        services.config.tarpit_hard_cap_ms = 500
        settings = SecuritySettings(tarpit_min_ms=1000, tarpit_max_ms=2000)

        action = await Tarpit(services).action(_ctx(settings, level=ThreatLevel.WARN))

        assert action.delay_ms == 500


# ---------------------------------------------------------------------------
# Log poisoning
# ---------------------------------------------------------------------------


class TestLogPoisonHeaders:
    """Tests for log_poison_headers."""

    def test_all_parts(self):
        """Test every enabled part contributes headers."""
        headers = log_poison_headers()

        assert headers["X-Debug-Route"] in FAKE_INTERNAL_PATHS
        assert headers["X-Log-Trace"] in TERMINAL_POISON_STRINGS
        assert headers["X-Trace-Auth"].startswith("Bearer ")
        assert len(headers) == 4

    def test_parts_toggle(self):
        """Test disabled parts are omitted."""
        headers = log_poison_headers(fake_headers=False, fake_paths=False, terminal_escape=True)

        assert list(headers) == ["X-Log-Trace"]

    def test_fake_server_header_choice(self):
        """Test the fake backend banner comes from the catalog."""
        with patch("nkshield.countermeasures.log_poisoning.random.choice", side_effect=lambda s: s[0]):
            headers = log_poison_headers(fake_paths=False, terminal_escape=False)

        assert headers["X-Powered-By"] == "Express/4.18.2"
