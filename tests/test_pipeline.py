"""End-to-end tests for the request defense pipeline."""

from unittest.mock import AsyncMock, patch

import pytest
from aiohttp.test_utils import TestClient, TestServer, make_mocked_request
from conftest import BrokenKVStore, _make_config, browser_headers

from nkshield.api.common import SERVICES
from nkshield.app import create_app
from nkshield.honeytokens import TAUNT_MESSAGES, is_marked_attacker
from nkshield.incidents import INCIDENT_LOG_KEY
from nkshield.pipeline import RATE_LIMIT_STRIKE_PREFIX, honeytoken_key_for

SCANNER_UA = "sqlmap/1.7"


async def _score(app, hashed_ip) -> int:
    return (await app[SERVICES].scorer.current(hashed_ip)).score


class TestHoneytokenKeyFor:
    """Tests for honeytoken_key_for."""

    def test_path(self):
        """Test a decoy named by the path."""
        assert honeytoken_key_for(make_mocked_request("GET", "/admin_backup")) == "admin_backup"

    def test_kv_query(self):
        """Test a decoy named by ?key= on the KV API."""
        request = make_mocked_request("GET", "/api/kv?key=db-credentials")

        assert honeytoken_key_for(request) == "db-credentials"

    def test_query_elsewhere_ignored(self):
        """Test ?key= only counts on the KV API."""
        assert honeytoken_key_for(make_mocked_request("GET", "/search?key=db-credentials")) is None


# ---------------------------------------------------------------------------
# Scenarios
# ---------------------------------------------------------------------------


class TestHoneytokenScenario:
    """A crawler touches a decoy, then keeps browsing."""

    @pytest.mark.asyncio
    async def test_decoy_then_entropy(self, client, app, store, fake_sleep, local_hash):
        """Test the decoy 404s, flags the identity and decorates later responses."""
        resp = await client.get("/admin_backup", headers=browser_headers())

        assert resp.status == 404
        assert await resp.json() == {"error": "Not found"}
        assert await is_marked_attacker(store, local_hash)
        assert await _score(app, local_hash) == 5

        resp = await client.get("/robots.txt", headers=browser_headers())

        assert resp.status == 200
        noise = [h for h in resp.headers if h.startswith("X-Neural-Noise-")]
        assert len(noise) == 200
        assert len(fake_sleep.calls) == 2
        assert all(3.0 <= delay <= 8.0 for delay in fake_sleep.calls)

        incidents = await store.lrange(INCIDENT_LOG_KEY, 0, -1)
        assert [i["type"] for i in incidents].count("honeytoken_access") == 1

    @pytest.mark.asyncio
    async def test_decoy_incident_obeys_stored_cap(self, client, store, save_settings):
        """Test honeytoken incidents are trimmed to maxAlertsStored."""
        await save_settings(maxAlertsStored=10)
        for i in range(15):
            await store.lpush(INCIDENT_LOG_KEY, {"type": "old", "key": f"k{i}"})

        await client.get("/admin_backup", headers=browser_headers())

        incidents = await store.lrange(INCIDENT_LOG_KEY, 0, -1)
        assert len(incidents) == 10
        assert incidents[0]["type"] == "honeytoken_access"


class TestScannerScenario:
    """A scanner with an attack-tool user agent escalates to a block."""

    @pytest.mark.asyncio
    async def test_escalates_to_block(self, client, app, local_hash):
        """Test scores 4, 8, 12 end in a hard block and then the gate."""
        headers = browser_headers(**{"User-Agent": SCANNER_UA})
        statuses = []
        scores = []
        for _ in range(3):
            resp = await client.get("/robots.txt", headers=headers)
            statuses.append(resp.status)
            scores.append(await _score(app, local_hash))

        assert statuses == [200, 200, 403]
        assert scores == [4, 8, 12]
        assert (await resp.json())["message"] in TAUNT_MESSAGES

        resp = await client.get("/robots.txt", headers=headers)
        assert resp.status == 403
        assert await resp.json() == {"error": "Forbidden"}

        entry = await app[SERVICES].blocklist.get_entry(local_hash)
        assert entry.auto_blocked is True
        assert entry.score == 12

    @pytest.mark.asyncio
    async def test_block_incident_recorded(self, client, app, store, local_hash):
        """Test the blocking request is logged under a block: key."""
        headers = browser_headers(**{"User-Agent": SCANNER_UA})
        for _ in range(3):
            await client.get("/robots.txt", headers=headers)

        incidents = await store.lrange(INCIDENT_LOG_KEY, 0, -1)

        assert incidents[0]["key"] == "block:/robots.txt"
        assert incidents[0]["type"] == "suspicious_ua"
        assert incidents[0]["countermeasure"] == "hard_block"
        profile = await app[SERVICES].profiles.get_profile(local_hash)
        assert profile.total_incidents == 3


class TestRateLimitScenario:
    """A client floods the API."""

    @pytest.mark.asyncio
    async def test_sixth_request_limited(self, client, app, store, local_hash):
        """Test the sixth request is a 429, unscored, with a strike recorded."""
        statuses = []
        for _ in range(6):
            resp = await client.get("/api/auth", headers=browser_headers())
            statuses.append(resp.status)

        assert statuses == [200] * 5 + [429]
        assert "Retry-After" in resp.headers
        assert await _score(app, local_hash) == 0
        assert await store.get(f"{RATE_LIMIT_STRIKE_PREFIX}{local_hash}") is True

    @pytest.mark.asyncio
    async def test_strike_scored_on_next_admitted_request(self, client, app, store, local_hash):
        """Test a recorded strike adds points on the next request that gets through."""
        await store.set(f"{RATE_LIMIT_STRIKE_PREFIX}{local_hash}", True)

        await client.get("/robots.txt", headers=browser_headers())

        assert await _score(app, local_hash) == 2
        assert await store.get(f"{RATE_LIMIT_STRIKE_PREFIX}{local_hash}") is None

    @pytest.mark.asyncio
    async def test_disabled(self, client, save_settings):
        """Test rate limiting can be switched off."""
        await save_settings(rateLimitEnabled=False)

        for _ in range(7):
            resp = await client.get("/api/auth", headers=browser_headers())

        assert resp.status == 200


class TestRobotsScenario:
    """A crawler ignores robots.txt."""

    @pytest.mark.asyncio
    async def test_denied_and_flagged(self, client, store, local_hash):
        """Test the trap path is denied, logged and flags the identity."""
        resp = await client.get("/admin/settings", headers=browser_headers())

        assert resp.status == 403
        assert "text/html" in resp.headers["Content-Type"]
        assert await is_marked_attacker(store, local_hash)
        incidents = await store.lrange(INCIDENT_LOG_KEY, 0, -1)
        assert incidents[0]["key"] == "robots:/admin/settings"
        assert incidents[0]["type"] == "robots_violation"


class TestCountermeasureScenarios:
    """Optional countermeasures end to end."""

    @pytest.mark.asyncio
    async def test_sql_backfire(self, client, save_settings):
        """Test an injection probe gets the poisoned 500."""
        await save_settings(sqlBackfireEnabled=True)

        resp = await client.get(
            "/api/kv", params={"key": "1 UNION SELECT password FROM users"}, headers=browser_headers()
        )

        assert resp.status == 500
        assert (await resp.json())["error"] == "Database error"
        assert "X-DB-Status" in resp.headers

    @pytest.mark.asyncio
    async def test_zip_bomb(self, client, save_settings):
        """Test a scanner is served the zip bomb when enabled."""
        await save_settings(zipBombEnabled=True, zipBombOnSuspiciousUa=True)

        resp = await client.get("/robots.txt", headers=browser_headers(**{"User-Agent": SCANNER_UA}))

        assert resp.status == 200
        assert resp.headers["Content-Encoding"] == "gzip"
        assert resp.headers["Content-Type"] == "application/zip"
        resp.release()

    @pytest.mark.asyncio
    async def test_browser_never_bombed(self, client, save_settings):
        """Test a browser-looking request is not bombed."""
        await save_settings(zipBombEnabled=True, zipBombOnRobotsViolation=True)

        resp = await client.get("/admin", headers=browser_headers())

        assert resp.status == 403
        assert resp.headers.get("Content-Encoding") != "gzip"


# ---------------------------------------------------------------------------
# Stage ordering
# ---------------------------------------------------------------------------


class TestAdminRequests:
    """Admin traffic is only logged."""

    @pytest.mark.asyncio
    async def test_admin_skips_rate_limit(self, client, app, admin_headers):
        """Test the rate limiter is never consulted for admins."""
        limiter = app[SERVICES].rate_limiter
        with patch.object(limiter, "check", AsyncMock(return_value=True)) as check:
            resp = await client.get("/api/auth", headers=admin_headers)

        assert resp.status == 200
        check.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_visitor_consults_rate_limit(self, client, app):
        """Test the rate limiter runs for visitors on /api paths."""
        limiter = app[SERVICES].rate_limiter
        with patch.object(limiter, "check", AsyncMock(return_value=True)) as check:
            await client.get("/api/auth", headers=browser_headers())

        check.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_admin_scored_not_countered(self, client, app, store, admin_headers, local_hash):
        """Test admin trap hits are scored for the record but never flagged or denied."""
        resp = await client.get("/admin/settings", headers=admin_headers)

        assert resp.status == 404
        assert await _score(app, local_hash) == 3
        assert not await is_marked_attacker(store, local_hash)
        assert await store.lrange(INCIDENT_LOG_KEY, 0, -1) == []

    @pytest.mark.asyncio
    async def test_admin_never_dispatched(self, client, app, admin_headers):
        """Test the countermeasure dispatcher is skipped for admins."""
        pipeline_dispatch = AsyncMock()
        with patch("nkshield.pipeline.DefensePipeline.dispatch", pipeline_dispatch):
            resp = await client.get("/admin/settings", headers=admin_headers)

        assert resp.status == 404
        pipeline_dispatch.assert_not_awaited()


class TestBlocklistGate:
    """The blocklist gate runs before anything else."""

    @pytest.mark.asyncio
    async def test_blocked_before_scoring(self, client, app, local_hash):
        """Test a blocked identity is refused without being scored."""
        services = app[SERVICES]
        await services.blocklist.block_ip(local_hash, reason="manual")

        with patch.object(services.scorer, "increment", AsyncMock()) as increment:
            resp = await client.get("/robots.txt", headers=browser_headers())

        assert resp.status == 403
        assert await resp.json() == {"error": "Forbidden"}
        increment.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_store_outage_fails_closed(self, fake_sleep):
        """Test an unreachable store yields 503 rather than letting traffic through."""
        app = create_app(_make_config(), store=BrokenKVStore(), sleep=fake_sleep)
        client = TestClient(TestServer(app))
        await client.start_server()
        try:
            resp = await client.get("/robots.txt", headers=browser_headers())
            status = resp.status
        finally:
            await client.close()

        assert status == 503
