"""Tests for the incident log."""

import logging

import pytest
from conftest import BrokenKVStore

from nkshield.incidents import INCIDENT_LOG_KEY, IncidentLog, classify_incident
from nkshield.models import Incident


class TestClassifyIncident:
    """Tests for classify_incident."""

    @pytest.mark.parametrize(
        "key,label",
        [
            ("robots:/admin", "robots_violation"),
            ("threat:/api/kv", "threat_escalation"),
            ("block:/api/kv", "hard_block"),
            ("honeytoken:db-credentials", "honeytoken_access"),
            ("admin_backup", "honeytoken_access"),
            ("API-MASTER-KEY", "honeytoken_access"),
            ("canary:/private/api-keys.html", "security_event"),
            ("something-else", "security_event"),
            (None, "security_event"),
        ],
    )
    def test_labels(self, key, label):
        """Test each key prefix maps to its label."""
        assert classify_incident(key) == label


class TestIncidentLog:
    """Tests for IncidentLog."""

    @pytest.mark.asyncio
    async def test_most_recent_first(self, store):
        """Test incidents are listed newest first with a label."""
        log = IncidentLog(store)
        await log.append(Incident(type="robots_violation", key="robots:/admin"))
        await log.append(Incident(type="hard_block", key="block:/api/kv"))

        incidents = await log.list()

        assert [i["key"] for i in incidents] == ["block:/api/kv", "robots:/admin"]
        assert incidents[0]["label"] == "hard_block"

    @pytest.mark.asyncio
    async def test_bounded(self, store):
        """Test the log keeps at most max_entries."""
        log = IncidentLog(store, max_entries=10)
        for i in range(15):
            await log.append(Incident(type="x", key=f"threat:/{i}"))

        assert len(await store.lrange(INCIDENT_LOG_KEY, 0, -1)) == 10
        assert (await log.list())[0]["key"] == "threat:/14"

    @pytest.mark.asyncio
    async def test_max_entries_override(self, store):
        """Test the maxAlertsStored setting overrides the default cap."""
        log = IncidentLog(store)
        for i in range(15):
            await log.append(Incident(type="x", key=f"threat:/{i}"), max_entries=12)

        assert len(await log.list()) == 12

    @pytest.mark.asyncio
    async def test_limit(self, store):
        """Test list honours the limit."""
        log = IncidentLog(store)
        for i in range(5):
            await log.append(Incident(type="x", key=f"threat:/{i}"))

        assert len(await log.list(limit=2)) == 2

    @pytest.mark.asyncio
    async def test_clear(self, store):
        """Test clearing the log."""
        log = IncidentLog(store)
        await log.append(Incident(type="x", key="threat:/"))
        await log.clear()

        assert await log.list() == []

    @pytest.mark.asyncio
    async def test_persistence_failure_still_logs(self, caplog):
        """Test the event is logged even when the store is down."""
        log = IncidentLog(BrokenKVStore())

        with caplog.at_level(logging.WARNING, logger="nkshield.incidents"):
            stored = await log.append(Incident(type="x", key="threat:/"), tag="THREAT ESCALATION")

        assert stored is False
        assert any(getattr(r, "event", (None,))[0] == "THREAT ESCALATION" for r in caplog.records)
