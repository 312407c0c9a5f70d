"""
Tests for the Aggregator — composition, projections, stale-result guard.
"""

import asyncio

import pytest

from connectors.aggregator import IntegrationsSnapshot, compose
from utils.schemas import (
    CanonicalStatus,
    Connection,
    HealthRecord,
    HealthStatus,
    HealthSummary,
    IntegrationDescriptor,
)


def _descriptor(id_: str, category: str = "Other", popular: bool = False) -> IntegrationDescriptor:
    return IntegrationDescriptor(id=id_, name=id_.title(), description="", category=category, popular=popular)


def _connection(connector: str, status=CanonicalStatus.ACTIVE) -> Connection:
    return Connection(id=f"conn-{connector}", connector_id=connector, status=status, connected_at="2024-01-01")


CATALOG = [
    _descriptor("gmail", "Communication", popular=True),
    _descriptor("slack", "Communication", popular=True),
    _descriptor("notion", "Productivity"),
    _descriptor("acme"),
]


class TestCompose:
    def test_connected_and_status(self):
        view = compose(
            CATALOG,
            [_connection("gmail"), _connection("slack"), _connection("notion", CanonicalStatus.INACTIVE)],
            [HealthRecord(connector="gmail", status=HealthStatus.ERROR, error="revoked")],
        )

        gmail = view.get("gmail")
        assert gmail.connected is True
        assert gmail.status == "error"
        assert gmail.error_message == "revoked"
        assert gmail.connection_id == "conn-gmail"

        # connected but not yet checked
        assert view.get("slack").status == "connected"
        # inactive connection does not count as connected
        assert view.get("notion").connected is False
        assert view.get("notion").status == "disconnected"
        assert view.get("missing") is None

    def test_health_for_disconnected_integration_is_ignored(self):
        view = compose(CATALOG, [], [HealthRecord(connector="gmail", status=HealthStatus.HEALTHY)])
        assert view.get("gmail").status == "disconnected"

    def test_projections(self):
        view = compose(
            CATALOG,
            [_connection("gmail")],
            HealthSummary(
                integrations=[HealthRecord(connector="gmail", status=HealthStatus.ERROR)],
                overall_status=HealthStatus.ERROR,
            ),
        )

        assert sorted(view.by_category) == ["Communication", "Other", "Productivity"]
        assert [i.id for i in view.by_category["Communication"]] == ["gmail", "slack"]
        assert [i.id for i in view.popular] == ["gmail", "slack"]
        assert [i.id for i in view.connected] == ["gmail"]
        assert [i.id for i in view.disconnected] == ["slack", "notion", "acme"]
        assert [i.id for i in view.by_status("error")] == ["gmail"]

        stats = view.stats
        assert (stats.total, stats.connected, stats.disconnected, stats.errors) == (4, 1, 3, 1)

    def test_groupings_always_consistent_with_integrations(self):
        view = compose(CATALOG, [_connection("acme"), _connection("notion")])
        stats = view.stats
        assert stats.connected + stats.disconnected == stats.total == len(view.integrations)
        assert len(view.connected) == stats.connected
        assert sum(len(v) for v in view.by_category.values()) == stats.total


class TestIntegrationsSnapshot:
    @pytest.mark.asyncio
    async def test_recomputes_as_inputs_arrive_in_any_order(self):
        catalog_ready = asyncio.Event()
        views = []

        async def fetch_catalog():
            await catalog_ready.wait()
            return CATALOG

        async def fetch_connections():
            return [_connection("gmail")]

        snapshot = IntegrationsSnapshot(fetch_catalog, fetch_connections, on_change=views.append)
        snapshot.refresh()
        await asyncio.sleep(0)
        await asyncio.sleep(0)

        # connections arrived first: nothing to show without a catalog yet
        assert len(snapshot.view) == 0

        catalog_ready.set()
        view = await snapshot.wait()
        assert view.get("gmail").connected is True
        assert len(views) == 2
        snapshot.close()

    @pytest.mark.asyncio
    async def test_close_cancels_and_discards_late_results(self):
        started = asyncio.Event()

        async def slow_catalog():
            started.set()
            await asyncio.sleep(10)
            return CATALOG

        async def fetch_connections():
            return []

        snapshot = IntegrationsSnapshot(slow_catalog, fetch_connections)
        request_id = snapshot.refresh()
        await started.wait()
        snapshot.close()

        assert snapshot.closed
        assert snapshot.apply(request_id, "catalog", CATALOG) is False
        assert len(snapshot.view) == 0

    @pytest.mark.asyncio
    async def test_results_from_superseded_request_are_stale(self):
        async def fetch_catalog():
            return CATALOG

        async def fetch_connections():
            return []

        snapshot = IntegrationsSnapshot(fetch_catalog, fetch_connections)
        first = snapshot.refresh()
        second = snapshot.refresh()
        await snapshot.wait()

        assert snapshot.apply(first, "connections", [_connection("gmail")]) is False
        assert snapshot.view.get("gmail").connected is False
        assert snapshot.apply(second, "connections", [_connection("gmail")]) is True
        assert snapshot.view.get("gmail").connected is True
        snapshot.close()

    @pytest.mark.asyncio
    async def test_failed_fetch_is_recorded(self):
        async def fetch_catalog():
            return CATALOG

        async def fetch_connections():
            raise RuntimeError("down")

        snapshot = IntegrationsSnapshot(fetch_catalog, fetch_connections)
        snapshot.refresh()
        view = await snapshot.wait()

        assert "connections" in snapshot.errors
        assert len(view) == 4
        assert view.stats.connected == 0
        snapshot.close()
