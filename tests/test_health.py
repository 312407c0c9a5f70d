"""
Tests for HealthMonitor — probes, aggregation, metrics, usage.
"""

import pytest
from unittest.mock import AsyncMock, MagicMock

from config.settings import Settings
from connectors.health import HealthMonitor, PROBE_ACTION, aggregate
from connectors.provider import ConnectorProvider
from connectors.registry import ConnectionRegistry
from utils.schemas import HealthRecord, HealthStatus


def _record(status: HealthStatus, connector: str = "x") -> HealthRecord:
    return HealthRecord(connector=connector, status=status)


def _make_monitor(connections=None, max_attempts=1):
    provider = MagicMock(spec=ConnectorProvider)
    provider.get_connections_by_user = AsyncMock(return_value=connections or [])
    provider.execute_action = AsyncMock(return_value={"ok": True})
    provider.get_connection_metrics = AsyncMock(return_value=None)
    provider.get_usage_stats = AsyncMock(return_value=None)
    settings = Settings(_env_file=None, provider_backoff_seconds=0, provider_max_attempts=max_attempts)
    registry = ConnectionRegistry(provider, settings)
    return HealthMonitor(provider, registry, settings), provider


class TestAggregate:
    def test_all_healthy(self):
        assert aggregate([_record(HealthStatus.HEALTHY), _record(HealthStatus.HEALTHY)]) == HealthStatus.HEALTHY

    def test_any_error(self):
        assert aggregate([_record(HealthStatus.HEALTHY), _record(HealthStatus.ERROR)]) == HealthStatus.ERROR

    def test_degraded(self):
        assert aggregate([_record(HealthStatus.HEALTHY), _record(HealthStatus.DEGRADED)]) == HealthStatus.DEGRADED

    def test_error_beats_degraded(self):
        assert aggregate([_record(HealthStatus.DEGRADED), _record(HealthStatus.ERROR)]) == HealthStatus.ERROR

    def test_empty_is_healthy(self):
        assert aggregate([]) == HealthStatus.HEALTHY


class TestCheck:
    @pytest.mark.asyncio
    async def test_success_is_healthy_with_latency(self):
        monitor, provider = _make_monitor()

        record = await monitor.check("user-1", "gmail")

        assert record.status == HealthStatus.HEALTHY
        assert record.latency is not None and record.latency > 0
        assert record.model_dump(mode="json")["latency"] == record.latency
        assert record.error is None
        provider.execute_action.assert_awaited_once_with("user-1", "gmail", PROBE_ACTION, {"test": True})

    @pytest.mark.asyncio
    async def test_failure_is_captured_not_raised(self):
        monitor, provider = _make_monitor()
        provider.execute_action = AsyncMock(side_effect=RuntimeError("token revoked"))

        record = await monitor.check("user-1", "gmail")

        assert record.status == HealthStatus.ERROR
        assert record.error == "token revoked"

    @pytest.mark.asyncio
    async def test_probe_is_retried(self):
        monitor, provider = _make_monitor(max_attempts=3)
        provider.execute_action = AsyncMock(side_effect=[RuntimeError("blip"), {"ok": True}])

        record = await monitor.check("user-1", "gmail")

        assert record.status == HealthStatus.HEALTHY
        assert provider.execute_action.await_count == 2


class TestCheckDetailed:
    @pytest.mark.asyncio
    async def test_metrics_unavailable_is_explicit(self):
        monitor, _ = _make_monitor()

        record = await monitor.check_detailed("user-1", "gmail")

        assert record.metrics_available is False
        assert record.metrics is None

    @pytest.mark.asyncio
    async def test_metrics_from_provider(self):
        monitor, provider = _make_monitor()
        provider.get_connection_metrics = AsyncMock(
            return_value={
                "uptime": 99.5,
                "averageLatency": 120,
                "errorRate": 0.5,
                "totalRequests": 200,
                "failedRequests": 1,
                "warnings": ["Slow responses"],
            }
        )

        record = await monitor.check_detailed("user-1", "gmail")

        assert record.metrics_available is True
        assert record.metrics.uptime == 99.5
        assert record.metrics.average_latency == 120
        assert record.metrics.total_requests == 200
        assert record.warnings == ["Slow responses"]

    @pytest.mark.asyncio
    async def test_metrics_failure_degrades_to_unavailable(self):
        monitor, provider = _make_monitor()
        provider.get_connection_metrics = AsyncMock(side_effect=RuntimeError("500"))

        record = await monitor.check_detailed("user-1", "gmail")

        assert record.status == HealthStatus.HEALTHY
        assert record.metrics_available is False
        assert record.warnings


class TestHealthStatus:
    @pytest.mark.asyncio
    async def test_only_active_connections_are_probed(self):
        monitor, provider = _make_monitor(
            [
                {"id": "c1", "connector": "gmail", "status": "active"},
                {"id": "c2", "connector": "slack", "status": "disabled"},
                {"id": "c3", "connector": "notion", "status": "connected"},
            ]
        )

        summary = await monitor.get_health_status("user-1")

        assert {r.connector for r in summary.integrations} == {"gmail", "notion"}
        assert summary.overall_status == HealthStatus.HEALTHY
        assert provider.execute_action.await_count == 2

    @pytest.mark.asyncio
    async def test_one_failing_probe_makes_overall_error(self):
        monitor, provider = _make_monitor(
            [
                {"id": "c1", "connector": "gmail", "status": "active"},
                {"id": "c2", "connector": "slack", "status": "active"},
            ]
        )

        async def probe(user_id, connector, action, data):
            if connector == "slack":
                raise RuntimeError("slack is down")
            return {}

        provider.execute_action = AsyncMock(side_effect=probe)

        summary = await monitor.get_health_status("user-1")

        assert summary.overall_status == HealthStatus.ERROR
        by_connector = {r.connector: r for r in summary.integrations}
        assert by_connector["slack"].error == "slack is down"
        assert by_connector["gmail"].status == HealthStatus.HEALTHY

    @pytest.mark.asyncio
    async def test_errored_connection_reported_without_probe(self):
        monitor, provider = _make_monitor([{"id": "c1", "connector": "gmail", "status": "broken"}])

        summary = await monitor.get_health_status("user-1")

        assert summary.overall_status == HealthStatus.ERROR
        provider.execute_action.assert_not_awaited()


class TestUsageStats:
    @pytest.mark.asyncio
    async def test_unavailable(self):
        monitor, _ = _make_monitor()
        stats = await monitor.usage_stats("user-1", None, "day")
        assert stats.available is False
        assert stats.data == []
        assert stats.summary is None

    @pytest.mark.asyncio
    async def test_from_provider_with_computed_summary(self):
        monitor, provider = _make_monitor()
        provider.get_usage_stats = AsyncMock(
            return_value={
                "data": [
                    {"timestamp": "t1", "requests": 10, "successful_requests": 9,
                     "failed_requests": 1, "average_latency": 100.0},
                    {"timestamp": "t2", "requests": 30, "successful_requests": 30,
                     "failed_requests": 0, "average_latency": 200.0},
                ]
            }
        )

        stats = await monitor.usage_stats("user-1", "gmail", "week")

        assert stats.available is True
        assert stats.summary.total_requests == 40
        assert stats.summary.failed_requests == 1
        assert stats.summary.average_latency == pytest.approx(175.0)
        provider.get_usage_stats.assert_awaited_once_with("user-1", "gmail", "week")

    @pytest.mark.asyncio
    async def test_bad_time_range(self):
        monitor, _ = _make_monitor()
        with pytest.raises(ValueError):
            await monitor.usage_stats("user-1", None, "year")
