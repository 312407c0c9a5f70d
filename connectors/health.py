"""
HealthMonitor — probes connections and classifies aggregate health.

Probe failures are data, not control flow: ``check()`` never raises for a
failed probe, it returns a HealthRecord with ``status=error`` and the
message captured.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Dict, Iterable, List, Optional

from pydantic import ValidationError

from config.settings import Settings
from connectors.errors import IntegrationError
from connectors.provider import ConnectorProvider
from connectors.registry import ConnectionRegistry
from utils.retry import call_with_retry
from utils.schemas import (
    CanonicalStatus,
    Connection,
    DetailedHealthRecord,
    HealthMetrics,
    HealthRecord,
    HealthStatus,
    HealthSummary,
    UsagePoint,
    UsageStats,
    UsageSummary,
)

logger = logging.getLogger(__name__)

PROBE_ACTION = "test_connection"
PROBE_PAYLOAD = {"test": True}

TIME_RANGES = ("day", "week", "month")

_METRIC_ALIASES = {
    "uptime": ("uptime",),
    "average_latency": ("average_latency", "averageLatency", "avg_latency"),
    "error_rate": ("error_rate", "errorRate"),
    "total_requests": ("total_requests", "totalRequests"),
    "failed_requests": ("failed_requests", "failedRequests"),
    "last_successful_sync": ("last_successful_sync", "lastSuccessfulSync"),
}


def aggregate(records: Iterable[HealthRecord]) -> HealthStatus:
    """
    Three-way overall status.

    ``error`` if any record is error, ``healthy`` if every record is
    healthy (including no records at all), otherwise ``degraded``.
    """
    statuses = [r.status for r in records]
    if any(s == HealthStatus.ERROR for s in statuses):
        return HealthStatus.ERROR
    if all(s == HealthStatus.HEALTHY for s in statuses):
        return HealthStatus.HEALTHY
    return HealthStatus.DEGRADED


def _error_text(exc: BaseException) -> str:
    if isinstance(exc, IntegrationError):
        return exc.message
    if isinstance(exc, asyncio.TimeoutError):
        return "Health probe timed out"
    return str(exc) or exc.__class__.__name__


class HealthMonitor:
    def __init__(
        self,
        provider: ConnectorProvider,
        registry: ConnectionRegistry,
        settings: Settings,
    ):
        self._provider = provider
        self._registry = registry
        self._timeout = settings.provider_timeout_seconds
        self._max_attempts = settings.provider_max_attempts
        self._backoff = settings.provider_backoff_seconds

    # ── Probes ──────────────────────────────────────────────────────────

    async def check(
        self,
        user_id: str,
        connector_id: str,
        connection: Optional[Connection] = None,
    ) -> HealthRecord:
        """Issue the no-op probe action and time it."""
        started = time.perf_counter()
        try:
            await call_with_retry(
                lambda: self._provider.execute_action(
                    user_id, connector_id, PROBE_ACTION, dict(PROBE_PAYLOAD)
                ),
                operation=f"health_probe[{connector_id}]",
                timeout=self._timeout,
                max_attempts=self._max_attempts,
                backoff=self._backoff,
            )
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning("Health probe failed for %s (user %s): %s", connector_id, user_id, exc)
            return HealthRecord(
                connector=connector_id,
                status=HealthStatus.ERROR,
                error=_error_text(exc),
                connection_id=connection.id if connection else None,
                last_sync_at=connection.last_sync_at if connection else None,
            )
        latency = (time.perf_counter() - started) * 1000.0
        return HealthRecord(
            connector=connector_id,
            status=HealthStatus.HEALTHY,
            latency=latency,
            connection_id=connection.id if connection else None,
            last_sync_at=connection.last_sync_at if connection else None,
        )

    async def check_detailed(
        self,
        user_id: str,
        connector_id: str,
        connection: Optional[Connection] = None,
    ) -> DetailedHealthRecord:
        """Probe plus provider metrics, or an explicit metrics-unavailable result."""
        record = await self.check(user_id, connector_id, connection)
        detailed = DetailedHealthRecord(**record.model_dump())

        try:
            raw = await self._provider.get_connection_metrics(user_id, connector_id)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning("Metrics unavailable for %s: %s", connector_id, exc)
            detailed.warnings.append("Metrics could not be retrieved")
            return detailed

        if not raw:
            return detailed

        try:
            detailed.metrics = HealthMetrics(**_pick_metrics(raw))
            detailed.metrics_available = True
        except ValidationError:
            logger.warning("Provider returned malformed metrics for %s", connector_id)
            detailed.warnings.append("Metrics were malformed")
        detailed.warnings.extend(str(w) for w in raw.get("warnings") or [])
        return detailed

    # ── Aggregates ──────────────────────────────────────────────────────

    @staticmethod
    def aggregate(records: Iterable[HealthRecord]) -> HealthStatus:
        return aggregate(records)

    async def get_health_status(self, user_id: str) -> HealthSummary:
        """
        Probe every active connection concurrently.

        Connections the provider already reports in error are recorded as
        errors without probing.
        """
        connections = await self._registry.list(user_id)
        probes = []
        records: List[HealthRecord] = []
        for conn in connections:
            if conn.is_active:
                probes.append(self.check(user_id, conn.connector_id, conn))
            elif conn.status == CanonicalStatus.ERROR:
                records.append(
                    HealthRecord(
                        connector=conn.connector_id,
                        status=HealthStatus.ERROR,
                        error="Connection is in an error state",
                        connection_id=conn.id,
                        last_sync_at=conn.last_sync_at,
                    )
                )
        records.extend(await asyncio.gather(*probes))
        return HealthSummary(integrations=records, overall_status=aggregate(records))

    async def get_detailed_health_status(self, user_id: str) -> List[DetailedHealthRecord]:
        connections = [c for c in await self._registry.list(user_id) if c.is_active]
        return list(
            await asyncio.gather(
                *(self.check_detailed(user_id, c.connector_id, c) for c in connections)
            )
        )

    # ── Usage ───────────────────────────────────────────────────────────

    async def usage_stats(
        self,
        user_id: str,
        connector_id: Optional[str] = None,
        time_range: str = "week",
    ) -> UsageStats:
        """
        Usage statistics from the provider.

        When the provider has none, the result says so (``available=False``)
        instead of carrying made-up numbers.
        """
        if time_range not in TIME_RANGES:
            raise ValueError(f"time_range must be one of {', '.join(TIME_RANGES)}")

        raw = await self._provider.get_usage_stats(user_id, connector_id, time_range)
        if not raw:
            return UsageStats(time_range=time_range, connector=connector_id)

        try:
            points = [UsagePoint(**p) for p in raw.get("data") or []]
            summary = raw.get("summary")
            return UsageStats(
                time_range=time_range,
                connector=connector_id,
                available=True,
                data=points,
                summary=UsageSummary(**summary) if summary else _summarize(points),
            )
        except (ValidationError, TypeError):
            logger.warning("Provider returned malformed usage stats for user %s", user_id)
            return UsageStats(time_range=time_range, connector=connector_id)


def _pick_metrics(raw: Dict[str, Any]) -> Dict[str, Any]:
    picked: Dict[str, Any] = {}
    for field, aliases in _METRIC_ALIASES.items():
        for alias in aliases:
            if raw.get(alias) is not None:
                picked[field] = raw[alias]
                break
    return picked


def _summarize(points: List[UsagePoint]) -> UsageSummary:
    total = sum(p.requests for p in points)
    if not total:
        return UsageSummary()
    return UsageSummary(
        total_requests=total,
        successful_requests=sum(p.successful_requests for p in points),
        failed_requests=sum(p.failed_requests for p in points),
        average_latency=sum(p.average_latency * p.requests for p in points) / total,
    )
