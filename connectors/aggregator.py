"""
Aggregator — composes catalog, connections and health into view models.

``compose()`` is pure.  Every grouping and count on ``IntegrationsView`` is
a projection of the composed sequence, recomputed from it and never stored
separately.  ``IntegrationsSnapshot`` drives ``compose()`` from concurrent
fetches that may finish in any order.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Sequence

from utils.schemas import (
    Connection,
    HealthRecord,
    HealthStatus,
    HealthSummary,
    Integration,
    IntegrationDescriptor,
    IntegrationStats,
)

logger = logging.getLogger(__name__)

CONNECTED = "connected"
DISCONNECTED = "disconnected"


class IntegrationsView:
    """Read-only projections over one composed sequence of integrations."""

    def __init__(self, integrations: Sequence[Integration]):
        self._integrations = tuple(integrations)

    @property
    def integrations(self) -> List[Integration]:
        return list(self._integrations)

    @property
    def by_category(self) -> Dict[str, List[Integration]]:
        groups: Dict[str, List[Integration]] = {}
        for item in self._integrations:
            groups.setdefault(item.category or "Other", []).append(item)
        return groups

    @property
    def popular(self) -> List[Integration]:
        return [i for i in self._integrations if i.popular]

    @property
    def connected(self) -> List[Integration]:
        return [i for i in self._integrations if i.connected]

    @property
    def disconnected(self) -> List[Integration]:
        return [i for i in self._integrations if not i.connected]

    @property
    def stats(self) -> IntegrationStats:
        connected = sum(1 for i in self._integrations if i.connected)
        return IntegrationStats(
            total=len(self._integrations),
            connected=connected,
            disconnected=len(self._integrations) - connected,
            errors=sum(1 for i in self._integrations if i.status == HealthStatus.ERROR.value),
        )

    def get(self, integration_id: str) -> Optional[Integration]:
        for item in self._integrations:
            if item.id == integration_id:
                return item
        return None

    def by_status(self, status: str) -> List[Integration]:
        return [i for i in self._integrations if i.status == status]

    def __len__(self) -> int:
        return len(self._integrations)


def _health_index(health: Any) -> Dict[str, HealthRecord]:
    if health is None:
        return {}
    if isinstance(health, HealthSummary):
        health = health.integrations
    if isinstance(health, dict):
        return dict(health)
    return {record.connector: record for record in health}


def compose(
    descriptors: Iterable[IntegrationDescriptor],
    connections: Iterable[Connection] = (),
    health: Any = None,
) -> IntegrationsView:
    """
    One Integration per descriptor.

    ``connected`` means an active connection exists for the descriptor id.
    ``status`` is the health status when connected (``connected`` while no
    health record exists yet) and ``disconnected`` otherwise.
    """
    active: Dict[str, Connection] = {}
    for conn in connections:
        if conn.is_active:
            active.setdefault(conn.connector_id, conn)
    records = _health_index(health)

    integrations = []
    for desc in descriptors:
        conn = active.get(desc.id)
        record = records.get(desc.id) if conn else None
        if conn is None:
            status = DISCONNECTED
        elif record is None:
            status = CONNECTED
        else:
            status = HealthStatus(record.status).value

        integrations.append(
            Integration(
                **desc.model_dump(),
                connected=conn is not None,
                connection_id=conn.id if conn else None,
                connected_at=conn.connected_at if conn else None,
                status=status,
                last_sync_at=conn.last_sync_at if conn else None,
                error_message=record.error if record else None,
            )
        )
    return IntegrationsView(integrations)


class IntegrationsSnapshot:
    """
    Latest-known inputs plus the view composed from them.

    ``refresh()`` starts the three fetches concurrently under a new request
    id; each completion is applied only if its request id is still current
    and the snapshot has not been closed, and the view is recomputed from
    whatever inputs are available at that moment.
    """

    def __init__(
        self,
        fetch_catalog: Callable[[], Awaitable[List[IntegrationDescriptor]]],
        fetch_connections: Callable[[], Awaitable[List[Connection]]],
        fetch_health: Optional[Callable[[], Awaitable[Any]]] = None,
        on_change: Optional[Callable[[IntegrationsView], None]] = None,
    ):
        self._fetchers: Dict[str, Callable[[], Awaitable[Any]]] = {
            "catalog": fetch_catalog,
            "connections": fetch_connections,
        }
        if fetch_health is not None:
            self._fetchers["health"] = fetch_health
        self._on_change = on_change

        self._inputs: Dict[str, Any] = {}
        self.errors: Dict[str, BaseException] = {}
        self._request_ids = itertools.count(1)
        self._current_request = 0
        self._tasks: List[asyncio.Task] = []
        self._closed = False
        self.view = IntegrationsView([])

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def request_id(self) -> int:
        return self._current_request

    def refresh(self) -> int:
        """Start a new round of fetches; earlier rounds become stale."""
        if self._closed:
            raise RuntimeError("snapshot is closed")
        self._cancel_tasks()
        request_id = next(self._request_ids)
        self._current_request = request_id
        self._tasks = [
            asyncio.ensure_future(self._fetch(request_id, name, fn))
            for name, fn in self._fetchers.items()
        ]
        return request_id

    async def wait(self) -> IntegrationsView:
        """Wait for the current round to settle and return the view."""
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        return self.view

    def close(self) -> None:
        """Cancel in-flight fetches; anything that still completes is discarded."""
        self._closed = True
        self._cancel_tasks()

    async def _fetch(self, request_id: int, name: str, fn: Callable[[], Awaitable[Any]]) -> None:
        try:
            value = await fn()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            if self._is_current(request_id):
                logger.warning("Fetching %s failed: %s", name, exc)
                self.errors[name] = exc
            return
        self.apply(request_id, name, value)

    def apply(self, request_id: int, name: str, value: Any) -> bool:
        """Apply one arrived input; returns False when the result is stale."""
        if not self._is_current(request_id):
            logger.debug("Discarding stale %s result (request %d)", name, request_id)
            return False
        self._inputs[name] = value
        self.errors.pop(name, None)
        self._recompute()
        return True

    def _is_current(self, request_id: int) -> bool:
        return not self._closed and request_id == self._current_request

    def _recompute(self) -> None:
        self.view = compose(
            self._inputs.get("catalog") or [],
            self._inputs.get("connections") or [],
            self._inputs.get("health"),
        )
        if self._on_change is not None:
            self._on_change(self.view)

    def _cancel_tasks(self) -> None:
        for task in self._tasks:
            if not task.done():
                task.cancel()
        self._tasks = []
