"""
ConnectionRegistry — fetches a user's upstream connections and normalizes
them into the canonical ``Connection`` shape.

The registry is stateless: every ``list()`` replaces the caller's view
wholesale and ``disconnect()`` never patches anything locally.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List, Optional

from config.settings import Settings
from connectors.errors import (
    ConnectionNotFoundError,
    DisconnectError,
    IntegrationError,
    ProviderError,
)
from connectors.provider import ConnectorProvider
from utils.retry import call_with_retry
from utils.schemas import CanonicalStatus, Connection, utcnow

logger = logging.getLogger(__name__)

# ── Status vocabulary ───────────────────────────────────────────────────

_ACTIVE_STATUSES = frozenset({"active", "connected", "enabled", "online"})
_ERROR_STATUSES = frozenset({"error", "failed", "broken", "unauthorized"})

# ── Field priority per canonical attribute ──────────────────────────────

_ID_FIELDS = ("id", "connection_id", "_id")
_CONNECTOR_FIELDS = ("connector", "connector_id", "platform", "key")
_STATUS_FIELDS = ("status", "state")
_CONNECTED_AT_FIELDS = ("created_at", "connected_at", "createdAt")
_LAST_SYNC_FIELDS = ("last_sync_at", "last_sync", "updated_at", "updatedAt")


def normalize_status(raw: Any) -> CanonicalStatus:
    """
    Map any upstream status onto {active, inactive, error}.

    Matching is case-insensitive and whitespace-tolerant.  Anything not
    recognized (including None and non-strings) is ``inactive``.
    """
    if not isinstance(raw, str):
        return CanonicalStatus.INACTIVE
    value = raw.strip().lower()
    if value in _ACTIVE_STATUSES:
        return CanonicalStatus.ACTIVE
    if value in _ERROR_STATUSES:
        return CanonicalStatus.ERROR
    return CanonicalStatus.INACTIVE


def _first(raw: Dict[str, Any], fields: Iterable[str]) -> Any:
    for name in fields:
        value = raw.get(name)
        if value not in (None, ""):
            return value
    return None


def normalize_connection(raw: Dict[str, Any]) -> Connection:
    """
    Build a canonical ``Connection`` from one upstream record.

    Each attribute is taken from the first non-empty field in its priority
    list.  ``connected_at`` falls back to now; the connector id falls back
    to the connection id when upstream only sends one of them.
    """
    conn_id = _first(raw, _ID_FIELDS)
    connector_id = _first(raw, _CONNECTOR_FIELDS)
    if conn_id is None and connector_id is None:
        raise ValueError("connection record has neither an id nor a connector")

    connected_at = _first(raw, _CONNECTED_AT_FIELDS) or utcnow().isoformat()
    last_sync = _first(raw, _LAST_SYNC_FIELDS)
    metadata = raw.get("metadata")

    return Connection(
        id=str(conn_id if conn_id is not None else connector_id),
        connector_id=str(connector_id if connector_id is not None else conn_id),
        status=normalize_status(_first(raw, _STATUS_FIELDS)),
        connected_at=str(connected_at),
        last_sync_at=str(last_sync) if last_sync is not None else None,
        metadata=dict(metadata) if isinstance(metadata, dict) else {},
    )


class ConnectionRegistry:
    """Reads and revokes a user's upstream connections."""

    def __init__(self, provider: ConnectorProvider, settings: Settings):
        self._provider = provider
        self._timeout = settings.provider_timeout_seconds
        self._max_attempts = settings.provider_max_attempts
        self._backoff = settings.provider_backoff_seconds

    async def list(self, user_id: str) -> List[Connection]:
        """
        Fetch and normalize every connection *user_id* has.

        Raises
        ------
        ProviderError  – upstream failed after all retry attempts
        """
        try:
            raw_items = await call_with_retry(
                lambda: self._provider.get_connections_by_user(user_id),
                operation="list_connections",
                timeout=self._timeout,
                max_attempts=self._max_attempts,
                backoff=self._backoff,
            )
        except ProviderError:
            raise
        except Exception as exc:
            raise ProviderError(
                f"Failed to fetch connections: {exc}",
                operation="list_connections",
                original_error=exc,
            ) from exc

        connections: List[Connection] = []
        for raw in raw_items or []:
            if not isinstance(raw, dict):
                logger.warning("Skipping non-object connection record for user %s", user_id)
                continue
            try:
                connections.append(normalize_connection(raw))
            except ValueError as exc:
                logger.warning("Skipping unusable connection record for user %s: %s", user_id, exc)
        logger.debug("User %s has %d connection(s)", user_id, len(connections))
        return connections

    async def find(self, user_id: str, connection_id: str) -> Connection:
        """Return the user's connection with *connection_id* or raise ``ConnectionNotFoundError``."""
        for conn in await self.list(user_id):
            if conn.id == connection_id:
                return conn
        raise ConnectionNotFoundError(
            f"Connection {connection_id} not found for user",
            connection_id=connection_id,
        )

    async def active_connection(self, user_id: str, connector_id: str) -> Optional[Connection]:
        """The active connection to *connector_id*, if the user has one right now."""
        for conn in await self.list(user_id):
            if conn.connector_id == connector_id and conn.is_active:
                return conn
        return None

    async def disconnect(self, user_id: str, connection_id: str) -> None:
        """
        Revoke *connection_id* upstream.

        No retry (revocation is not a read) and no local mutation: callers
        re-fetch with ``list()`` to observe the result.
        """
        try:
            await self._provider.delete_connection(user_id, connection_id)
        except Exception as exc:
            reason = exc.message if isinstance(exc, IntegrationError) else str(exc)
            logger.error("Disconnect of %s failed for user %s: %s", connection_id, user_id, reason)
            raise DisconnectError(
                f"Failed to disconnect {connection_id}: {reason}",
                reason=reason,
                connection_id=connection_id,
                original_error=exc,
            ) from exc
        logger.info("Disconnected %s for user %s", connection_id, user_id)
