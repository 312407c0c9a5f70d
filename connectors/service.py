"""
IntegrationService — the caller-facing integration API.

Wires TokenVault, ConnectionRegistry, CatalogService, HealthMonitor,
ActionGateway and the lifecycle tracker together.  Route handlers talk to
this class only.
"""

from __future__ import annotations

import logging
from collections import OrderedDict
from typing import Any, Dict, List, Optional

from auth.jwt import create_authkit_token
from config.catalog import CatalogTables
from config.settings import Settings
from connectors.aggregator import IntegrationsSnapshot, IntegrationsView
from connectors.catalog import CatalogService
from connectors.errors import AuthorizationError
from connectors.gateway import ActionGateway
from connectors.health import HealthMonitor
from connectors.lifecycle import ConnectionLifecycle, ConnectionState, LifecycleEvent
from connectors.provider import ConnectorProvider
from connectors.registry import ConnectionRegistry
from connectors.storage import ScopedSecureStore, SecureStore
from connectors.token_vault import TokenVault
from utils.schemas import (
    ActionResult,
    AuthTokenResponse,
    CanonicalStatus,
    Connection,
    DetailedHealthRecord,
    DisconnectResult,
    HealthRecord,
    HealthStatus,
    HealthSummary,
    IntegrationDescriptor,
    UsageStats,
    utcnow,
)

logger = logging.getLogger(__name__)

_OBSERVED_STATES = {
    CanonicalStatus.ACTIVE: ConnectionState.ACTIVE,
    CanonicalStatus.INACTIVE: ConnectionState.INACTIVE,
    CanonicalStatus.ERROR: ConnectionState.ERROR,
}


class IntegrationService:
    def __init__(
        self,
        settings: Settings,
        provider: ConnectorProvider,
        store: SecureStore,
        tables: Optional[CatalogTables] = None,
        lifecycle: Optional[ConnectionLifecycle] = None,
    ):
        settings.require("provider_secret_key", "token_encryption_key")
        self._settings = settings
        self._provider = provider
        self._store = store
        self._vaults: "OrderedDict[str, TokenVault]" = OrderedDict()
        self._max_vaults = settings.vault_cache_size

        self.lifecycle = lifecycle if lifecycle is not None else ConnectionLifecycle(settings.lifecycle_cache_size)
        self.registry = ConnectionRegistry(provider, settings)
        self.catalog = CatalogService(
            provider,
            tables or CatalogTables(settings.connector_catalog_file),
            settings,
        )
        self.health = HealthMonitor(provider, self.registry, settings)
        self.gateway = ActionGateway(provider, self.registry, settings, self.lifecycle)

    def vault_for(self, user_id: str) -> TokenVault:
        """
        Per-user vault over the shared secure store.

        Vaults hold no persistent state, so only the most recently used
        ``vault_cache_size`` are kept; busy ones are never evicted.
        """
        vault = self._vaults.get(user_id)
        if vault is None:
            vault = TokenVault(
                ScopedSecureStore(self._store, f"user:{user_id}"),
                self._settings,
                refresher=self._provider.refresh_token,
            )
            self._vaults[user_id] = vault
        self._vaults.move_to_end(user_id)
        self._evict_idle_vaults()
        return vault

    def _evict_idle_vaults(self) -> None:
        excess = len(self._vaults) - self._max_vaults
        # the last entry is the vault being handed out
        for user_id in list(self._vaults)[:-1]:
            if excess <= 0:
                break
            if self._vaults[user_id].busy:
                continue
            del self._vaults[user_id]
            excess -= 1

    # ── Connect flow ────────────────────────────────────────────────────

    async def generate_auth_token(
        self,
        user_id: str,
        connector_id: str,
        metadata: Optional[Dict[str, Any]] = None,
        user_agent: Optional[str] = None,
    ) -> AuthTokenResponse:
        """Issue an auth-kit token for connecting *connector_id* and keep it in the vault."""
        ttl = self._settings.auth_token_ttl_seconds
        token = create_authkit_token(
            user_id,
            {
                **(metadata or {}),
                "integration_id": connector_id,
                "user_agent": user_agent or self._settings.platform_name,
                "timestamp": utcnow().isoformat(),
            },
            secret=self._settings.provider_secret_key,
            expires_in=ttl,
            platform=self._settings.platform_name,
        )
        await self.vault_for(user_id).store_connection_token(connector_id, token, ttl)
        if self.lifecycle.try_apply(user_id, connector_id, LifecycleEvent.TOKEN_ISSUED) is None:
            logger.info(
                "Auth token issued for %s while already %s",
                connector_id,
                self.lifecycle.state(user_id, connector_id).value,
            )
        return AuthTokenResponse(token=token, expires_in=ttl, integration_id=connector_id)

    async def handle_auth_callback(self, user_id: str, connector_id: str, success: bool) -> ConnectionState:
        """
        Record the outcome of the provider's connect flow.

        Raises ``ValueError`` when no connect flow is pending for the connector.
        """
        event = LifecycleEvent.CALLBACK_SUCCEEDED if success else LifecycleEvent.CALLBACK_FAILED
        state = self.lifecycle.apply(user_id, connector_id, event)
        if not success:
            await self.vault_for(user_id).remove_connection_token(connector_id)
        return state

    # ── Catalog & connections ───────────────────────────────────────────

    async def list_integrations(self) -> List[IntegrationDescriptor]:
        return await self.catalog.list_available()

    async def list_connections(self, user_id: str) -> List[Connection]:
        connections = await self.registry.list(user_id)
        self.lifecycle.prune(user_id, (conn.connector_id for conn in connections))
        for conn in connections:
            if self.lifecycle.state(user_id, conn.connector_id) == ConnectionState.PENDING and not conn.is_active:
                continue
            self.lifecycle.sync(user_id, conn.connector_id, _OBSERVED_STATES[conn.status])
        return connections

    async def get_integrations(self, user_id: str) -> IntegrationsView:
        """Catalog, connections and health fetched concurrently and composed."""
        snapshot = IntegrationsSnapshot(
            fetch_catalog=self.catalog.list_available,
            fetch_connections=lambda: self.list_connections(user_id),
            fetch_health=lambda: self.health.get_health_status(user_id),
        )
        try:
            snapshot.refresh()
            view = await snapshot.wait()
        finally:
            snapshot.close()
        for name in ("catalog", "connections"):
            if name in snapshot.errors:
                raise snapshot.errors[name]
        return view

    # ── Actions ─────────────────────────────────────────────────────────

    async def execute_action(
        self,
        user_id: str,
        connector_id: str,
        action: str,
        data: Optional[Dict[str, Any]] = None,
    ) -> ActionResult:
        return await self.gateway.execute(user_id, connector_id, action, data)

    async def disconnect(self, user_id: str, connection_id: str) -> DisconnectResult:
        """
        Revoke one of the user's connections.

        Raises
        ------
        ConnectionNotFoundError – the connection isn't the user's
        DisconnectError         – upstream revoke failed; nothing local is cleared
        """
        connection = await self.registry.find(user_id, connection_id)
        await self.registry.disconnect(user_id, connection_id)
        await self.vault_for(user_id).remove_connection_token(connection.connector_id)
        self.lifecycle.apply(user_id, connection.connector_id, LifecycleEvent.DISCONNECTED)
        return DisconnectResult(connection_id=connection_id, connector=connection.connector_id)

    # ── Health & usage ──────────────────────────────────────────────────

    async def test_connection(self, user_id: str, connector_id: str) -> HealthRecord:
        """Probe one connector; the user must have an active connection to it."""
        connection = await self.registry.active_connection(user_id, connector_id)
        if connection is None:
            raise AuthorizationError(
                f"Integration {connector_id} is not connected",
                connector=connector_id,
            )
        record = await self.health.check(user_id, connector_id, connection)
        self._note_revoked(user_id, record)
        return record

    async def get_health_status(self, user_id: str) -> HealthSummary:
        summary = await self.health.get_health_status(user_id)
        for record in summary.integrations:
            self._note_revoked(user_id, record)
        return summary

    async def get_detailed_health_status(self, user_id: str) -> List[DetailedHealthRecord]:
        return await self.health.get_detailed_health_status(user_id)

    async def get_usage_stats(
        self,
        user_id: str,
        connector_id: Optional[str] = None,
        time_range: str = "week",
    ) -> UsageStats:
        return await self.health.usage_stats(user_id, connector_id, time_range)

    async def close(self) -> None:
        await self._provider.close()

    def _note_revoked(self, user_id: str, record: HealthRecord) -> None:
        if record.status != HealthStatus.ERROR or not record.error:
            return
        text = record.error.lower()
        if "unauthorized" in text or "revoked" in text or "401" in text:
            self.lifecycle.try_apply(user_id, record.connector, LifecycleEvent.AUTH_REVOKED)
