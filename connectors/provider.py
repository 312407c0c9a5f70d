"""
ConnectorProvider — abstract interface to the upstream connector provider.

The provider is an opaque capability: it lists the connector catalog and a
user's connections, executes actions, deletes connections and refreshes
tokens.  Everything above this module works against the abstract class;
``HttpConnectorProvider`` is the REST-backed implementation.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

import httpx

from config.settings import Settings
from connectors.errors import ProviderError

logger = logging.getLogger(__name__)


class ConnectorProvider(ABC):
    """Abstract base for upstream connector providers."""

    @abstractmethod
    async def get_connectors(self) -> List[Dict[str, Any]]:
        """Raw connector catalog entries, in whatever shape upstream uses."""
        ...

    @abstractmethod
    async def get_connections_by_user(self, user_id: str) -> List[Dict[str, Any]]:
        """Raw connection records for *user_id*."""
        ...

    @abstractmethod
    async def execute_action(
        self,
        user_id: str,
        connector: str,
        action: str,
        data: Dict[str, Any],
    ) -> Any:
        """Run *action* on *connector* on behalf of *user_id*."""
        ...

    @abstractmethod
    async def delete_connection(self, user_id: str, connection_id: str) -> None:
        """Revoke and delete a connection upstream."""
        ...

    async def refresh_token(self, refresh_token: str) -> Dict[str, Any]:
        """
        Exchange a refresh token for a new access token.

        Returns
        -------
        dict with keys: access_token, expires_in, (optional) refresh_token
        """
        raise ProviderError("Token refresh is not supported by this provider", operation="refresh_token")

    async def get_connection_metrics(self, user_id: str, connector: str) -> Optional[Dict[str, Any]]:
        """Health metrics for a connection, or None when the provider doesn't expose them."""
        return None

    async def get_usage_stats(
        self,
        user_id: str,
        connector: Optional[str],
        time_range: str,
    ) -> Optional[Dict[str, Any]]:
        """Usage statistics, or None when the provider doesn't expose them."""
        return None

    async def close(self) -> None:
        return None


def _items(payload: Any, key: str) -> List[Dict[str, Any]]:
    """Unwrap a list that upstream may return bare or inside an envelope."""
    if isinstance(payload, list):
        return payload
    if isinstance(payload, dict):
        for candidate in (key, "rows", "data", "items"):
            value = payload.get(candidate)
            if isinstance(value, list):
                return value
    return []


class HttpConnectorProvider(ConnectorProvider):
    """REST client for the connector provider."""

    _SECRET_HEADER = "x-pica-secret"

    def __init__(self, settings: Settings, transport: Optional[httpx.AsyncBaseTransport] = None):
        settings.require("provider_secret_key", "provider_server_url")
        self._client = httpx.AsyncClient(
            base_url=settings.provider_server_url,
            headers={self._SECRET_HEADER: settings.provider_secret_key},
            timeout=settings.provider_timeout_seconds,
            transport=transport,
        )

    async def _request(
        self,
        method: str,
        path: str,
        *,
        operation: str,
        connector: Optional[str] = None,
        allow_missing: bool = False,
        **kwargs: Any,
    ) -> Any:
        try:
            resp = await self._client.request(method, path, **kwargs)
            if allow_missing and resp.status_code in (404, 501):
                return None
            resp.raise_for_status()
        except httpx.HTTPStatusError as exc:
            status_code = exc.response.status_code
            logger.error("Provider %s failed with HTTP %d", operation, status_code)
            raise ProviderError(
                f"Provider {operation} failed: HTTP {status_code}",
                operation=operation,
                connector=connector,
                status_code=status_code,
                original_error=exc,
            ) from exc
        except httpx.HTTPError as exc:
            logger.error("Provider %s failed: %s", operation, exc.__class__.__name__)
            raise ProviderError(
                f"Provider {operation} failed: {exc}",
                operation=operation,
                connector=connector,
                original_error=exc,
            ) from exc
        if not resp.content:
            return None
        return resp.json()

    async def get_connectors(self) -> List[Dict[str, Any]]:
        payload = await self._request("GET", "/v1/connectors", operation="list_connectors")
        return _items(payload, "connectors")

    async def get_connections_by_user(self, user_id: str) -> List[Dict[str, Any]]:
        payload = await self._request(
            "GET", f"/v1/users/{user_id}/connections", operation="list_connections"
        )
        return _items(payload, "connections")

    async def execute_action(
        self,
        user_id: str,
        connector: str,
        action: str,
        data: Dict[str, Any],
    ) -> Any:
        return await self._request(
            "POST",
            "/v1/actions",
            operation="execute_action",
            connector=connector,
            json={"userId": user_id, "connector": connector, "action": action, "data": data},
        )

    async def delete_connection(self, user_id: str, connection_id: str) -> None:
        await self._request(
            "DELETE",
            f"/v1/users/{user_id}/connections/{connection_id}",
            operation="delete_connection",
        )

    async def refresh_token(self, refresh_token: str) -> Dict[str, Any]:
        data = await self._request(
            "POST",
            "/v1/oauth/refresh",
            operation="refresh_token",
            json={"refresh_token": refresh_token},
        ) or {}
        return {
            "access_token": data.get("access_token") or data.get("token"),
            "expires_in": data.get("expires_in", 3600),
            "refresh_token": data.get("refresh_token"),
        }

    async def get_connection_metrics(self, user_id: str, connector: str) -> Optional[Dict[str, Any]]:
        return await self._request(
            "GET",
            f"/v1/users/{user_id}/connections/{connector}/metrics",
            operation="connection_metrics",
            connector=connector,
            allow_missing=True,
        )

    async def get_usage_stats(
        self,
        user_id: str,
        connector: Optional[str],
        time_range: str,
    ) -> Optional[Dict[str, Any]]:
        params = {"timeRange": time_range}
        if connector:
            params["connector"] = connector
        return await self._request(
            "GET",
            f"/v1/users/{user_id}/usage",
            operation="usage_stats",
            connector=connector,
            allow_missing=True,
            params=params,
        )

    async def close(self) -> None:
        await self._client.aclose()
