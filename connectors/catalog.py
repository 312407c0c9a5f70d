"""
CatalogService — the platform-wide integration catalog.

Upstream connector entries are enriched from ``CatalogTables``: category,
popularity and features are backfilled only where upstream leaves them out.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List

from config.catalog import CatalogTables
from config.settings import Settings
from connectors.errors import ProviderError
from connectors.provider import ConnectorProvider
from utils.retry import call_with_retry
from utils.schemas import IntegrationAction, IntegrationDescriptor

logger = logging.getLogger(__name__)


class CatalogService:
    def __init__(self, provider: ConnectorProvider, tables: CatalogTables, settings: Settings):
        self._provider = provider
        self._tables = tables
        self._timeout = settings.provider_timeout_seconds
        self._max_attempts = settings.provider_max_attempts
        self._backoff = settings.provider_backoff_seconds

    async def list_available(self) -> List[IntegrationDescriptor]:
        """Fetch the upstream catalog and return enriched descriptors."""
        try:
            raw_items = await call_with_retry(
                self._provider.get_connectors,
                operation="list_connectors",
                timeout=self._timeout,
                max_attempts=self._max_attempts,
                backoff=self._backoff,
            )
        except ProviderError:
            raise
        except Exception as exc:
            raise ProviderError(
                f"Failed to fetch available integrations: {exc}",
                operation="list_connectors",
                original_error=exc,
            ) from exc

        descriptors = []
        for raw in raw_items or []:
            if not isinstance(raw, dict) or not (raw.get("id") or raw.get("key")):
                logger.warning("Skipping catalog entry without an id")
                continue
            descriptors.append(self.enrich(raw))
        return descriptors

    def enrich(self, raw: Dict[str, Any]) -> IntegrationDescriptor:
        """Pure mapping of one upstream entry to a descriptor."""
        connector_id = str(raw.get("id") or raw.get("key"))
        name = raw.get("name") or raw.get("display_name") or connector_id

        popular = raw.get("popular")
        features = raw.get("features")

        return IntegrationDescriptor(
            id=connector_id,
            name=name,
            description=raw.get("description") or f"Connect your {name} account",
            icon=raw.get("icon") or raw.get("logo_url"),
            category=raw.get("category") or self._tables.category_for(connector_id),
            popular=bool(popular) if popular is not None else self._tables.is_popular(connector_id),
            features=list(features) if features else self._tables.features_for(connector_id),
            actions=_actions(raw.get("actions")),
            requirements=[str(r) for r in raw.get("requirements") or []],
        )


def _actions(raw_actions: Any) -> List[IntegrationAction]:
    actions: List[IntegrationAction] = []
    for item in raw_actions or []:
        if isinstance(item, str):
            actions.append(IntegrationAction(id=item, name=item))
        elif isinstance(item, dict) and item.get("id"):
            actions.append(
                IntegrationAction(
                    id=str(item["id"]),
                    name=item.get("name") or str(item["id"]),
                    description=item.get("description") or "",
                )
            )
    return actions
