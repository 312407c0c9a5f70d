"""
CatalogTables — loads config/connector_catalog.yaml and exposes the
category / popularity / feature lookups used to enrich the upstream catalog.
"""

import pathlib
from typing import Any, Dict, List

import yaml

_GENERIC_FEATURES = ["Read data", "Write data", "Sync information"]


class CatalogTables:
    def __init__(self, catalog_path: str | None = None):
        if catalog_path is None:
            catalog_path = str(
                pathlib.Path(__file__).parent / "connector_catalog.yaml"
            )
        with open(catalog_path, "r", encoding="utf-8") as fh:
            self._load(yaml.safe_load(fh) or {})

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CatalogTables":
        """Build tables from an in-memory mapping (same shape as the YAML)."""
        inst = cls.__new__(cls)
        inst._load(data)
        return inst

    def _load(self, data: Dict[str, Any]) -> None:
        self.default_category: str = data.get("default_category") or "Other"
        self._categories: Dict[str, str] = dict(data.get("categories") or {})
        self._popular = frozenset(data.get("popular") or [])
        self._features: Dict[str, List[str]] = {
            k: list(v) for k, v in (data.get("features") or {}).items()
        }
        self.default_features: List[str] = list(data.get("default_features") or _GENERIC_FEATURES)

    def category_for(self, connector_id: str) -> str:
        return self._categories.get(connector_id, self.default_category)

    def is_popular(self, connector_id: str) -> bool:
        return connector_id in self._popular

    def features_for(self, connector_id: str) -> List[str]:
        # copy: callers may mutate the result
        return list(self._features.get(connector_id, self.default_features))
