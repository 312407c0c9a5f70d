"""
Tests for CatalogService and the YAML-backed catalog tables.
"""

import pytest
from unittest.mock import AsyncMock, MagicMock

from config.catalog import CatalogTables
from config.settings import Settings
from connectors.catalog import CatalogService
from connectors.errors import ProviderError
from connectors.provider import ConnectorProvider


def _make_service(connectors=None, side_effect=None, tables=None) -> CatalogService:
    provider = MagicMock(spec=ConnectorProvider)
    provider.get_connectors = AsyncMock(return_value=connectors or [], side_effect=side_effect)
    settings = Settings(_env_file=None, provider_backoff_seconds=0)
    return CatalogService(provider, tables or CatalogTables(), settings)


class TestCatalogTables:
    def test_default_file_loads(self):
        tables = CatalogTables()
        assert tables.category_for("gmail") == "Communication"
        assert tables.is_popular("gmail")
        assert tables.features_for("unknown") == ["Read data", "Write data", "Sync information"]

    def test_custom_file(self, tmp_path):
        path = tmp_path / "catalog.yaml"
        path.write_text(
            "default_category: Misc\n"
            "categories:\n  acme: Tools\n"
            "popular: [acme]\n"
            "features:\n  acme: [Do things]\n"
        )
        tables = CatalogTables(str(path))
        assert tables.category_for("acme") == "Tools"
        assert tables.category_for("other") == "Misc"
        assert tables.features_for("acme") == ["Do things"]

    def test_features_are_copies(self):
        tables = CatalogTables.from_dict({"features": {"x": ["a"]}})
        tables.features_for("x").append("b")
        assert tables.features_for("x") == ["a"]


class TestListAvailable:
    @pytest.mark.asyncio
    async def test_known_and_unknown_connectors(self):
        service = _make_service([{"id": "gmail"}, {"id": "unknown-svc"}])

        gmail, unknown = await service.list_available()

        assert gmail.category == "Communication"
        assert gmail.popular is True
        assert gmail.features == ["Send emails", "Read emails", "Manage labels"]
        assert unknown.category == "Other"
        assert unknown.popular is False
        assert len(unknown.features) == 3

    @pytest.mark.asyncio
    async def test_name_description_icon_fallbacks(self):
        service = _make_service(
            [
                {"id": "a", "display_name": "Alpha", "logo_url": "https://x/a.png"},
                {"id": "b"},
            ]
        )
        a, b = await service.list_available()

        assert a.name == "Alpha"
        assert a.description == "Connect your Alpha account"
        assert a.icon == "https://x/a.png"
        assert b.name == "b"
        assert b.icon is None

    @pytest.mark.asyncio
    async def test_upstream_values_are_kept(self):
        service = _make_service(
            [
                {
                    "id": "gmail",
                    "name": "Gmail",
                    "category": "Email",
                    "popular": False,
                    "features": ["Custom"],
                    "actions": ["send_email", {"id": "list", "name": "List"}],
                    "requirements": ["oauth"],
                }
            ]
        )
        (gmail,) = await service.list_available()

        assert gmail.category == "Email"
        assert gmail.popular is False
        assert gmail.features == ["Custom"]
        assert [a.id for a in gmail.actions] == ["send_email", "list"]
        assert gmail.requirements == ["oauth"]

    @pytest.mark.asyncio
    async def test_entries_without_id_are_skipped(self):
        service = _make_service([{"name": "nameless"}, {"id": "slack"}])
        assert [d.id for d in await service.list_available()] == ["slack"]

    @pytest.mark.asyncio
    async def test_same_snapshot_same_result(self):
        service = _make_service([{"id": "gmail"}, {"id": "x"}])
        assert await service.list_available() == await service.list_available()

    @pytest.mark.asyncio
    async def test_provider_failure_is_wrapped(self):
        service = _make_service(side_effect=RuntimeError("nope"))
        with pytest.raises(ProviderError) as exc_info:
            await service.list_available()
        assert "Failed to fetch available integrations" in exc_info.value.message
