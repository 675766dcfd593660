"""
Read-through discovery: live backfill of an empty or stale mirror,
per-section request shapes, and graceful degradation on vendor failures.
"""
from datetime import timedelta

import httpx
import pytest
from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError

from vault_access.core.exceptions import CapabilityMissing
from vault_access.features.mirror import discovery as discovery_module
from vault_access.features.mirror.discovery import CacheFreshness, VaultDiscovery
from vault_access.features.mirror.models import CachedAsset, CachedCategory
from vault_access.features.permissions.models import Section
from vault_access.features.vault.client import VaultApiConnector
from vault_access.utils import utcnow
from tests import fakes


PASSWORDS_ORG_1 = "/organizations/org_1/relationships/passwords"


@pytest.fixture
def discovery(connector):
    return VaultDiscovery(connector, CacheFreshness(assets_ttl_seconds=3600, categories_ttl_seconds=3600), page_size=2)


@pytest.fixture
def vault(connector):
    connector.add(
        PASSWORDS_ORG_1,
        fakes.password("p1", "org_1", "Domain admin", "cat_1", "Admin"),
        fakes.password("p2", "org_1", "Firewall", "cat_2", "Network"),
        fakes.password("p3", "org_1", None, "cat_1", "Admin"),
    )
    connector.add(
        "/flexible_assets",
        fakes.flexible_asset("fa1", "org_1", "Office Wi-Fi", "t_1", "Wi-Fi"),
        fakes.flexible_asset("fa2", "org_2", "Guest Wi-Fi", "t_1", "Wi-Fi"),
    )
    return connector


async def make_stale(db):
    await db.execute(update(CachedAsset).values(synced_at=utcnow() - timedelta(days=2)))


class TestListAssets:
    async def test_empty_cache_is_backfilled(self, db, discovery, vault):
        assets = await discovery.list_assets(db, "org_1", Section.PASSWORDS)

        assert [a.vendor_id for a in assets] == ["p1", "p2", "p3"]
        assert [a.name for a in assets] == ["Domain admin", "Firewall", "Password p3"]
        assert [c["page"] for c in vault.calls_to(PASSWORDS_ORG_1)] == [1, 2]

    async def test_fresh_cache_is_served_without_vendor_calls(self, db, discovery, vault):
        await discovery.list_assets(db, "org_1", Section.PASSWORDS)
        vault.calls.clear()

        assets = await discovery.list_assets(db, "org_1", Section.PASSWORDS)

        assert len(assets) == 3
        assert vault.calls == []

    async def test_stale_cache_is_refreshed(self, db, discovery, vault):
        await discovery.list_assets(db, "org_1", Section.PASSWORDS)
        await make_stale(db)
        vault.lists[PASSWORDS_ORG_1][1] = fakes.password("p2", "org_1", "Edge firewall", "cat_2", "Network")
        vault.calls.clear()

        assets = await discovery.list_assets(db, "org_1", Section.PASSWORDS)

        assert vault.calls_to(PASSWORDS_ORG_1)
        assert "Edge firewall" in [a.name for a in assets]
        assert len(assets) == 3

    async def test_zero_ttl_never_expires(self, db, connector, vault):
        discovery = VaultDiscovery(connector, CacheFreshness(assets_ttl_seconds=0, categories_ttl_seconds=0))
        await discovery.list_assets(db, "org_1", Section.PASSWORDS)
        await make_stale(db)
        vault.calls.clear()

        assert len(await discovery.list_assets(db, "org_1", Section.PASSWORDS)) == 3
        assert vault.calls == []

    async def test_flat_section_is_filtered_by_organization(self, db, discovery, vault):
        assets = await discovery.list_assets(db, "org_1", Section.FLEXIBLE_ASSETS)

        assert [a.vendor_id for a in assets] == ["fa1"]
        call = vault.calls_to("/flexible_assets")[0]
        assert call["filters"] == {"organization-id": "org_1"}
        assert call["sort"] == "-updated-at"

    async def test_category_filter_is_forwarded(self, db, discovery, vault):
        assets = await discovery.list_assets(db, "org_1", Section.PASSWORDS, category_id="cat_1")

        assert sorted(a.vendor_id for a in assets) == ["p1", "p3"]
        assert vault.calls_to(PASSWORDS_ORG_1)[0]["filters"] == {"password-category-id": "cat_1"}

    async def test_vendor_failure_returns_stale_rows(self, db, discovery, vault):
        await discovery.list_assets(db, "org_1", Section.PASSWORDS)
        await make_stale(db)
        vault.fail(PASSWORDS_ORG_1)

        assets = await discovery.list_assets(db, "org_1", Section.PASSWORDS)

        assert [a.vendor_id for a in assets] == ["p1", "p2", "p3"]

    @pytest.mark.parametrize("error", [None, httpx.ConnectError("connection refused")])
    async def test_vendor_failure_on_empty_cache_returns_nothing(self, db, discovery, vault, error):
        vault.fail(PASSWORDS_ORG_1, error)
        assert await discovery.list_assets(db, "org_1", Section.PASSWORDS) == []

    async def test_malformed_vendor_record_is_treated_as_a_failure(self, db):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"data": [{"type": "passwords", "attributes": {"name": "x"}}]})

        connector = VaultApiConnector("https://vault.test", "key", transport=httpx.MockTransport(handler))
        discovery = VaultDiscovery(connector, CacheFreshness())

        assert await discovery.list_assets(db, "1", Section.PASSWORDS) == []
        assert await discovery.list_categories(db, "1", Section.PASSWORDS) == []
        await connector.aclose()


class TestFailedCacheWrites:
    @pytest.fixture
    def failing_upsert(self, monkeypatch):
        async def clash(*args, **kwargs):
            raise IntegrityError("INSERT INTO cached_assets", {}, Exception("UNIQUE constraint failed"))

        monkeypatch.setattr(discovery_module, "upsert_assets", clash)
        monkeypatch.setattr(discovery_module, "upsert_orgs", clash)
        return monkeypatch

    async def test_empty_cache_answers_empty_and_rolls_back(self, db, discovery, vault, failing_upsert):
        assert await discovery.list_assets(db, "org_1", Section.PASSWORDS) == []
        # Categories written before the failure are rolled back with it
        assert await db.scalar(select(func.count()).select_from(CachedCategory)) == 0

        failing_upsert.undo()
        assets = await discovery.list_assets(db, "org_1", Section.PASSWORDS)
        assert [a.vendor_id for a in assets] == ["p1", "p2", "p3"]

    async def test_stale_rows_are_served(self, db, discovery, vault, monkeypatch):
        await discovery.list_assets(db, "org_1", Section.PASSWORDS)
        await make_stale(db)
        vault.lists[PASSWORDS_ORG_1][0] = fakes.password("p1", "org_1", "Renamed", "cat_1", "Admin")

        async def clash(*args, **kwargs):
            raise IntegrityError("INSERT INTO cached_assets", {}, Exception("UNIQUE constraint failed"))

        monkeypatch.setattr(discovery_module, "upsert_assets", clash)
        assets = await discovery.list_assets(db, "org_1", Section.PASSWORDS)

        assert [(a.vendor_id, a.name) for a in assets] == [
            ("p1", "Domain admin"), ("p2", "Firewall"), ("p3", "Password p3"),
        ]

    async def test_org_backfill_failure_answers_empty(self, db, discovery, connector, failing_upsert):
        connector.add("/organizations", fakes.org("org_1", "Acme"))
        assert await discovery.list_orgs(db) == []


class TestListCategories:
    async def test_categories_used_by_the_organization(self, db, discovery, vault):
        categories = await discovery.list_categories(db, "org_1", Section.PASSWORDS)

        assert [(c.vendor_id, c.name) for c in categories] == [("cat_1", "Admin"), ("cat_2", "Network")]

    async def test_other_organizations_categories_are_excluded(self, db, discovery, connector):
        connector.add("/organizations/org_2/relationships/passwords",
                      fakes.password("p9", "org_2", "Root", "cat_9", "Servers"))
        connector.add(PASSWORDS_ORG_1, fakes.password("p1", "org_1", "Domain admin", "cat_1", "Admin"))

        await discovery.list_assets(db, "org_2", Section.PASSWORDS)
        categories = await discovery.list_categories(db, "org_1", Section.PASSWORDS)

        assert [c.vendor_id for c in categories] == ["cat_1"]

    async def test_failure_returns_empty(self, db, discovery, vault):
        vault.fail(PASSWORDS_ORG_1)
        assert await discovery.list_categories(db, "org_1", Section.PASSWORDS) == []


class TestListOrgs:
    async def test_empty_mirror_is_backfilled(self, db, discovery, connector):
        connector.add("/organizations", fakes.org("org_2", "Globex"), fakes.org("org_1", "Acme"))

        orgs = await discovery.list_orgs(db)

        assert [o.name for o in orgs] == ["Acme", "Globex"]
        assert orgs[0].short_name == "ACM"

    async def test_search_does_not_backfill(self, db, discovery, connector):
        connector.add("/organizations", fakes.org("org_1", "Acme"))
        assert await discovery.list_orgs(db, search="acme") == []
        assert connector.calls == []

    async def test_cached_orgs_are_not_refetched(self, db, discovery, connector):
        connector.add("/organizations", fakes.org("org_1", "Acme"))
        await discovery.list_orgs(db)
        connector.calls.clear()

        assert [o.vendor_id for o in await discovery.list_orgs(db, search="cm")] == ["org_1"]
        assert connector.calls == []

    async def test_failure_returns_empty(self, db, discovery, connector):
        connector.fail("/organizations")
        assert await discovery.list_orgs(db) == []

    async def test_search_treats_wildcards_literally(self, db, discovery, connector):
        connector.add("/organizations", fakes.org("org_1", "Acme_Corp"), fakes.org("org_2", "AcmeXCorp"))
        await discovery.list_orgs(db)

        assert [o.vendor_id for o in await discovery.list_orgs(db, search="e_c")] == ["org_1"]
        assert await discovery.list_orgs(db, search="%") == []


class TestFreshness:
    def test_is_fresh(self):
        now = utcnow()
        assert CacheFreshness.is_fresh(now - timedelta(seconds=10), 60, now) is True
        assert CacheFreshness.is_fresh(now - timedelta(seconds=61), 60, now) is False
        assert CacheFreshness.is_fresh(None, 60, now) is False
        assert CacheFreshness.is_fresh(None, 0, now) is True

    def test_no_rows_are_never_fresh(self):
        assert CacheFreshness().rows_fresh([], 0) is False


def test_connector_capability_is_checked_at_construction():
    with pytest.raises(CapabilityMissing):
        VaultDiscovery(object(), CacheFreshness())
