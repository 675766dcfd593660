"""
Metadata sync: full and incremental runs, idempotent upserts,
continue-on-error, and lease-based mutual exclusion.
"""
from datetime import timedelta

import httpx
import pytest
from sqlalchemy import func, select

from vault_access.core.exceptions import CapabilityMissing
from vault_access.features.mirror.lock import SyncLease
from vault_access.features.mirror.models import (
    CachedAsset,
    CachedCategory,
    CachedOrg,
    SyncLock,
    SyncRun,
    SyncState,
)
from vault_access.features.mirror.sync import MetadataSync, sync_status
from vault_access.features.permissions.models import Section
from vault_access.features.vault.client import VaultApiConnector
from vault_access.utils import utcnow
from tests import fakes


PASSWORDS_ORG_1 = "/organizations/org_1/relationships/passwords"


@pytest.fixture
def vault(connector):
    connector.add("/organizations", fakes.org("org_1", "Acme"), fakes.org("org_2", "Globex"))

    connector.add("/password_categories", fakes.category("cat_1", "Admin"), fakes.category("cat_2", "Network"))
    connector.add("/flexible_asset_types", fakes.category("t_1", "Wi-Fi"))
    connector.add("/configuration_types", fakes.category("ct_1", "Server"))
    connector.add("/contact_types", fakes.category("ctt_1", "Billing"))

    connector.add(
        PASSWORDS_ORG_1,
        fakes.password("p1", "org_1", "Domain admin", "cat_1", "Admin"),
        fakes.password("p2", "org_1", "Firewall", "cat_2", "Network"),
        fakes.password("p3", "org_1", "Switch", "cat_2", "Network"),
    )
    connector.add("/organizations/org_2/relationships/passwords", fakes.password("p4", "org_2", "Root", "cat_1", "Admin"))
    connector.add(
        "/flexible_assets",
        fakes.flexible_asset("fa1", "org_1", "Office Wi-Fi", "t_1", "Wi-Fi"),
        fakes.flexible_asset("fa2", "org_2", None, "t_1", "Wi-Fi"),
    )
    connector.add(
        "/organizations/org_1/relationships/configurations",
        fakes.configuration("c1", "org_1", hostname="srv-01", name="Server 1", type_id="ct_1", type_name="Server"),
        fakes.configuration("c2", "org_1", name="Printer", type_id="ct_1", type_name="Server"),
    )
    connector.add(
        "/organizations/org_1/relationships/contacts",
        fakes.contact("ct1", "org_1", "Jane", "Doe", "ctt_1", "Billing"),
    )
    connector.add("/documents", fakes.document("d1", "org_2", "Security policy", "f_1", "Policies"))
    return connector


@pytest.fixture
def sync(session_factory, vault, lease):
    return MetadataSync(session_factory, vault, lease=lease, page_size=2, delay_ms=0)


async def count(db, model):
    return await db.scalar(select(func.count()).select_from(model))


async def states(db):
    result = await db.execute(select(SyncState))
    return {s.entity_type: s for s in result.scalars()}


class TestFullSync:
    async def test_imports_the_hierarchy(self, db, sync):
        result = await sync.run_sync("full")

        assert result.success is True
        assert result.errors == []
        assert result.counts == {
            "organizations": 2,
            "categories": 5,
            "passwords": 4,
            "flexible_assets": 2,
            "configurations": 2,
            "contacts": 1,
            "documents": 1,
        }
        assert await count(db, CachedOrg) == 2
        assert await count(db, CachedAsset) == 10
        # Taxonomies plus the document folder seen on a listing
        assert await count(db, CachedCategory) == 6

        names = {a.vendor_id: a.name for a in (await db.execute(select(CachedAsset))).scalars()}
        assert names["c1"] == "srv-01"
        assert names["c2"] == "Printer"
        assert names["ct1"] == "Jane Doe"
        assert names["fa2"] == "Flexible Asset fa2"

        folder = await db.scalar(select(CachedCategory).where(CachedCategory.section == Section.DOCUMENTS))
        assert (folder.vendor_id, folder.name) == ("f_1", "Policies")

    async def test_running_twice_is_idempotent(self, db, sync):
        await sync.run_sync("full")
        first = (await count(db, CachedOrg), await count(db, CachedCategory), await count(db, CachedAsset))
        await sync.run_sync("full")
        second = (await count(db, CachedOrg), await count(db, CachedCategory), await count(db, CachedAsset))

        assert first == second == (2, 6, 10)

    async def test_upsert_updates_changed_names(self, db, sync, vault):
        await sync.run_sync("full")
        vault.lists[PASSWORDS_ORG_1][0] = fakes.password("p1", "org_1", "Domain admin (old)", "cat_1", "Admin")
        await sync.run_sync("full")

        asset = await db.scalar(select(CachedAsset).where(CachedAsset.vendor_id == "p1"))
        assert asset.name == "Domain admin (old)"
        assert await count(db, CachedAsset) == 10

    async def test_paginates_listings(self, sync, vault):
        await sync.run_sync("full")
        pages = [c["page"] for c in vault.calls_to(PASSWORDS_ORG_1)]
        assert pages == [1, 2]
        assert vault.calls_to(PASSWORDS_ORG_1)[0]["sort"] == "name"

    async def test_section_request_shapes(self, sync, vault):
        await sync.run_sync("full")

        flat = vault.calls_to("/flexible_assets")
        assert {c["filters"]["organization-id"] for c in flat} == {"org_1", "org_2"}
        assert flat[0]["sort"] == "-updated-at"
        assert vault.calls_to("/organizations/org_1/relationships/contacts")[0]["sort"] == "last-name"
        assert vault.calls_to("/documents")
        assert vault.calls_to("/organizations/org_1/relationships/documents") == []

    async def test_records_run_progress_and_state(self, db, sync):
        result = await sync.run_sync("full")

        progress = await sync.get_sync_progress()
        assert progress["id"] == result.run_id
        assert progress["status"] == "completed"
        assert progress["mode"] == "full"
        assert progress["orgs_total"] == 2
        assert progress["orgs_completed"] == 2
        assert progress["assets_upserted"] == 10
        assert progress["counts"]["passwords"] == 4

        by_type = await states(db)
        assert set(by_type) == {"organizations", "categories"} | {s.value for s in Section}
        assert all(s.status == "idle" and s.cursor is not None for s in by_type.values())

        status = await sync_status(db)
        assert status["total_cached_orgs"] == 2
        assert status["total_cached_assets"] == 10
        assert status["progress"]["id"] == result.run_id

    async def test_rejects_unknown_mode(self, sync):
        with pytest.raises(ValueError):
            await sync.run_sync("partial")


class TestContinueOnError:
    async def test_one_section_failure_does_not_stop_the_run(self, db, sync, vault):
        vault.fail(PASSWORDS_ORG_1)

        result = await sync.run_sync("full")

        assert result.success is False
        assert [(e["entity_type"], e["scope"]) for e in result.errors] == [("passwords", "org_1")]
        assert result.counts["passwords"] == 1
        assert result.counts["configurations"] == 2
        assert await count(db, CachedAsset) == 7

        by_type = await states(db)
        assert by_type["passwords"].status == "error"
        assert by_type["passwords"].cursor is None
        assert "500" in by_type["passwords"].last_error
        assert by_type["configurations"].status == "idle"
        assert by_type["configurations"].cursor is not None

        run = await db.get(SyncRun, result.run_id)
        assert run.status == "completed"
        assert run.errors[0]["entity_type"] == "passwords"

    async def test_taxonomy_failure_is_recorded(self, db, sync, vault):
        vault.fail("/contact_types")

        result = await sync.run_sync("full")

        assert [(e["entity_type"], e["scope"]) for e in result.errors] == [("categories", "contacts")]
        assert (await states(db))["categories"].status == "error"
        assert await count(db, CachedAsset) == 10

    async def test_organization_failure_falls_back_to_cached_orgs(self, db, sync, vault):
        await sync.run_sync("full")
        vault.fail("/organizations")

        result = await sync.run_sync("full")

        assert result.errors[0]["entity_type"] == "organizations"
        assert result.counts["passwords"] == 4

    async def test_unexpected_error_is_isolated_to_its_section(self, db, sync, vault):
        vault.fail(PASSWORDS_ORG_1, KeyError("id"))

        result = await sync.run_sync("full")

        assert [(e["entity_type"], e["scope"]) for e in result.errors] == [("passwords", "org_1")]
        assert result.errors[0]["message"] == "KeyError: 'id'"
        assert await count(db, CachedAsset) == 7
        assert (await db.get(SyncRun, result.run_id)).status == "completed"

    async def test_malformed_vendor_page_does_not_stop_the_run(self, db, session_factory, lease):
        def handler(request: httpx.Request) -> httpx.Response:
            path = request.url.path
            if path == "/organizations":
                data = [{"id": "1", "type": "organizations", "attributes": {"name": "Acme"}}]
            elif path == "/organizations/1/relationships/passwords":
                data = [{"type": "passwords", "attributes": {"name": "no id"}}]
            elif path == "/organizations/1/relationships/configurations":
                data = [{"id": "c1", "type": "configurations",
                         "attributes": {"organization-id": "1", "hostname": "srv-01"}}]
            else:
                data = []
            return httpx.Response(200, json={"data": data, "meta": {"current-page": 1, "total-pages": 1}})

        connector = VaultApiConnector("https://vault.test", "key", transport=httpx.MockTransport(handler))
        sync = MetadataSync(session_factory, connector, lease=lease, delay_ms=0)

        result = await sync.run_sync("full")
        await connector.aclose()

        assert [(e["entity_type"], e["scope"]) for e in result.errors] == [("passwords", "1")]
        assert "malformed" in result.errors[0]["message"]
        assert result.counts["configurations"] == 1
        by_type = await states(db)
        assert by_type["passwords"].status == "error"
        assert {by_type[s].status for s in ("flexible_assets", "configurations", "contacts", "documents")} == {"idle"}

    async def test_aborted_run_leaves_no_entity_type_running(self, db, sync, monkeypatch):
        async def explode(*args, **kwargs):
            raise RuntimeError("disk full")

        monkeypatch.setattr(sync, "_sync_sections", explode)

        with pytest.raises(RuntimeError):
            await sync.run_sync("full")

        by_type = await states(db)
        assert "running" not in {s.status for s in by_type.values()}
        assert by_type["organizations"].status == "idle"
        assert by_type["passwords"].status == "error"
        assert by_type["passwords"].last_error == "run aborted: RuntimeError: disk full"
        assert (await db.scalar(select(SyncRun))).status == "failed"


class TestIncrementalSync:
    async def test_only_changed_records_are_requested(self, db, sync, vault):
        await sync.run_sync("full")
        vault.add(PASSWORDS_ORG_1, fakes.password("p5", "org_1", "New VPN", "cat_2", "Network",
                                                  updated_at="2099-01-01T00:00:00Z"))
        vault.calls.clear()

        result = await sync.run_sync("incremental")

        assert result.success is True
        assert result.counts["passwords"] == 1
        assert result.counts["organizations"] == 0
        assert "updated-at" in vault.calls_to(PASSWORDS_ORG_1)[0]["filters"]
        assert vault.calls_to("/organizations")[0]["filters"]["updated-at"].endswith(",*")
        assert await count(db, CachedAsset) == 11

    async def test_section_without_cursor_pulls_everything(self, db, sync, vault):
        vault.fail(PASSWORDS_ORG_1)
        await sync.run_sync("full")
        vault.heal(PASSWORDS_ORG_1)
        vault.calls.clear()

        result = await sync.run_sync("incremental")

        assert "updated-at" not in vault.calls_to(PASSWORDS_ORG_1)[0]["filters"]
        assert "updated-at" in vault.calls_to("/organizations/org_1/relationships/configurations")[0]["filters"]
        assert result.counts["passwords"] == 4
        assert (await states(db))["passwords"].cursor is not None


class TestMutualExclusion:
    async def test_second_run_is_skipped_while_lease_is_live(self, db, sync, lease):
        assert await lease.acquire("other-worker") is True

        result = await sync.run_sync("full")

        assert result.success is False
        assert result.skipped_reason == "sync already in progress"
        assert await count(db, SyncRun) == 0
        assert await count(db, CachedOrg) == 0

    async def test_expired_lease_is_taken_over(self, db, sync, lease):
        assert await lease.acquire("crashed-worker", now=utcnow() - timedelta(hours=2)) is True

        result = await sync.run_sync("full")

        assert result.success is True
        assert await count(db, SyncLock) == 0

    async def test_lease_is_released_after_run(self, sync, lease):
        await sync.run_sync("full")
        assert await lease.is_held() is False
        assert await lease.acquire("next") is True

    async def test_lease_lifecycle(self, session_factory):
        lease = SyncLease(session_factory, scope="test-scope", ttl_seconds=60)

        assert await lease.acquire("a") is True
        assert await lease.acquire("b") is False
        assert (await lease.current()).holder == "a"

        # Only the holder can release
        await lease.release("b")
        assert await lease.is_held() is True

        await lease.release("a")
        assert await lease.is_held() is False
        assert await lease.acquire("b") is True

    async def test_leases_are_scoped(self, session_factory):
        first = SyncLease(session_factory, scope="one")
        second = SyncLease(session_factory, scope="two")
        assert await first.acquire("a") is True
        assert await second.acquire("a") is True


def test_connector_capability_is_checked_at_construction(session_factory):
    with pytest.raises(CapabilityMissing):
        MetadataSync(session_factory, object())
