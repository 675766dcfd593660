"""
Administrative operations: audit rows, atomic bulk replace, conflicts and
unknown ids.
"""
import pytest
from sqlalchemy import func, literal_column, select
from sqlalchemy.exc import IntegrityError

from vault_access.core.exceptions import Conflict, InvalidRule, NotFound
from vault_access.features.audit.models import AuditLog
from vault_access.features.audit.service import diff_changes
from vault_access.features.permissions import service
from vault_access.features.permissions.models import (
    AccessMode,
    GroupUserAssignment,
    PermissionGroup,
    PermissionRule,
)
from vault_access.features.permissions.schemas import (
    GroupCreate,
    GroupUpdate,
    RuleCreate,
    RuleUpdate,
)


async def audit_actions(db, resource_id=None):
    # Insertion order; created_at only has second resolution on SQLite
    stmt = select(AuditLog).order_by(literal_column("audit_logs.rowid"))
    if resource_id:
        stmt = stmt.where(AuditLog.resource_id == resource_id)
    return [entry for entry in (await db.execute(stmt)).scalars().all()]


class TestGroups:
    async def test_create_update_delete_are_audited(self, db, admin_ctx):
        group = await service.create_group(db, admin_ctx, GroupCreate(name="Tier1", description="first line"))
        assert group.created_by == "admin"

        await service.update_group(db, admin_ctx, group.id, GroupUpdate(name="Tier 1"))
        await service.delete_group(db, admin_ctx, group.id)

        entries = await audit_actions(db, group.id)
        assert [e.action for e in entries] == [
            "vault_perm_group.created",
            "vault_perm_group.updated",
            "vault_perm_group.deleted",
        ]
        assert entries[1].details["changes"] == {"name": {"from": "Tier1", "to": "Tier 1"}}
        assert entries[1].actor_id == "admin"
        assert entries[1].ip_address == "127.0.0.1"
        assert await db.get(PermissionGroup, group.id) is None

    async def test_delete_removes_rules_and_assignments(self, db, admin_ctx, make_user):
        user = await make_user("alice")
        group = await service.create_group(db, admin_ctx, GroupCreate(name="Doomed"))
        await service.add_rule(db, admin_ctx, group.id, RuleCreate(org_id="org_1"))
        await service.assign_to_user(db, admin_ctx, group.id, user.id)
        await service.assign_to_role(db, admin_ctx, group.id, "role_1")

        await service.delete_group(db, admin_ctx, group.id)

        assert await db.scalar(select(func.count()).select_from(PermissionRule)) == 0
        assert await db.scalar(select(func.count()).select_from(GroupUserAssignment)) == 0
        deleted = (await audit_actions(db, group.id))[-1]
        assert deleted.details["rules"][0]["org_id"] == "org_1"

    async def test_unknown_group(self, db, admin_ctx):
        with pytest.raises(NotFound):
            await service.update_group(db, admin_ctx, "missing", GroupUpdate(name="x"))
        with pytest.raises(NotFound):
            await service.get_group(db, "missing")
        with pytest.raises(NotFound):
            await service.add_rule(db, admin_ctx, "missing", RuleCreate(org_id="org_1"))

    async def test_list_groups_counts(self, db, admin_ctx, make_user):
        user = await make_user("bob")
        busy = await service.create_group(db, admin_ctx, GroupCreate(name="Busy"))
        await service.create_group(db, admin_ctx, GroupCreate(name="Idle"))
        await service.bulk_set_rules(db, admin_ctx, busy.id, [
            RuleCreate(org_id="org_1"), RuleCreate(org_id="org_2"),
        ])
        await service.assign_to_user(db, admin_ctx, busy.id, user.id)
        await service.assign_to_role(db, admin_ctx, busy.id, "role_1")

        rows = await service.list_groups(db)
        counts = {r.group.name: (r.rule_count, r.user_count, r.role_count) for r in rows}
        assert counts == {"Busy": (2, 1, 1), "Idle": (0, 0, 0)}


class TestRules:
    async def test_add_update_remove(self, db, admin_ctx):
        group = await service.create_group(db, admin_ctx, GroupCreate(name="G"))
        rule = await service.add_rule(
            db, admin_ctx, group.id,
            RuleCreate(org_id="org_1", section="passwords", access_mode=AccessMode.READ_ONLY),
        )
        updated = await service.update_rule(db, admin_ctx, rule.id, RuleUpdate(access_mode=AccessMode.DENIED))
        assert updated.access_mode == AccessMode.DENIED

        await service.remove_rule(db, admin_ctx, rule.id)
        assert await service.list_rules(db, group.id) == []

        actions = [e.action for e in await audit_actions(db, group.id)]
        assert actions[-3:] == ["vault_perm_rule.added", "vault_perm_rule.updated", "vault_perm_rule.removed"]
        changes = (await audit_actions(db, group.id))[-2].details["changes"]
        assert changes == {"access_mode": {"from": "READ_ONLY", "to": "DENIED"}}

    async def test_update_rejects_inconsistent_scope(self, db, admin_ctx):
        group = await service.create_group(db, admin_ctx, GroupCreate(name="G"))
        rule = await service.add_rule(db, admin_ctx, group.id, RuleCreate(org_id="org_1", section="contacts"))

        with pytest.raises(InvalidRule):
            await service.update_rule(db, admin_ctx, rule.id, RuleUpdate(org_id="*"))

        await db.refresh(rule)
        assert rule.org_id == "org_1"

    async def test_unknown_rule(self, db, admin_ctx):
        with pytest.raises(NotFound):
            await service.remove_rule(db, admin_ctx, "missing")

    def test_rule_schema_validation(self):
        with pytest.raises(ValueError):
            RuleCreate(org_id="org_1", category_id="cat_1")
        with pytest.raises(ValueError):
            RuleCreate(org_id="*", section="passwords")
        RuleCreate(org_id="*")


class TestBulkSetRules:
    async def test_replaces_and_audits_diff(self, db, admin_ctx):
        group = await service.create_group(db, admin_ctx, GroupCreate(name="G"))
        await service.bulk_set_rules(db, admin_ctx, group.id, [
            RuleCreate(org_id="org_1"), RuleCreate(org_id="org_2"),
        ])
        created = await service.bulk_set_rules(db, admin_ctx, group.id, [
            RuleCreate(org_id="org_2"), RuleCreate(org_id="org_3", access_mode=AccessMode.READ_ONLY),
        ])

        assert len(created) == 2
        assert sorted(r.org_id for r in await service.list_rules(db, group.id)) == ["org_2", "org_3"]

        entry = (await audit_actions(db, group.id))[-1]
        assert entry.action == "vault_perm_rules.bulk_set"
        assert entry.details["rule_count"] == 2
        assert [r["org_id"] for r in entry.details["added"]] == ["org_3"]
        assert [r["org_id"] for r in entry.details["removed"]] == ["org_1"]

    async def test_failed_replace_keeps_previous_rules(self, db, admin_ctx):
        group = await service.create_group(db, admin_ctx, GroupCreate(name="G"))
        await service.bulk_set_rules(db, admin_ctx, group.id, [
            RuleCreate(org_id="org_1", access_mode=AccessMode.READ_ONLY),
            RuleCreate(org_id="org_2", section="passwords", access_mode=AccessMode.DENIED),
        ])
        group_id = group.id
        before = sorted((r.id, r.org_id) for r in await service.list_rules(db, group_id))
        audit_count = len(await audit_actions(db))

        # org_id is NOT NULL; the insert fails after the delete already ran
        broken = RuleCreate.model_construct(org_id=None, access_mode=AccessMode.READ_WRITE)
        with pytest.raises(IntegrityError):
            await service.bulk_set_rules(db, admin_ctx, group_id, [RuleCreate(org_id="org_9"), broken])

        # The rollback expires loaded instances, so only plain ids are used from here on
        after = sorted((r.id, r.org_id) for r in await service.list_rules(db, group_id))
        assert after == before
        assert len(await audit_actions(db)) == audit_count

    async def test_empty_replace_clears_rules(self, db, admin_ctx):
        group = await service.create_group(db, admin_ctx, GroupCreate(name="G"))
        await service.add_rule(db, admin_ctx, group.id, RuleCreate(org_id="org_1"))
        assert await service.bulk_set_rules(db, admin_ctx, group.id, []) == []
        assert await service.list_rules(db, group.id) == []


class TestAssignments:
    async def test_duplicate_user_assignment_conflicts(self, db, admin_ctx, make_user):
        user = await make_user("alice")
        group = await service.create_group(db, admin_ctx, GroupCreate(name="G"))
        assignment = await service.assign_to_user(db, admin_ctx, group.id, user.id)
        assert assignment.assigned_by == "admin"

        with pytest.raises(Conflict):
            await service.assign_to_user(db, admin_ctx, group.id, user.id)

    async def test_duplicate_role_assignment_conflicts(self, db, admin_ctx):
        group = await service.create_group(db, admin_ctx, GroupCreate(name="G"))
        await service.assign_to_role(db, admin_ctx, group.id, "role_1")
        with pytest.raises(Conflict):
            await service.assign_to_role(db, admin_ctx, group.id, "role_1")

    async def test_unknown_user(self, db, admin_ctx):
        group = await service.create_group(db, admin_ctx, GroupCreate(name="G"))
        with pytest.raises(NotFound):
            await service.assign_to_user(db, admin_ctx, group.id, "missing")

    async def test_remove_missing_assignment(self, db, admin_ctx, make_user):
        user = await make_user("bob")
        group_id = (await service.create_group(db, admin_ctx, GroupCreate(name="G"))).id
        with pytest.raises(NotFound):
            await service.remove_from_user(db, admin_ctx, group_id, user.id)
        with pytest.raises(NotFound):
            await service.remove_from_role(db, admin_ctx, group_id, "role_1")

    async def test_assign_and_remove_are_audited(self, db, admin_ctx, make_user):
        user = await make_user("carol")
        group = await service.create_group(db, admin_ctx, GroupCreate(name="G"))
        await service.assign_to_user(db, admin_ctx, group.id, user.id)
        await service.remove_from_user(db, admin_ctx, group.id, user.id)

        entries = await audit_actions(db, group.id)
        assert [e.action for e in entries][-2:] == [
            "vault_perm_group.assigned_user",
            "vault_perm_group.removed_user",
        ]
        assert entries[-2].details["user_email"] == user.email


def test_diff_changes():
    assert diff_changes({"a": 1, "b": 2}, {"a": 1, "b": 3, "c": 4}) == {
        "b": {"from": 2, "to": 3},
        "c": {"from": None, "to": 4},
    }
