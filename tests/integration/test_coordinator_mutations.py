"""Contract tests for the coordinator's write and read operations."""

from __future__ import annotations

import asyncio
from unittest.mock import patch

import pytest

from bandera.flags import (
    AuditKind,
    Denied,
    DuplicateKey,
    FlagMutationCoordinator,
    FlagPatch,
    NotFound,
    Role,
    StorageFailure,
    ValidationFailed,
)
from tests.support import RecordingHandle


async def make_org(coordinator: FlagMutationCoordinator) -> str:
    service = coordinator.organizations
    org = await service.create_organization("Acme", "bob")
    await service.add_member(org.id, "carol", Role.MEMBER, "bob")
    return org.id


class TestCreateFlag:
    @pytest.mark.asyncio
    async def test_audits_created(self, coordinator):
        flag = await coordinator.create_flag("beta-ui", "boolean", "false", "alice", description="  New UI ")

        assert flag.description == "New UI"
        history = await coordinator.audit.history(flag.id)
        assert [(r.kind, r.actor_id) for r in history] == [(AuditKind.CREATED, "alice")]

    @pytest.mark.asyncio
    async def test_duplicate_key_in_same_scope(self, coordinator):
        await coordinator.create_flag("beta-ui", "boolean", "false", "alice")
        with pytest.raises(DuplicateKey, match="user:alice"):
            await coordinator.create_flag("beta-ui", "string", "x", "alice")

    @pytest.mark.asyncio
    async def test_same_key_allowed_in_other_scopes(self, coordinator):
        org_id = await make_org(coordinator)
        await coordinator.create_flag("beta-ui", "boolean", "false", "alice")
        await coordinator.create_flag("beta-ui", "boolean", "false", "bob")
        await coordinator.create_flag("beta-ui", "boolean", "false", "bob", organization_id=org_id)

    @pytest.mark.asyncio
    async def test_non_admin_cannot_create_in_organization(self, coordinator):
        org_id = await make_org(coordinator)
        with pytest.raises(Denied, match="admins"):
            await coordinator.create_flag("beta-ui", "boolean", "false", "carol", organization_id=org_id)
        assert await coordinator.list_flags("carol", organization_id=org_id) == []

    @pytest.mark.asyncio
    async def test_unknown_organization(self, coordinator):
        with pytest.raises(NotFound, match="Organization"):
            await coordinator.create_flag("beta-ui", "boolean", "false", "bob", organization_id="nope")

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "args, match",
        [
            (("", "boolean", "false", "alice"), "cannot be empty"),
            (("beta-ui", "percentage", "10", "alice"), "Unknown flag type"),
            (("beta-ui", "boolean", None, "alice"), "default_value must be a string"),
            (("beta-ui", "boolean", "false", ""), "owner_id is required"),
        ],
    )
    async def test_malformed_input(self, coordinator, args, match):
        with pytest.raises(ValidationFailed, match=match):
            await coordinator.create_flag(*args)


class TestUpdateFlag:
    @pytest.mark.asyncio
    async def test_applies_patch_and_broadcasts(self, coordinator):
        handle = RecordingHandle()
        coordinator.broadcaster.register("c", handle)
        flag = await coordinator.create_flag("beta-ui", "boolean", "false", "alice")

        updated = await coordinator.update_flag(flag.id, FlagPatch(default_value="true", description="x"), "alice")
        await coordinator.broadcaster.drain()

        assert updated.default_value == "true"
        assert updated.updated_at >= flag.updated_at
        assert [e["event"] for e in handle.events] == ["feature_flag.created", "feature_flag.updated"]
        assert handle.events[-1]["data"]["value"] == "true"
        assert (await coordinator.audit.history(flag.id))[0].message == "Updated flag 'beta-ui': default_value, description"
        await coordinator.broadcaster.close()

    @pytest.mark.asyncio
    async def test_unknown_flag(self, coordinator):
        with pytest.raises(NotFound):
            await coordinator.update_flag("missing", {"default_value": "1"}, "alice")

    @pytest.mark.asyncio
    async def test_rename_to_taken_key(self, coordinator):
        await coordinator.create_flag("beta-ui", "boolean", "false", "alice")
        other = await coordinator.create_flag("beta-api", "boolean", "false", "alice")

        with pytest.raises(DuplicateKey):
            await coordinator.update_flag(other.id, {"key": "beta-ui"}, "alice")

        assert (await coordinator.get_flag(other.id, "alice")).key == "beta-api"

    @pytest.mark.asyncio
    async def test_rename_to_own_key_is_allowed(self, coordinator):
        flag = await coordinator.create_flag("beta-ui", "boolean", "false", "alice")
        updated = await coordinator.update_flag(flag.id, {"key": "beta-ui", "enabled": False}, "alice")
        assert updated.enabled is False

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "patch_value, match",
        [
            ({}, "at least one field"),
            ({"owner": "mallory"}, "Invalid input"),
            ({"default_value": None}, "cannot be null"),
            ({"key": "9lives"}, "start with a letter"),
            ({"type": "percentage"}, "Invalid input"),
        ],
    )
    async def test_invalid_patch(self, coordinator, patch_value, match):
        flag = await coordinator.create_flag("beta-ui", "boolean", "false", "alice")
        with pytest.raises(ValidationFailed, match=match):
            await coordinator.update_flag(flag.id, patch_value, "alice")

    @pytest.mark.asyncio
    async def test_patch_without_real_changes_is_a_no_op(self, coordinator):
        handle = RecordingHandle()
        coordinator.broadcaster.register("c", handle)
        flag = await coordinator.create_flag("beta-ui", "boolean", "false", "alice")

        same = await coordinator.update_flag(flag.id, {"key": "beta-ui", "default_value": "false"}, "alice")
        await coordinator.broadcaster.drain()

        assert same == flag
        assert [r.kind for r in await coordinator.audit.history(flag.id)] == [AuditKind.CREATED]
        assert [e["event"] for e in handle.events] == ["feature_flag.created"]
        await coordinator.broadcaster.close()

    @pytest.mark.asyncio
    async def test_only_changed_fields_are_audited(self, coordinator):
        flag = await coordinator.create_flag("beta-ui", "boolean", "false", "alice")

        await coordinator.update_flag(flag.id, {"key": "beta-ui", "enabled": False}, "alice")

        assert (await coordinator.audit.history(flag.id))[0].message == "Updated flag 'beta-ui': enabled"

    @pytest.mark.asyncio
    async def test_description_can_be_cleared(self, coordinator):
        flag = await coordinator.create_flag("beta-ui", "boolean", "false", "alice", description="old")
        updated = await coordinator.update_flag(flag.id, {"description": None}, "alice")
        assert updated.description is None


class TestDeleteFlag:
    @pytest.mark.asyncio
    async def test_cascades_overrides_and_keeps_audit(self, coordinator, store):
        org_id = await make_org(coordinator)
        flag = await coordinator.create_flag("new-search", "number", "0", "bob", organization_id=org_id)
        await coordinator.create_override(flag.id, "carol", "1", "bob")

        await coordinator.delete_flag(flag.id, "bob")

        assert store.list_overrides(flag.id) == []
        with pytest.raises(NotFound):
            await coordinator.get_flag(flag.id, "bob")
        kinds = [r.kind for r in await coordinator.audit.history(flag.id)]
        assert kinds == [AuditKind.DELETED, AuditKind.OVERRIDE_CREATED, AuditKind.CREATED]

    @pytest.mark.asyncio
    async def test_member_cannot_delete(self, coordinator):
        org_id = await make_org(coordinator)
        flag = await coordinator.create_flag("new-search", "number", "0", "bob", organization_id=org_id)
        with pytest.raises(Denied):
            await coordinator.delete_flag(flag.id, "carol")

    @pytest.mark.asyncio
    async def test_deleted_key_can_be_reused(self, coordinator):
        flag = await coordinator.create_flag("beta-ui", "boolean", "false", "alice")
        await coordinator.delete_flag(flag.id, "alice")
        again = await coordinator.create_flag("beta-ui", "boolean", "true", "alice")
        assert again.id != flag.id


class TestOverrides:
    @pytest.mark.asyncio
    async def test_upsert_keeps_one_row(self, coordinator, store):
        org_id = await make_org(coordinator)
        flag = await coordinator.create_flag("new-search", "number", "0", "bob", organization_id=org_id)

        first = await coordinator.create_override(flag.id, "carol", "1", "bob")
        second = await coordinator.create_override(flag.id, "carol", "2", "bob")

        assert second.id == first.id
        assert [(o.user_id, o.value) for o in store.list_overrides(flag.id)] == [("carol", "2")]

    @pytest.mark.asyncio
    async def test_member_self_service(self, coordinator):
        org_id = await make_org(coordinator)
        flag = await coordinator.create_flag("new-search", "number", "0", "bob", organization_id=org_id)

        await coordinator.create_override(flag.id, "carol", "7", "carol")

        assert (await coordinator.evaluate("new-search", "carol", org_id)).value == "7"

    @pytest.mark.asyncio
    async def test_member_cannot_override_for_others(self, coordinator):
        org_id = await make_org(coordinator)
        flag = await coordinator.create_flag("new-search", "number", "0", "bob", organization_id=org_id)
        with pytest.raises(Denied):
            await coordinator.create_override(flag.id, "bob", "7", "carol")

    @pytest.mark.asyncio
    async def test_override_event_reaches_only_target(self, coordinator):
        org_id = await make_org(coordinator)
        flag = await coordinator.create_flag("new-search", "number", "0", "bob", organization_id=org_id)
        carol, bob = RecordingHandle(), RecordingHandle()
        coordinator.broadcaster.register("carol", carol, user_id="carol", organization_ids=[org_id])
        coordinator.broadcaster.register("bob", bob, user_id="bob", organization_ids=[org_id])

        await coordinator.create_override(flag.id, "carol", "1", "bob")
        await coordinator.broadcaster.drain()

        assert bob.messages == []
        assert carol.events[0]["event"] == "feature_flag.updated"
        assert carol.events[0]["data"]["value"] == "1"
        assert carol.events[0]["data"]["isOverridden"] is True
        await coordinator.broadcaster.close()

    @pytest.mark.asyncio
    async def test_delete_override_restores_default(self, coordinator):
        org_id = await make_org(coordinator)
        flag = await coordinator.create_flag("new-search", "number", "0", "bob", organization_id=org_id)
        override = await coordinator.create_override(flag.id, "carol", "1", "bob")
        handle = RecordingHandle()
        coordinator.broadcaster.register("carol", handle, user_id="carol", organization_ids=[org_id])

        await coordinator.delete_override(override.id, "carol")
        await coordinator.broadcaster.drain()

        assert (await coordinator.evaluate("new-search", "carol", org_id)).is_overridden is False
        data = handle.events[0]["data"]
        assert (data["value"], data["isOverridden"]) == ("0", False)
        assert (await coordinator.audit.history(flag.id))[0].kind is AuditKind.OVERRIDE_DELETED
        await coordinator.broadcaster.close()

    @pytest.mark.asyncio
    async def test_delete_unknown_override(self, coordinator):
        with pytest.raises(NotFound, match="Override"):
            await coordinator.delete_override("nope", "bob")

    @pytest.mark.asyncio
    async def test_outsider_cannot_delete_override(self, coordinator):
        org_id = await make_org(coordinator)
        flag = await coordinator.create_flag("new-search", "number", "0", "bob", organization_id=org_id)
        override = await coordinator.create_override(flag.id, "carol", "1", "bob")
        with pytest.raises(Denied):
            await coordinator.delete_override(override.id, "eve")


class TestReadPath:
    @pytest.mark.asyncio
    async def test_personal_flags_are_private(self, coordinator):
        flag = await coordinator.create_flag("beta-ui", "boolean", "false", "alice")
        with pytest.raises(Denied):
            await coordinator.get_flag(flag.id, "bob")
        with pytest.raises(NotFound):
            await coordinator.evaluate("beta-ui", "bob")

    @pytest.mark.asyncio
    async def test_list_flags_sorted_with_effective_values(self, coordinator):
        org_id = await make_org(coordinator)
        zeta = await coordinator.create_flag("zeta-flag", "string", "z", "bob", organization_id=org_id)
        await coordinator.create_flag("alpha-flag", "string", "a", "bob", organization_id=org_id)
        await coordinator.create_override(zeta.id, "carol", "zz", "bob")

        views = await coordinator.list_flags("carol", organization_id=org_id)

        assert [(v.flag.key, v.effective.value, v.effective.is_overridden) for v in views] == [
            ("alpha-flag", "a", False),
            ("zeta-flag", "zz", True),
        ]

    @pytest.mark.asyncio
    async def test_list_flags_requires_membership(self, coordinator):
        org_id = await make_org(coordinator)
        with pytest.raises(Denied):
            await coordinator.list_flags("eve", organization_id=org_id)

    @pytest.mark.asyncio
    async def test_flag_detail_visibility_of_overrides(self, coordinator):
        org_id = await make_org(coordinator)
        await coordinator.organizations.add_member(org_id, "dave", Role.MEMBER, "bob")
        flag = await coordinator.create_flag("new-search", "number", "0", "bob", organization_id=org_id)
        await coordinator.create_override(flag.id, "carol", "1", "bob")
        await coordinator.create_override(flag.id, "dave", "2", "bob")

        admin_view = await coordinator.flag_detail(flag.id, "bob")
        member_view = await coordinator.flag_detail(flag.id, "carol")

        assert admin_view.can_mutate is True
        assert {o.user_id for o in admin_view.overrides} == {"carol", "dave"}
        assert member_view.can_mutate is False
        assert [o.user_id for o in member_view.overrides] == ["carol"]
        assert member_view.effective.value == "1"
        assert [r.kind for r in member_view.history][-1] is AuditKind.CREATED


class TestFailureAtomicity:
    @pytest.mark.asyncio
    async def test_audit_failure_rolls_back_and_broadcasts_nothing(self, coordinator, store):
        handle = RecordingHandle()
        coordinator.broadcaster.register("c", handle)
        flag = await coordinator.create_flag("beta-ui", "boolean", "false", "alice")
        await coordinator.broadcaster.drain()

        with patch.object(store, "append_audit", side_effect=OSError("audit store offline")):
            with pytest.raises(StorageFailure, match="audit store offline"):
                await coordinator.toggle_flag(flag.id, "alice")
            with pytest.raises(StorageFailure):
                await coordinator.create_flag("beta-api", "boolean", "false", "alice")
        await coordinator.broadcaster.drain()

        assert (await coordinator.get_flag(flag.id, "alice")).enabled is True
        assert store.find_flag_by_key(flag.scope, "beta-api") is None
        assert [e["event"] for e in handle.events] == ["feature_flag.created"]
        assert len(await coordinator.audit.history(flag.id)) == 1
        await coordinator.broadcaster.close()

    @pytest.mark.asyncio
    async def test_persist_failure_skips_audit(self, coordinator, store):
        flag = await coordinator.create_flag("beta-ui", "boolean", "false", "alice")

        with patch.object(store, "save_flag", side_effect=OSError("disk full")):
            with pytest.raises(StorageFailure, match="save_flag"):
                await coordinator.update_flag(flag.id, {"default_value": "true"}, "alice")

        assert [r.kind for r in await coordinator.audit.history(flag.id)] == [AuditKind.CREATED]

    @pytest.mark.asyncio
    async def test_cancellation_inside_transaction_rolls_back(self, coordinator, store):
        flag = await coordinator.create_flag("beta-ui", "boolean", "false", "alice")
        entered = asyncio.Event()
        original_append = store.append_audit

        async def slow_append(record):
            entered.set()
            await asyncio.sleep(10)
            original_append(record)

        with patch.object(store, "append_audit", side_effect=slow_append):
            task = asyncio.create_task(coordinator.toggle_flag(flag.id, "alice"))
            await entered.wait()
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task

        assert (await coordinator.get_flag(flag.id, "alice")).enabled is True
        assert len(await coordinator.audit.history(flag.id)) == 1
