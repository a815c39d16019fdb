"""Organization lifecycle and membership management."""

from __future__ import annotations

import structlog

from .audit import AuditTrail
from .authorization import AuthorizationGuard
from .broadcaster import ChangeBroadcaster, publish_after_commit
from .errors import Denied, DuplicateKey, NotFound
from .locks import KeyedLock, flag_key, organization_key
from .membership import MembershipIndex
from .models import (
    AuditKind,
    AuditRecord,
    ChangeEvent,
    ChangeKind,
    Flag,
    Membership,
    Organization,
    OrganizationScope,
    Role,
    utcnow,
)
from .storage import FlagStore, call_store, transaction_scope
from .validation import parse_role, require_id, validate_organization_name

logger = structlog.get_logger(__name__)

LAST_ADMIN_REASON = "An organization must keep at least one admin"


class OrganizationService:
    """Creates organizations and manages who belongs to them.

    Every mutation is serialized per organization and audited with the
    organization id. Only admins may change membership. Removing or demoting
    the last admin is refused unless ``enforce_last_admin`` is off.
    With a broadcaster attached, membership changes also update which live
    connections receive the organization's flag events.
    """

    def __init__(
        self,
        store: FlagStore,
        membership: MembershipIndex,
        guard: AuthorizationGuard,
        audit: AuditTrail,
        locks: KeyedLock | None = None,
        broadcaster: ChangeBroadcaster | None = None,
        enforce_last_admin: bool = True,
    ) -> None:
        self.store = store
        self.membership = membership
        self.guard = guard
        self.audit = audit
        self._locks = locks if locks is not None else KeyedLock()
        self.broadcaster = broadcaster
        self.enforce_last_admin = enforce_last_admin

    # ------------------------------------------------------------------
    # Organizations
    # ------------------------------------------------------------------

    async def create_organization(self, name: str, creator_id: str) -> Organization:
        name = validate_organization_name(name)
        require_id(creator_id, "creator_id")
        organization = Organization(name=name)

        async with self._locks.hold(organization_key(organization.id)):
            async with transaction_scope(self.store, "create_organization"):
                await call_store("save_organization", self.store.save_organization, organization)
                await call_store(
                    "save_membership",
                    self.store.save_membership,
                    Membership(organization_id=organization.id, user_id=creator_id, role=Role.ADMIN),
                )
                await self.audit.record(
                    AuditKind.ORGANIZATION_CREATED,
                    f"Created organization '{name}'",
                    creator_id,
                    organization_id=organization.id,
                )

        logger.info("organization_created", organization_id=organization.id, creator_id=creator_id)
        return organization

    async def get_organization(self, organization_id: str) -> Organization:
        require_id(organization_id, "organization_id")
        organization = await call_store(
            "get_organization", self.store.get_organization, organization_id
        )
        if organization is None:
            raise NotFound("Organization", organization_id)
        return organization

    async def rename_organization(self, organization_id: str, name: str, actor_id: str) -> Organization:
        name = validate_organization_name(name)
        async with self._locks.hold(organization_key(organization_id)):
            organization = await self.get_organization(organization_id)
            await self._require_admin(actor_id, organization_id, "rename_organization")
            if organization.name == name:
                return organization

            renamed = organization.model_copy(update={"name": name, "updated_at": utcnow()})
            async with transaction_scope(self.store, "rename_organization"):
                await call_store("save_organization", self.store.save_organization, renamed)
                await self.audit.record(
                    AuditKind.ORGANIZATION_RENAMED,
                    f"Renamed organization from '{organization.name}' to '{name}'",
                    actor_id,
                    organization_id=organization_id,
                )

        logger.info("organization_renamed", organization_id=organization_id, actor_id=actor_id)
        return renamed

    async def delete_organization(self, organization_id: str, actor_id: str) -> Organization:
        """Delete an organization, its flags with their overrides, and its memberships.

        Each removed flag is audited and broadcast as ``deleted``; audit
        records are kept. Admins only.
        """
        async with self._locks.hold(organization_key(organization_id)):
            organization = await self.get_organization(organization_id)
            await self._require_admin(actor_id, organization_id, "delete_organization")

            flags = await self._organization_flags(organization_id)
            async with self._locks.hold_all(flag_key(f.id) for f in flags):
                async with transaction_scope(self.store, "delete_organization"):
                    for flag in flags:
                        await call_store(
                            "delete_overrides_for_flag", self.store.delete_overrides_for_flag, flag.id
                        )
                        await call_store("delete_flag", self.store.delete_flag, flag.id)
                        await self.audit.record(
                            AuditKind.DELETED,
                            f"Deleted flag '{flag.key}' with organization '{organization.name}'",
                            actor_id,
                            flag_id=flag.id,
                            organization_id=organization_id,
                        )
                    memberships = await call_store(
                        "list_memberships", self.store.list_memberships, organization_id
                    )
                    for membership in memberships:
                        await call_store(
                            "delete_membership",
                            self.store.delete_membership,
                            organization_id,
                            membership.user_id,
                        )
                    await call_store(
                        "delete_organization", self.store.delete_organization, organization_id
                    )
                    await self.audit.record(
                        AuditKind.ORGANIZATION_DELETED,
                        f"Deleted organization '{organization.name}'",
                        actor_id,
                        organization_id=organization_id,
                    )
                if self.broadcaster is not None:
                    for flag in flags:
                        publish_after_commit(self.broadcaster, ChangeEvent.for_flag(ChangeKind.DELETED, flag))
                    self.broadcaster.revoke_organization(organization_id)

        logger.info(
            "organization_deleted",
            organization_id=organization_id,
            flags_removed=len(flags),
            actor_id=actor_id,
        )
        return organization

    async def organizations_for(self, user_id: str) -> list[Organization]:
        require_id(user_id)
        organizations = []
        for membership in await self.membership.organizations_of(user_id):
            organization = await call_store(
                "get_organization", self.store.get_organization, membership.organization_id
            )
            if organization is not None:
                organizations.append(organization)
        return organizations

    # ------------------------------------------------------------------
    # Memberships
    # ------------------------------------------------------------------

    async def members(self, organization_id: str, viewer_id: str) -> list[Membership]:
        """Members of an organization, oldest first. Visible to members only."""
        await self.get_organization(organization_id)
        require_id(viewer_id, "viewer_id")
        if not await self.membership.is_member(viewer_id, organization_id):
            raise Denied("Not a member of this organization")
        memberships = await call_store(
            "list_memberships", self.store.list_memberships, organization_id
        )
        return sorted(memberships, key=lambda m: m.created_at)

    async def add_member(self, organization_id: str, user_id: str, role: Role | str, actor_id: str) -> Membership:
        role = parse_role(role)
        require_id(user_id)
        async with self._locks.hold(organization_key(organization_id)):
            organization = await self.get_organization(organization_id)
            await self._require_admin(actor_id, organization_id, "add_member")
            if await self.membership.is_member(user_id, organization_id):
                raise DuplicateKey(user_id, f"organization '{organization.name}'", resource="Member")

            membership = Membership(organization_id=organization_id, user_id=user_id, role=role)
            async with transaction_scope(self.store, "add_member"):
                await call_store("save_membership", self.store.save_membership, membership)
                await self.audit.record(
                    AuditKind.MEMBER_ADDED,
                    f"Added '{user_id}' as {role.value}",
                    actor_id,
                    organization_id=organization_id,
                )
            if self.broadcaster is not None:
                self.broadcaster.grant_organization(organization_id, user_id)

        logger.info("member_added", organization_id=organization_id, user_id=user_id, role=role.value)
        return membership

    async def remove_member(self, organization_id: str, user_id: str, actor_id: str) -> Membership:
        """Remove a member together with their overrides on the organization's flags.

        The user's live connections stop receiving the organization's events.
        """
        require_id(user_id)
        async with self._locks.hold(organization_key(organization_id)):
            await self.get_organization(organization_id)
            await self._require_admin(actor_id, organization_id, "remove_member")
            membership = await self._load_membership(organization_id, user_id)
            if membership.role == Role.ADMIN:
                await self._keep_an_admin(organization_id)

            flags = await self._organization_flags(organization_id)
            async with self._locks.hold_all(flag_key(f.id) for f in flags):
                async with transaction_scope(self.store, "remove_member"):
                    await call_store(
                        "delete_membership", self.store.delete_membership, organization_id, user_id
                    )
                    removed = await self._purge_overrides(flags, user_id, actor_id)
                    await self.audit.record(
                        AuditKind.MEMBER_REMOVED,
                        f"Removed '{user_id}'",
                        actor_id,
                        organization_id=organization_id,
                    )
                if self.broadcaster is not None:
                    self.broadcaster.revoke_organization(organization_id, user_id)

        logger.info(
            "member_removed", organization_id=organization_id, user_id=user_id, overrides_removed=removed
        )
        return membership

    async def change_role(self, organization_id: str, user_id: str, role: Role | str, actor_id: str) -> Membership:
        role = parse_role(role)
        require_id(user_id)
        async with self._locks.hold(organization_key(organization_id)):
            await self.get_organization(organization_id)
            await self._require_admin(actor_id, organization_id, "change_role")
            membership = await self._load_membership(organization_id, user_id)
            if membership.role == role:
                return membership
            if membership.role == Role.ADMIN:
                await self._keep_an_admin(organization_id)

            updated = membership.model_copy(update={"role": role})
            async with transaction_scope(self.store, "change_role"):
                await call_store("save_membership", self.store.save_membership, updated)
                await self.audit.record(
                    AuditKind.ROLE_CHANGED,
                    f"Changed role of '{user_id}' from {membership.role.value} to {role.value}",
                    actor_id,
                    organization_id=organization_id,
                )

        logger.info("member_role_changed", organization_id=organization_id, user_id=user_id, role=role.value)
        return updated

    async def history(self, organization_id: str, viewer_id: str) -> list[AuditRecord]:
        await self.get_organization(organization_id)
        require_id(viewer_id, "viewer_id")
        if not await self.membership.is_member(viewer_id, organization_id):
            raise Denied("Not a member of this organization")
        return await self.audit.organization_history(organization_id)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _require_admin(self, actor_id: str, organization_id: str, operation: str) -> None:
        decision = await self.guard.can_manage_membership(actor_id, organization_id)
        if not decision:
            logger.info("mutation_denied", operation=operation, actor_id=actor_id, reason=decision.reason)
            raise Denied(decision.reason)

    async def _load_membership(self, organization_id: str, user_id: str) -> Membership:
        membership = await call_store(
            "get_membership", self.store.get_membership, organization_id, user_id
        )
        if membership is None:
            raise NotFound("Membership", user_id)
        return membership

    async def _organization_flags(self, organization_id: str) -> list[Flag]:
        return await call_store(
            "list_flags", self.store.list_flags, OrganizationScope(organization_id=organization_id)
        )

    async def _purge_overrides(self, flags: list[Flag], user_id: str, actor_id: str) -> int:
        removed = 0
        for flag in flags:
            override = await call_store("find_override", self.store.find_override, flag.id, user_id)
            if override is None:
                continue
            await call_store("delete_override", self.store.delete_override, override.id)
            await self.audit.record(
                AuditKind.OVERRIDE_DELETED,
                f"Removed override for '{user_id}' on leaving the organization",
                actor_id,
                flag_id=flag.id,
                organization_id=flag.organization_id,
            )
            removed += 1
        return removed

    async def _keep_an_admin(self, organization_id: str) -> None:
        if self.enforce_last_admin and await self.membership.admin_count(organization_id) <= 1:
            raise Denied(LAST_ADMIN_REASON)
