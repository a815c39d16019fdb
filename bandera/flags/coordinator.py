"""Flag mutation coordinator: authorize, persist, audit, broadcast.

Every write follows the same path::

    Requested → Authorized → Persisted → Audited → Broadcast → Completed
                    │                 └── Failed (StorageFailure, rolled back)
                    └── Denied

Mutations on one flag are serialized by a per-flag lock, and key uniqueness
by a per-(scope, key) lock taken after it. Creating an organization flag
also holds that organization's lock first. Persist and audit share one
storage transaction; the change event is queued synchronously right after
that transaction commits, so a failed or cancelled write is never broadcast.
A broadcaster fault after commit is logged; the write still completes.
"""

from __future__ import annotations

import os
from contextlib import AsyncExitStack
from dataclasses import dataclass, field
from typing import Any, Awaitable

import structlog
from pydantic import ValidationError

from .audit import AuditTrail
from .authorization import AuthorizationGuard
from .broadcaster import ChangeBroadcaster, SubscriberHandle, publish_after_commit
from .errors import Denied, DuplicateKey, NotFound, ValidationFailed
from .locks import KeyedLock, flag_key, organization_key, scope_key
from .membership import MembershipIndex
from .models import (
    AuditKind,
    ChangeEvent,
    ChangeKind,
    Decision,
    EffectiveValue,
    Flag,
    FlagDetail,
    FlagPatch,
    FlagType,
    FlagView,
    OrganizationScope,
    Override,
    PersonalScope,
    utcnow,
)
from .organizations import OrganizationService
from .resolver import FlagResolver
from .storage import FlagStore, InMemoryFlagStore, call_store, transaction_scope
from .validation import (
    from_pydantic,
    normalize_description,
    parse_flag_type,
    require_id,
    require_text,
    validate_flag_key,
)

logger = structlog.get_logger(__name__)

_REQUIRED_PATCH_FIELDS = ("key", "type", "default_value", "enabled")


def _env_flag(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


@dataclass
class CoordinatorConfig:
    subscriber_queue_size: int = field(
        default_factory=lambda: int(os.environ.get("BANDERA_SUBSCRIBER_QUEUE_SIZE", "128"))
    )
    enforce_last_admin: bool = field(
        default_factory=lambda: _env_flag("BANDERA_ENFORCE_LAST_ADMIN", True)
    )


class FlagMutationCoordinator:
    def __init__(
        self,
        store: FlagStore | None = None,
        broadcaster: ChangeBroadcaster | None = None,
        config: CoordinatorConfig | None = None,
    ) -> None:
        self.config = config if config is not None else CoordinatorConfig()
        self.store = store if store is not None else InMemoryFlagStore()
        self.broadcaster = (
            broadcaster if broadcaster is not None else ChangeBroadcaster(self.config.subscriber_queue_size)
        )
        self.membership = MembershipIndex(self.store)
        self.guard = AuthorizationGuard(self.membership)
        self.resolver = FlagResolver(self.store)
        self.audit = AuditTrail(self.store)
        self._locks = KeyedLock()
        self.organizations = OrganizationService(
            self.store,
            self.membership,
            self.guard,
            self.audit,
            locks=self._locks,
            broadcaster=self.broadcaster,
            enforce_last_admin=self.config.enforce_last_admin,
        )

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    async def subscribe(
        self,
        connection_id: str,
        handle: SubscriberHandle,
        user_id: str,
        organization_ids: list[str] | None = None,
    ) -> frozenset[str]:
        """Register a signed-in connection for its user's flag changes.

        Organization interest comes from the user's memberships; naming an
        organization the user does not belong to is ``Denied``. Membership
        changes made later are applied to the registration by the
        organization service. Returns the organizations subscribed to.
        """
        require_id(connection_id, "connection_id")
        require_id(user_id, "user_id")
        member_of = {m.organization_id for m in await self.membership.organizations_of(user_id)}
        if organization_ids is None:
            wanted = member_of
        else:
            wanted = set(organization_ids)
            outside = sorted(wanted - member_of)
            if outside:
                logger.info("subscription_denied", connection_id=connection_id, user_id=user_id, organizations=outside)
                raise Denied("Not a member of this organization")
        # no await between the membership read and registration
        self.broadcaster.register(connection_id, handle, user_id=user_id, organization_ids=wanted)
        return self.broadcaster.organizations_of(connection_id)

    # ------------------------------------------------------------------
    # Flag mutations
    # ------------------------------------------------------------------

    async def create_flag(
        self,
        key: str,
        type: FlagType | str,
        default_value: str,
        owner_id: str,
        description: str | None = None,
        organization_id: str | None = None,
    ) -> Flag:
        key = validate_flag_key(key)
        flag_type = parse_flag_type(type)
        default_value = require_text(default_value, "default_value")
        description = normalize_description(description)
        require_id(owner_id, "owner_id")
        scope = await self._scope_for(owner_id, organization_id)

        async with AsyncExitStack() as stack:
            if organization_id is not None:
                # an organization being deleted must not gain flags
                await stack.enter_async_context(self._locks.hold(organization_key(organization_id)))
                await self.organizations.get_organization(organization_id)
            await stack.enter_async_context(self._locks.hold(scope_key(scope, key)))
            await self._authorize(self.guard.can_create_flag(owner_id, scope), "create_flag", owner_id)
            await self._ensure_key_free(scope, key)

            flag = Flag(
                key=key,
                type=flag_type,
                default_value=default_value,
                description=description,
                scope=scope,
            )
            async with transaction_scope(self.store, "create_flag"):
                await call_store("save_flag", self.store.save_flag, flag)
                await self.audit.record(
                    AuditKind.CREATED,
                    f"Created flag '{key}'",
                    owner_id,
                    flag_id=flag.id,
                    organization_id=organization_id,
                )
            self._publish(ChangeKind.CREATED, flag)

        logger.info("flag_created", flag_id=flag.id, key=key, scope=scope.namespace, actor_id=owner_id)
        return flag

    async def update_flag(self, flag_id: str, patch: FlagPatch | dict[str, Any], actor_id: str) -> Flag:
        changes = _coerce_patch(patch)

        async with self._locks.hold(flag_key(flag_id)):
            flag = await self._load_flag(flag_id)
            await self._authorize(self.guard.can_mutate_flag(actor_id, flag), "update_flag", actor_id)

            changes = {name: value for name, value in changes.items() if getattr(flag, name) != value}
            if not changes:
                logger.debug("flag_update_skipped", flag_id=flag_id, actor_id=actor_id)
                return flag

            async with AsyncExitStack() as stack:
                new_key = changes.get("key")
                if new_key is not None:
                    await stack.enter_async_context(self._locks.hold(scope_key(flag.scope, new_key)))
                    await self._ensure_key_free(flag.scope, new_key, exclude_id=flag.id)

                updated = flag.model_copy(update={**changes, "updated_at": utcnow()})
                async with transaction_scope(self.store, "update_flag"):
                    await call_store("save_flag", self.store.save_flag, updated)
                    await self.audit.record(
                        AuditKind.UPDATED,
                        f"Updated flag '{updated.key}': {', '.join(sorted(changes))}",
                        actor_id,
                        flag_id=flag.id,
                        organization_id=flag.organization_id,
                    )
                self._publish(ChangeKind.UPDATED, updated)

        logger.info("flag_updated", flag_id=flag_id, fields=sorted(changes), actor_id=actor_id)
        return updated

    async def delete_flag(self, flag_id: str, actor_id: str) -> Flag:
        async with self._locks.hold(flag_key(flag_id)):
            flag = await self._load_flag(flag_id)
            await self._authorize(self.guard.can_mutate_flag(actor_id, flag), "delete_flag", actor_id)

            async with transaction_scope(self.store, "delete_flag"):
                removed = await call_store(
                    "delete_overrides_for_flag", self.store.delete_overrides_for_flag, flag.id
                )
                await call_store("delete_flag", self.store.delete_flag, flag.id)
                await self.audit.record(
                    AuditKind.DELETED,
                    f"Deleted flag '{flag.key}'",
                    actor_id,
                    flag_id=flag.id,
                    organization_id=flag.organization_id,
                )
            self._publish(ChangeKind.DELETED, flag)

        logger.info("flag_deleted", flag_id=flag_id, overrides_removed=removed, actor_id=actor_id)
        return flag

    async def toggle_flag(self, flag_id: str, actor_id: str) -> Flag:
        async with self._locks.hold(flag_key(flag_id)):
            flag = await self._load_flag(flag_id)
            await self._authorize(self.guard.can_mutate_flag(actor_id, flag), "toggle_flag", actor_id)

            toggled = flag.model_copy(update={"enabled": not flag.enabled, "updated_at": utcnow()})
            state = "Enabled" if toggled.enabled else "Disabled"
            async with transaction_scope(self.store, "toggle_flag"):
                await call_store("save_flag", self.store.save_flag, toggled)
                await self.audit.record(
                    AuditKind.TOGGLED,
                    f"{state} flag '{flag.key}'",
                    actor_id,
                    flag_id=flag.id,
                    organization_id=flag.organization_id,
                )
            self._publish(ChangeKind.TOGGLED, toggled)

        logger.info("flag_toggled", flag_id=flag_id, enabled=toggled.enabled, actor_id=actor_id)
        return toggled

    # ------------------------------------------------------------------
    # Override mutations
    # ------------------------------------------------------------------

    async def create_override(self, flag_id: str, target_user_id: str, value: str, actor_id: str) -> Override:
        """Set *target_user_id*'s value for a flag, replacing any previous override."""
        value = require_text(value, "value")

        async with self._locks.hold(flag_key(flag_id)):
            flag = await self._load_flag(flag_id)
            await self._authorize(
                self.guard.can_create_override_for(actor_id, target_user_id, flag),
                "create_override",
                actor_id,
            )

            async with transaction_scope(self.store, "create_override"):
                override = await call_store(
                    "upsert_override", self.store.upsert_override, flag.id, target_user_id, value
                )
                await self.audit.record(
                    AuditKind.OVERRIDE_CREATED,
                    f"Set override for '{target_user_id}' to '{value}'",
                    actor_id,
                    flag_id=flag.id,
                    organization_id=flag.organization_id,
                )
            self._publish(
                ChangeKind.UPDATED,
                flag,
                value=override.value,
                is_overridden=True,
                audience_user_id=target_user_id,
            )

        logger.info("override_set", flag_id=flag_id, user_id=target_user_id, actor_id=actor_id)
        return override

    async def delete_override(self, override_id: str, actor_id: str) -> Override:
        require_id(override_id, "override_id")
        override = await self._load_override(override_id)

        async with self._locks.hold(flag_key(override.flag_id)):
            # re-read under the flag lock; it may have gone while we waited
            override = await self._load_override(override_id)
            flag = await self._load_flag(override.flag_id)
            await self._authorize(
                self.guard.can_delete_override(actor_id, override.user_id, flag),
                "delete_override",
                actor_id,
            )

            async with transaction_scope(self.store, "delete_override"):
                await call_store("delete_override", self.store.delete_override, override.id)
                await self.audit.record(
                    AuditKind.OVERRIDE_DELETED,
                    f"Removed override for '{override.user_id}'",
                    actor_id,
                    flag_id=flag.id,
                    organization_id=flag.organization_id,
                )
            self._publish(ChangeKind.UPDATED, flag, audience_user_id=override.user_id)

        logger.info("override_removed", flag_id=flag.id, user_id=override.user_id, actor_id=actor_id)
        return override

    # ------------------------------------------------------------------
    # Read path
    # ------------------------------------------------------------------

    async def get_flag(self, flag_id: str, viewer_id: str) -> Flag:
        flag = await self._load_flag(flag_id)
        await self._authorize(self.guard.can_view_flag(viewer_id, flag), "get_flag", viewer_id)
        return flag

    async def list_flags(self, viewer_id: str, organization_id: str | None = None) -> list[FlagView]:
        """The viewer's personal flags, or an organization's flags, sorted by key."""
        require_id(viewer_id, "viewer_id")
        scope = await self._scope_for(viewer_id, organization_id)
        if isinstance(scope, OrganizationScope) and not await self.membership.is_member(
            viewer_id, scope.organization_id
        ):
            raise Denied("Not a member of this organization")

        flags = sorted(await call_store("list_flags", self.store.list_flags, scope), key=lambda f: f.key)
        effective = await self.resolver.resolve_all(flags, viewer_id)
        return [FlagView(flag=flag, effective=effective[flag.key]) for flag in flags]

    async def evaluate(self, key: str, viewer_id: str, organization_id: str | None = None) -> EffectiveValue:
        require_id(viewer_id, "viewer_id")
        scope = await self._scope_for(viewer_id, organization_id)
        flag = await call_store("find_flag_by_key", self.store.find_flag_by_key, scope, key)
        if flag is None:
            raise NotFound("Flag", key)
        await self._authorize(self.guard.can_view_flag(viewer_id, flag), "evaluate", viewer_id)
        return await self.resolver.resolve(flag, viewer_id)

    async def flag_detail(self, flag_id: str, viewer_id: str) -> FlagDetail:
        """Flag with its effective value, overrides and audit history.

        Viewers who may modify the flag see every override; others see only
        their own.
        """
        flag = await self.get_flag(flag_id, viewer_id)
        effective = await self.resolver.resolve(flag, viewer_id)
        can_mutate = bool(await self.guard.can_mutate_flag(viewer_id, flag))

        overrides = await call_store("list_overrides", self.store.list_overrides, flag.id)
        if not can_mutate:
            overrides = [o for o in overrides if o.user_id == viewer_id]
        overrides = sorted(overrides, key=lambda o: o.created_at)

        return FlagDetail(
            flag=flag,
            effective=effective,
            overrides=overrides,
            history=await self.audit.history(flag.id),
            can_mutate=can_mutate,
        )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _authorize(self, check: Awaitable[Decision], operation: str, actor_id: str) -> None:
        decision = await check
        if not decision:
            logger.info("mutation_denied", operation=operation, actor_id=actor_id, reason=decision.reason)
            raise Denied(decision.reason)

    async def _scope_for(self, user_id: str, organization_id: str | None) -> PersonalScope | OrganizationScope:
        if organization_id is None:
            return PersonalScope(owner_id=user_id)
        await self.organizations.get_organization(organization_id)
        return OrganizationScope(organization_id=organization_id)

    async def _load_flag(self, flag_id: str) -> Flag:
        require_id(flag_id, "flag_id")
        flag = await call_store("get_flag", self.store.get_flag, flag_id)
        if flag is None:
            raise NotFound("Flag", flag_id)
        return flag

    async def _load_override(self, override_id: str) -> Override:
        override = await call_store("get_override", self.store.get_override, override_id)
        if override is None:
            raise NotFound("Override", override_id)
        return override

    async def _ensure_key_free(
        self,
        scope: PersonalScope | OrganizationScope,
        key: str,
        exclude_id: str | None = None,
    ) -> None:
        existing = await call_store("find_flag_by_key", self.store.find_flag_by_key, scope, key)
        if existing is not None and existing.id != exclude_id:
            raise DuplicateKey(key, scope.namespace)

    def _publish(
        self,
        kind: ChangeKind,
        flag: Flag,
        value: str | None = None,
        is_overridden: bool = False,
        audience_user_id: str | None = None,
    ) -> None:
        event = ChangeEvent.for_flag(
            kind, flag, value=value, is_overridden=is_overridden, audience_user_id=audience_user_id
        )
        publish_after_commit(self.broadcaster, event)


def _coerce_patch(patch: FlagPatch | dict[str, Any]) -> dict[str, Any]:
    if not isinstance(patch, FlagPatch):
        try:
            patch = FlagPatch.model_validate(patch)
        except ValidationError as exc:
            raise from_pydantic(exc) from exc

    changes = patch.model_dump(exclude_unset=True)
    if not changes:
        raise ValidationFailed("Patch must change at least one field", {"patch": "empty"})
    for name in _REQUIRED_PATCH_FIELDS:
        if name in changes and changes[name] is None:
            raise ValidationFailed(f"{name} cannot be null", {name: "required"})

    if "key" in changes:
        changes["key"] = validate_flag_key(changes["key"])
    if "description" in changes:
        changes["description"] = normalize_description(changes["description"])
    return changes
