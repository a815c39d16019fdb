"""Role-based access decisions for personal and organization flags."""

from __future__ import annotations

from typing import NoReturn

from .membership import MembershipIndex
from .models import Decision, Flag, OrganizationScope, PersonalScope
from .validation import require_id


def _unknown_scope(flag: Flag) -> NoReturn:
    raise TypeError(f"Unknown flag scope: {flag.scope!r}")


class AuthorizationGuard:
    """Answers "may this user do X" with a ``Decision``.

    Denial is returned, not raised; the coordinator turns a denied decision
    into a ``Denied`` error. Empty or malformed ids raise ``ValidationFailed``.
    """

    def __init__(self, membership: MembershipIndex) -> None:
        self.membership = membership

    async def can_view_flag(self, viewer_id: str, flag: Flag) -> Decision:
        require_id(viewer_id, "viewer_id")
        scope = flag.scope
        if isinstance(scope, PersonalScope):
            if viewer_id == scope.owner_id:
                return Decision.allow()
            return Decision.deny("Only the owner can view a personal flag")
        if isinstance(scope, OrganizationScope):
            if await self.membership.is_member(viewer_id, scope.organization_id):
                return Decision.allow()
            return Decision.deny("Not a member of this organization")
        _unknown_scope(flag)

    async def can_mutate_flag(self, actor_id: str, flag: Flag) -> Decision:
        require_id(actor_id, "actor_id")
        scope = flag.scope
        if isinstance(scope, PersonalScope):
            if actor_id == scope.owner_id:
                return Decision.allow()
            return Decision.deny("Only the owner can modify a personal flag")
        if isinstance(scope, OrganizationScope):
            if await self.membership.is_admin(actor_id, scope.organization_id):
                return Decision.allow()
            return Decision.deny("Only organization admins can modify this flag")
        _unknown_scope(flag)

    async def can_create_override_for(self, actor_id: str, target_user_id: str, flag: Flag) -> Decision:
        require_id(actor_id, "actor_id")
        require_id(target_user_id, "target_user_id")
        scope = flag.scope
        if isinstance(scope, PersonalScope):
            if actor_id != scope.owner_id:
                return Decision.deny("Only the owner can override a personal flag")
            if target_user_id != scope.owner_id:
                return Decision.deny("Personal flags can only be overridden for their owner")
            return Decision.allow()
        if isinstance(scope, OrganizationScope):
            org_id = scope.organization_id
            if actor_id == target_user_id:
                if await self.membership.is_member(actor_id, org_id):
                    return Decision.allow()
                return Decision.deny("Not a member of this organization")
            if not await self.membership.is_admin(actor_id, org_id):
                return Decision.deny("Only organization admins can override for other users")
            if not await self.membership.is_member(target_user_id, org_id):
                return Decision.deny("Target user is not a member of this organization")
            return Decision.allow()
        _unknown_scope(flag)

    async def can_delete_override(self, actor_id: str, override_user_id: str, flag: Flag) -> Decision:
        """Owners and org admins may remove any override; members their own.

        The target's current membership is not consulted, so overrides left
        behind by a former member stay removable.
        """
        require_id(actor_id, "actor_id")
        require_id(override_user_id, "override_user_id")
        scope = flag.scope
        if isinstance(scope, PersonalScope):
            if actor_id == scope.owner_id:
                return Decision.allow()
            return Decision.deny("Only the owner can remove overrides of a personal flag")
        if isinstance(scope, OrganizationScope):
            org_id = scope.organization_id
            if await self.membership.is_admin(actor_id, org_id):
                return Decision.allow()
            if actor_id == override_user_id and await self.membership.is_member(actor_id, org_id):
                return Decision.allow()
            return Decision.deny("Only organization admins can remove overrides of other users")
        _unknown_scope(flag)

    async def can_manage_membership(self, actor_id: str, organization_id: str) -> Decision:
        require_id(actor_id, "actor_id")
        require_id(organization_id, "organization_id")
        if await self.membership.is_admin(actor_id, organization_id):
            return Decision.allow()
        return Decision.deny("Only organization admins can manage members")

    async def can_create_flag(self, actor_id: str, scope: PersonalScope | OrganizationScope) -> Decision:
        require_id(actor_id, "actor_id")
        if isinstance(scope, PersonalScope):
            if actor_id == scope.owner_id:
                return Decision.allow()
            return Decision.deny("Personal flags can only be created by their owner")
        if isinstance(scope, OrganizationScope):
            if await self.membership.is_admin(actor_id, scope.organization_id):
                return Decision.allow()
            return Decision.deny("Only organization admins can create flags")
        raise TypeError(f"Unknown flag scope: {scope!r}")
