"""Organization membership queries used by the authorization guard."""

from __future__ import annotations

from .models import Membership, Role
from .storage import FlagStore, call_store


class MembershipIndex:
    """Read-only view over the membership rows of a ``FlagStore``.

    Nothing is cached between calls: a check made right after a membership
    change in the same flow sees that change.
    """

    def __init__(self, store: FlagStore) -> None:
        self._store = store

    async def role_of(self, user_id: str, organization_id: str) -> Role | None:
        membership = await call_store(
            "get_membership", self._store.get_membership, organization_id, user_id
        )
        return membership.role if membership is not None else None

    async def is_member(self, user_id: str, organization_id: str) -> bool:
        return await self.role_of(user_id, organization_id) is not None

    async def is_admin(self, user_id: str, organization_id: str) -> bool:
        return await self.role_of(user_id, organization_id) == Role.ADMIN

    async def members_of(self, organization_id: str) -> set[tuple[str, Role]]:
        memberships = await call_store(
            "list_memberships", self._store.list_memberships, organization_id
        )
        return {(m.user_id, m.role) for m in memberships}

    async def organizations_of(self, user_id: str) -> list[Membership]:
        memberships = await call_store(
            "list_memberships_for_user", self._store.list_memberships_for_user, user_id
        )
        return sorted(memberships, key=lambda m: m.created_at)

    async def admin_count(self, organization_id: str) -> int:
        return sum(1 for _, role in await self.members_of(organization_id) if role == Role.ADMIN)
