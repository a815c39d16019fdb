from __future__ import annotations

import pytest

from bandera.flags.membership import MembershipIndex
from bandera.flags.models import Membership, Role
from bandera.flags.storage import InMemoryFlagStore


def make_index() -> tuple[MembershipIndex, InMemoryFlagStore]:
    store = InMemoryFlagStore()
    store.save_membership(Membership(organization_id="acme", user_id="bob", role=Role.ADMIN))
    store.save_membership(Membership(organization_id="acme", user_id="carol", role=Role.MEMBER))
    store.save_membership(Membership(organization_id="globex", user_id="carol", role=Role.ADMIN))
    return MembershipIndex(store), store


@pytest.mark.asyncio
async def test_roles():
    index, _ = make_index()
    assert await index.is_admin("bob", "acme")
    assert await index.is_member("carol", "acme")
    assert not await index.is_admin("carol", "acme")
    assert await index.role_of("carol", "globex") is Role.ADMIN


@pytest.mark.asyncio
async def test_unknown_organization_is_empty_not_an_error():
    index, _ = make_index()
    assert not await index.is_member("bob", "nowhere")
    assert not await index.is_admin("bob", "nowhere")
    assert await index.members_of("nowhere") == set()
    assert await index.admin_count("nowhere") == 0


@pytest.mark.asyncio
async def test_members_of_and_admin_count():
    index, _ = make_index()
    assert await index.members_of("acme") == {("bob", Role.ADMIN), ("carol", Role.MEMBER)}
    assert await index.admin_count("acme") == 1


@pytest.mark.asyncio
async def test_organizations_of_user():
    index, _ = make_index()
    orgs = await index.organizations_of("carol")
    assert [m.organization_id for m in orgs] == ["acme", "globex"]


@pytest.mark.asyncio
async def test_reads_observe_writes_immediately():
    index, store = make_index()
    assert not await index.is_member("dave", "acme")
    store.save_membership(Membership(organization_id="acme", user_id="dave"))
    assert await index.is_member("dave", "acme")
    store.delete_membership("acme", "dave")
    assert not await index.is_member("dave", "acme")
