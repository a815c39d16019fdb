"""Storage contract consumed by the flag core, plus an in-memory implementation."""

from __future__ import annotations

from contextlib import asynccontextmanager, contextmanager
from contextvars import ContextVar
from typing import Any, AsyncIterator, Callable, Iterator, Protocol, runtime_checkable

import structlog

from . import aio
from .errors import BanderaError, StorageFailure
from .models import (
    AuditRecord,
    Flag,
    Membership,
    Organization,
    OrganizationScope,
    Override,
    PersonalScope,
    utcnow,
)

logger = structlog.get_logger(__name__)


# ---------------------------------------------------------------------------
# Storage protocol
# ---------------------------------------------------------------------------

@runtime_checkable
class FlagStore(Protocol):
    """Persistence collaborator for flags, overrides, memberships and audit rows.

    Every method may either return its result directly or return an
    awaitable; the core awaits only when needed. ``transaction()`` returns a
    sync or async context manager: mutations made inside it are committed
    together or rolled back together when the block raises.
    """

    def get_flag(self, flag_id: str) -> Flag | None:
        ...

    def find_flag_by_key(self, scope: PersonalScope | OrganizationScope, key: str) -> Flag | None:
        ...

    def list_flags(self, scope: PersonalScope | OrganizationScope) -> list[Flag]:
        ...

    def save_flag(self, flag: Flag) -> None:
        """Insert or replace *flag* by id."""
        ...

    def delete_flag(self, flag_id: str) -> None:
        ...

    def get_override(self, override_id: str) -> Override | None:
        ...

    def find_override(self, flag_id: str, user_id: str) -> Override | None:
        ...

    def list_overrides(self, flag_id: str) -> list[Override]:
        ...

    def list_overrides_for_user(self, user_id: str) -> list[Override]:
        ...

    def upsert_override(self, flag_id: str, user_id: str, value: str) -> Override:
        """Write the override for (flag_id, user_id), replacing any existing value.

        The existing row keeps its id; there is never more than one row per pair.
        """
        ...

    def delete_override(self, override_id: str) -> None:
        ...

    def delete_overrides_for_flag(self, flag_id: str) -> int:
        ...

    def get_organization(self, organization_id: str) -> Organization | None:
        ...

    def save_organization(self, organization: Organization) -> None:
        ...

    def delete_organization(self, organization_id: str) -> None:
        ...

    def get_membership(self, organization_id: str, user_id: str) -> Membership | None:
        ...

    def list_memberships(self, organization_id: str) -> list[Membership]:
        ...

    def list_memberships_for_user(self, user_id: str) -> list[Membership]:
        ...

    def save_membership(self, membership: Membership) -> None:
        ...

    def delete_membership(self, organization_id: str, user_id: str) -> None:
        ...

    def append_audit(self, record: AuditRecord) -> None:
        ...

    def list_audit(self, flag_id: str) -> list[AuditRecord]:
        ...

    def list_audit_for_organization(self, organization_id: str) -> list[AuditRecord]:
        ...

    def transaction(self) -> Any:
        ...


# ---------------------------------------------------------------------------
# Call helpers used by every component
# ---------------------------------------------------------------------------

async def call_store(operation: str, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
    """Invoke a store method, surfacing collaborator errors as ``StorageFailure``."""
    try:
        return await aio.call(fn, *args, **kwargs)
    except BanderaError:
        raise
    except Exception as exc:
        logger.error("storage_call_failed", operation=operation, error=str(exc))
        raise StorageFailure(operation, f"Storage operation '{operation}' failed: {exc}") from exc


@asynccontextmanager
async def transaction_scope(store: FlagStore, operation: str) -> AsyncIterator[None]:
    """Run the block inside ``store.transaction()``; any failure is one ``StorageFailure``."""
    try:
        async with aio.enter(store.transaction()):
            yield
    except BanderaError:
        raise
    except Exception as exc:
        logger.error("transaction_failed", operation=operation, error=str(exc))
        raise StorageFailure(operation, f"Transaction for '{operation}' failed: {exc}") from exc


# ---------------------------------------------------------------------------
# In-memory implementation
# ---------------------------------------------------------------------------

class _Journal:
    def __init__(self, store: "InMemoryFlagStore") -> None:
        self.store = store
        self.undo: list[Callable[[], None]] = []

    def rollback(self) -> None:
        while self.undo:
            self.undo.pop()()


_active_journal: ContextVar[_Journal | None] = ContextVar("bandera_store_journal", default=None)


class InMemoryFlagStore(FlagStore):
    """Synchronous dict-backed store for tests and local dev.

    Transactions keep an undo log in a context variable, so concurrent tasks
    each roll back only their own writes.
    """

    def __init__(self) -> None:
        self._flags: dict[str, Flag] = {}
        self._overrides: dict[str, Override] = {}
        self._organizations: dict[str, Organization] = {}
        self._memberships: dict[tuple[str, str], Membership] = {}
        self._audit: list[AuditRecord] = []

    # -- transactions ---------------------------------------------------

    @contextmanager
    def transaction(self) -> Iterator[None]:
        current = _active_journal.get()
        if current is not None and current.store is self:
            yield
            return
        journal = _Journal(self)
        token = _active_journal.set(journal)
        try:
            yield
        except BaseException:
            journal.rollback()
            raise
        finally:
            _active_journal.reset(token)

    def _record_undo(self, undo: Callable[[], None]) -> None:
        journal = _active_journal.get()
        if journal is not None and journal.store is self:
            journal.undo.append(undo)

    def _put(self, table: dict, key: Any, value: Any) -> None:
        if key in table:
            previous = table[key]
            self._record_undo(lambda: table.__setitem__(key, previous))
        else:
            self._record_undo(lambda: table.pop(key, None))
        table[key] = value

    def _pop(self, table: dict, key: Any) -> Any:
        if key not in table:
            return None
        previous = table.pop(key)
        self._record_undo(lambda: table.__setitem__(key, previous))
        return previous

    # -- flags ----------------------------------------------------------

    def get_flag(self, flag_id: str) -> Flag | None:
        flag = self._flags.get(flag_id)
        return flag.model_copy() if flag else None

    def find_flag_by_key(self, scope: PersonalScope | OrganizationScope, key: str) -> Flag | None:
        for flag in self._flags.values():
            if flag.scope == scope and flag.key == key:
                return flag.model_copy()
        return None

    def list_flags(self, scope: PersonalScope | OrganizationScope) -> list[Flag]:
        return [f.model_copy() for f in self._flags.values() if f.scope == scope]

    def save_flag(self, flag: Flag) -> None:
        self._put(self._flags, flag.id, flag.model_copy())

    def delete_flag(self, flag_id: str) -> None:
        self.delete_overrides_for_flag(flag_id)
        self._pop(self._flags, flag_id)

    # -- overrides ------------------------------------------------------

    def get_override(self, override_id: str) -> Override | None:
        override = self._overrides.get(override_id)
        return override.model_copy() if override else None

    def find_override(self, flag_id: str, user_id: str) -> Override | None:
        for override in self._overrides.values():
            if override.flag_id == flag_id and override.user_id == user_id:
                return override.model_copy()
        return None

    def list_overrides(self, flag_id: str) -> list[Override]:
        return [o.model_copy() for o in self._overrides.values() if o.flag_id == flag_id]

    def list_overrides_for_user(self, user_id: str) -> list[Override]:
        return [o.model_copy() for o in self._overrides.values() if o.user_id == user_id]

    def upsert_override(self, flag_id: str, user_id: str, value: str) -> Override:
        existing = self.find_override(flag_id, user_id)
        if existing is None:
            override = Override(flag_id=flag_id, user_id=user_id, value=value)
        else:
            override = existing.model_copy(update={"value": value, "updated_at": utcnow()})
        self._put(self._overrides, override.id, override)
        return override.model_copy()

    def delete_override(self, override_id: str) -> None:
        self._pop(self._overrides, override_id)

    def delete_overrides_for_flag(self, flag_id: str) -> int:
        doomed = [o.id for o in self._overrides.values() if o.flag_id == flag_id]
        for override_id in doomed:
            self._pop(self._overrides, override_id)
        return len(doomed)

    # -- organizations and memberships -----------------------------------

    def get_organization(self, organization_id: str) -> Organization | None:
        organization = self._organizations.get(organization_id)
        return organization.model_copy() if organization else None

    def save_organization(self, organization: Organization) -> None:
        self._put(self._organizations, organization.id, organization.model_copy())

    def delete_organization(self, organization_id: str) -> None:
        self._pop(self._organizations, organization_id)

    def get_membership(self, organization_id: str, user_id: str) -> Membership | None:
        membership = self._memberships.get((organization_id, user_id))
        return membership.model_copy() if membership else None

    def list_memberships(self, organization_id: str) -> list[Membership]:
        return [m.model_copy() for (org, _), m in self._memberships.items() if org == organization_id]

    def list_memberships_for_user(self, user_id: str) -> list[Membership]:
        return [m.model_copy() for (_, user), m in self._memberships.items() if user == user_id]

    def save_membership(self, membership: Membership) -> None:
        key = (membership.organization_id, membership.user_id)
        self._put(self._memberships, key, membership.model_copy())

    def delete_membership(self, organization_id: str, user_id: str) -> None:
        self._pop(self._memberships, (organization_id, user_id))

    # -- audit ----------------------------------------------------------

    def append_audit(self, record: AuditRecord) -> None:
        self._audit.append(record)
        self._record_undo(lambda: self._audit.remove(record))

    def list_audit(self, flag_id: str) -> list[AuditRecord]:
        return [r for r in self._audit if r.flag_id == flag_id]

    def list_audit_for_organization(self, organization_id: str) -> list[AuditRecord]:
        return [r for r in self._audit if r.organization_id == organization_id]
