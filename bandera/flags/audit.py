"""Append-only audit trail of flag and membership mutations."""

from __future__ import annotations

import structlog

from .models import AuditKind, AuditRecord
from .storage import FlagStore, call_store

logger = structlog.get_logger(__name__)


def _newest_first(records: list[AuditRecord]) -> list[AuditRecord]:
    # stable sort then reverse: same-timestamp rows keep insertion order, newest first
    return list(reversed(sorted(records, key=lambda r: r.created_at)))


class AuditTrail:
    def __init__(self, store: FlagStore) -> None:
        self._store = store

    async def record(
        self,
        kind: AuditKind,
        message: str,
        actor_id: str,
        flag_id: str | None = None,
        organization_id: str | None = None,
    ) -> AuditRecord:
        """Append one record.

        Callers run this inside the same storage transaction as the mutation
        it describes, so a failure here undoes the mutation too.
        """
        record = AuditRecord(
            kind=kind,
            message=message,
            actor_id=actor_id,
            flag_id=flag_id,
            organization_id=organization_id,
        )
        await call_store("append_audit", self._store.append_audit, record)
        logger.debug("audit_recorded", kind=kind.value, flag_id=flag_id, organization_id=organization_id)
        return record

    async def history(self, flag_id: str) -> list[AuditRecord]:
        records = await call_store("list_audit", self._store.list_audit, flag_id)
        return _newest_first(list(records))

    async def organization_history(self, organization_id: str) -> list[AuditRecord]:
        records = await call_store(
            "list_audit_for_organization", self._store.list_audit_for_organization, organization_id
        )
        return _newest_first(list(records))
