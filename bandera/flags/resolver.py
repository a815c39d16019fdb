"""Effective-value resolution: a per-user override wins over the flag default."""

from __future__ import annotations

from typing import Iterable

from .errors import ValidationFailed
from .models import EffectiveValue, Flag
from .storage import FlagStore, call_store
from .validation import require_id


class FlagResolver:
    """Read path for dashboards and API responses.

    Values come back exactly as stored. A boolean flag whose override is the
    text ``"yes"`` resolves to ``"yes"``; interpreting it is up to the caller.
    """

    def __init__(self, store: FlagStore) -> None:
        self._store = store

    async def resolve(self, flag: Flag, viewer_id: str) -> EffectiveValue:
        require_id(viewer_id, "viewer_id")
        override = await call_store("find_override", self._store.find_override, flag.id, viewer_id)
        return _effective(flag, override.value if override is not None else None)

    async def resolve_all(self, flags: Iterable[Flag], viewer_id: str) -> dict[str, EffectiveValue]:
        """Snapshot of every flag for one viewer, keyed by flag key.

        Reads the viewer's overrides once. If that read fails the whole
        snapshot fails; there is no fallback to defaults.
        """
        require_id(viewer_id, "viewer_id")
        flags = list(flags)
        seen: set[str] = set()
        for flag in flags:
            if flag.key in seen:
                raise ValidationFailed(
                    f"Flag key '{flag.key}' appears more than once in the batch", {"key": "duplicate"}
                )
            seen.add(flag.key)
        if not flags:
            return {}

        overrides = await call_store(
            "list_overrides_for_user", self._store.list_overrides_for_user, viewer_id
        )
        by_flag = {o.flag_id: o.value for o in overrides}
        return {flag.key: _effective(flag, by_flag.get(flag.id)) for flag in flags}


def _effective(flag: Flag, override_value: str | None) -> EffectiveValue:
    if override_value is not None:
        return EffectiveValue(value=override_value, is_overridden=True)
    return EffectiveValue(value=flag.default_value, is_overridden=False)
