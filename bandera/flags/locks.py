"""Per-key asyncio locks.

Lock order across the core is organization, then flag, then (scope, key).
"""

from __future__ import annotations

import asyncio
from contextlib import AsyncExitStack, asynccontextmanager
from typing import AsyncIterator, Hashable, Iterable

from .models import OrganizationScope, PersonalScope


class KeyedLock:
    """Hands out one ``asyncio.Lock`` per key.

    Entries are reference counted and removed once no task holds or waits
    on them, so the table only grows with the number of keys in flight.
    """

    def __init__(self) -> None:
        self._locks: dict[Hashable, asyncio.Lock] = {}
        self._waiters: dict[Hashable, int] = {}

    def _get_lock(self, key: Hashable) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    @asynccontextmanager
    async def hold(self, key: Hashable) -> AsyncIterator[None]:
        lock = self._get_lock(key)
        self._waiters[key] = self._waiters.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            remaining = self._waiters[key] - 1
            if remaining:
                self._waiters[key] = remaining
            else:
                del self._waiters[key]
                del self._locks[key]

    @asynccontextmanager
    async def hold_all(self, keys: Iterable[tuple[str, ...]]) -> AsyncIterator[None]:
        """Hold several keys at once, acquired in sorted order."""
        async with AsyncExitStack() as stack:
            for key in sorted(set(keys)):
                await stack.enter_async_context(self.hold(key))
            yield

    def locked(self, key: Hashable) -> bool:
        lock = self._locks.get(key)
        return lock is not None and lock.locked()

    def __len__(self) -> int:
        return len(self._locks)


def organization_key(organization_id: str) -> tuple[str, str]:
    return ("org", organization_id)


def flag_key(flag_id: str) -> tuple[str, str]:
    return ("flag", flag_id)


def scope_key(scope: PersonalScope | OrganizationScope, key: str) -> tuple[str, str, str]:
    return ("key", scope.namespace, key)
