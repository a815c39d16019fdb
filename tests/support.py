"""Test doubles shared by unit and integration tests."""

from __future__ import annotations

import asyncio
import json
from contextlib import asynccontextmanager
from typing import Any

from bandera.flags import InMemoryFlagStore


class YieldingStore:
    """Async facade over ``InMemoryFlagStore`` that suspends on every call.

    Each method hands control back to the event loop before touching the
    wrapped store, so concurrent coordinator operations really interleave.
    """

    def __init__(self, inner: InMemoryFlagStore | None = None) -> None:
        self.inner = inner or InMemoryFlagStore()

    def __getattr__(self, name: str) -> Any:
        target = getattr(self.inner, name)
        if not callable(target):
            return target

        async def call(*args: Any, **kwargs: Any) -> Any:
            await asyncio.sleep(0)
            return target(*args, **kwargs)

        return call

    @asynccontextmanager
    async def transaction(self):
        await asyncio.sleep(0)
        with self.inner.transaction():
            yield


class RecordingHandle:
    def __init__(self) -> None:
        self.messages: list[str] = []

    def send(self, message: str) -> None:
        self.messages.append(message)

    @property
    def events(self) -> list[dict]:
        return [json.loads(m) for m in self.messages]


class AsyncRecordingHandle(RecordingHandle):
    async def send(self, message: str) -> None:
        await asyncio.sleep(0)
        self.messages.append(message)


class FailingHandle:
    def __init__(self) -> None:
        self.attempts = 0

    def send(self, message: str) -> None:
        self.attempts += 1
        raise ConnectionError("socket closed")
