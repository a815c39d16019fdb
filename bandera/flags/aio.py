"""Helpers that let the core drive sync and async collaborators alike."""

from __future__ import annotations

import inspect
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Callable


async def maybe_await(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


async def call(fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
    return await maybe_await(fn(*args, **kwargs))


@asynccontextmanager
async def enter(manager: Any) -> AsyncIterator[Any]:
    """Enter *manager* whether it is an async or a plain context manager."""
    if hasattr(manager, "__aenter__"):
        async with manager as value:
            yield value
    else:
        with manager as value:
            yield value
