"""Shared fixtures for the flag core tests."""

from __future__ import annotations

import pytest

from bandera.flags import ChangeBroadcaster, FlagMutationCoordinator, InMemoryFlagStore
from bandera.flags.coordinator import CoordinatorConfig
from tests.support import YieldingStore


@pytest.fixture
def store() -> InMemoryFlagStore:
    return InMemoryFlagStore()


@pytest.fixture
def config() -> CoordinatorConfig:
    return CoordinatorConfig(subscriber_queue_size=16, enforce_last_admin=True)


@pytest.fixture
def coordinator(store: InMemoryFlagStore, config: CoordinatorConfig) -> FlagMutationCoordinator:
    return FlagMutationCoordinator(store=store, broadcaster=ChangeBroadcaster(queue_size=16), config=config)


@pytest.fixture
def yielding_coordinator(config: CoordinatorConfig) -> FlagMutationCoordinator:
    return FlagMutationCoordinator(store=YieldingStore(), config=config)
