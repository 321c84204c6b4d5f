"""Shared fixtures: declaration factories, simulated provider, state store, executor."""

from unittest.mock import AsyncMock

import pytest

from converge.application.orchestration.apply_executor import (
    ApplyExecutor,
    ExecutorSettings,
)
from converge.domain.value_objects.retry_policy import RetryPolicy
from converge.infrastructure.adapters.simulated_control_plane import (
    SimulatedControlPlaneAdapter,
)
from converge.infrastructure.declarations_loader import parse_declarations
from converge.infrastructure.event_bus import EventBus
from converge.infrastructure.repositories.sqlite_state_store import SQLiteStateStore


@pytest.fixture
def declare():
    """Build Declarations from a plain dict (same shape as converge.json)."""
    return parse_declarations


@pytest.fixture
def chain(declare):
    """A -> B -> C: C reads B, B reads A."""
    return declare(
        {
            "resources": [
                {"id": "a", "type": "thing", "attributes": {"name": "a"}},
                {"id": "b", "type": "thing", "attributes": {"parent": "${a.id}"}},
                {"id": "c", "type": "thing", "attributes": {"parent": "${b.id}"}},
            ]
        }
    )


@pytest.fixture
def provider():
    return SimulatedControlPlaneAdapter(project="test")


@pytest.fixture
def state_store(tmp_path):
    store = SQLiteStateStore(str(tmp_path / "state.db"))
    store.connect()
    yield store
    store.close()


@pytest.fixture
def event_bus():
    return EventBus()


@pytest.fixture
def sleep():
    """Stand-in for asyncio.sleep so retry backoff does not slow the tests."""
    return AsyncMock(return_value=None)


@pytest.fixture
def executor(provider, state_store, event_bus, sleep):
    settings = ExecutorSettings(
        concurrency=4,
        retry=RetryPolicy(max_attempts=3, initial_delay=0.5, multiplier=2.0, max_delay=5.0),
        default_timeout_seconds=5.0,
    )
    return ApplyExecutor(
        provider, state_store, settings=settings, event_bus=event_bus, sleep=sleep
    )
