"""Shared fixtures for the slashtodo test suite."""

from __future__ import annotations

import pytest

from slashtodo.domain.todo import TodoContext
from slashtodo.infrastructure.event_bus import InMemoryEventDispatcher
from slashtodo.infrastructure.event_store import InMemoryEventStore
from slashtodo.infrastructure.repository import TodoRepository


@pytest.fixture
def context() -> TodoContext:
    """Context of the default acting user ``U1`` in team ``T1``."""
    return TodoContext(team_id="T1", user_id="U1")


@pytest.fixture
def event_store() -> InMemoryEventStore:
    return InMemoryEventStore()


@pytest.fixture
def dispatcher() -> InMemoryEventDispatcher:
    return InMemoryEventDispatcher()


@pytest.fixture
def repository(
    event_store: InMemoryEventStore,
    dispatcher: InMemoryEventDispatcher,
) -> TodoRepository:
    return TodoRepository(event_store, dispatcher)
