"""Tests for the repository (``infrastructure/repository.py``).

Covers:
- loading (absent, replay, no uncommitted events after load).
- save: expected version, ordered publication, buffer clearing, no-op.
- failure propagation (conflict, partial commit, dispatch failure).
- the end-to-end claim scenario.
"""

from __future__ import annotations

import asyncio
import logging
from unittest.mock import AsyncMock

import pytest

from slashtodo.core.errors import (
    ConcurrencyConflictError,
    DispatchError,
    PartialCommitError,
    StoreTransportError,
    TodoClaimedBySomeoneElse,
)
from slashtodo.domain.aggregate import Aggregate
from slashtodo.domain.events import DomainEvent, TodoAdded, TodoClaimed, TodoTicked
from slashtodo.domain.todo import Todo, TodoContext
from slashtodo.infrastructure.event_bus import InMemoryEventDispatcher
from slashtodo.infrastructure.event_store import InMemoryEventStore
from slashtodo.infrastructure.repository import Repository, TodoRepository


def _ctx(user_id: str) -> TodoContext:
    return TodoContext(team_id="T1", user_id=user_id)


class _Dummy(Aggregate):
    def __init__(self) -> None:
        super().__init__()
        self.applied: list[DomainEvent] = []

    def do_something(self) -> None:
        self._raise_event(DomainEvent(id=self.id or "d1", original_version=self.version))

    def _apply_event(self, event: DomainEvent) -> None:
        self.applied.append(event)


class _FailingStore(InMemoryEventStore):
    def __init__(self, exc: Exception) -> None:
        super().__init__()
        self._exc = exc

    async def save(self, aggregate_id, expected_version, events):
        raise self._exc


# ===========================================================================
# Loading
# ===========================================================================

class TestGetById:
    @pytest.mark.asyncio
    async def test_absent_when_no_events(self, repository: TodoRepository):
        assert await repository.get_by_id("missing") is None

    @pytest.mark.asyncio
    async def test_replays_events_in_order(self, event_store, dispatcher):
        events = [DomainEvent(id="d1", original_version=v) for v in range(3)]
        await event_store.save("d1", 0, events)
        repo = Repository(_Dummy, event_store, dispatcher)

        agg = await repo.get_by_id("d1")
        assert agg is not None
        assert agg.applied == events
        assert agg.version == 3
        assert agg.get_uncommitted_events() == []

    @pytest.mark.asyncio
    async def test_replay_matches_direct_application(self, repository, event_store, context):
        todo = Todo.add("t1", "Buy milk", "conv1", "a", context)
        todo.claim()
        todo.tick()
        history = todo.get_uncommitted_events()
        await event_store.save("t1", 0, history)

        direct = Todo()
        direct.load_from_events(history)
        loaded = await repository.get_by_id("t1")

        for attr in (
            "id", "version", "team_id", "slack_conversation_id", "short_code",
            "text", "is_removed", "is_ticked", "claimed_by_user_id",
        ):
            assert getattr(loaded, attr) == getattr(direct, attr), attr


# ===========================================================================
# Saving
# ===========================================================================

class TestSave:
    @pytest.mark.asyncio
    async def test_appends_at_first_uncommitted_version(self, dispatcher):
        store = InMemoryEventStore()
        store.save = AsyncMock(wraps=store.save)
        repo = Repository(_Dummy, store, dispatcher)
        agg = _Dummy()
        agg.do_something()
        agg.do_something()
        await repo.save(agg)
        agg.do_something()
        uncommitted = agg.get_uncommitted_events()

        await repo.save(agg)

        store.save.assert_awaited_with("d1", 2, uncommitted)

    @pytest.mark.asyncio
    async def test_publishes_in_order_then_clears(self, repository, dispatcher, context):
        todo = Todo.add("t1", "Buy milk", "conv1", "a", context)
        todo.claim()
        todo.tick()
        uncommitted = todo.get_uncommitted_events()

        await repository.save(todo)

        assert dispatcher.get_history() == uncommitted
        assert todo.get_uncommitted_events() == []
        assert todo.version == 3

    @pytest.mark.asyncio
    async def test_events_durable_before_publish(self, repository, event_store, dispatcher, context):
        seen_in_store: list[int] = []

        async def on_added(event):
            seen_in_store.append(len(await event_store.get_by_id(event.id)))

        dispatcher.subscribe(TodoAdded, on_added)
        await repository.save(Todo.add("t1", "Buy milk", "conv1", "a", context))
        assert seen_in_store == [1]

    @pytest.mark.asyncio
    async def test_noop_save_touches_nothing(self, context):
        store = AsyncMock()
        bus = AsyncMock()
        repo = TodoRepository(store, bus)
        todo = Todo.add("t1", "Buy milk", "conv1", "a", context)
        todo.clear_uncommitted_events()

        await repo.save(todo)

        store.save.assert_not_awaited()
        bus.publish.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_idempotent_operation_then_save_is_noop(self, repository, event_store, context):
        await repository.save(Todo.add("t1", "Buy milk", "conv1", "a", context))
        todo = await repository.get_by_id("t1")
        todo.context = context
        todo.untick()
        await repository.save(todo)
        assert len(await event_store.get_by_id("t1")) == 1


# ===========================================================================
# Failures
# ===========================================================================

class TestSaveFailures:
    @pytest.mark.asyncio
    async def test_conflict_propagates_and_keeps_buffer(self, dispatcher, context):
        repo = TodoRepository(_FailingStore(ConcurrencyConflictError("t1", 0)), dispatcher)
        todo = Todo.add("t1", "Buy milk", "conv1", "a", context)

        with pytest.raises(ConcurrencyConflictError):
            await repo.save(todo)

        assert len(todo.get_uncommitted_events()) == 1
        assert dispatcher.get_history() == []

    @pytest.mark.asyncio
    async def test_transport_error_propagates(self, dispatcher, context):
        repo = TodoRepository(_FailingStore(StoreTransportError("down")), dispatcher)
        todo = Todo.add("t1", "Buy milk", "conv1", "a", context)
        with pytest.raises(StoreTransportError):
            await repo.save(todo)
        assert len(todo.get_uncommitted_events()) == 1

    @pytest.mark.asyncio
    async def test_stale_aggregate_conflicts(self, repository, context):
        await repository.save(Todo.add("t1", "Buy milk", "conv1", "a", context))
        first = await repository.get_by_id("t1")
        second = await repository.get_by_id("t1")
        first.context = _ctx("U1")
        second.context = _ctx("U2")
        first.claim()
        second.tick()

        await repository.save(first)
        with pytest.raises(ConcurrencyConflictError):
            await repository.save(second)

        reloaded = await repository.get_by_id("t1")
        assert reloaded.claimed_by_user_id == "U1"
        assert reloaded.is_ticked is False

    @pytest.mark.asyncio
    async def test_concurrent_saves_one_wins(self, repository, context):
        await repository.save(Todo.add("t1", "Buy milk", "conv1", "a", context))
        a = await repository.get_by_id("t1")
        b = await repository.get_by_id("t1")
        a.context = _ctx("U1")
        b.context = _ctx("U2")
        a.claim()
        b.claim()

        results = await asyncio.gather(
            repository.save(a), repository.save(b), return_exceptions=True,
        )

        assert results.count(None) == 1
        assert sum(isinstance(r, ConcurrencyConflictError) for r in results) == 1

    @pytest.mark.asyncio
    async def test_duplicate_add_conflicts(self, repository, context):
        await repository.save(Todo.add("t1", "Buy milk", "conv1", "a", context))
        with pytest.raises(ConcurrencyConflictError):
            await repository.save(Todo.add("t1", "Other", "conv1", "b", context))

    @pytest.mark.asyncio
    async def test_partial_commit_propagates_and_keeps_buffer(self, dispatcher, context):
        store = InMemoryEventStore(batch_size=2)
        # Another writer holds slot 2, so the second sub-batch collides.
        await store._commit_batch("t1", [TodoTicked(id="t1", original_version=2)])
        repo = TodoRepository(store, dispatcher)
        todo = Todo.add("t1", "Buy milk", "conv1", "a", context)
        todo.claim()
        todo.tick()

        with pytest.raises(PartialCommitError) as exc_info:
            await repo.save(todo)

        assert exc_info.value.committed == 2
        assert len(todo.get_uncommitted_events()) == 3
        assert dispatcher.get_history() == []
        durable = await store.get_by_id("t1")
        assert [type(e) for e in durable[:2]] == [TodoAdded, TodoClaimed]

    @pytest.mark.asyncio
    async def test_partial_commit_logged_once(self, dispatcher, context, caplog):
        store = InMemoryEventStore(batch_size=2)
        await store._commit_batch("t1", [TodoTicked(id="t1", original_version=2)])
        repo = TodoRepository(store, dispatcher)
        todo = Todo.add("t1", "Buy milk", "conv1", "a", context)
        todo.claim()
        todo.tick()

        with caplog.at_level(logging.DEBUG, logger="slashtodo"):
            with pytest.raises(PartialCommitError):
                await repo.save(todo)

        errors = [r for r in caplog.records if r.levelno >= logging.ERROR]
        assert len(errors) == 1
        assert "t1" in errors[0].getMessage()

    @pytest.mark.asyncio
    async def test_dispatch_failure_propagates_after_commit(self, repository, event_store, dispatcher, context):
        async def broken(event):
            raise RuntimeError("lookup offline")

        dispatcher.subscribe(TodoAdded, broken)
        todo = Todo.add("t1", "Buy milk", "conv1", "a", context)

        with pytest.raises(DispatchError):
            await repository.save(todo)

        assert len(await event_store.get_by_id("t1")) == 1
        assert len(todo.get_uncommitted_events()) == 1


# ===========================================================================
# End to end
# ===========================================================================

@pytest.mark.asyncio
async def test_claim_scenario(repository: TodoRepository):
    await repository.save(Todo.add("t1", "Buy milk", "conv1", "a", _ctx("U1")))

    todo = await repository.get_by_id("t1")
    todo.context = _ctx("U1")
    todo.claim()
    assert len(todo.get_uncommitted_events()) == 1
    await repository.save(todo)

    todo = await repository.get_by_id("t1")
    todo.context = _ctx("U2")
    with pytest.raises(TodoClaimedBySomeoneElse) as exc_info:
        todo.claim()
    assert exc_info.value.claimed_by_user_id == "U1"

    todo.claim(force=True)
    await repository.save(todo)

    todo = await repository.get_by_id("t1")
    assert todo.claimed_by_user_id == "U2"
    assert todo.version == 3
