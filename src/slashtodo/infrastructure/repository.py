"""Generic load/save orchestration for event-sourced aggregates.

``save()`` durably appends an aggregate's uncommitted events, then publishes
them one at a time, in order, and only then clears the aggregate's buffer.
Every failure propagates unchanged and leaves the buffer intact; the
repository never retries.
"""

from __future__ import annotations

import logging
from typing import Generic, TypeVar

from slashtodo.core.errors import ConcurrencyConflictError
from slashtodo.domain.aggregate import Aggregate
from slashtodo.domain.todo import Todo
from slashtodo.infrastructure.event_bus import IEventDispatcher
from slashtodo.infrastructure.event_store import IEventStore

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=Aggregate)


class Repository(Generic[T]):
    """Loads and saves aggregates of one type.

    Parameters
    ----------
    aggregate_type
        Class used to build a fresh instance for replay.
    event_store
        Where events are read from and appended to.
    dispatcher
        Receives every committed event, in commit order.
    """

    def __init__(
        self,
        aggregate_type: type[T],
        event_store: IEventStore,
        dispatcher: IEventDispatcher,
    ) -> None:
        self._aggregate_type = aggregate_type
        self._event_store = event_store
        self._dispatcher = dispatcher

    async def get_by_id(self, aggregate_id: str) -> T | None:
        """Rehydrate the aggregate, or return ``None`` if it has no history."""
        events = await self._event_store.get_by_id(aggregate_id)
        if not events:
            return None
        aggregate = self._aggregate_type()
        aggregate.load_from_events(events)
        logger.debug(
            "Loaded %s %s at version %d",
            self._aggregate_type.__name__, aggregate_id, aggregate.version,
        )
        return aggregate

    async def save(self, aggregate: T) -> None:
        """Persist and publish the aggregate's uncommitted events.

        Raises
        ------
        ConcurrencyConflictError
            Another writer took one of the version slots.  Reload and retry.
        PartialCommitError
            Some sub-batches committed before a later one failed.
        TransportError
            The store or a subscriber failed.
        """
        uncommitted = aggregate.get_uncommitted_events()
        if not uncommitted:
            return

        expected_version = uncommitted[0].original_version
        try:
            await self._event_store.save(aggregate.id, expected_version, uncommitted)
        except ConcurrencyConflictError as exc:
            logger.warning(
                "Concurrency conflict saving %s at version %d",
                aggregate.id, exc.version,
            )
            raise

        for event in uncommitted:
            await self._dispatcher.publish(event)

        aggregate.clear_uncommitted_events()
        logger.debug(
            "Saved %d event(s) for %s, now at version %d",
            len(uncommitted), aggregate.id, aggregate.version,
        )


class TodoRepository(Repository[Todo]):
    """Repository bound to the ``Todo`` aggregate."""

    def __init__(
        self,
        event_store: IEventStore,
        dispatcher: IEventDispatcher,
    ) -> None:
        super().__init__(Todo, event_store, dispatcher)
