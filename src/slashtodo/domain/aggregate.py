"""Event-sourced aggregate base.

An aggregate's state is derived entirely from its ordered event history.
Domain operations never mutate state directly: they raise an event, which is
applied immediately and buffered as *uncommitted* until the repository has
durably stored and published it.
"""

from __future__ import annotations

from collections.abc import Iterable

from slashtodo.core.errors import EventSequenceError
from slashtodo.domain.events import DomainEvent


class Aggregate:
    """Base class for event-sourced aggregates.

    ``version`` always equals the number of events applied since
    construction, whether by replay or by raising.  Subclasses implement
    ``_apply_event`` to fold a single event into their state.
    """

    def __init__(self) -> None:
        self.id: str = ""
        self.version: int = 0
        self._uncommitted_events: list[DomainEvent] = []

    # -- Hydration ---------------------------------------------------------

    def load_from_events(self, events: Iterable[DomainEvent]) -> None:
        """Replay historic events.  Produces no uncommitted events."""
        for event in events:
            self._apply(event)

    # -- Uncommitted buffer ------------------------------------------------

    def get_uncommitted_events(self) -> list[DomainEvent]:
        """Return a copy of the events raised since load, oldest first."""
        return list(self._uncommitted_events)

    def clear_uncommitted_events(self) -> None:
        """Drop the buffer.  Called by the repository after a commit."""
        self._uncommitted_events.clear()

    # -- Internals ---------------------------------------------------------

    def _raise_event(self, event: DomainEvent) -> None:
        self._apply(event)
        self._uncommitted_events.append(event)

    def _apply(self, event: DomainEvent) -> None:
        if event.original_version != self.version:
            raise EventSequenceError(
                self.id or event.id, self.version, event.original_version,
            )
        if not self.id:
            self.id = event.id
        self._apply_event(event)
        self.version += 1

    def _apply_event(self, event: DomainEvent) -> None:
        raise NotImplementedError
