"""Event dispatcher: publishes committed events to read-model subscribers.

Design goals
------------
1.  **Type-routed dispatching**: subscribers register for a
    ``DomainEvent`` class.  A published event reaches every handler
    registered for its own type or any of its base classes, so subscribing
    to ``TodoEvent`` sees every todo event.
2.  **Ordered, awaited delivery**: ``publish()`` awaits each handler in
    registration order before returning.  The repository publishes one
    event at a time, so subscribers observe an aggregate's events in commit
    order.
3.  **Failures surface**: a failing handler does not stop the remaining
    handlers for the same event, but ``publish()`` then raises
    ``DispatchError`` so the caller learns the projection is behind.

Only the repository calls ``publish()``; domain code never does.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from collections.abc import Awaitable, Callable
from typing import Protocol, runtime_checkable

from slashtodo.core.errors import DispatchError
from slashtodo.domain.events import DomainEvent

logger = logging.getLogger(__name__)

# Type alias for async event handlers.
EventHandler = Callable[[DomainEvent], Awaitable[None]]


# ---------------------------------------------------------------------------
# Protocol
# ---------------------------------------------------------------------------

@runtime_checkable
class IEventDispatcher(Protocol):
    """Publish/subscribe seam between the repository and projections."""

    async def publish(self, event: DomainEvent) -> None:
        """Deliver *event* to all matching subscribers.

        Raises ``DispatchError`` if any subscriber failed.
        """
        ...

    def subscribe(
        self,
        event_type: type[DomainEvent],
        handler: EventHandler,
    ) -> None:
        """Register *handler* for *event_type* and its subclasses."""
        ...


# ---------------------------------------------------------------------------
# In-memory implementation
# ---------------------------------------------------------------------------

class InMemoryEventDispatcher:
    """Deterministic, in-process dispatcher."""

    def __init__(self) -> None:
        self._handlers: dict[
            type[DomainEvent], list[EventHandler]
        ] = defaultdict(list)
        self._history: list[DomainEvent] = []
        self._error_counts: dict[str, int] = defaultdict(int)
        self._dead_letters: list[tuple[DomainEvent, str]] = []

    # -- Core API ----------------------------------------------------------

    async def publish(self, event: DomainEvent) -> None:
        """Publish *event* to all subscribed handlers.

        Raises
        ------
        DispatchError
            If one or more handlers raised.  Wraps the first failure.
        """
        key = type(event).__name__
        self._history.append(event)

        first_error: Exception | None = None
        for handler in self._handlers_for(type(event)):
            try:
                await handler(event)
            except Exception as exc:
                self._error_counts[key] += 1
                self._dead_letters.append((event, str(exc)))
                logger.exception("Handler error on %s: %s", key, exc)
                if first_error is None:
                    first_error = exc

        if first_error is not None:
            raise DispatchError(key, first_error) from first_error

    def subscribe(
        self,
        event_type: type[DomainEvent],
        handler: EventHandler,
    ) -> None:
        """Register *handler* for *event_type*."""
        self._handlers[event_type].append(handler)

    def _handlers_for(self, event_cls: type[DomainEvent]) -> list[EventHandler]:
        out: list[EventHandler] = []
        for cls in event_cls.__mro__:
            out.extend(self._handlers.get(cls, ()))
        return out

    # -- Observability -----------------------------------------------------

    def get_history(
        self,
        event_type: type[DomainEvent] | None = None,
    ) -> list[DomainEvent]:
        """Return published events, optionally filtered by exact type."""
        if event_type is None:
            return list(self._history)
        return [e for e in self._history if type(e) is event_type]

    def get_error_counts(self) -> dict[str, int]:
        return dict(self._error_counts)

    @property
    def dead_letters(self) -> list[tuple[DomainEvent, str]]:
        """Events whose handlers failed, with the error message."""
        return list(self._dead_letters)
