"""Domain events for the Todo aggregate.

Design invariants
-----------------
1.  Every event is **immutable** (``frozen=True``).
2.  ``id`` is the id of the aggregate the event belongs to.
3.  ``original_version`` is the aggregate version *before* the event was
    applied.  Per aggregate, stored versions are contiguous from 0 and the
    ``(id, original_version)`` pair is unique.
4.  The set of event kinds is closed: ``TODO_EVENTS`` lists every type the
    event store may encode or decode.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime

from slashtodo.core.ids import utc_now as _now

# ---------------------------------------------------------------------------
# Base
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class DomainEvent:
    """Immutable base for every domain event.

    Shared fields
    ~~~~~~~~~~~~~
    id                Aggregate id.
    original_version  Aggregate version before this event.  Ordering key
                      and optimistic-concurrency token.
    timestamp         UTC creation time.
    user_id           Actor who caused the event.
    """

    id: str = ""
    original_version: int = 0
    timestamp: datetime = field(default_factory=_now)
    user_id: str = ""


# =========================================================================
# Todo
# =========================================================================

@dataclass(frozen=True)
class TodoEvent(DomainEvent):
    """Base for todo events; carries the conversation context."""

    team_id: str = ""
    slack_conversation_id: str = ""
    short_code: str = ""


@dataclass(frozen=True)
class TodoAdded(TodoEvent):
    text: str = ""


@dataclass(frozen=True)
class TodoTicked(TodoEvent):
    pass


@dataclass(frozen=True)
class TodoUnticked(TodoEvent):
    pass


@dataclass(frozen=True)
class TodoClaimed(TodoEvent):
    """``user_id`` is the new claimant."""


@dataclass(frozen=True)
class TodoFreed(TodoEvent):
    pass


@dataclass(frozen=True)
class TodoRemoved(TodoEvent):
    pass


TODO_EVENTS: tuple[type[TodoEvent], ...] = (
    TodoAdded,
    TodoTicked,
    TodoUnticked,
    TodoClaimed,
    TodoFreed,
    TodoRemoved,
)

ALL_DOMAIN_EVENTS: tuple[type[DomainEvent], ...] = TODO_EVENTS
