"""Todo aggregate: a claimable, tickable work item in a conversation.

A claim is an advisory marker of who is working on a todo, not an access
control boundary: anyone may tick or untick.  Only operations that would
override someone else's claim (claim, free, remove) check ownership, and
they can be forced.

Every operation is idempotent: when the requested transition would not
change observable state, no event is raised.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from slashtodo.core.errors import MissingContextError, TodoClaimedBySomeoneElse
from slashtodo.domain.aggregate import Aggregate
from slashtodo.domain.events import (
    DomainEvent,
    TodoAdded,
    TodoClaimed,
    TodoEvent,
    TodoFreed,
    TodoRemoved,
    TodoTicked,
    TodoUnticked,
)


@dataclass(frozen=True)
class TodoContext:
    """Who is acting, and on behalf of which team."""

    team_id: str
    user_id: str


class Todo(Aggregate):
    """Claimable todo item.  Build with ``Todo.add`` or by replay."""

    def __init__(self) -> None:
        super().__init__()
        self.context: TodoContext | None = None
        self.team_id = ""
        self.slack_conversation_id = ""
        self.short_code = ""
        self.text = ""
        self.is_removed = False
        self.is_ticked = False
        self.claimed_by_user_id: str | None = None

    @classmethod
    def add(
        cls,
        todo_id: str,
        text: str,
        slack_conversation_id: str,
        short_code: str,
        context: TodoContext,
    ) -> Todo:
        """Create a new todo, raising ``TodoAdded``."""
        todo = cls()
        todo.context = context
        todo._raise(
            TodoAdded,
            id=todo_id,
            slack_conversation_id=slack_conversation_id,
            short_code=short_code,
            text=text,
        )
        return todo

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def tick(self) -> None:
        self._require_context()
        if self.is_removed or self.is_ticked:
            return
        self._raise(TodoTicked)

    def untick(self) -> None:
        self._require_context()
        if self.is_removed or not self.is_ticked:
            return
        self._raise(TodoUnticked)

    def claim(self, force: bool = False) -> None:
        """Claim the todo for the acting user.

        Raises ``TodoClaimedBySomeoneElse`` if another user holds the claim
        and *force* is false.  Removed and ticked todos cannot be claimed;
        the call is a no-op for them.
        """
        user_id = self._require_context().user_id
        if self.is_removed or self.is_ticked:
            return
        if self.claimed_by_user_id == user_id:
            return
        self._check_ownership(user_id, force)
        self._raise(TodoClaimed)

    def free(self, force: bool = False) -> None:
        """Release the current claim."""
        user_id = self._require_context().user_id
        if self.is_removed or self.claimed_by_user_id is None:
            return
        self._check_ownership(user_id, force)
        self._raise(TodoFreed)

    def remove(self, force: bool = False) -> None:
        """Remove the todo.  Terminal: later operations raise nothing."""
        user_id = self._require_context().user_id
        if self.is_removed:
            return
        self._check_ownership(user_id, force)
        self._raise(TodoRemoved)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _require_context(self) -> TodoContext:
        if self.context is None:
            raise MissingContextError(
                f"Todo {self.id!r} has no context; set todo.context first"
            )
        return self.context

    def _check_ownership(self, user_id: str, force: bool) -> None:
        claimant = self.claimed_by_user_id
        if claimant is not None and claimant != user_id and not force:
            raise TodoClaimedBySomeoneElse(claimant)

    def _raise(self, event_cls: type[TodoEvent], **payload: Any) -> None:
        context = self._require_context()
        fields: dict[str, Any] = dict(
            id=self.id,
            original_version=self.version,
            team_id=context.team_id,
            user_id=context.user_id,
            slack_conversation_id=self.slack_conversation_id,
            short_code=self.short_code,
        )
        fields.update(payload)
        self._raise_event(event_cls(**fields))

    # ------------------------------------------------------------------
    # State transitions
    # ------------------------------------------------------------------

    def _apply_event(self, event: DomainEvent) -> None:
        if isinstance(event, TodoAdded):
            self.team_id = event.team_id
            self.slack_conversation_id = event.slack_conversation_id
            self.short_code = event.short_code
            self.text = event.text
        elif isinstance(event, TodoTicked):
            self.is_ticked = True
        elif isinstance(event, TodoUnticked):
            self.is_ticked = False
        elif isinstance(event, TodoClaimed):
            self.claimed_by_user_id = event.user_id
        elif isinstance(event, TodoFreed):
            self.claimed_by_user_id = None
        elif isinstance(event, TodoRemoved):
            self.is_removed = True
        else:
            raise TypeError(f"Todo cannot apply {type(event).__name__}")
