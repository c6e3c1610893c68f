"""Todo lookup by conversation and short code.

Users refer to todos by a short code typed in a conversation; the command
surface uses this read model to translate that pair into an aggregate id
before loading the aggregate.  The index is built purely from committed
``TodoAdded`` / ``TodoRemoved`` events.
"""

from __future__ import annotations

import logging
from typing import cast

from slashtodo.domain.events import DomainEvent, TodoAdded, TodoRemoved
from slashtodo.infrastructure.event_bus import IEventDispatcher

logger = logging.getLogger(__name__)


class InMemoryTodoLookup:
    """Projection of live todos keyed by ``(conversation, short_code)``."""

    def __init__(self) -> None:
        # slack_conversation_id -> {short_code: todo_id}, insertion ordered
        self._by_conversation: dict[str, dict[str, str]] = {}

    def register_subscriptions(self, dispatcher: IEventDispatcher) -> None:
        dispatcher.subscribe(TodoAdded, self._on_added)
        dispatcher.subscribe(TodoRemoved, self._on_removed)

    # -- Queries -----------------------------------------------------------

    async def by_slack_conversation_id_and_short_code(
        self, slack_conversation_id: str, short_code: str,
    ) -> str | None:
        return self._by_conversation.get(slack_conversation_id, {}).get(short_code)

    async def by_slack_conversation_id(self, slack_conversation_id: str) -> list[str]:
        """Ids of the conversation's live todos, oldest first."""
        return list(self._by_conversation.get(slack_conversation_id, {}).values())

    # -- Event handlers ----------------------------------------------------

    async def _on_added(self, event: DomainEvent) -> None:
        added = cast(TodoAdded, event)
        codes = self._by_conversation.setdefault(added.slack_conversation_id, {})
        codes[added.short_code] = added.id

    async def _on_removed(self, event: DomainEvent) -> None:
        removed = cast(TodoRemoved, event)
        codes = self._by_conversation.get(removed.slack_conversation_id)
        if codes is None or codes.get(removed.short_code) != removed.id:
            # Short code already reused by a newer todo.
            logger.debug("Stale removal of %s ignored", removed.id)
            return
        del codes[removed.short_code]
        if not codes:
            del self._by_conversation[removed.slack_conversation_id]
