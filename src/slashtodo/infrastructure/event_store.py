"""Append-only, per-aggregate event store with optimistic concurrency.

Design invariants
-----------------
1.  Events are partitioned by aggregate id and keyed by
    ``original_version``.  A slot ``(aggregate_id, version)`` can be
    written exactly once; an append that targets an occupied slot fails
    with ``ConcurrencyConflictError``.  There is no separate version check:
    the slot collision *is* the check.
2.  ``get_by_id()`` returns events ordered by ``original_version``.
3.  Appends are atomic per sub-batch of at most ``batch_size`` events.
    Larger appends are written as sequential sub-batches, each committed
    before the next starts.  A failure after the first sub-batch raises
    ``PartialCommitError``; it is never hidden.
4.  ``delete()`` drops an aggregate's whole history.  Administrative use
    only.

This module provides:

*  ``IEventStore``: the protocol.
*  ``InMemoryEventStore``: dict-backed implementation for tests and
   local development.
*  ``JsonFileEventStore``: one JSON-Lines file per aggregate, for
   durable local persistence.
*  ``build_event_store()``: factory from ``EventStoreConfig``.
"""

from __future__ import annotations

import asyncio
import dataclasses
import json
import logging
import os
from collections.abc import AsyncIterator, Iterator, Sequence
from contextlib import asynccontextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Protocol
from urllib.parse import quote

from slashtodo.core.config import EventStoreConfig, StoreBackend
from slashtodo.core.errors import (
    ConcurrencyConflictError,
    ConfigError,
    PartialCommitError,
    StoreTransportError,
    UnknownEventTypeError,
)
from slashtodo.domain.events import ALL_DOMAIN_EVENTS, DomainEvent

logger = logging.getLogger(__name__)

MAX_BATCH_SIZE = 100

_TYPE_KEY = "__event_type__"


# ---------------------------------------------------------------------------
# JSON helpers
# ---------------------------------------------------------------------------

class _EventEncoder(json.JSONEncoder):
    """Handles datetime serialization."""

    def default(self, o: Any) -> Any:
        if isinstance(o, datetime):
            return o.isoformat()
        return super().default(o)


def _event_to_dict(event: DomainEvent) -> dict[str, Any]:
    """Serialize a frozen dataclass to a JSON-safe dict."""
    d = dataclasses.asdict(event)
    d[_TYPE_KEY] = type(event).__qualname__
    return d


def _event_from_dict(
    d: dict[str, Any],
    registry: dict[str, type[DomainEvent]],
) -> DomainEvent:
    """Deserialize a dict back into the class named by its discriminator.

    Raises ``UnknownEventTypeError`` for an unregistered discriminator;
    skipping the record would leave a gap in the version sequence.
    """
    type_name = d.pop(_TYPE_KEY, None)
    if type_name is None or type_name not in registry:
        raise UnknownEventTypeError(type_name)
    cls = registry[type_name]

    restored: dict[str, Any] = {}
    for f in dataclasses.fields(cls):
        if f.name not in d:
            continue
        v = d[f.name]
        ft = f.type
        if (ft is datetime or (isinstance(ft, str) and "datetime" in ft)) and isinstance(v, str):
            v = datetime.fromisoformat(v)
        restored[f.name] = v
    return cls(**restored)


def _build_registry(
    event_types: Sequence[type[DomainEvent]] = ALL_DOMAIN_EVENTS,
) -> dict[str, type[DomainEvent]]:
    """Build name → class lookup from the closed set of event types."""
    return {cls.__qualname__: cls for cls in event_types}


# ---------------------------------------------------------------------------
# Append validation
# ---------------------------------------------------------------------------

def _ordered_for_append(
    aggregate_id: str,
    expected_version: int,
    events: Sequence[DomainEvent],
) -> list[DomainEvent]:
    """Sort *events* by version and check they form the expected run."""
    ordered = sorted(events, key=lambda e: e.original_version)
    for offset, event in enumerate(ordered):
        if event.id != aggregate_id:
            raise ValueError(
                f"Event for aggregate {event.id!r} cannot be appended to "
                f"{aggregate_id!r}"
            )
        if event.original_version != expected_version + offset:
            raise ValueError(
                f"Events for {aggregate_id!r} must be contiguous from version "
                f"{expected_version}; got {event.original_version} at "
                f"position {offset}"
            )
    return ordered


def _batches(
    events: list[DomainEvent], size: int,
) -> Iterator[list[DomainEvent]]:
    for start in range(0, len(events), size):
        yield events[start:start + size]


# ---------------------------------------------------------------------------
# Protocol
# ---------------------------------------------------------------------------

class IEventStore(Protocol):
    """Per-aggregate append-only event log."""

    async def get_by_id(self, aggregate_id: str) -> list[DomainEvent]:
        """Return the aggregate's events ordered by version (maybe empty)."""
        ...

    async def save(
        self,
        aggregate_id: str,
        expected_version: int,
        events: Sequence[DomainEvent],
    ) -> None:
        """Append *events* starting at slot *expected_version*.

        Raises ``ConcurrencyConflictError`` on an occupied slot and
        ``PartialCommitError`` when a later sub-batch fails.
        """
        ...

    async def delete(self, aggregate_id: str) -> None:
        """Remove every stored event of the aggregate."""
        ...


# ---------------------------------------------------------------------------
# Shared batching
# ---------------------------------------------------------------------------

class BatchingEventStore:
    """Splits appends into atomic sub-batches of at most ``batch_size``.

    Subclasses implement ``_commit_batch``, which must write a whole batch
    or nothing and raise ``ConcurrencyConflictError`` on an occupied slot.
    """

    def __init__(self, batch_size: int = MAX_BATCH_SIZE) -> None:
        if not 1 <= batch_size <= MAX_BATCH_SIZE:
            raise ValueError(
                f"batch_size must be between 1 and {MAX_BATCH_SIZE}, got {batch_size}"
            )
        self._batch_size = batch_size

    @property
    def batch_size(self) -> int:
        return self._batch_size

    async def save(
        self,
        aggregate_id: str,
        expected_version: int,
        events: Sequence[DomainEvent],
    ) -> None:
        ordered = _ordered_for_append(aggregate_id, expected_version, events)
        committed = 0
        for batch in _batches(ordered, self._batch_size):
            try:
                await self._commit_batch(aggregate_id, batch)
            except Exception as exc:
                if committed == 0:
                    raise
                logger.error(
                    "Partial commit on %s: %d of %d event(s) durable",
                    aggregate_id, committed, len(ordered),
                )
                raise PartialCommitError(aggregate_id, committed, exc) from exc
            committed += len(batch)
        logger.debug(
            "Appended %d event(s) to %s at version %d",
            committed, aggregate_id, expected_version,
        )

    async def _commit_batch(
        self, aggregate_id: str, batch: list[DomainEvent],
    ) -> None:
        raise NotImplementedError


# ---------------------------------------------------------------------------
# In-memory implementation
# ---------------------------------------------------------------------------

class InMemoryEventStore(BatchingEventStore):
    """Dict-backed event store.  No persistence across restarts.

    Good for: unit tests, local development.
    """

    def __init__(self, batch_size: int = MAX_BATCH_SIZE) -> None:
        super().__init__(batch_size)
        # aggregate_id -> {version: event}
        self._streams: dict[str, dict[int, DomainEvent]] = {}

    async def get_by_id(self, aggregate_id: str) -> list[DomainEvent]:
        stream = self._streams.get(aggregate_id, {})
        return [stream[v] for v in sorted(stream)]

    async def _commit_batch(
        self, aggregate_id: str, batch: list[DomainEvent],
    ) -> None:
        # No await between check and write, so the batch is atomic.
        stream = self._streams.setdefault(aggregate_id, {})
        for event in batch:
            if event.original_version in stream:
                raise ConcurrencyConflictError(aggregate_id, event.original_version)
        for event in batch:
            stream[event.original_version] = event

    async def delete(self, aggregate_id: str) -> None:
        self._streams.pop(aggregate_id, None)

    # -- Testing helpers ---------------------------------------------------

    def clear(self) -> None:
        """Remove all events.  Testing only."""
        self._streams.clear()

    def __len__(self) -> int:
        return sum(len(s) for s in self._streams.values())


# ---------------------------------------------------------------------------
# JSON-Lines file implementation
# ---------------------------------------------------------------------------

@dataclasses.dataclass
class _StreamLock:
    lock: asyncio.Lock = dataclasses.field(default_factory=asyncio.Lock)
    users: int = 0


class JsonFileEventStore(BatchingEventStore):
    """One append-only JSONL file per aggregate.  Durable across restarts.

    Each line is a JSON object with an ``__event_type__`` discriminator.
    Check-and-append is serialized per aggregate by an ``asyncio.Lock``, so
    a single process never interleaves two writers on one stream.  A batch
    whose write fails is truncated away before the error is raised.
    """

    def __init__(
        self,
        root: str | Path,
        batch_size: int = MAX_BATCH_SIZE,
        event_types: Sequence[type[DomainEvent]] = ALL_DOMAIN_EVENTS,
    ) -> None:
        super().__init__(batch_size)
        self._root = Path(root)
        self._registry = _build_registry(event_types)
        # Only ids with a pending or running operation have an entry.
        self._locks: dict[str, _StreamLock] = {}

    @property
    def root(self) -> Path:
        return self._root

    def path_for(self, aggregate_id: str) -> Path:
        if not aggregate_id:
            raise ValueError("aggregate_id must not be empty")
        return self._root / f"{quote(aggregate_id, safe='')}.jsonl"

    @asynccontextmanager
    async def _stream_lock(self, aggregate_id: str) -> AsyncIterator[None]:
        entry = self._locks.get(aggregate_id)
        if entry is None:
            entry = self._locks[aggregate_id] = _StreamLock()
        entry.users += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.users -= 1
            if entry.users == 0:
                del self._locks[aggregate_id]

    async def get_by_id(self, aggregate_id: str) -> list[DomainEvent]:
        async with self._stream_lock(aggregate_id):
            events = self._read_stream(self.path_for(aggregate_id))
        return sorted(events, key=lambda e: e.original_version)

    async def save(
        self,
        aggregate_id: str,
        expected_version: int,
        events: Sequence[DomainEvent],
    ) -> None:
        async with self._stream_lock(aggregate_id):
            await super().save(aggregate_id, expected_version, events)

    async def _commit_batch(
        self, aggregate_id: str, batch: list[DomainEvent],
    ) -> None:
        path = self.path_for(aggregate_id)
        taken = {e.original_version for e in self._read_stream(path)}
        for event in batch:
            if event.original_version in taken:
                raise ConcurrencyConflictError(aggregate_id, event.original_version)

        payload = "".join(
            json.dumps(_event_to_dict(e), cls=_EventEncoder) + "\n" for e in batch
        ).encode("utf-8")
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            size = path.stat().st_size if path.exists() else 0
        except OSError as exc:
            raise StoreTransportError(f"Cannot append to {path}: {exc}") from exc
        try:
            with path.open("ab") as f:
                f.write(payload)
                f.flush()
                os.fsync(f.fileno())
        except OSError as exc:
            self._truncate(path, size)
            raise StoreTransportError(f"Cannot append to {path}: {exc}") from exc

    @staticmethod
    def _truncate(path: Path, size: int) -> None:
        """Cut *path* back to *size* after a failed append."""
        try:
            os.truncate(path, size)
        except OSError:
            logger.exception(
                "Cannot roll back failed append to %s; stream may hold a torn batch",
                path,
            )

    async def delete(self, aggregate_id: str) -> None:
        path = self.path_for(aggregate_id)
        async with self._stream_lock(aggregate_id):
            try:
                path.unlink(missing_ok=True)
            except OSError as exc:
                raise StoreTransportError(f"Cannot delete {path}: {exc}") from exc
        logger.info("Deleted event history of %s", aggregate_id)

    def _read_stream(self, path: Path) -> list[DomainEvent]:
        if not path.exists():
            return []
        out: list[DomainEvent] = []
        try:
            with path.open(encoding="utf-8") as f:
                for lineno, line in enumerate(f, start=1):
                    line = line.strip()
                    if not line:
                        continue
                    try:
                        d = json.loads(line)
                    except json.JSONDecodeError as exc:
                        raise StoreTransportError(
                            f"Corrupt record at {path}:{lineno}: {exc}"
                        ) from exc
                    if not isinstance(d, dict):
                        raise StoreTransportError(
                            f"Corrupt record at {path}:{lineno}: not a JSON object"
                        )
                    out.append(_event_from_dict(d, self._registry))
        except OSError as exc:
            raise StoreTransportError(f"Cannot read {path}: {exc}") from exc
        return out


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------

def build_event_store(config: EventStoreConfig) -> IEventStore:
    """Construct the store selected by *config*."""
    if config.backend == StoreBackend.MEMORY:
        return InMemoryEventStore(batch_size=config.batch_size)
    if config.backend == StoreBackend.JSONL:
        return JsonFileEventStore(config.data_dir, batch_size=config.batch_size)
    raise ConfigError(f"Unknown event store backend: {config.backend!r}")
