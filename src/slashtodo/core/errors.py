"""Custom exception hierarchy for the SlashTodo core."""


class SlashTodoError(Exception):
    """Base exception for all SlashTodo errors."""


# --- Configuration ---
class ConfigError(SlashTodoError):
    """Invalid or missing configuration."""


# --- Transport ---
class TransportError(SlashTodoError):
    """An underlying store or subscriber could not complete the call."""


# --- Event store ---
class EventStoreError(SlashTodoError):
    """Event store failure."""


class StoreTransportError(EventStoreError, TransportError):
    """Event store unreachable or its backing data unreadable."""


class ConcurrencyConflictError(EventStoreError):
    """An append targeted an already occupied ``(aggregate_id, version)`` slot.

    Recoverable: reload the aggregate and retry the operation.
    """

    def __init__(self, aggregate_id: str, version: int):
        self.aggregate_id = aggregate_id
        self.version = version
        super().__init__(
            f"Version {version} of aggregate {aggregate_id!r} is already taken"
        )


class PartialCommitError(EventStoreError):
    """A multi-batch append failed after earlier batches were committed.

    The durable history is now ahead of what the caller believes was saved.
    Retrying blindly would collide with the committed slots, so this is
    not recoverable by reload-and-retry of the same buffer.
    """

    def __init__(self, aggregate_id: str, committed: int, cause: BaseException):
        self.aggregate_id = aggregate_id
        self.committed = committed
        self.cause = cause
        super().__init__(
            f"Append to aggregate {aggregate_id!r} failed after {committed} "
            f"event(s) were committed: {cause}"
        )


class UnknownEventTypeError(EventStoreError):
    """A stored event carries a discriminator with no registered class."""

    def __init__(self, event_type: str | None):
        self.event_type = event_type
        super().__init__(f"Unknown event type: {event_type!r}")


# --- Dispatch ---
class DispatchError(TransportError):
    """A subscriber failed while a committed event was being published."""

    def __init__(self, event_type: str, cause: BaseException):
        self.event_type = event_type
        self.cause = cause
        super().__init__(f"Publishing {event_type} failed: {cause}")


# --- Domain ---
class DomainError(SlashTodoError):
    """Business rule violation raised by an aggregate."""


class EventSequenceError(DomainError):
    """An event was applied out of version order."""

    def __init__(self, aggregate_id: str, expected: int, actual: int):
        self.aggregate_id = aggregate_id
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Aggregate {aggregate_id!r} expected version {expected}, "
            f"got event with original_version {actual}"
        )


class MissingContextError(DomainError):
    """A todo operation was invoked without a ``TodoContext``."""


class OwnershipConflictError(DomainError):
    """Operation would affect a claim held by another user."""

    def __init__(self, claimed_by_user_id: str):
        self.claimed_by_user_id = claimed_by_user_id
        super().__init__(f"Claimed by {claimed_by_user_id}")


class TodoClaimedBySomeoneElse(OwnershipConflictError):
    """The todo is claimed by a different user and ``force`` was not used."""
