"""
Error kinds raised by the lending core.

The core never recovers from these; they travel up to the caller, which
decides how to present them. The API layer maps each kind to an HTTP status
in endpoints.py.
"""


class LendingError(Exception):
    """Base class for every failure the lending service reports."""


class NotFoundError(LendingError):
    """A referenced book, borrower, loan or penalty does not exist."""

    def __init__(self, entity: str, entity_id):
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"{entity} with id {entity_id} not found")


class InvalidStateError(LendingError):
    """The operation is not allowed from the entity's current state."""


class InvalidArgumentError(LendingError):
    """Malformed input: blank reason, non-positive days, bad amount."""


class InvalidPeriodError(InvalidArgumentError):
    """A time window whose start is not strictly before its end."""


class InvalidTimestampError(InvalidArgumentError):
    """A timestamp that falls outside what the entity can accept."""


class ConflictError(LendingError):
    """Duplicate data, or a concurrent update won the race."""


class UnavailableError(LendingError):
    """The book has no copy that can be lent right now."""


class InvariantViolationError(LendingError):
    """
    An internal invariant does not hold.

    Unreachable when operations are sequenced correctly, so seeing one means
    the stored data is corrupt or there is a bug.
    """
