"""occkv error types."""


class OCCError(Exception):
    """Base class for occkv errors."""


class NotFound(OCCError, KeyError):
    """Raised when a record id does not exist in the store."""

    def __init__(self, record_id: int) -> None:
        self.record_id = record_id
        super().__init__(record_id)

    def __str__(self) -> str:
        return f"Record {self.record_id} not found"


class ConcurrencyConflict(OCCError):
    """Raised when a unit of work fails its commit-time version check.

    Another unit of work committed a change to ``record_id`` after it
    was read. The unit of work is left rolled back; the caller should
    re-read, recompute and retry, or give up.
    """

    def __init__(self, record_id: int, message: str | None = None) -> None:
        self.record_id = record_id
        super().__init__(message or f"Concurrent modification of record {record_id}")


class VersionConflict(ConcurrencyConflict):
    """Raised by the store when a live version differs from the expected one.

    Attributes:
        record_id: The first id whose version did not match.
        expected: The version the caller expected (None: must not exist).
        actual: The live version (None: record does not exist).
    """

    def __init__(self, record_id: int, expected: int | None, actual: int | None) -> None:
        self.expected = expected
        self.actual = actual
        super().__init__(
            record_id,
            f"Version conflict on record {record_id}: "
            f"expected {_fmt(expected)}, found {_fmt(actual)}",
        )


class InvariantViolation(OCCError):
    """Raised when a domain rule rejects a change before it is staged."""


class UnitOfWorkError(OCCError):
    """Raised when a unit of work is used outside its lifecycle rules."""


def _fmt(version: int | None) -> str:
    return "absent" if version is None else f"v{version}"
