"""Lock modes and read tickets."""

from dataclasses import dataclass, replace
from enum import IntEnum


class LockMode(IntEnum):
    """How a read participates in the commit-time version check.

    Modes are ordered by strictness so that ``max()`` picks the mode
    that wins when a record is read more than once.
    """

    NONE = 0
    """Not checked. The record may change concurrently without effect."""

    OPTIMISTIC = 1
    """Checked. The commit fails if the record changed since it was read."""

    FORCE_INCREMENT = 2
    """Checked, and the version is bumped on commit even if unmodified."""

    @property
    def checks_version(self) -> bool:
        return self is not LockMode.NONE

    @property
    def forces_increment(self) -> bool:
        return self is LockMode.FORCE_INCREMENT


def strongest(*modes: LockMode) -> LockMode:
    """Return the strictest of ``modes`` (``NONE`` if empty)."""
    return max(modes, default=LockMode.NONE)


@dataclass(frozen=True)
class ReadTicket:
    """What a unit of work observed when it first read a record."""

    record_id: int
    version: int
    mode: LockMode = LockMode.NONE

    def escalate(self, mode: LockMode) -> "ReadTicket":
        """Return a ticket with the stricter of the current and given mode.

        The observed version is kept; a later read never refreshes it.
        """
        stricter = strongest(self.mode, mode)
        if stricter is self.mode:
            return self
        return replace(self, mode=stricter)
