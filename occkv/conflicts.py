"""Commit-time conflict detection."""

from typing import Callable, Mapping

VersionLookup = Callable[[int], int | None]
"""Returns the live version of a record id, or None if it does not exist."""


def detect_conflict(
    expected: Mapping[int, int | None],
    live: Mapping[int, int | None] | VersionLookup,
) -> int | None:
    """Find the first record whose live version differs from the expected one.

    Args:
        expected: Record id -> expected version. ``None`` means the
            record must not exist yet.
        live: Either a mapping of live versions (ids missing from it
            are treated as absent) or a callable looking them up.

    Returns:
        The first conflicting id in ``expected`` iteration order, or
        None when every version matches.
    """
    lookup: VersionLookup = live.get if isinstance(live, Mapping) else live
    for record_id, version in expected.items():
        if lookup(record_id) != version:
            return record_id
    return None
