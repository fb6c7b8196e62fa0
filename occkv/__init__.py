"""occkv: Optimistic concurrency control over a versioned record store."""

from .conflicts import detect_conflict
from .errors import (
    ConcurrencyConflict,
    InvariantViolation,
    NotFound,
    OCCError,
    UnitOfWorkError,
    VersionConflict,
)
from .kv.base import KVStore
from .locking import LockMode, ReadTicket, strongest
from .store import store
from .unit_of_work import State, UnitOfWork
from .versioned import ApplyResult, Record, VersionedStore

__all__ = [
    "ApplyResult",
    "ConcurrencyConflict",
    "InvariantViolation",
    "KVStore",
    "LockMode",
    "NotFound",
    "OCCError",
    "ReadTicket",
    "Record",
    "State",
    "UnitOfWork",
    "UnitOfWorkError",
    "VersionConflict",
    "VersionedStore",
    "detect_conflict",
    "store",
    "strongest",
]
