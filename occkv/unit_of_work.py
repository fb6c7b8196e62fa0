"""UnitOfWork: one optimistic transaction over a VersionedStore."""

from __future__ import annotations

import copy
import logging
from enum import Enum
from types import MappingProxyType
from typing import Mapping

from .errors import ConcurrencyConflict, NotFound, UnitOfWorkError, VersionConflict
from .locking import LockMode, ReadTicket
from .versioned import ApplyResult, Payload, Predicate, Record, VersionedStore

logger = logging.getLogger(__name__)


class State(Enum):
    ACTIVE = "active"
    COMMITTING = "committing"
    COMMITTED = "committed"
    ROLLED_BACK = "rolled_back"


class UnitOfWork:
    """Tracks the reads and staged writes of one logical transaction.

    Reads go straight to the store and record a ``ReadTicket`` with
    the version observed. Writes are never inferred: callers declare
    them with ``stage()``, ``add()`` or ``remove()``. ``commit()``
    hands the write set and the expected versions to
    ``VersionedStore.try_apply`` as one atomic step.

    The store is passed in explicitly; nothing is shared between
    units of work except through it. A unit of work is meant to be
    driven by a single thread.

    Usable as a context manager: commits on clean exit, rolls back
    if the block raises.
    """

    def __init__(self, store: VersionedStore) -> None:
        self._store = store
        self._tickets: dict[int, ReadTicket] = {}
        self._writes: dict[int, Payload] = {}
        self._removals: set[int] = set()
        self._created: set[int] = set()
        self._state = State.ACTIVE

    @classmethod
    def begin(cls, store: VersionedStore) -> UnitOfWork:
        return cls(store)

    @property
    def store(self) -> VersionedStore:
        return self._store

    @property
    def state(self) -> State:
        return self._state

    @property
    def tickets(self) -> Mapping[int, ReadTicket]:
        return MappingProxyType(self._tickets)

    @property
    def write_set(self) -> Mapping[int, Payload]:
        return MappingProxyType(self._writes)

    @property
    def removals(self) -> frozenset[int]:
        return frozenset(self._removals)

    @property
    def has_changes(self) -> bool:
        """Whether commit would write, delete or force-increment anything."""
        return bool(
            self._writes
            or self._removals
            or any(t.mode.forces_increment for t in self._tickets.values())
        )

    # -- Reads --

    def read(self, record_id: int, lock_mode: LockMode = LockMode.NONE) -> Payload:
        """Read a record and register it under ``lock_mode``.

        Returns a private copy of the payload; changing it has no
        effect until it is passed to ``stage()``. A payload already
        staged by this unit of work is returned in preference to the
        committed one.

        Raises:
            NotFound: If the record does not exist (or was removed
                by this unit of work).
        """
        self._require_active()
        if record_id in self._created:
            return copy.deepcopy(self._writes[record_id])
        if record_id in self._removals:
            raise NotFound(record_id)

        record = self._store.get(record_id)
        self._track(record, lock_mode)
        logger.debug(
            "occ.read record=%s version=%s mode=%s", record_id, record.version, lock_mode.name
        )
        if record_id in self._writes:
            return copy.deepcopy(self._writes[record_id])
        return record.payload

    def query(
        self, predicate: Predicate | None = None, lock_mode: LockMode = LockMode.NONE
    ) -> list[Record]:
        """Query committed records and register each under ``lock_mode``."""
        self._require_active()
        records = self._store.query(predicate)
        for record in records:
            self._track(record, lock_mode)
        logger.debug("occ.query matched=%d mode=%s", len(records), lock_mode.name)
        return records

    def _track(self, record: Record, lock_mode: LockMode) -> None:
        ticket = self._tickets.get(record.id)
        if ticket is None:
            ticket = ReadTicket(record.id, record.version, lock_mode)
        else:
            ticket = ticket.escalate(lock_mode)
        self._tickets[record.id] = ticket

    # -- Writes --

    def stage(self, record_id: int, payload: Payload) -> None:
        """Stage a new payload for a record read (or added) earlier."""
        self._require_active()
        if record_id not in self._created:
            if record_id not in self._tickets:
                raise UnitOfWorkError(
                    f"Record {record_id} must be read before it is staged"
                )
            if record_id in self._removals:
                raise UnitOfWorkError(f"Record {record_id} is staged for removal")
        self._writes[record_id] = copy.deepcopy(payload)

    def add(self, payload: Payload) -> int:
        """Stage a new record and return its id.

        The id is reserved immediately and is not reused even if this
        unit of work rolls back.
        """
        self._require_active()
        record_id = self._store.allocate_id()
        self._created.add(record_id)
        self._writes[record_id] = copy.deepcopy(payload)
        return record_id

    def remove(self, record_id: int) -> None:
        """Stage deletion of a record read earlier."""
        self._require_active()
        if record_id in self._created:
            self._created.discard(record_id)
            del self._writes[record_id]
            return
        if record_id not in self._tickets:
            raise UnitOfWorkError(f"Record {record_id} must be read before it is removed")
        self._writes.pop(record_id, None)
        self._removals.add(record_id)

    # -- Commit / rollback --

    def expected_versions(self) -> dict[int, int | None]:
        """Versions the store must still hold for this unit of work to commit.

        Covers every record read under a checked lock mode and every
        record written or removed, in the order first touched. New
        records map to None.
        """
        expected: dict[int, int | None] = {}
        for record_id, ticket in self._tickets.items():
            if (
                ticket.mode.checks_version
                or record_id in self._writes
                or record_id in self._removals
            ):
                expected[record_id] = ticket.version
        for record_id in self._writes:
            if record_id in self._created:
                expected[record_id] = None
        return expected

    def commit(self) -> ApplyResult:
        """Validate and apply everything this unit of work staged.

        Returns:
            The store's ApplyResult.

        Raises:
            ConcurrencyConflict: If a checked record changed since it
                was read. The unit of work is rolled back.
            UnitOfWorkError: If the unit of work is not active.
        """
        self._require_active()
        self._state = State.COMMITTING

        expected = self.expected_versions()
        if not expected:
            self._state = State.COMMITTED
            return ApplyResult(applied=True, versions={})

        check_only = [
            record_id
            for record_id in expected
            if record_id not in self._writes
            and record_id not in self._removals
            and not self._tickets[record_id].mode.forces_increment
        ]
        try:
            result = self._store.try_apply(
                self._writes,
                expected,
                removals=self._removals,
                check_only=check_only,
            )
        except VersionConflict as e:
            self._discard(State.ROLLED_BACK)
            logger.info("occ.commit rolled back on record=%s", e.record_id)
            raise ConcurrencyConflict(e.record_id) from e
        except BaseException:
            self._discard(State.ROLLED_BACK)
            raise

        self._discard(State.COMMITTED)
        return result

    def rollback(self) -> None:
        """Discard all reads and staged writes. Never touches the store."""
        if self._state is State.ROLLED_BACK:
            return
        self._require_active()
        self._discard(State.ROLLED_BACK)

    def _discard(self, state: State) -> None:
        self._tickets.clear()
        self._writes.clear()
        self._removals.clear()
        self._created.clear()
        self._state = state

    def _require_active(self) -> None:
        if self._state is not State.ACTIVE:
            raise UnitOfWorkError(f"Unit of work is {self._state.value}")

    def __enter__(self) -> UnitOfWork:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if self._state is not State.ACTIVE:
            return
        if exc_type is None:
            self.commit()
        else:
            self.rollback()

    def __repr__(self) -> str:
        return (
            f"<UnitOfWork {self._state.value} reads={len(self._tickets)} "
            f"writes={len(self._writes)} removals={len(self._removals)}>"
        )
