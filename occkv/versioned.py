"""VersionedStore: records with per-record versions over a KV store."""

from __future__ import annotations

import logging
import pickle
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Callable, Collection, Iterable, Mapping

from .conflicts import detect_conflict
from .errors import NotFound, VersionConflict
from .kv.base import KVStore
from .kv.memory import Memory

if TYPE_CHECKING:
    from .unit_of_work import UnitOfWork

logger = logging.getLogger(__name__)

RECORD_PREFIX = "__record__"
RECORD_KEY = RECORD_PREFIX + "%d"
NEXT_ID_KEY = "__next_id__"
VERSION_BYTES = 8

Payload = dict[str, Any]
Predicate = Callable[[Payload], bool]


@dataclass(frozen=True)
class Record:
    """A committed record as seen at the moment it was loaded."""

    id: int
    version: int
    payload: Payload = field(default_factory=dict)


@dataclass(frozen=True)
class ApplyResult:
    """Result of a ``try_apply`` call."""

    applied: bool
    versions: Mapping[int, int]  # id -> version after apply
    removed: tuple[int, ...] = ()
    conflict: int | None = None

    def __bool__(self) -> bool:
        return self.applied


def _pack(version: int, raw_payload: bytes) -> bytes:
    return version.to_bytes(VERSION_BYTES, "big") + raw_payload


def _unpack(raw: bytes) -> tuple[int, bytes]:
    return int.from_bytes(raw[:VERSION_BYTES], "big"), raw[VERSION_BYTES:]


class VersionedStore:
    """A table of versioned records over a KV store.

    Each record is stored under one KV key as its version followed by
    the encoded payload, so a single ``get`` always sees a consistent
    pair. VersionedStore provides:

    - ``get()`` / ``query()`` for committed reads (no locking)
    - ``try_apply()`` to version-check and write a batch atomically
    - ``create()`` / ``delete()`` for record lifecycle
    - ``begin()`` to open a ``UnitOfWork`` against this store
    """

    def __init__(
        self,
        store: KVStore | None = None,
        *,
        encoder: Callable[[Any], bytes] = pickle.dumps,
        decoder: Callable[[bytes], Any] = pickle.loads,
    ) -> None:
        if store is None:
            store = Memory()
        self.store = store
        self._encoder = encoder
        self._decoder = decoder

    # -- Read operations --

    def get(self, record_id: int) -> Record:
        """Return the latest committed state of a record.

        Raises:
            NotFound: If the record does not exist.
        """
        raw = self.store.get(RECORD_KEY % record_id)
        if raw is None:
            raise NotFound(record_id)
        version, raw_payload = _unpack(raw)
        return Record(record_id, version, self._decoder(raw_payload))

    def version_of(self, record_id: int) -> int | None:
        """Live version of a record, or None if it does not exist."""
        raw = self.store.get(RECORD_KEY % record_id)
        if raw is None:
            return None
        return _unpack(raw)[0]

    def query(self, predicate: Predicate | None = None) -> list[Record]:
        """Committed records whose payload satisfies ``predicate``.

        Each record reflects its own latest commit; the result is not
        a snapshot across records. Ordered by id.
        """
        result: list[Record] = []
        for key, raw in self.store.items():
            if not key.startswith(RECORD_PREFIX):
                continue
            version, raw_payload = _unpack(raw)
            payload = self._decoder(raw_payload)
            if predicate is None or predicate(payload):
                result.append(Record(int(key[len(RECORD_PREFIX):]), version, payload))
        result.sort(key=lambda r: r.id)
        return result

    def ids(self) -> list[int]:
        """All record ids currently in the store, ascending."""
        return sorted(
            int(key[len(RECORD_PREFIX):])
            for key in self.store.keys()
            if key.startswith(RECORD_PREFIX)
        )

    def __contains__(self, record_id: object) -> bool:
        if not isinstance(record_id, int):
            return False
        return RECORD_KEY % record_id in self.store

    def __len__(self) -> int:
        return len(self.ids())

    # -- Write operations --

    def allocate_id(self) -> int:
        """Reserve a fresh record id. Ids are never handed out twice."""
        with self.store.transaction():
            raw = self.store.get(NEXT_ID_KEY)
            record_id = int(raw.decode()) if raw is not None else 1
            self.store.set(NEXT_ID_KEY, str(record_id + 1).encode())
        return record_id

    def try_apply(
        self,
        writes: Mapping[int, Payload],
        expected: Mapping[int, int | None],
        *,
        removals: Collection[int] = (),
        check_only: Collection[int] = (),
        on_conflict: str = "raise",
    ) -> ApplyResult:
        """Version-check and apply a write set as one atomic step.

        Every id in ``expected`` must still be at its expected version
        (``None``: must not exist yet). If so, payloads in ``writes``
        are stored, ids in ``removals`` are deleted, and every other
        existing id in ``expected`` moves to its expected version + 1,
        whether or not it has a payload in ``writes``. Ids listed in
        ``check_only`` are verified but keep their version. New ids
        land at version 0. If any check fails, nothing is applied.

        Args:
            writes: Record id -> new payload.
            expected: Record id -> expected live version. Must cover
                every id in ``writes``, ``removals`` and ``check_only``.
            removals: Record ids to delete.
            check_only: Record ids to verify without incrementing.
            on_conflict: 'raise' (default) or 'abandon'.

        Returns:
            An ApplyResult (truthy when applied, falsy when abandoned).

        Raises:
            VersionConflict: If on_conflict='raise' and a version differs.
            ValueError: If the arguments are inconsistent.
        """
        if on_conflict not in ("raise", "abandon"):
            raise ValueError(f"on_conflict must be 'raise' or 'abandon', got {on_conflict!r}")
        unchecked = (set(writes) | set(removals) | set(check_only)) - set(expected)
        if unchecked:
            raise ValueError(f"No expected version for records: {sorted(unchecked)}")
        touched = (set(writes) | set(removals)) & set(check_only)
        if touched:
            raise ValueError(f"Records both written and check-only: {sorted(touched)}")
        for record_id in removals:
            if expected[record_id] is None:
                raise ValueError(f"Cannot remove record {record_id} that must not exist")

        # Encode outside the critical section.
        encoded = {record_id: self._encoder(payload) for record_id, payload in writes.items()}

        with self.store.transaction():
            raw_records = self.store.get_many(*(RECORD_KEY % r for r in expected))
            live = {
                record_id: _unpack(raw)[0]
                for record_id in expected
                if (raw := raw_records.get(RECORD_KEY % record_id)) is not None
            }
            conflict = detect_conflict(expected, live)
            if conflict is not None:
                actual = live.get(conflict)
                logger.info(
                    "occ.apply conflict record=%s expected=%s actual=%s",
                    conflict,
                    expected[conflict],
                    actual,
                )
                if on_conflict == "abandon":
                    return ApplyResult(applied=False, versions={}, conflict=conflict)
                raise VersionConflict(conflict, expected[conflict], actual)

            updates: dict[str, bytes] = {}
            versions: dict[int, int] = {}
            for record_id, version in expected.items():
                if record_id in removals or record_id in check_only:
                    continue
                if version is None:
                    if record_id not in encoded:
                        continue  # existence check only
                    new_version = 0
                    raw_payload = encoded[record_id]
                else:
                    new_version = version + 1
                    if record_id in encoded:
                        raw_payload = encoded[record_id]
                    else:
                        # Forced increment: keep the stored payload bytes.
                        raw_payload = _unpack(raw_records[RECORD_KEY % record_id])[1]
                updates[RECORD_KEY % record_id] = _pack(new_version, raw_payload)
                versions[record_id] = new_version

            if updates:
                self.store.set_many(**updates)
            if removals:
                self.store.remove_many(*(RECORD_KEY % r for r in removals))

        logger.debug(
            "occ.apply committed versions=%s removed=%s", versions, sorted(removals)
        )
        return ApplyResult(applied=True, versions=versions, removed=tuple(removals))

    def create(self, payload: Payload) -> Record:
        """Insert a new record at version 0 and return it."""
        record_id = self.allocate_id()
        self.try_apply({record_id: payload}, {record_id: None})
        return Record(record_id, 0, dict(payload))

    def create_many(self, payloads: Iterable[Payload]) -> list[Record]:
        """Insert several records in one atomic apply."""
        writes = {self.allocate_id(): dict(payload) for payload in payloads}
        self.try_apply(writes, dict.fromkeys(writes))
        return [Record(record_id, 0, payload) for record_id, payload in writes.items()]

    def delete(self, record_id: int, *, expected_version: int | None = None) -> None:
        """Delete a record, optionally only if it is still at ``expected_version``.

        Raises:
            NotFound: If the record does not exist.
            VersionConflict: If ``expected_version`` no longer matches.
        """
        with self.store.transaction():
            live = self.version_of(record_id)
            if live is None:
                raise NotFound(record_id)
            version = live if expected_version is None else expected_version
            self.try_apply({}, {record_id: version}, removals=(record_id,))

    # -- Units of work --

    def begin(self) -> UnitOfWork:
        """Open a new ``UnitOfWork`` over this store."""
        from .unit_of_work import UnitOfWork

        return UnitOfWork(self)
