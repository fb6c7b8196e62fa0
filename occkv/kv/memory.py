"""In-memory KV store."""

import threading
from contextlib import contextmanager
from typing import Callable, Iterable, Iterator, Mapping

from .base import KVStore


class Memory(KVStore):
    """A memory-backed KV store.

    Published dicts are never mutated: every write builds a new dict
    and swaps the ``memory`` reference under the writer lock. Reads
    take no lock and see one published dict. Inside ``transaction()``
    the owning thread works on a private copy that is published on
    clean exit and dropped if the block raises.
    """

    def __init__(self) -> None:
        self.memory: dict[str, bytes] = {}
        self._lock = threading.RLock()
        self._local = threading.local()

    def _view(self) -> dict[str, bytes]:
        pending = getattr(self._local, "pending", None)
        return self.memory if pending is None else pending

    def _write(self, apply: Callable[[dict[str, bytes]], None]) -> None:
        with self._lock:
            pending = getattr(self._local, "pending", None)
            if pending is not None:
                apply(pending)
            else:
                updated = dict(self.memory)
                apply(updated)
                self.memory = updated

    def get(self, key: str) -> bytes | None:
        return self._view().get(key)

    def set(self, key: str, value: bytes) -> None:
        if not isinstance(value, bytes):
            raise TypeError(f"Expected bytes, got {type(value).__name__}")
        self._write(lambda d: d.__setitem__(key, value))

    def get_many(self, *args: str) -> Mapping[str, bytes]:
        view = self._view()
        return {key: val for key in args if (val := view.get(key)) is not None}

    def set_many(self, **kwargs: bytes) -> None:
        for key, value in kwargs.items():
            if not isinstance(value, bytes):
                raise TypeError(f"Expected bytes for {key}, got {type(value).__name__}")
        self._write(lambda d: d.update(kwargs))

    def items(self) -> Iterable[tuple[str, bytes]]:
        return list(self._view().items())

    def keys(self) -> Iterable[str]:
        return list(self._view().keys())

    def __contains__(self, key: str) -> bool:
        return key in self._view()

    def remove_many(self, *keys: str) -> None:
        def drop(d: dict[str, bytes]) -> None:
            for key in keys:
                d.pop(key, None)

        self._write(drop)

    @contextmanager
    def transaction(self) -> Iterator[None]:
        with self._lock:
            if getattr(self._local, "pending", None) is not None:
                yield  # nested: the outer transaction publishes
                return
            self._local.pending = dict(self.memory)
            try:
                yield
                self.memory = self._local.pending
            finally:
                self._local.pending = None
