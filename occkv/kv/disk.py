"""Disk-backed KV store using diskcache."""

from contextlib import contextmanager
from typing import Iterable, Iterator, Mapping, cast

from .base import KVStore

ONE_GB = 1024 * 1024 * 1024


class Disk(KVStore):
    """KV store backed by diskcache (SQLite + mmap).

    ``transaction()`` maps to ``Cache.transact()``, which holds the
    SQLite write lock, so it also serializes writers in other
    processes sharing the same directory.
    """

    def __init__(self, directory: str, size_limit: int = ONE_GB) -> None:
        from diskcache import Cache as DiskCache

        # Records must never be evicted, so culling is disabled.
        self.store = DiskCache(
            directory, size_limit=size_limit, eviction_policy="none"
        )

    def get(self, key: str) -> bytes | None:
        return cast(bytes | None, self.store.get(key))

    def set(self, key: str, value: bytes) -> None:
        if not isinstance(value, bytes):
            raise TypeError(f"Expected bytes, got {type(value).__name__}")
        self.store[key] = value

    def get_many(self, *args: str) -> Mapping[str, bytes]:
        return {k: v for k in args if (v := self.get(k)) is not None}

    def set_many(self, **kwargs: bytes) -> None:
        for key, value in kwargs.items():
            if not isinstance(value, bytes):
                raise TypeError(f"Expected bytes for {key}, got {type(value).__name__}")
        with self.store.transact():
            for key, value in kwargs.items():
                self.set(key, value)

    def items(self) -> Iterable[tuple[str, bytes]]:
        for key in self.store.iterkeys():
            value = self.store.get(key)
            if value is not None:
                yield str(key), cast(bytes, value)

    def keys(self) -> Iterable[str]:
        for key in self.store.iterkeys():
            yield str(key)

    def __contains__(self, key: str) -> bool:
        return key in self.store

    def remove_many(self, *keys: str) -> None:
        with self.store.transact():
            for key in keys:
                self.store.delete(key, retry=False)

    @contextmanager
    def transaction(self) -> Iterator[None]:
        with self.store.transact():
            yield

    def close(self) -> None:
        self.store.close()
