"""Abstract KV store interface."""

from abc import ABC, abstractmethod
from contextlib import AbstractContextManager
from typing import Iterable, Mapping


class KVStore(ABC):
    """Key-value store operating on bytes only.

    All values are stored and retrieved as bytes. Serialization is
    handled at higher layers (e.g., VersionedStore).
    """

    @abstractmethod
    def get(self, key: str) -> bytes | None:
        """Get bytes value for key, or None if not found."""

    @abstractmethod
    def set(self, key: str, value: bytes) -> None:
        """Set bytes value for key."""

    @abstractmethod
    def get_many(self, *args: str) -> Mapping[str, bytes]:
        """Get multiple keys, returning only keys that exist."""

    @abstractmethod
    def set_many(self, **kwargs: bytes) -> None:
        """Set multiple key-value pairs."""

    @abstractmethod
    def items(self) -> Iterable[tuple[str, bytes]]:
        """Iterate over all key-value pairs."""

    @abstractmethod
    def keys(self) -> Iterable[str]:
        """Iterate over all keys."""

    @abstractmethod
    def __contains__(self, key: str) -> bool:
        """Check if key exists in store."""

    @abstractmethod
    def remove_many(self, *keys: str) -> None:
        """Remove multiple keys."""

    @abstractmethod
    def transaction(self) -> AbstractContextManager[None]:
        """Scope in which a sequence of calls is atomic.

        Transactions on the same backend exclude each other. Readers
        outside the transaction are not blocked and see the state
        either before it or after it, never a partial set of its
        writes. Nesting is allowed.
        """
