"""Store factory function."""

import pickle
from typing import Any, Callable, Literal

from .kv.memory import Memory
from .versioned import VersionedStore


def store(
    kind: Literal["memory", "disk"] = "memory",
    *,
    path: str | None = None,
    encoder: Callable[[Any], bytes] = pickle.dumps,
    decoder: Callable[[bytes], Any] = pickle.loads,
) -> VersionedStore:
    """Create a VersionedStore with sensible defaults.

    Args:
        kind: ``"memory"`` (default) or ``"disk"``.
        path: Required when ``kind="disk"``. Directory path for
            the disk backend.
        encoder: Payload encoder (default ``pickle.dumps``).
        decoder: Payload decoder (default ``pickle.loads``).

    Returns:
        A ``VersionedStore`` instance.
    """
    if kind == "memory":
        backend = Memory()
    elif kind == "disk":
        if path is None:
            raise ValueError("path is required when kind='disk'")
        from .kv.disk import Disk

        backend = Disk(path, size_limit=0)
    else:
        raise ValueError(f"Unknown kind: {kind!r}")

    return VersionedStore(backend, encoder=encoder, decoder=decoder)
