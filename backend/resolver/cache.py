"""Read-through cache for loaded resources.

Resources are keyed by ``(kind, id)``. Two kinds may share an id, so the
kind is always part of the key. The default cache never evicts: core
configuration is assumed immutable for the lifetime of a process run.
"""

import threading
from collections.abc import Callable
from typing import NamedTuple, Protocol

from models.schemas import Resource


class ResourceKey(NamedTuple):
    """Cache key for a resource."""

    kind: str
    id: str


class ResourceCache(Protocol):
    """Storage policy for loaded resources."""

    def get(self, key: ResourceKey) -> Resource | None: ...

    def put(self, key: ResourceKey, resource: Resource) -> None: ...

    def __len__(self) -> int: ...


class UnboundedResourceCache:
    """In-memory cache with no eviction.

    Reads are safe to share across concurrent resolutions; writes are
    guarded so two resolvers racing on the same key store one entry.
    """

    def __init__(self) -> None:
        self._entries: dict[ResourceKey, Resource] = {}
        self._lock = threading.Lock()

    def get(self, key: ResourceKey) -> Resource | None:
        return self._entries.get(key)

    def put(self, key: ResourceKey, resource: Resource) -> None:
        with self._lock:
            self._entries.setdefault(key, resource)

    def __len__(self) -> int:
        return len(self._entries)


def read_through(
    cache: ResourceCache,
    key: ResourceKey,
    loader: Callable[[], Resource | None],
) -> Resource | None:
    """Return the cached resource for ``key`` or load and cache it.

    Misses (loader returns None) are not cached.
    """
    cached = cache.get(key)
    if cached is not None:
        return cached
    loaded = loader()
    if loaded is not None:
        cache.put(key, loaded)
        # Another resolver may have won the race; return the stored entry.
        return cache.get(key) or loaded
    return None
