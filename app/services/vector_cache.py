# =============================================================================
# Vector Cache - Bounded Two-Level LRU of Parsed Embeddings
# =============================================================================
#
# Parsing a stored embedding (JSON text → list[float]) is the hot path of
# a full-corpus scan. Parsed vectors are kept here so repeated searches
# over the same session skip the parse.
#
#   VectorCache
#   └── LRUCache[owner_key → LRUCache[vector_id → list[float]]]
#         outer cap: max_owners (documents)       default 64
#         inner cap: max_entries_per_owner        default 200
#
# Owner keys are document ids, or `session:<id>` for vectors with no
# document. Both levels evict least-recently-used first; a read refreshes
# recency at both levels.
#
# Process-local and not thread-safe: only touched from the event loop.
# Invalidation is the job of VectorStore's replace/delete paths.
# =============================================================================

from __future__ import annotations

from collections import OrderedDict
from collections.abc import Hashable
from typing import Generic, TypeVar

K = TypeVar("K", bound=Hashable)
V = TypeVar("V")


class LRUCache(Generic[K, V]):
    """Fixed-capacity mapping that evicts the least recently used key."""

    def __init__(self, capacity: int) -> None:
        if capacity < 1:
            raise ValueError("LRUCache capacity must be >= 1")
        self.capacity = capacity
        self._data: OrderedDict[K, V] = OrderedDict()

    def get(self, key: K) -> V | None:
        """Return the value and mark it most recently used, or None."""
        if key not in self._data:
            return None
        self._data.move_to_end(key)
        return self._data[key]

    def put(self, key: K, value: V) -> None:
        """Insert or refresh `key`, evicting the oldest entry when full."""
        if key in self._data:
            self._data.move_to_end(key)
        self._data[key] = value
        while len(self._data) > self.capacity:
            self.evict_oldest()

    def pop(self, key: K) -> V | None:
        return self._data.pop(key, None)

    def evict_oldest(self) -> tuple[K, V] | None:
        if not self._data:
            return None
        return self._data.popitem(last=False)

    def clear(self) -> None:
        self._data.clear()

    def keys(self) -> list[K]:
        """Keys from least to most recently used."""
        return list(self._data.keys())

    def __contains__(self, key: object) -> bool:
        return key in self._data

    def __len__(self) -> int:
        return len(self._data)


def owner_key(document_id: int | str | None, session_id: int | str | None = None) -> str:
    """Cache owner for a vector: its document, else its session."""
    if document_id is not None:
        return str(document_id)
    if session_id is None:
        return "unknown"
    return f"session:{session_id}"


class VectorCache:
    """Two-level LRU: owner key → (vector id → parsed vector)."""

    def __init__(self, max_owners: int = 64, max_entries_per_owner: int = 200) -> None:
        self.max_entries_per_owner = max_entries_per_owner
        self._owners: LRUCache[str, LRUCache[str, list[float]]] = LRUCache(max_owners)

    def get(self, owner: str, vector_id: str) -> list[float] | None:
        inner = self._owners.get(owner)
        if inner is None:
            return None
        return inner.get(vector_id)

    def put(self, owner: str, vector_id: str, vector: list[float]) -> None:
        inner = self._owners.get(owner)
        if inner is None:
            inner = LRUCache(self.max_entries_per_owner)
            self._owners.put(owner, inner)
        inner.put(vector_id, vector)

    def invalidate(self, owner: str) -> bool:
        """Drop every cached vector of `owner`. Returns True if anything was cached."""
        return self._owners.pop(owner) is not None

    def clear(self) -> None:
        self._owners.clear()

    def owners(self) -> list[str]:
        return self._owners.keys()

    def entry_count(self, owner: str) -> int:
        inner = self._owners.get(owner)
        return len(inner) if inner is not None else 0

    def __len__(self) -> int:
        return len(self._owners)
