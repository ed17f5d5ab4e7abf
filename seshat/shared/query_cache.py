"""Exact-key result cache used by the vector store client for similarity searches."""

from collections import OrderedDict
from collections.abc import Callable, Sequence
from dataclasses import dataclass
import json
import threading
import time
from typing import Any

DEFAULT_TTL_SECONDS = 300.0
DEFAULT_MAX_ENTRIES = 100
KEY_EDGE_VALUES = 5


def make_query_key(
    embedding: Sequence[float],
    threshold: float,
    count: int,
    filters: dict[str, Any] | None = None,
) -> str:
    """Cache key from the first and last five components plus the search parameters.

    Components are rounded to 6 decimals so that vectors that differ only in
    float noise share a key.
    """
    values = list(embedding)
    head = [round(float(v), 6) for v in values[:KEY_EDGE_VALUES]]
    tail = [round(float(v), 6) for v in values[-KEY_EDGE_VALUES:]]
    filter_part = json.dumps(filters, sort_keys=True, default=str) if filters else ""
    return f"{head}|{tail}|{len(values)}|{threshold}|{count}|{filter_part}"


@dataclass
class CachedResult:
    value: Any
    created_at: float


class QueryResultCache:
    """Bounded TTL cache evicting the oldest inserted entry at capacity.

    ``get`` returns the stored object itself, not a copy.

    Args:
        ttl: Seconds an entry stays valid.
        max_entries: Capacity.
        clock: Time source in seconds (injectable for tests).
    """

    def __init__(
        self,
        ttl: float = DEFAULT_TTL_SECONDS,
        max_entries: int = DEFAULT_MAX_ENTRIES,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.ttl = ttl
        self.max_entries = max_entries
        self._clock = clock
        self._entries: OrderedDict[str, CachedResult] = OrderedDict()
        self._lock = threading.Lock()

    def get(self, key: str) -> Any | None:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if self._clock() - entry.created_at >= self.ttl:
                del self._entries[key]
                return None
            return entry.value

    def set(self, key: str, value: Any) -> None:
        with self._lock:
            if key in self._entries:
                del self._entries[key]
            while len(self._entries) >= self.max_entries:
                self._entries.popitem(last=False)
            self._entries[key] = CachedResult(value=value, created_at=self._clock())

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
