"""Near-duplicate query cache keyed by embedding similarity.

A lookup compares the query vector with every cached query vector and
returns the stored result of the closest one when its cosine similarity
reaches the threshold (0.95 by default). Entries expire after their TTL and
the least recently accessed entry is evicted when the cache is full.

Expired entries are swept periodically on an APScheduler background thread;
all state is guarded by one re-entrant lock. The cache can optionally be
persisted to a JSON file and reloaded on start, as long as the snapshot is
less than a day old.
"""

from collections.abc import Callable, Sequence
from dataclasses import asdict, dataclass
from datetime import UTC, datetime
import json
import os
from pathlib import Path
import threading
import time
from typing import Any

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from seshat.shared.similarity import cosine_similarity, l2_norm
from seshat.shared.utils.logger import setup_logger

logger = setup_logger(__name__)

DEFAULT_SIMILARITY_THRESHOLD = 0.95
DEFAULT_MAX_SIZE = 100
DEFAULT_TTL_SECONDS = 300.0
DEFAULT_CLEANUP_INTERVAL_SECONDS = 60.0
DEFAULT_PERSISTENCE_PATH = ".semantic_cache.json"
PERSISTENCE_MAX_AGE_SECONDS = 24 * 60 * 60
CLEANUP_JOB_ID = "semantic_cache_cleanup"


def make_key(embedding: Sequence[float]) -> str:
    """Key from the first and last five components at four decimals."""
    head = ",".join(f"{float(v):.4f}" for v in embedding[:5])
    tail = ",".join(f"{float(v):.4f}" for v in embedding[-5:])
    return f"{head}_{tail}"


def _iso(epoch_seconds: float) -> str:
    return datetime.fromtimestamp(epoch_seconds, tz=UTC).isoformat()


@dataclass
class CacheEntry:
    """One cached query and its result."""

    key: str
    payload: Any
    embedding: list[float]
    query_text: str | None
    created_at: float
    last_accessed_at: float
    ttl: float
    hit_count: int = 0
    norm: float = 0.0

    def is_expired(self, now: float) -> bool:
        return now - self.created_at >= self.ttl

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "CacheEntry":
        embedding = [float(v) for v in data["embedding"]]
        return cls(
            key=data["key"],
            payload=data.get("payload"),
            embedding=embedding,
            query_text=data.get("query_text"),
            created_at=float(data["created_at"]),
            last_accessed_at=float(data.get("last_accessed_at", data["created_at"])),
            ttl=float(data["ttl"]),
            hit_count=int(data.get("hit_count", 0)),
            norm=float(data.get("norm") or l2_norm(embedding)),
        )


@dataclass
class CacheHit:
    """Result returned by :meth:`SemanticCache.get`."""

    data: Any
    similarity: float
    key: str
    original_query: str | None = None
    cached: bool = True


@dataclass
class CacheStats:
    hits: int = 0
    misses: int = 0
    evictions: int = 0
    total_queries: int = 0
    average_similarity: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class SemanticCacheConfig:
    similarity_threshold: float = DEFAULT_SIMILARITY_THRESHOLD
    max_size: int = DEFAULT_MAX_SIZE
    ttl: float = DEFAULT_TTL_SECONDS
    cleanup_interval: float = DEFAULT_CLEANUP_INTERVAL_SECONDS
    enable_persistence: bool = False
    persistence_path: str = DEFAULT_PERSISTENCE_PATH


class SemanticCache:
    """Similarity-matched cache of search results.

    Args:
        config: Cache settings. ``cleanup_interval <= 0`` disables the
            background sweep.
        clock: Wall clock in epoch seconds (injectable for tests).
        start_cleanup: Start the background sweep immediately.
    """

    def __init__(
        self,
        config: SemanticCacheConfig | None = None,
        clock: Callable[[], float] = time.time,
        start_cleanup: bool = True,
    ):
        self.config = config or SemanticCacheConfig()
        if self.config.max_size < 1:
            msg = f"max_size must be positive, got {self.config.max_size}"
            raise ValueError(msg)
        self._clock = clock
        self._entries: dict[str, CacheEntry] = {}
        self._stats = CacheStats()
        self._lock = threading.RLock()
        self.scheduler: BackgroundScheduler | None = None

        if self.config.enable_persistence:
            self.load()
        if start_cleanup and self.config.cleanup_interval > 0:
            self.start_cleanup()

    # ------------------------------------------------------------------
    # Lookup and insert
    # ------------------------------------------------------------------

    def get(self, query_embedding: Sequence[float], query_text: str | None = None) -> CacheHit | None:
        """Return the closest cached result if it is similar enough and fresh.

        Expired entries met during the scan are dropped.
        """
        _ = query_text
        query_norm = l2_norm(query_embedding) if len(query_embedding) else 0.0
        with self._lock:
            self._stats.total_queries += 1
            now = self._clock()
            best: CacheEntry | None = None
            best_similarity = 0.0
            for key in list(self._entries):
                entry = self._entries[key]
                if entry.is_expired(now):
                    del self._entries[key]
                    continue
                similarity = cosine_similarity(query_embedding, entry.embedding, norm_a=query_norm)
                if similarity > best_similarity:
                    best, best_similarity = entry, similarity

            if best is None or best_similarity < self.config.similarity_threshold:
                self._stats.misses += 1
                return None

            best.hit_count += 1
            best.last_accessed_at = now
            self._stats.hits += 1
            hits = self._stats.hits
            self._stats.average_similarity = (
                self._stats.average_similarity * (hits - 1) + best_similarity
            ) / hits
            logger.debug("Semantic cache hit with similarity %.4f", best_similarity)
            return CacheHit(
                data=best.payload,
                similarity=best_similarity,
                key=best.key,
                original_query=best.query_text,
            )

    def set(
        self,
        query_embedding: Sequence[float],
        result: Any,
        query_text: str | None = None,
        ttl: float | None = None,
    ) -> str:
        """Store a result; evicts the least recently accessed entry when full.

        Returns:
            The entry key.
        """
        embedding = [float(v) for v in query_embedding]
        key = make_key(embedding)
        with self._lock:
            if key not in self._entries and len(self._entries) >= self.config.max_size:
                self._evict_lru()
            now = self._clock()
            self._entries[key] = CacheEntry(
                key=key,
                payload=result,
                embedding=embedding,
                query_text=query_text,
                created_at=now,
                last_accessed_at=now,
                ttl=ttl if ttl is not None else self.config.ttl,
                norm=l2_norm(embedding),
            )
        label = query_text[:50] if query_text else key
        logger.debug("Cached result for query: %s", label)
        if self.config.enable_persistence:
            self.persist()
        return key

    def _evict_lru(self) -> None:
        if not self._entries:
            return
        lru_key = min(self._entries.values(), key=lambda e: e.last_accessed_at).key
        del self._entries[lru_key]
        self._stats.evictions += 1
        logger.debug("Evicted least recently used entry %s", lru_key)

    def remove(self, key: str) -> bool:
        with self._lock:
            return self._entries.pop(key, None) is not None

    def clear(self) -> None:
        with self._lock:
            size = len(self._entries)
            self._entries.clear()
        logger.info("Cleared %d semantic cache entries", size)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    # ------------------------------------------------------------------
    # Expiry sweep
    # ------------------------------------------------------------------

    def cleanup(self) -> int:
        """Remove expired entries and return how many were removed."""
        with self._lock:
            now = self._clock()
            expired = [key for key, entry in self._entries.items() if entry.is_expired(now)]
            for key in expired:
                del self._entries[key]
        if expired:
            logger.info("Cleaned up %d expired semantic cache entries", len(expired))
        return len(expired)

    def start_cleanup(self) -> None:
        """Start the periodic expiry sweep on a background scheduler."""
        if self.scheduler is not None and self.scheduler.running:
            return
        self.scheduler = BackgroundScheduler()
        self.scheduler.add_job(
            func=self.cleanup,
            trigger=IntervalTrigger(seconds=self.config.cleanup_interval),
            id=CLEANUP_JOB_ID,
            name="Semantic cache expiry sweep",
            replace_existing=True,
        )
        self.scheduler.start()
        logger.debug("Semantic cache sweep scheduled every %ss", self.config.cleanup_interval)

    def stop_cleanup(self, wait: bool = False) -> None:
        if self.scheduler is not None and self.scheduler.running:
            self.scheduler.shutdown(wait=wait)
        self.scheduler = None

    def close(self) -> None:
        """Stop the sweep and write a final snapshot when persistence is on."""
        self.stop_cleanup()
        if self.config.enable_persistence:
            self.persist()

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def persist(self) -> bool:
        """Write entries and stats to the persistence file; never raises."""
        path = Path(self.config.persistence_path)
        with self._lock:
            snapshot = {
                "entries": [entry.to_dict() for entry in self._entries.values()],
                "stats": self._stats.to_dict(),
                "timestamp": self._clock(),
            }
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = path.with_suffix(path.suffix + ".tmp")
            with tmp_path.open("w", encoding="utf-8") as f:
                json.dump(snapshot, f, default=str)
            os.replace(tmp_path, path)
        except (OSError, TypeError, ValueError):
            logger.exception("Failed to persist semantic cache to %s", path)
            return False
        return True

    def load(self) -> int:
        """Load a snapshot written by :meth:`persist`.

        Snapshots older than 24 hours are ignored. Expired entries are swept
        after loading.

        Returns:
            Number of entries kept.
        """
        path = Path(self.config.persistence_path)
        if not path.exists():
            return 0
        try:
            with path.open(encoding="utf-8") as f:
                data = json.load(f)
            age = self._clock() - float(data["timestamp"])
            if age > PERSISTENCE_MAX_AGE_SECONDS:
                logger.info("Persisted semantic cache is %.0fh old, ignoring", age / 3600)
                return 0
            entries = {e["key"]: CacheEntry.from_dict(e) for e in data.get("entries", [])}
            stats = CacheStats(**data.get("stats", {}))
        except (OSError, ValueError, KeyError, TypeError):
            logger.warning("No valid persisted semantic cache at %s", path)
            return 0

        with self._lock:
            self._entries = entries
            self._stats = stats
        self.cleanup()
        size = len(self)
        logger.info("Loaded %d entries from persisted semantic cache", size)
        return size

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def get_stats(self) -> dict[str, Any]:
        with self._lock:
            stats = self._stats.to_dict()
            size = len(self._entries)
        total = stats["total_queries"]
        return {
            **stats,
            "hit_rate": round(stats["hits"] / total * 100, 2) if total else 0.0,
            "cache_size": size,
            "max_size": self.config.max_size,
            "ttl": self.config.ttl,
            "similarity_threshold": self.config.similarity_threshold,
        }

    def get_entry_details(self, key: str) -> dict[str, Any] | None:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            return {
                "key": entry.key,
                "query_text": entry.query_text,
                "created_at": _iso(entry.created_at),
                "last_accessed_at": _iso(entry.last_accessed_at),
                "hit_count": entry.hit_count,
                "ttl": entry.ttl,
                "expired": entry.is_expired(self._clock()),
                "embedding_dimensions": len(entry.embedding),
            }

    def get_all_entries(self) -> list[dict[str, Any]]:
        """Details of every entry, most accessed first."""
        with self._lock:
            keys = list(self._entries)
            details = [d for d in (self.get_entry_details(k) for k in keys) if d is not None]
        details.sort(key=lambda d: d["hit_count"], reverse=True)
        return details
