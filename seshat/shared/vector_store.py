"""Fault-tolerant client for the ``document_chunks`` vector store.

Every remote call made by :class:`VectorStoreClient` goes through the same
path: the circuit breaker admits or rejects the attempt, the attempt runs
against the :class:`~seshat.shared.transport.VectorBackend`, the breaker
records the outcome, and the store retry policy decides whether to try again.
Failures leave the client as :class:`~seshat.shared.errors.VectorOperationError`;
validation errors and an open circuit pass through unchanged.

Writes are validated in full before any request is made, then upserted in
fixed-size batches keyed on ``(document_id, chunk_index)``, so re-inserting a
document replaces its rows instead of duplicating them.
"""

from collections.abc import Callable, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime
import threading
import time
from typing import Any, TypeVar

from seshat.shared.circuit_breaker import CircuitBreaker
from seshat.shared.errors import (
    CircuitOpenError,
    ValidationError,
    VectorOperationError,
    is_retryable_error,
)
from seshat.shared.query_cache import QueryResultCache, make_query_key
from seshat.shared.records import TABLE_NAME, ChunkRecord, coerce_record, validate_for_write
from seshat.shared.retry import execute, store_policy
from seshat.shared.similarity import EMBEDDING_DIMENSIONS, validate_embedding
from seshat.shared.transport import VectorBackend
from seshat.shared.utils.logger import setup_logger

logger = setup_logger(__name__)

T = TypeVar("T")

INSERT_CONFLICT_COLUMNS = "document_id,chunk_index"
UPDATE_CONFLICT_COLUMNS = "id"

HEALTHY = "healthy"
DEGRADED = "degraded"
UNHEALTHY = "unhealthy"


@dataclass
class VectorStoreConfig:
    """Tuning knobs of :class:`VectorStoreClient`.

    Delays are in seconds.
    """

    retry_attempts: int = 3
    retry_delay: float = 1.0
    max_retry_delay: float = 10.0
    batch_size: int = 50
    batch_delay: float = 0.1
    cache_enabled: bool = True
    cache_ttl: float = 300.0
    cache_max_entries: int = 100
    similarity_threshold: float = 0.8
    circuit_breaker_threshold: int = 5
    circuit_breaker_timeout: float = 60.0
    dimensions: int = EMBEDDING_DIMENSIONS
    degraded_latency_ms: float = 1000.0

    def __post_init__(self) -> None:
        if self.batch_size < 1:
            msg = f"batch_size must be positive, got {self.batch_size}"
            raise ValueError(msg)


@dataclass
class ClientStats:
    queries: int = 0
    inserts: int = 0
    updates: int = 0
    deletes: int = 0
    errors: int = 0
    cache_hits: int = 0
    cache_misses: int = 0
    total_latency_ms: float = 0.0


def _resolve_path(row: dict[str, Any], key: str) -> Any:
    """Look up ``key`` as a column, a metadata key or a dotted path."""
    if "." in key:
        current: Any = row
        for part in key.split("."):
            if not isinstance(current, dict) or part not in current:
                return None
            current = current[part]
        return current
    if key in row:
        return row[key]
    metadata = row.get("metadata")
    if isinstance(metadata, dict):
        return metadata.get(key)
    return None


def apply_filters(rows: list[dict[str, Any]], filters: dict[str, Any]) -> list[dict[str, Any]]:
    """Keep rows whose fields equal every filter value.

    A list or tuple filter value matches any of its members.
    """
    result = []
    for row in rows:
        keep = True
        for key, expected in filters.items():
            actual = _resolve_path(row, key)
            if isinstance(expected, (list, tuple, set)):
                if actual not in expected:
                    keep = False
                    break
            elif actual != expected:
                keep = False
                break
        if keep:
            result.append(row)
    return result


class VectorStoreClient:
    """Client for inserting, searching and inspecting stored chunks.

    Args:
        backend: Transport to the database.
        config: Client settings; defaults are used when omitted.
        sleep: Sleep function used for retry waits and batch pacing.
        clock: Monotonic clock in seconds, used for latency and the breaker.
    """

    def __init__(
        self,
        backend: VectorBackend,
        config: VectorStoreConfig | None = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.backend = backend
        self.config = config or VectorStoreConfig()
        self._sleep = sleep
        self._clock = clock
        self.retry_policy = store_policy(
            attempts=self.config.retry_attempts,
            base_delay=self.config.retry_delay,
            max_delay=self.config.max_retry_delay,
        )
        self.circuit_breaker = CircuitBreaker(
            threshold=self.config.circuit_breaker_threshold,
            timeout=self.config.circuit_breaker_timeout,
            clock=clock,
        )
        self.cache = QueryResultCache(
            ttl=self.config.cache_ttl,
            max_entries=self.config.cache_max_entries,
            clock=clock,
        )
        self._stats = ClientStats()
        self._stats_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Remote call plumbing
    # ------------------------------------------------------------------

    def _bump(self, **increments: float) -> None:
        with self._stats_lock:
            for name, amount in increments.items():
                setattr(self._stats, name, getattr(self._stats, name) + amount)

    def _guarded(self, operation: str, fn: Callable[[], T]) -> Callable[[], T]:
        def attempt() -> T:
            self.circuit_breaker.before_call(operation)
            try:
                result = fn()
            except Exception:
                self.circuit_breaker.record_failure()
                raise
            except BaseException:
                self.circuit_breaker.abandon_trial()
                raise
            self.circuit_breaker.record_success()
            return result

        return attempt

    def _call(self, operation: str, fn: Callable[[], T]) -> T:
        """Run ``fn`` under the breaker and the store retry policy."""
        try:
            return execute(self._guarded(operation, fn), self.retry_policy, operation=operation, sleep=self._sleep)
        except (CircuitOpenError, ValidationError):
            self._bump(errors=1)
            raise
        except Exception as e:
            self._bump(errors=1)
            retryable = is_retryable_error(e)
            logger.error(
                "Vector store %s failed: %s",
                operation,
                e,
                extra={"operation": operation, "error_type": type(e).__name__},
            )
            msg = f"{operation} failed: {e}"
            raise VectorOperationError(msg, operation=operation, original_error=e, retryable=retryable) from e

    def _validate_all(
        self,
        records: Sequence[ChunkRecord | dict[str, Any]],
        require_id: bool = False,
    ) -> list[ChunkRecord]:
        try:
            return [
                validate_for_write(coerce_record(r), i, self.config.dimensions, require_id=require_id)
                for i, r in enumerate(records)
            ]
        except ValidationError:
            self._bump(errors=1)
            raise

    def _validate_query(self, query_embedding: Sequence[float], operation: str) -> list[float]:
        try:
            return validate_embedding(query_embedding, self.config.dimensions)
        except ValidationError as e:
            self._bump(errors=1)
            msg = f"Invalid query embedding: {e.message}"
            raise ValidationError(msg, operation=operation) from e

    def _upsert_batches(self, operation: str, rows: list[dict[str, Any]], on_conflict: str) -> list[dict[str, Any]]:
        size = self.config.batch_size
        stored: list[dict[str, Any]] = []
        total_batches = (len(rows) + size - 1) // size
        for number, start in enumerate(range(0, len(rows), size), start=1):
            batch = rows[start : start + size]
            result = self._call(operation, lambda b=batch: self.backend.upsert(TABLE_NAME, b, on_conflict))
            stored.extend(result or [])
            logger.debug("%s batch %d/%d: %d rows", operation, number, total_batches, len(batch))
            if number < total_batches and self.config.batch_delay > 0:
                self._sleep(self.config.batch_delay)
        return stored

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def insert(self, records: Sequence[ChunkRecord | dict[str, Any]]) -> list[dict[str, Any]]:
        """Upsert records keyed on ``(document_id, chunk_index)``.

        Records repeating a key within the same call collapse to the last one.

        Returns:
            Rows returned by the database.

        Raises:
            ValidationError: If any record is invalid; nothing is sent.
            VectorOperationError: If a batch fails after retries.
            CircuitOpenError: If the breaker rejects a batch.
        """
        if not records:
            return []
        validated = self._validate_all(records)

        by_key: dict[tuple[str, int], dict[str, Any]] = {}
        for record in validated:
            by_key[(record.document_id, record.chunk_index)] = record.to_row()
        if len(by_key) < len(validated):
            logger.debug("Collapsed %d duplicate keys in insert", len(validated) - len(by_key))
        rows = list(by_key.values())

        started = self._clock()
        stored = self._upsert_batches("insert", rows, INSERT_CONFLICT_COLUMNS)
        latency_ms = (self._clock() - started) * 1000
        self._bump(inserts=len(rows))
        logger.info(
            "Inserted %d chunks in %.0fms",
            len(rows),
            latency_ms,
            extra={"operation": "insert", "latency_ms": round(latency_ms, 1)},
        )
        return stored

    def update(self, records: Sequence[ChunkRecord | dict[str, Any]]) -> list[dict[str, Any]]:
        """Upsert records keyed on their row ``id``.

        Raises:
            ValidationError: If any record is invalid or lacks an ``id``.
        """
        if not records:
            return []
        validated = self._validate_all(records, require_id=True)
        rows = [record.to_row() for record in validated]
        stored = self._upsert_batches("update", rows, UPDATE_CONFLICT_COLUMNS)
        self._bump(updates=len(rows))
        return stored

    def delete(self, ids: Sequence[int | str]) -> list[dict[str, Any]]:
        """Delete rows by row id and return the deleted rows."""
        if not ids:
            return []
        id_list = list(ids)
        deleted = self._call("delete", lambda: self.backend.delete(TABLE_NAME, "id", id_list))
        self._bump(deletes=len(deleted or []))
        self.cache.clear()
        return deleted or []

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def similarity_search(
        self,
        query_embedding: Sequence[float],
        threshold: float | None = None,
        count: int = 10,
        filter: dict[str, Any] | None = None,  # noqa: A002
    ) -> list[dict[str, Any]]:
        """Nearest-neighbour search through the ``match_documents`` RPC.

        Results are cached per query vector and parameters; a cache hit
        returns the same list object as the original call.

        Args:
            query_embedding: Query vector of the configured dimensionality.
            threshold: Minimum similarity; defaults to the configured threshold.
            count: Maximum number of rows requested.
            filter: Equality filters applied to the returned rows.
        """
        started = self._clock()
        embedding = self._validate_query(query_embedding, "similarity_search")
        match_threshold = self.config.similarity_threshold if threshold is None else threshold

        key = make_query_key(embedding, match_threshold, count, filter)
        if self.config.cache_enabled:
            cached = self.cache.get(key)
            if cached is not None:
                self._bump(cache_hits=1)
                return cached
            self._bump(cache_misses=1)

        params = {"query_embedding": embedding, "match_threshold": match_threshold, "match_count": count}
        rows = self._call("similarity_search", lambda: self.backend.rpc("match_documents", params)) or []
        if filter:
            rows = apply_filters(rows, filter)

        if self.config.cache_enabled:
            self.cache.set(key, rows)
        self._bump(queries=1, total_latency_ms=(self._clock() - started) * 1000)
        return rows

    def hybrid_search(
        self,
        text: str,
        query_embedding: Sequence[float],
        threshold: float = 0.7,
        count: int = 10,
        vector_weight: float = 0.7,
        text_weight: float = 0.3,
    ) -> list[dict[str, Any]]:
        """Combined vector and full-text search through the ``hybrid_search`` RPC."""
        if not text or not text.strip():
            self._bump(errors=1)
            msg = "Both query text and embedding are required"
            raise ValidationError(msg, operation="hybrid_search")
        started = self._clock()
        embedding = self._validate_query(query_embedding, "hybrid_search")
        params = {
            "query_text": text,
            "query_embedding": embedding,
            "match_threshold": threshold,
            "match_count": count,
            "vector_weight": vector_weight,
            "text_weight": text_weight,
        }
        rows = self._call("hybrid_search", lambda: self.backend.rpc("hybrid_search", params)) or []
        self._bump(queries=1, total_latency_ms=(self._clock() - started) * 1000)
        return rows

    def get_by_document_id(self, document_id: str) -> list[dict[str, Any]]:
        """All chunks of one document ordered by ``chunk_index``."""
        return self._call(
            "get_by_document_id",
            lambda: self.backend.select(TABLE_NAME, filters={"document_id": document_id}, order="chunk_index.asc"),
        )

    def count(self) -> int:
        """Exact number of stored chunks."""
        return self._call("count", lambda: self.backend.count(TABLE_NAME))

    def stats(self) -> dict[str, Any]:
        """Database statistics from ``get_database_stats`` plus client counters."""
        data = self._call("stats", lambda: self.backend.rpc("get_database_stats", {}))
        row = data[0] if isinstance(data, list) and data else (data if isinstance(data, dict) else {})
        return {**row, "client_stats": self.client_stats()}

    def health_check(self) -> dict[str, Any]:
        """Time one count query; never raises.

        The check bypasses retry and the breaker, so it reports the raw state
        of the database even while the circuit is open.
        """
        started = self._clock()
        timestamp = datetime.now(UTC).isoformat()
        try:
            count = self.backend.count(TABLE_NAME)
        except Exception as e:  # noqa: BLE001
            logger.warning("Health check failed: %s", e)
            return {
                "status": UNHEALTHY,
                "error": str(e),
                "circuit_breaker": self.circuit_breaker.state.state.value,
                "timestamp": timestamp,
            }
        latency_ms = (self._clock() - started) * 1000
        return {
            "status": HEALTHY if latency_ms < self.config.degraded_latency_ms else DEGRADED,
            "latency_ms": round(latency_ms, 1),
            "document_count": count,
            "circuit_breaker": self.circuit_breaker.state.state.value,
            "timestamp": timestamp,
        }

    # ------------------------------------------------------------------
    # Client bookkeeping
    # ------------------------------------------------------------------

    def client_stats(self) -> dict[str, Any]:
        with self._stats_lock:
            s = ClientStats(**vars(self._stats))
        lookups = s.cache_hits + s.cache_misses
        return {
            "total_queries": s.queries,
            "total_inserts": s.inserts,
            "total_updates": s.updates,
            "total_deletes": s.deletes,
            "total_errors": s.errors,
            "average_latency_ms": round(s.total_latency_ms / s.queries, 1) if s.queries else 0.0,
            "cache_hits": s.cache_hits,
            "cache_misses": s.cache_misses,
            "cache_hit_rate": round(s.cache_hits / lookups * 100, 1) if lookups else 0.0,
            "cache_size": len(self.cache),
            "circuit_breaker": self.circuit_breaker.to_dict(),
        }

    def clear_cache(self) -> None:
        self.cache.clear()
        logger.info("Query cache cleared")

    def reset_stats(self) -> None:
        with self._stats_lock:
            self._stats = ClientStats()

    def close(self) -> None:
        self.backend.close()

