"""Pytest configuration and fixtures."""

from collections import Counter
from typing import Any

import numpy as np
import pytest

from seshat.shared.records import ChunkRecord
from seshat.shared.similarity import EMBEDDING_DIMENSIONS, cosine_similarity
from seshat.shared.transport import VectorBackend
from seshat.shared.vector_store import VectorStoreClient


def make_embedding(seed: int, dimensions: int = EMBEDDING_DIMENSIONS) -> list[float]:
    """Deterministic pseudo-random vector."""
    rng = np.random.default_rng(seed)
    return rng.normal(size=dimensions).tolist()


def make_record(index: int, document_id: str = "doc-1", dimensions: int = EMBEDDING_DIMENSIONS) -> ChunkRecord:
    return ChunkRecord(
        document_id=document_id,
        chunk_index=index,
        chunk_content=f"Chunk {index} of {document_id}",
        embedding=make_embedding(index + 1, dimensions),
        document_title="Test Document",
        document_url=f"https://docs.example.com/{document_id}",
    )


def make_raw_record(index: int, dimensions: int = EMBEDDING_DIMENSIONS) -> dict[str, Any]:
    """A record in the migration input format."""
    return {
        "id": f"chunk-{index}",
        "document_id": f"doc-{index // 10}",
        "title": f"Page {index // 10}",
        "url": f"https://docs.example.com/page-{index // 10}",
        "content": f"Content of chunk {index}",
        "chunk_index": index % 10,
        "embedding": make_embedding(index + 100, dimensions),
    }


class FakeClock:
    """Manually advanced clock."""

    def __init__(self, start: float = 1_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class SleepRecorder:
    """Records requested delays instead of sleeping; optionally advances a clock."""

    def __init__(self, clock: FakeClock | None = None):
        self.delays: list[float] = []
        self.clock = clock

    def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)
        if self.clock is not None:
            self.clock.advance(seconds)


class FakeVectorBackend(VectorBackend):
    """In-memory stand-in for the Supabase ``document_chunks`` table.

    Rows are unique on ``(document_id, chunk_index)``. Queue exceptions in
    ``failures`` to make the next calls fail, in order.
    """

    def __init__(self):
        self.rows: dict[tuple[str, int], dict[str, Any]] = {}
        self.calls: Counter[str] = Counter()
        self.failures: list[Exception] = []
        self.upsert_batches: list[int] = []
        self._next_id = 1

    def _maybe_fail(self, name: str) -> None:
        self.calls[name] += 1
        if self.failures:
            raise self.failures.pop(0)

    def _search(self, params: dict[str, Any]) -> list[dict[str, Any]]:
        scored = []
        for row in self.rows.values():
            similarity = cosine_similarity(params["query_embedding"], row["embedding"])
            if similarity >= params["match_threshold"]:
                scored.append({**row, "similarity": similarity})
        scored.sort(key=lambda r: r["similarity"], reverse=True)
        return scored[: params["match_count"]]

    def rpc(self, function: str, params: dict[str, Any]) -> Any:
        self._maybe_fail(f"rpc:{function}")
        if function == "match_documents":
            return self._search(params)
        if function == "hybrid_search":
            rows = self._search(params)
            text = params["query_text"].lower()
            for row in rows:
                text_score = 1.0 if text in row["chunk_content"].lower() else 0.0
                row["combined_score"] = params["vector_weight"] * row["similarity"] + params["text_weight"] * text_score
            return sorted(rows, key=lambda r: r["combined_score"], reverse=True)
        if function == "get_database_stats":
            return [
                {
                    "total_chunks": len(self.rows),
                    "total_documents": len({key[0] for key in self.rows}),
                }
            ]
        msg = f"Unknown function {function}"
        raise AssertionError(msg)

    def upsert(self, table: str, rows: list[dict[str, Any]], on_conflict: str) -> list[dict[str, Any]]:
        self._maybe_fail("upsert")
        self.upsert_batches.append(len(rows))
        stored = []
        for row in rows:
            if on_conflict == "id":
                key = next(k for k, v in self.rows.items() if v["id"] == row["id"])
                del self.rows[key]
                new_row = dict(row)
            else:
                key = (row["document_id"], row["chunk_index"])
                existing = self.rows.get(key)
                new_row = {**row, "id": existing["id"] if existing else self._next_id}
                if existing is None:
                    self._next_id += 1
            self.rows[(new_row["document_id"], new_row["chunk_index"])] = new_row
            stored.append(dict(new_row))
        return stored

    def delete(self, table: str, column: str, values: list[Any]) -> list[dict[str, Any]]:
        self._maybe_fail("delete")
        deleted = [row for row in self.rows.values() if row[column] in values]
        for row in deleted:
            del self.rows[(row["document_id"], row["chunk_index"])]
        return deleted

    def select(
        self,
        table: str,
        filters: dict[str, Any] | None = None,
        order: str | None = None,
        columns: str = "*",
    ) -> list[dict[str, Any]]:
        self._maybe_fail("select")
        rows = [r for r in self.rows.values() if all(r.get(k) == v for k, v in (filters or {}).items())]
        if order:
            column = order.split(".")[0]
            rows.sort(key=lambda r: r[column], reverse=order.endswith(".desc"))
        return [dict(r) for r in rows]

    def count(self, table: str) -> int:
        self._maybe_fail("count")
        return len(self.rows)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def sleeper(clock):
    return SleepRecorder(clock)


@pytest.fixture
def backend():
    return FakeVectorBackend()


@pytest.fixture
def store(backend, sleeper, clock):
    """Store client over the in-memory backend with a fake clock."""
    return VectorStoreClient(backend, sleep=sleeper, clock=clock)


@pytest.fixture(autouse=True)
def _no_project(monkeypatch):
    """Keep Secret Manager lookups on environment variables."""
    monkeypatch.delenv("GCP_PROJECT_ID", raising=False)
