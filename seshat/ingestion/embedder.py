"""Embedding generation through the Gemini ``embedContent`` REST API.

:class:`GeminiEmbeddingClient` makes one HTTP call per text and maps
failures to typed errors. :class:`EmbeddingGenerator` adds truncation, the
per-item retry policy, output validation and batch pacing under a
requests-per-minute budget. A failing item is dropped and reported without
affecting its neighbours.
"""

from collections.abc import Callable, Sequence
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from enum import Enum
import json
import logging
from pathlib import Path
import time
from typing import Any

import requests

from seshat.ingestion.chunker import Chunk
from seshat.shared.errors import EmbeddingFailure, RateLimitError, RemoteServiceError, RemoteTimeoutError
from seshat.shared.records import estimate_tokens
from seshat.shared.retry import RetryPolicy, embedding_policy, execute
from seshat.shared.similarity import EMBEDDING_DIMENSIONS, l2_norm, validate_embedding
from seshat.shared.utils.logger import setup_logger

DEFAULT_BASE_URL = "https://generativelanguage.googleapis.com/v1beta"
DEFAULT_MODEL = "gemini-embedding-001"
DEFAULT_TIMEOUT = 30
DEFAULT_BATCH_SIZE = 10
DEFAULT_REQUESTS_PER_MINUTE = 100
DEFAULT_MAX_CHARS = 8000
TRUNCATION_SUFFIX = "..."

MSG_EMBED_FAILED = "Failed to generate embedding after {attempts} attempts: {error}"
MSG_BAD_RESPONSE = "Embedding response has no values"


class TaskType(str, Enum):
    DOCUMENT = "RETRIEVAL_DOCUMENT"
    QUERY = "RETRIEVAL_QUERY"


class GeminiEmbeddingClient:
    """Thin client for ``POST /models/{model}:embedContent``.

    Args:
        api_key: Gemini API key.
        model: Model name, with or without the ``models/`` prefix.
        dimensions: Requested output dimensionality.
        base_url: API root.
        timeout: Request timeout in seconds.
        session: Optional pre-built session.
    """

    def __init__(
        self,
        api_key: str,
        model: str = DEFAULT_MODEL,
        dimensions: int = EMBEDDING_DIMENSIONS,
        base_url: str = DEFAULT_BASE_URL,
        timeout: float = DEFAULT_TIMEOUT,
        session: requests.Session | None = None,
    ):
        self.api_key = api_key
        self.model = model if model.startswith("models/") else f"models/{model}"
        self.dimensions = dimensions
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()

    def embed_content(self, text: str, task_type: TaskType = TaskType.DOCUMENT) -> list[float]:
        """Embed one text.

        Raises:
            RateLimitError: On HTTP 429 or ``RESOURCE_EXHAUSTED``.
            RemoteTimeoutError: When the request times out.
            RemoteServiceError: On any other failure.
        """
        url = f"{self.base_url}/{self.model}:embedContent"
        body = {
            "model": self.model,
            "content": {"parts": [{"text": text}]},
            "taskType": TaskType(task_type).value,
            "outputDimensionality": self.dimensions,
        }
        try:
            response = self.session.post(url, params={"key": self.api_key}, json=body, timeout=self.timeout)
        except requests.Timeout as e:
            msg = f"Embedding request timed out after {self.timeout}s"
            raise RemoteTimeoutError(msg, operation="embed") from e
        except requests.ConnectionError as e:
            msg = f"Embedding service connection failed: {e}"
            raise RemoteServiceError(msg, code="network", operation="embed") from e

        try:
            payload = response.json()
        except ValueError:
            payload = {}

        if response.status_code >= 400:
            error = payload.get("error", {}) if isinstance(payload, dict) else {}
            status = error.get("status")
            message = error.get("message") or response.reason or "error"
            if response.status_code == 429 or status == "RESOURCE_EXHAUSTED":
                msg = f"RATE_LIMIT ({response.status_code}): {message}"
                raise RateLimitError(msg, status_code=response.status_code, code=status, operation="embed")
            msg = f"Embedding request failed ({response.status_code}): {message}"
            raise RemoteServiceError(msg, status_code=response.status_code, code=status, operation="embed")

        values = (payload.get("embedding") or {}).get("values") if isinstance(payload, dict) else None
        if values is None:
            raise RemoteServiceError(MSG_BAD_RESPONSE, status_code=response.status_code, operation="embed")
        return values


@dataclass
class EmbeddedChunk(Chunk):
    """A chunk with its vector and precomputed L2 norm."""

    embedding: list[float] = field(default_factory=list)
    embedding_model: str = ""
    vector_norm: float = 0.0

    @classmethod
    def from_chunk(cls, chunk: Chunk, embedding: list[float], model: str) -> "EmbeddedChunk":
        return cls(
            **asdict(chunk),
            embedding=embedding,
            embedding_model=model,
            vector_norm=l2_norm(embedding),
        )


@dataclass
class EmbeddingUsage:
    requests: int = 0
    tokens: int = 0
    errors: int = 0
    retries: int = 0
    retry_delays: list[float] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class EmbeddingResult:
    embedded: list[EmbeddedChunk]
    failures: list[dict[str, Any]]
    usage: EmbeddingUsage
    duration_seconds: float = 0.0

    @property
    def success_count(self) -> int:
        return len(self.embedded)


class EmbeddingGenerator:
    """Rate-limited embedding of chunks and queries.

    Args:
        client: Embedding transport.
        dimensions: Required vector length.
        batch_size: Chunks per batch.
        requests_per_minute: Budget that sets the pause between batches
            (``60 / requests_per_minute`` seconds).
        max_chars: Input character budget before truncation.
        retry_policy: Per-item policy; defaults to 3 attempts with rate-limit
            aware backoff.
        sleep: Sleep function (injectable for tests).
        logger: Logger instance.
    """

    def __init__(
        self,
        client: GeminiEmbeddingClient,
        dimensions: int = EMBEDDING_DIMENSIONS,
        batch_size: int = DEFAULT_BATCH_SIZE,
        requests_per_minute: int = DEFAULT_REQUESTS_PER_MINUTE,
        max_chars: int = DEFAULT_MAX_CHARS,
        retry_policy: RetryPolicy | None = None,
        sleep: Callable[[float], None] = time.sleep,
        logger: logging.Logger | logging.LoggerAdapter | None = None,
    ):
        if batch_size < 1 or requests_per_minute < 1:
            msg = "batch_size and requests_per_minute must be positive"
            raise ValueError(msg)
        self.client = client
        self.dimensions = dimensions
        self.batch_size = batch_size
        self.requests_per_minute = requests_per_minute
        self.max_chars = max_chars
        self.retry_policy = retry_policy or embedding_policy()
        self.usage = EmbeddingUsage()
        self._sleep = sleep
        self.logger = logger or setup_logger(__name__)

    @property
    def model(self) -> str:
        return getattr(self.client, "model", DEFAULT_MODEL)

    @property
    def batch_delay(self) -> float:
        return 60.0 / self.requests_per_minute

    def truncate(self, text: str) -> str:
        if len(text) <= self.max_chars:
            return text
        return text[: self.max_chars] + TRUNCATION_SUFFIX

    def embed_text(self, text: str, task_type: TaskType = TaskType.DOCUMENT, chunk_id: str | None = None) -> list[float]:
        """Embed one text with retries.

        Raises:
            EmbeddingFailure: When every attempt failed.
        """
        truncated = self.truncate(text)

        def attempt() -> list[float]:
            values = self.client.embed_content(truncated, task_type)
            return validate_embedding(values, self.dimensions)

        def record_retry(_attempt: int, _error: BaseException, delay: float) -> None:
            self.usage.retries += 1
            self.usage.retry_delays.append(delay)

        try:
            embedding = execute(
                attempt,
                self.retry_policy,
                operation="embed",
                sleep=self._sleep,
                on_retry=record_retry,
                logger_instance=self.logger,
            )
        except Exception as e:
            self.usage.errors += 1
            attempts = self.retry_policy.max_attempts
            raise EmbeddingFailure(
                MSG_EMBED_FAILED.format(attempts=attempts, error=e),
                chunk_id=chunk_id,
                attempts=attempts,
                last_error=e,
            ) from e

        self.usage.requests += 1
        self.usage.tokens += estimate_tokens(truncated)
        return embedding

    def embed_query(self, text: str) -> list[float]:
        return self.embed_text(text, TaskType.QUERY)

    def embed_chunk(self, chunk: Chunk) -> EmbeddedChunk:
        embedding = self.embed_text(chunk.content, TaskType.DOCUMENT, chunk_id=chunk.id)
        return EmbeddedChunk.from_chunk(chunk, embedding, self.model)

    def process_batch(self, batch: Sequence[Chunk]) -> tuple[list[EmbeddedChunk], list[dict[str, Any]]]:
        """Embed a batch sequentially; failed items are reported, not retried again."""
        embedded: list[EmbeddedChunk] = []
        failures: list[dict[str, Any]] = []
        for chunk in batch:
            try:
                embedded.append(self.embed_chunk(chunk))
            except EmbeddingFailure as e:
                self.logger.warning("Failed to embed chunk %s: %s", chunk.id, e, extra={"chunk_id": chunk.id})
                failures.append({"chunk_id": chunk.id, "error": str(e)})
        return embedded, failures

    def process_chunks(
        self,
        chunks: Sequence[Chunk],
        progress_callback: Callable[[int, int], None] | None = None,
    ) -> EmbeddingResult:
        """Embed all chunks batch by batch, pausing between batches.

        Args:
            chunks: Chunks to embed.
            progress_callback: Called as ``(processed, total)`` after each batch.
        """
        total = len(chunks)
        total_batches = (total + self.batch_size - 1) // self.batch_size
        self.logger.info(
            "Generating embeddings for %d chunks with %s (%d dims, batch size %d)",
            total,
            self.model,
            self.dimensions,
            self.batch_size,
        )
        started = time.monotonic()
        embedded: list[EmbeddedChunk] = []
        failures: list[dict[str, Any]] = []

        for number, start in enumerate(range(0, total, self.batch_size), start=1):
            batch = chunks[start : start + self.batch_size]
            batch_embedded, batch_failures = self.process_batch(batch)
            embedded.extend(batch_embedded)
            failures.extend(batch_failures)

            processed = min(start + self.batch_size, total)
            self.logger.info(
                "Batch %d/%d: %d/%d chunks (%.1f%%)",
                number,
                total_batches,
                processed,
                total,
                processed / total * 100,
                extra={"batch_id": number, "chunks_embedded": len(embedded)},
            )
            if progress_callback:
                progress_callback(processed, total)
            if number < total_batches:
                self._sleep(self.batch_delay)

        duration = time.monotonic() - started
        self.logger.info(
            "Embedded %d/%d chunks in %.1fs (%d requests, ~%d tokens, %d errors)",
            len(embedded),
            total,
            duration,
            self.usage.requests,
            self.usage.tokens,
            self.usage.errors,
            extra={"chunks_embedded": len(embedded), "duration_ms": round(duration * 1000)},
        )
        return EmbeddingResult(embedded=embedded, failures=failures, usage=self.usage, duration_seconds=duration)


def embedded_to_record(chunk: EmbeddedChunk) -> dict[str, Any]:
    """Serialise an embedded chunk in the migration input format."""
    return {
        "id": chunk.id,
        "document_id": chunk.document_id,
        "title": chunk.metadata.get("title") or "",
        "url": chunk.source_url,
        "content": chunk.content,
        "chunk_index": chunk.chunk_index,
        "tokens": chunk.token_estimate,
        "chunk_type": chunk.chunk_type,
        "component_type": chunk.component_type,
        "method_signature": chunk.method_signature,
        "has_code": chunk.has_code,
        "has_example": chunk.has_example,
        "embedding": chunk.embedding,
        "embedding_model": chunk.embedding_model,
        "embedding_dimensions": len(chunk.embedding),
        "vector_norm": chunk.vector_norm,
        "metadata": chunk.metadata,
    }


def save_embeddings(embedded: Sequence[EmbeddedChunk], output_dir: str | Path) -> Path:
    """Write ``embeddings_<epoch ms>.json`` into ``output_dir`` and return its path."""
    directory = Path(output_dir)
    directory.mkdir(parents=True, exist_ok=True)
    timestamp = int(datetime.now(UTC).timestamp() * 1000)
    path = directory / f"embeddings_{timestamp}.json"
    with path.open("w", encoding="utf-8") as f:
        json.dump([embedded_to_record(chunk) for chunk in embedded], f, indent=2)
    setup_logger(__name__).info("Embeddings saved to %s", path)
    return path
