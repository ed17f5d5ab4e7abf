"""End-to-end ingestion: crawled pages to stored, searchable chunks.

Wires the :class:`DocumentChunker`, the :class:`EmbeddingGenerator` and a
:class:`VectorStoreClient` together. Chunks that fail to embed are reported
and left out; the remaining chunks are upserted in one store call so that a
rerun over the same pages replaces rather than duplicates rows.
"""

from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
import json
import logging
from pathlib import Path
import time
from typing import Any

from seshat.ingestion.chunker import DocumentChunker, Page
from seshat.ingestion.embedder import EmbeddingGenerator, save_embeddings
from seshat.shared.errors import ValidationError
from seshat.shared.records import record_from_embedded
from seshat.shared.utils.logger import get_job_logger, setup_logger
from seshat.shared.vector_store import VectorStoreClient

logger = setup_logger(__name__)

PAGE_CONTAINER_KEYS = ("pages", "data", "results")


def load_pages(path: str | Path) -> list[dict[str, Any]]:
    """Read crawler output: a JSON array of pages or an object wrapping one.

    Raises:
        ValidationError: If the file cannot be read or holds no page list.
    """
    try:
        with Path(path).open(encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        msg = f"Failed to load pages from {path}: {e}"
        raise ValidationError(msg, operation="load") from e

    if isinstance(data, dict):
        for key in PAGE_CONTAINER_KEYS:
            if isinstance(data.get(key), list):
                return data[key]
    if isinstance(data, list):
        return data
    msg = f"No page list found in {path}"
    raise ValidationError(msg, operation="load")


@dataclass
class PipelineStats:
    """Counters of one :meth:`IngestionPipeline.run`.

    Attributes:
        total_pages: Pages given to the chunker.
        skipped_pages: Pages the chunker could not parse.
        total_chunks: Chunks produced.
        embedded_chunks: Chunks that received an embedding.
        embedding_failures: Chunks dropped after exhausting retries.
        stored_chunks: Rows returned by the store upsert.
        duration_seconds: Wall time of the run.
        output_file: Where embedded chunks were written, if anywhere.
        failures: Per-chunk embedding errors.
    """

    total_pages: int = 0
    skipped_pages: int = 0
    total_chunks: int = 0
    embedded_chunks: int = 0
    embedding_failures: int = 0
    stored_chunks: int = 0
    duration_seconds: float = 0.0
    output_file: str | None = None
    failures: list[dict[str, Any]] = field(default_factory=list)

    @property
    def chunks_per_second(self) -> float:
        return self.stored_chunks / self.duration_seconds if self.duration_seconds > 0 else 0.0

    @property
    def pages_per_second(self) -> float:
        return self.total_pages / self.duration_seconds if self.duration_seconds > 0 else 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_pages": self.total_pages,
            "skipped_pages": self.skipped_pages,
            "total_chunks": self.total_chunks,
            "embedded_chunks": self.embedded_chunks,
            "embedding_failures": self.embedding_failures,
            "stored_chunks": self.stored_chunks,
            "duration_seconds": round(self.duration_seconds, 2),
            "chunks_per_second": round(self.chunks_per_second, 2),
            "pages_per_second": round(self.pages_per_second, 2),
            "output_file": self.output_file,
        }


class IngestionPipeline:
    """Chunk, embed and store a batch of pages.

    Args:
        chunker: Page chunker.
        generator: Embedding generator.
        store: Destination store client.
        output_dir: When set, embedded chunks are also written there as JSON
            before they are stored.
        logger_instance: Logger instance.
    """

    def __init__(
        self,
        chunker: DocumentChunker,
        generator: EmbeddingGenerator,
        store: VectorStoreClient,
        output_dir: str | Path | None = None,
        logger_instance: logging.Logger | logging.LoggerAdapter | None = None,
    ):
        self.chunker = chunker
        self.generator = generator
        self.store = store
        self.output_dir = Path(output_dir) if output_dir else None
        self.logger = logger_instance or logger

    def run(
        self,
        source: str | Path | Sequence[Page | dict[str, Any]],
        progress_callback: Callable[[int, int, str], None] | None = None,
    ) -> PipelineStats:
        """Run the pipeline over a pages file or in-memory pages.

        Args:
            source: Path to crawler JSON output, or pages.
            progress_callback: Called as ``(current, total, message)``.

        Raises:
            ValidationError: If the source cannot be read.
            VectorOperationError: If the store write fails.
        """
        pages = load_pages(source) if isinstance(source, (str, Path)) else list(source)
        job_logger = get_job_logger(self.logger, job_id=f"ingest_{int(time.time())}", source=str(source)[:200])
        started = time.monotonic()
        stats = PipelineStats(total_pages=len(pages))

        chunking = self.chunker.process_pages(pages)
        stats.skipped_pages = chunking.stats["skipped_pages"]
        stats.total_chunks = len(chunking.chunks)
        if progress_callback:
            progress_callback(0, stats.total_chunks, "Embedding chunks")
        if not chunking.chunks:
            job_logger.warning("No chunks produced from %d pages", stats.total_pages)
            stats.duration_seconds = time.monotonic() - started
            return stats

        def on_embedded(processed: int, total: int) -> None:
            if progress_callback:
                progress_callback(processed, total, f"Embedded {processed}/{total} chunks")

        result = self.generator.process_chunks(chunking.chunks, progress_callback=on_embedded)
        stats.embedded_chunks = len(result.embedded)
        stats.embedding_failures = len(result.failures)
        stats.failures = result.failures

        if self.output_dir is not None and result.embedded:
            stats.output_file = str(save_embeddings(result.embedded, self.output_dir))

        if result.embedded:
            if progress_callback:
                progress_callback(stats.total_chunks, stats.total_chunks, "Storing chunks")
            records = [record_from_embedded(chunk) for chunk in result.embedded]
            stored = self.store.insert(records)
            stats.stored_chunks = len(stored)

        stats.duration_seconds = time.monotonic() - started
        job_logger.info(
            "Ingested %d pages: %d chunks, %d embedded, %d stored in %.1fs",
            stats.total_pages,
            stats.total_chunks,
            stats.embedded_chunks,
            stats.stored_chunks,
            stats.duration_seconds,
            extra={"chunks_embedded": stats.embedded_chunks, "duration_ms": round(stats.duration_seconds * 1000)},
        )
        return stats
