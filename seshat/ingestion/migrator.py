"""Bulk migration of pre-embedded chunk records into the vector store.

The coordinator reads a JSON export, normalises every record to the store
schema, and upserts fixed-size batches strictly in order. After each batch a
checkpoint records how far the run got, so an interrupted or partially
failed migration resumes instead of starting over. Invalid records are
skipped and counted; a batch that still fails after its retries is recorded
with its error and the run moves on.
"""

from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
import json
import logging
from pathlib import Path
import threading
import time
from typing import Any

from seshat.ingestion.checkpoint import CheckpointStore, FileCheckpointStore, JobStats, ResumableJob
from seshat.shared.errors import ValidationError
from seshat.shared.records import ChunkRecord, normalize_record
from seshat.shared.retry import RetryPolicy, execute
from seshat.shared.similarity import EMBEDDING_DIMENSIONS
from seshat.shared.utils.logger import get_job_logger, setup_logger
from seshat.shared.vector_store import VectorStoreClient

logger = setup_logger(__name__)

DEFAULT_BATCH_SIZE = 50
DEFAULT_RETRY_ATTEMPTS = 3
DEFAULT_RETRY_DELAY = 2.0
DEFAULT_BATCH_DELAY = 0.1
DEFAULT_CHECKPOINT_FILE = ".migration_checkpoint.json"
REPORT_ERROR_LIMIT = 5
RECORD_CONTAINER_KEYS = ("chunks", "embeddings", "data")

MSG_LOAD_FAILED = "Failed to load JSON file: {error}"
MSG_NO_RECORDS = "No chunks found in source"


def batch_policy(attempts: int = DEFAULT_RETRY_ATTEMPTS, base_delay: float = DEFAULT_RETRY_DELAY) -> RetryPolicy:
    """Whole-batch retry: exponential from ``base_delay``; validation errors are final."""
    return RetryPolicy(
        max_attempts=attempts,
        base_delay=base_delay,
        max_delay=base_delay * 2 ** max(attempts - 1, 0),
        multiplier=2.0,
        jitter=0.0,
        retryable=lambda e: not isinstance(e, ValidationError),
    )


def extract_records(data: Any) -> list[Any]:
    """Find the record list in a decoded JSON document.

    Accepts a top-level array, an object holding the array under ``chunks``,
    ``embeddings`` or ``data``, or a single record object.
    """
    if isinstance(data, list):
        return data
    if isinstance(data, dict):
        for key in RECORD_CONTAINER_KEYS:
            if isinstance(data.get(key), list):
                return data[key]
        return [data]
    msg = f"Unsupported JSON document of type {type(data).__name__}"
    raise ValidationError(msg, operation="load")


def load_records(path: str | Path) -> list[Any]:
    """Read a JSON export and return its records."""
    try:
        with Path(path).open(encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        raise ValidationError(MSG_LOAD_FAILED.format(error=e), operation="load") from e
    return extract_records(data)


@dataclass
class BatchError:
    batch: int
    error: str
    record_ids: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {"batch": self.batch, "error": self.error, "record_ids": self.record_ids}


@dataclass
class MigrationReport:
    """Outcome of one :meth:`MigrationCoordinator.migrate` call.

    Counters are cumulative across resumed runs; ``processed`` counts only
    the records attempted by this run.
    """

    total: int
    successful: int
    failed: int
    skipped: int
    processed: int
    resumed_from: int
    duration_seconds: float
    stopped_early: bool = False
    errors: list[BatchError] = field(default_factory=list)
    error_count: int = 0

    @property
    def success_rate(self) -> float:
        return round(self.successful / self.total * 100, 1) if self.total else 0.0

    @property
    def status(self) -> str:
        if self.total and self.successful == self.total:
            return "completed"
        if self.successful > 0:
            return "partial"
        return "failed"

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "total": self.total,
            "successful": self.successful,
            "failed": self.failed,
            "skipped": self.skipped,
            "processed": self.processed,
            "resumed_from": self.resumed_from,
            "success_rate": self.success_rate,
            "duration_seconds": round(self.duration_seconds, 2),
            "stopped_early": self.stopped_early,
            "errors": [e.to_dict() for e in self.errors],
            "error_count": self.error_count,
        }


class MigrationCoordinator:
    """Resumable batch migration into a :class:`VectorStoreClient`.

    Args:
        store: Destination client.
        checkpoint_store: Checkpoint backend; defaults to
            ``.migration_checkpoint.json`` in the working directory.
        batch_size: Records per batch.
        retry_attempts: Attempts per batch.
        retry_delay: First retry delay in seconds, doubled each attempt.
        batch_delay: Pause between batches in seconds.
        dimensions: Required embedding length.
        sleep: Sleep function (injectable for tests).
    """

    def __init__(
        self,
        store: VectorStoreClient,
        checkpoint_store: CheckpointStore | None = None,
        batch_size: int = DEFAULT_BATCH_SIZE,
        retry_attempts: int = DEFAULT_RETRY_ATTEMPTS,
        retry_delay: float = DEFAULT_RETRY_DELAY,
        batch_delay: float = DEFAULT_BATCH_DELAY,
        dimensions: int = EMBEDDING_DIMENSIONS,
        sleep: Callable[[float], None] = time.sleep,
        logger_instance: logging.Logger | logging.LoggerAdapter | None = None,
    ):
        if batch_size < 1:
            msg = f"batch_size must be positive, got {batch_size}"
            raise ValueError(msg)
        self.store = store
        self.checkpoint_store = checkpoint_store or FileCheckpointStore(DEFAULT_CHECKPOINT_FILE)
        self.batch_size = batch_size
        self.retry_policy = batch_policy(retry_attempts, retry_delay)
        self.batch_delay = batch_delay
        self.dimensions = dimensions
        self._sleep = sleep
        self.logger = logger_instance or logger
        self.stats = JobStats()
        self.errors: list[BatchError] = []
        self._stop_requested = threading.Event()

    def request_stop(self) -> None:
        """Finish the current batch, save the checkpoint and stop."""
        self._stop_requested.set()

    def transform_batch(self, batch: Sequence[Any], start_index: int) -> tuple[list[ChunkRecord], int]:
        """Normalise a batch; returns the valid records and the number skipped."""
        records: list[ChunkRecord] = []
        skipped = 0
        for offset, raw in enumerate(batch):
            position = start_index + offset
            try:
                records.append(normalize_record(raw, position, default_chunk_index=offset, dimensions=self.dimensions))
            except ValidationError as e:
                skipped += 1
                record_id = raw.get("id", position) if isinstance(raw, dict) else position
                self.logger.warning("Skipping invalid record %s: %s", record_id, e.message)
        return records, skipped

    def _store_batch(self, records: list[ChunkRecord]) -> None:
        execute(
            lambda: self.store.insert(records),
            self.retry_policy,
            operation="migrate_batch",
            sleep=self._sleep,
            logger_instance=self.logger,
        )

    def migrate(self, source: str | Path | Sequence[Any]) -> MigrationReport:
        """Run or resume a migration.

        Args:
            source: Path to a JSON export, or already decoded records.

        Raises:
            ValidationError: If the source cannot be read or holds no records.
        """
        records = load_records(source) if isinstance(source, (str, Path)) else list(source)
        if not records:
            raise ValidationError(MSG_NO_RECORDS, operation="migrate")

        job_logger = get_job_logger(self.logger, job_id=f"migrate_{int(time.time())}", source=str(source)[:200])
        job = ResumableJob(self.checkpoint_store, logger_instance=job_logger)
        self._stop_requested.clear()
        self.errors = []

        total = len(records)
        start_index = 0
        self.stats = JobStats(total=total)
        checkpoint = job.resume()
        if checkpoint is not None and 0 < checkpoint.last_processed < total:
            start_index = checkpoint.last_processed
            self.stats = checkpoint.stats
            self.stats.total = total
            job_logger.info("Resuming from record %d/%d", start_index, total)
        elif checkpoint is not None:
            job_logger.info("Checkpoint covers the whole source, starting over")

        started = time.monotonic()
        processed = 0
        stopped_early = False
        remaining = total - start_index
        total_batches = (remaining + self.batch_size - 1) // self.batch_size
        job_logger.info("Migrating %d records in %d batches", remaining, total_batches)

        for number, index in enumerate(range(start_index, total, self.batch_size), start=1):
            batch = records[index : index + self.batch_size]
            transformed, skipped = self.transform_batch(batch, index)
            self.stats.skipped += skipped

            if transformed:
                try:
                    self._store_batch(transformed)
                except Exception as e:  # noqa: BLE001
                    self.stats.failed += len(transformed)
                    self.errors.append(
                        BatchError(batch=number, error=str(e), record_ids=[r.document_id for r in transformed])
                    )
                    job_logger.error(
                        "Batch %d/%d failed: %s",
                        number,
                        total_batches,
                        e,
                        extra={"batch_id": number, "records_failed": len(transformed)},
                    )
                else:
                    self.stats.successful += len(transformed)
                    job_logger.info(
                        "Batch %d/%d: %d records stored (%.1f%%)",
                        number,
                        total_batches,
                        len(transformed),
                        (index + len(batch) - start_index) / remaining * 100,
                        extra={"batch_id": number, "records_migrated": len(transformed), "records_skipped": skipped},
                    )

            processed += len(batch)
            job.record(index + len(batch), self.stats)

            if self._stop_requested.is_set():
                stopped_early = index + len(batch) < total
                if stopped_early:
                    job_logger.warning("Stop requested, halting after batch %d", number)
                break
            if index + self.batch_size < total and self.batch_delay > 0:
                self._sleep(self.batch_delay)

        if self.stats.successful == self.stats.total:
            job.complete()

        report = MigrationReport(
            total=self.stats.total,
            successful=self.stats.successful,
            failed=self.stats.failed,
            skipped=self.stats.skipped,
            processed=processed,
            resumed_from=start_index,
            duration_seconds=time.monotonic() - started,
            stopped_early=stopped_early,
            errors=self.errors[:REPORT_ERROR_LIMIT],
            error_count=len(self.errors),
        )
        job_logger.info(
            "Migration %s: %d/%d successful, %d failed, %d skipped",
            report.status,
            report.successful,
            report.total,
            report.failed,
            report.skipped,
            extra={"records_migrated": report.successful, "duration_ms": round(report.duration_seconds * 1000)},
        )
        return report

    def verify(self) -> dict[str, Any]:
        """Count stored chunks; never raises."""
        try:
            count = self.store.count()
        except Exception as e:  # noqa: BLE001
            self.logger.error("Verification failed: %s", e)
            return {"verified": False, "error": str(e)}
        self.logger.info("Database contains %d document chunks", count)
        return {"verified": True, "document_count": count}
