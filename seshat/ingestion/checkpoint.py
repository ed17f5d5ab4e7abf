"""Checkpoints for resumable batch jobs.

A :class:`ResumableJob` persists a cursor (the number of input records
already attempted) and the cumulative counters after every unit of work.
At start it reloads them so an interrupted run continues where it stopped.
Checkpoints live in a pluggable :class:`CheckpointStore`: a local JSON side
file, process memory, or a Google Cloud Storage blob.

Wire format (shared with earlier tooling):

    {"lastProcessed": 150,
     "stats": {"total": 400, "successful": 150, "failed": 0, "skipped": 0},
     "timestamp": "2026-01-30T10:15:30.123456+00:00"}
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import UTC, datetime
import json
import logging
import os
from pathlib import Path
from typing import Any

from google.api_core.exceptions import GoogleAPIError
from google.cloud import storage

from seshat.shared.utils.logger import setup_logger

logger = setup_logger(__name__)


@dataclass
class JobStats:
    """Cumulative record counters of a job."""

    total: int = 0
    successful: int = 0
    failed: int = 0
    skipped: int = 0

    def to_dict(self) -> dict[str, int]:
        return {
            "total": self.total,
            "successful": self.successful,
            "failed": self.failed,
            "skipped": self.skipped,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "JobStats":
        return cls(
            total=int(data.get("total", 0)),
            successful=int(data.get("successful", 0)),
            failed=int(data.get("failed", 0)),
            skipped=int(data.get("skipped", 0)),
        )

    @property
    def is_complete(self) -> bool:
        return self.total > 0 and self.successful == self.total


@dataclass
class Checkpoint:
    last_processed: int = 0
    stats: JobStats = field(default_factory=JobStats)
    timestamp: str = field(default_factory=lambda: datetime.now(UTC).isoformat())

    def to_dict(self) -> dict[str, Any]:
        return {
            "lastProcessed": self.last_processed,
            "stats": self.stats.to_dict(),
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Checkpoint":
        last = data.get("lastProcessed", data.get("last_processed", 0))
        return cls(
            last_processed=int(last or 0),
            stats=JobStats.from_dict(data.get("stats") or {}),
            timestamp=data.get("timestamp") or datetime.now(UTC).isoformat(),
        )


class CheckpointStore(ABC):
    """Where checkpoint documents are kept."""

    @abstractmethod
    def load(self) -> dict[str, Any] | None:
        """Return the stored document, or None when there is none."""

    @abstractmethod
    def save(self, data: dict[str, Any]) -> None:
        """Replace the stored document."""

    @abstractmethod
    def delete(self) -> None:
        """Remove the stored document if present."""

    def describe(self) -> str:
        return type(self).__name__


class FileCheckpointStore(CheckpointStore):
    """JSON side file written atomically through a temporary file."""

    def __init__(self, path: str | Path):
        self.path = Path(path)

    def load(self) -> dict[str, Any] | None:
        if not self.path.exists():
            return None
        try:
            with self.path.open(encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.warning("Failed to read checkpoint %s: %s. Starting fresh.", self.path, e)
            return None
        return data if isinstance(data, dict) else None

    def save(self, data: dict[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_name(self.path.name + ".tmp")
        with tmp_path.open("w", encoding="utf-8") as f:
            json.dump(data, f, indent=2)
        os.replace(tmp_path, self.path)

    def delete(self) -> None:
        self.path.unlink(missing_ok=True)

    def describe(self) -> str:
        return str(self.path)


class MemoryCheckpointStore(CheckpointStore):
    def __init__(self, data: dict[str, Any] | None = None):
        self.data = dict(data) if data else None
        self.saves = 0

    def load(self) -> dict[str, Any] | None:
        return dict(self.data) if self.data is not None else None

    def save(self, data: dict[str, Any]) -> None:
        self.data = json.loads(json.dumps(data))
        self.saves += 1

    def delete(self) -> None:
        self.data = None

    def describe(self) -> str:
        return "memory"


class GCSCheckpointStore(CheckpointStore):
    """Checkpoint kept as a JSON blob in a Google Cloud Storage bucket.

    Args:
        bucket_name: Bucket holding the checkpoint.
        blob_name: Object name, e.g. ``checkpoints/migration.json``.
        project_id: Optional GCP project ID.
        client: Optional pre-built ``storage.Client``.
    """

    def __init__(
        self,
        bucket_name: str,
        blob_name: str,
        project_id: str | None = None,
        client: Any = None,
    ):
        self.bucket_name = bucket_name
        self.blob_name = blob_name
        self.client = client or storage.Client(project=project_id)
        self.bucket = self.client.bucket(bucket_name)

    def _blob(self) -> Any:
        return self.bucket.blob(self.blob_name)

    def load(self) -> dict[str, Any] | None:
        blob = self._blob()
        try:
            if not blob.exists():
                return None
            data = json.loads(blob.download_as_text())
        except (GoogleAPIError, json.JSONDecodeError) as e:
            logger.warning("Failed to read checkpoint gs://%s/%s: %s", self.bucket_name, self.blob_name, e)
            return None
        return data if isinstance(data, dict) else None

    def save(self, data: dict[str, Any]) -> None:
        self._blob().upload_from_string(json.dumps(data, indent=2), content_type="application/json")

    def delete(self) -> None:
        blob = self._blob()
        if blob.exists():
            blob.delete()

    def describe(self) -> str:
        return f"gs://{self.bucket_name}/{self.blob_name}"


class ResumableJob:
    """Cursor and counters of a batch job, persisted after each unit of work.

    Args:
        store: Checkpoint backend.
        logger_instance: Logger for checkpoint events.
    """

    def __init__(
        self,
        store: CheckpointStore,
        logger_instance: logging.Logger | logging.LoggerAdapter | None = None,
    ):
        self.store = store
        self.logger = logger_instance or logger

    def resume(self) -> Checkpoint | None:
        """Load the saved checkpoint, or None when starting fresh."""
        data = self.store.load()
        if data is None:
            self.logger.info("No checkpoint found at %s, starting fresh", self.store.describe())
            return None
        checkpoint = Checkpoint.from_dict(data)
        self.logger.info(
            "Resuming from checkpoint: %d records processed (%d successful, %d failed, %d skipped)",
            checkpoint.last_processed,
            checkpoint.stats.successful,
            checkpoint.stats.failed,
            checkpoint.stats.skipped,
        )
        return checkpoint

    def record(self, last_processed: int, stats: JobStats) -> Checkpoint:
        """Persist the cursor and counters.

        Storage failures are logged, not raised; the job then continues
        without a fresh checkpoint.
        """
        checkpoint = Checkpoint(last_processed=last_processed, stats=JobStats.from_dict(stats.to_dict()))
        try:
            self.store.save(checkpoint.to_dict())
        except (OSError, GoogleAPIError):
            self.logger.exception("Failed to save checkpoint to %s", self.store.describe())
        else:
            self.logger.debug("Checkpoint saved: %d records processed", last_processed)
        return checkpoint

    def complete(self) -> None:
        """Remove the checkpoint after a fully successful run."""
        try:
            self.store.delete()
        except (OSError, GoogleAPIError):
            self.logger.exception("Failed to delete checkpoint at %s", self.store.describe())
        else:
            self.logger.info("Checkpoint cleared")
