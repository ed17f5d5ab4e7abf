"""Tests for checkpoint stores and resumable jobs."""

import json
from unittest.mock import MagicMock

from google.api_core.exceptions import ServiceUnavailable
import pytest

from seshat.ingestion.checkpoint import (
    Checkpoint,
    FileCheckpointStore,
    GCSCheckpointStore,
    JobStats,
    MemoryCheckpointStore,
    ResumableJob,
)


def test_checkpoint_wire_format():
    checkpoint = Checkpoint(last_processed=150, stats=JobStats(total=400, successful=150), timestamp="t")
    assert checkpoint.to_dict() == {
        "lastProcessed": 150,
        "stats": {"total": 400, "successful": 150, "failed": 0, "skipped": 0},
        "timestamp": "t",
    }


def test_checkpoint_accepts_snake_case():
    checkpoint = Checkpoint.from_dict({"last_processed": 7, "stats": {"total": 10, "failed": 2}})
    assert checkpoint.last_processed == 7
    assert checkpoint.stats.failed == 2
    assert checkpoint.stats.successful == 0


def test_job_stats_complete():
    assert JobStats(total=3, successful=3).is_complete
    assert not JobStats(total=3, successful=2, skipped=1).is_complete
    assert not JobStats().is_complete


class TestFileCheckpointStore:
    """Tests for the JSON side file."""

    def test_save_load_delete(self, tmp_path):
        store = FileCheckpointStore(tmp_path / "nested" / "checkpoint.json")
        assert store.load() is None

        store.save({"lastProcessed": 50})
        assert store.load() == {"lastProcessed": 50}
        assert not (tmp_path / "nested" / "checkpoint.json.tmp").exists()

        store.delete()
        assert store.load() is None
        store.delete()

    def test_corrupt_file_starts_fresh(self, tmp_path):
        path = tmp_path / "checkpoint.json"
        path.write_text("{not json", encoding="utf-8")
        assert FileCheckpointStore(path).load() is None

    def test_non_object_ignored(self, tmp_path):
        path = tmp_path / "checkpoint.json"
        path.write_text(json.dumps([1, 2]), encoding="utf-8")
        assert FileCheckpointStore(path).load() is None


class TestGCSCheckpointStore:
    """Tests for the Cloud Storage store with a mocked client."""

    @pytest.fixture
    def blob(self):
        return MagicMock()

    @pytest.fixture
    def store(self, blob):
        client = MagicMock()
        client.bucket.return_value.blob.return_value = blob
        return GCSCheckpointStore("my-bucket", "checkpoints/migration.json", client=client)

    def test_describe(self, store):
        assert store.describe() == "gs://my-bucket/checkpoints/migration.json"

    def test_load_missing(self, store, blob):
        blob.exists.return_value = False
        assert store.load() is None

    def test_load(self, store, blob):
        blob.exists.return_value = True
        blob.download_as_text.return_value = json.dumps({"lastProcessed": 3})
        assert store.load() == {"lastProcessed": 3}

    def test_load_error(self, store, blob):
        blob.exists.side_effect = ServiceUnavailable("down")
        assert store.load() is None

    def test_save(self, store, blob):
        store.save({"lastProcessed": 3})
        payload, = blob.upload_from_string.call_args.args
        assert json.loads(payload) == {"lastProcessed": 3}
        assert blob.upload_from_string.call_args.kwargs["content_type"] == "application/json"

    def test_delete(self, store, blob):
        blob.exists.return_value = True
        store.delete()
        blob.delete.assert_called_once()


class TestResumableJob:
    """Tests for ResumableJob."""

    def test_fresh_start(self):
        assert ResumableJob(MemoryCheckpointStore()).resume() is None

    def test_record_and_resume(self):
        store = MemoryCheckpointStore()
        job = ResumableJob(store)
        stats = JobStats(total=100, successful=40, failed=10)
        job.record(50, stats)
        stats.successful = 99

        checkpoint = ResumableJob(store).resume()
        assert checkpoint.last_processed == 50
        assert checkpoint.stats == JobStats(total=100, successful=40, failed=10)
        assert store.saves == 1

    def test_complete_clears(self):
        store = MemoryCheckpointStore({"lastProcessed": 5})
        ResumableJob(store).complete()
        assert store.load() is None

    def test_save_failure_is_logged(self):
        store = MagicMock()
        store.save.side_effect = OSError("disk full")
        store.describe.return_value = "broken"
        log = MagicMock()
        checkpoint = ResumableJob(store, logger_instance=log).record(10, JobStats(total=20))
        assert checkpoint.last_processed == 10
        log.exception.assert_called_once()

    def test_gcs_failure_is_logged(self):
        store = MagicMock()
        store.delete.side_effect = ServiceUnavailable("down")
        log = MagicMock()
        ResumableJob(store, logger_instance=log).complete()
        log.exception.assert_called_once()
