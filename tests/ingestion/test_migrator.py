"""Tests for the resumable migration coordinator."""

import json
from unittest.mock import MagicMock

from conftest import make_raw_record
import pytest

from seshat.ingestion.checkpoint import MemoryCheckpointStore
from seshat.ingestion.migrator import MigrationCoordinator, batch_policy, extract_records, load_records
from seshat.shared.errors import RemoteServiceError, ValidationError


@pytest.fixture
def checkpoints():
    return MemoryCheckpointStore()


@pytest.fixture
def delays():
    return []


@pytest.fixture
def coordinator(store, checkpoints, delays):
    return MigrationCoordinator(store, checkpoint_store=checkpoints, batch_size=10, sleep=delays.append)


def _records(count: int) -> list[dict]:
    return [make_raw_record(i) for i in range(count)]


class TestMigrate:
    """Tests for MigrationCoordinator.migrate."""

    def test_full_success_clears_checkpoint(self, coordinator, backend, checkpoints, delays):
        report = coordinator.migrate(_records(25))

        assert report.status == "completed"
        assert (report.total, report.successful, report.failed, report.skipped) == (25, 25, 0, 0)
        assert report.processed == 25
        assert report.resumed_from == 0
        assert len(backend.rows) == 25
        assert backend.upsert_batches == [10, 10, 5]
        assert delays == [0.1, 0.1]
        assert checkpoints.saves == 3
        assert checkpoints.load() is None

    def test_invalid_record_skipped(self, coordinator, backend, checkpoints):
        records = _records(24) + [make_raw_record(24, dimensions=5)]
        report = coordinator.migrate(records)

        assert report.skipped == 1
        assert report.successful == 24
        assert report.failed == 0
        assert report.status == "partial"
        assert report.success_rate == 96.0
        assert len(backend.rows) == 24
        assert checkpoints.load()["lastProcessed"] == 25

    @pytest.mark.parametrize("bad_index", [-1, "x", 2.5])
    def test_invalid_chunk_index_skips_only_that_record(self, coordinator, backend, bad_index):
        records = _records(10)
        records[3]["chunk_index"] = bad_index
        report = coordinator.migrate(records)

        assert report.skipped == 1
        assert report.successful == 9
        assert report.failed == 0
        assert len(backend.rows) == 9

    def test_string_chunk_index_is_coerced(self, coordinator, backend):
        records = _records(10)
        records[3]["chunk_index"] = "3"
        report = coordinator.migrate(records)

        assert (report.successful, report.skipped, report.failed) == (10, 0, 0)
        assert len(backend.rows) == 10

    def test_stop_then_resume(self, store, backend, checkpoints):
        first = MigrationCoordinator(store, checkpoint_store=checkpoints, batch_size=10)
        first._sleep = lambda _s: first.request_stop()

        report = first.migrate(_records(25))
        assert report.stopped_early
        assert report.processed == 20
        assert checkpoints.load()["lastProcessed"] == 20
        assert checkpoints.load()["stats"]["successful"] == 20

        second = MigrationCoordinator(store, checkpoint_store=checkpoints, batch_size=10, sleep=lambda _s: None)
        resumed = second.migrate(_records(25))
        assert resumed.resumed_from == 20
        assert resumed.processed == 5
        assert resumed.successful == 25
        assert resumed.status == "completed"
        assert backend.upsert_batches == [10, 10, 5]
        assert checkpoints.load() is None

    def test_failed_batch_recorded_and_retried_later(self, coordinator, backend, checkpoints, delays):
        backend.failures = [RemoteServiceError("bad request", status_code=400) for _ in range(3)]

        report = coordinator.migrate(_records(25))
        assert report.failed == 10
        assert report.successful == 15
        assert report.status == "partial"
        assert report.error_count == 1
        assert report.errors[0].batch == 1
        assert "bad request" in report.errors[0].error
        assert len(report.errors[0].record_ids) == 10
        assert delays == [2.0, 4.0, 0.1, 0.1]
        assert checkpoints.load()["lastProcessed"] == 25

        rerun = coordinator.migrate(_records(25))
        assert rerun.resumed_from == 0
        assert rerun.successful == 25
        assert rerun.failed == 0
        assert len(backend.rows) == 25
        assert checkpoints.load() is None

    def test_error_list_is_capped(self, checkpoints):
        store = MagicMock()
        store.insert.side_effect = RuntimeError("boom")
        coordinator = MigrationCoordinator(
            store, checkpoint_store=checkpoints, batch_size=1, retry_attempts=1, batch_delay=0, sleep=lambda _s: None
        )
        report = coordinator.migrate(_records(7))
        assert report.status == "failed"
        assert report.error_count == 7
        assert [e.batch for e in report.errors] == [1, 2, 3, 4, 5]
        assert report.to_dict()["errors"][0]["error"] == "boom"

    def test_empty_source(self, coordinator):
        with pytest.raises(ValidationError, match="No chunks found"):
            coordinator.migrate([])

    def test_reads_file(self, coordinator, backend, tmp_path):
        path = tmp_path / "embeddings.json"
        path.write_text(json.dumps({"chunks": _records(3)}), encoding="utf-8")
        report = coordinator.migrate(path)
        assert report.successful == 3
        assert len(backend.rows) == 3


class TestTransform:
    """Tests for record normalisation within a batch."""

    def test_default_chunk_index_is_batch_offset(self, coordinator):
        raw = [{k: v for k, v in make_raw_record(i).items() if k != "chunk_index"} for i in range(10, 12)]
        records, skipped = coordinator.transform_batch(raw, 10)
        assert skipped == 0
        assert [r.chunk_index for r in records] == [0, 1]
        assert records[0].document_id == "doc-1"

    def test_non_object_skipped(self, coordinator):
        records, skipped = coordinator.transform_batch(["oops", make_raw_record(0)], 0)
        assert skipped == 1
        assert len(records) == 1


class TestLoading:
    """Tests for reading migration input."""

    def test_extract_variants(self):
        assert extract_records([1, 2]) == [1, 2]
        assert extract_records({"embeddings": [1]}) == [1]
        assert extract_records({"data": [2]}) == [2]
        assert extract_records({"content": "x"}) == [{"content": "x"}]
        with pytest.raises(ValidationError):
            extract_records("text")

    def test_load_failure(self, tmp_path):
        path = tmp_path / "broken.json"
        path.write_text("[", encoding="utf-8")
        with pytest.raises(ValidationError, match="Failed to load JSON file"):
            load_records(path)
        with pytest.raises(ValidationError, match="Failed to load JSON file"):
            load_records(tmp_path / "missing.json")


class TestVerify:
    """Tests for post-migration verification."""

    def test_counts_rows(self, coordinator):
        coordinator.migrate(_records(5))
        assert coordinator.verify() == {"verified": True, "document_count": 5}

    def test_failure_reported(self, checkpoints):
        store = MagicMock()
        store.count.side_effect = RuntimeError("offline")
        result = MigrationCoordinator(store, checkpoint_store=checkpoints).verify()
        assert result == {"verified": False, "error": "offline"}


def test_batch_policy():
    policy = batch_policy(3, 2.0)
    assert [policy.delay_for(n, RuntimeError()) for n in (1, 2)] == [2.0, 4.0]
    assert not policy.retryable(ValidationError("bad"))
    assert policy.retryable(RuntimeError("boom"))


def test_invalid_batch_size(store):
    with pytest.raises(ValueError, match="batch_size"):
        MigrationCoordinator(store, checkpoint_store=MemoryCheckpointStore(), batch_size=0)
