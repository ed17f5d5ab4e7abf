"""Tests for the command-line interface."""

import json
from unittest.mock import MagicMock, patch

from click.testing import CliRunner
from conftest import make_embedding, make_raw_record, make_record
import pytest

from seshat.cli import cli
from seshat.config import Settings
from seshat.ingestion.embedder import EmbeddingGenerator
from seshat.shared.errors import RemoteServiceError

PAGES = [
    {
        "url": "https://docs.example.com/button",
        "title": "Button",
        "markdown": "# Button\n\nA clickable control.\n\n## Usage\n\nDrop it in a form.",
        "methods": [{"signature": "focus()", "description": "Moves focus to the button."}],
    }
]


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def generator():
    client = MagicMock()
    client.model = "models/gemini-embedding-001"
    client.embed_content.return_value = make_embedding(1)
    return EmbeddingGenerator(client, sleep=lambda _s: None)


@pytest.fixture
def wired(store, generator):
    """Patch settings and factories so commands use in-memory fakes."""
    with (
        patch("seshat.cli.load_settings", return_value=Settings()),
        patch("seshat.cli.build_store", return_value=store),
        patch("seshat.cli.build_generator", return_value=generator),
    ):
        yield


@pytest.fixture
def pages_file(tmp_path):
    path = tmp_path / "pages.json"
    path.write_text(json.dumps(PAGES), encoding="utf-8")
    return path


def test_help(runner):
    result = runner.invoke(cli, ["--help"])
    assert result.exit_code == 0
    assert "migrate" in result.output
    assert "search" in result.output


def test_chunk(runner, wired, pages_file, tmp_path):
    output = tmp_path / "out" / "chunks.json"
    result = runner.invoke(cli, ["chunk", str(pages_file), "-o", str(output)])

    assert result.exit_code == 0, result.output
    chunks = json.loads(output.read_text(encoding="utf-8"))
    assert [c["chunk_type"] for c in chunks] == ["method", "documentation", "documentation"]
    assert "Chunks written" in result.output


def test_chunk_invalid_overlap(runner, wired, pages_file):
    result = runner.invoke(cli, ["chunk", str(pages_file), "--chunk-size", "10", "--overlap", "10"])
    assert result.exit_code == 1
    assert "Error" in result.output


def test_embed(runner, wired, pages_file, tmp_path):
    chunks_file = tmp_path / "chunks.json"
    runner.invoke(cli, ["chunk", str(pages_file), "-o", str(chunks_file)])

    result = runner.invoke(cli, ["embed", str(chunks_file), "-o", str(tmp_path / "embeddings")])

    assert result.exit_code == 0, result.output
    files = list((tmp_path / "embeddings").glob("embeddings_*.json"))
    assert len(files) == 1
    assert len(json.loads(files[0].read_text(encoding="utf-8"))) == 3


def test_ingest(runner, wired, pages_file, backend):
    result = runner.invoke(cli, ["ingest", str(pages_file)])

    assert result.exit_code == 0, result.output
    assert "Ingestion Complete" in result.output
    assert len(backend.rows) == 3


def test_migrate(runner, wired, backend, tmp_path):
    source = tmp_path / "export.json"
    source.write_text(json.dumps([make_raw_record(i) for i in range(5)]), encoding="utf-8")
    checkpoint = tmp_path / "checkpoint.json"

    result = runner.invoke(cli, ["migrate", str(source), "--checkpoint", str(checkpoint), "--batch-size", "2"])

    assert result.exit_code == 0, result.output
    assert "COMPLETED" in result.output
    assert "Database contains 5 document chunks" in result.output
    assert len(backend.rows) == 5
    assert not checkpoint.exists()


def test_migrate_empty_source(runner, wired, tmp_path):
    source = tmp_path / "export.json"
    source.write_text("[]", encoding="utf-8")
    result = runner.invoke(cli, ["migrate", str(source), "--checkpoint", str(tmp_path / "cp.json")])
    assert result.exit_code == 1
    assert "No chunks found" in result.output


def test_search(runner, wired, store):
    store.insert([make_record(0)])
    result = runner.invoke(cli, ["search", "click handler", "-n", "3"])

    assert result.exit_code == 0, result.output
    assert "Found 1 results" in result.output
    assert "Test Document" in result.output


def test_search_no_results(runner, wired):
    result = runner.invoke(cli, ["search", "anything"])
    assert result.exit_code == 0
    assert "No results found" in result.output


def test_search_uses_semantic_cache(runner, wired, store, backend, tmp_path):
    store.insert([make_record(0)])
    cache_file = str(tmp_path / "cache.json")

    first = runner.invoke(cli, ["search", "click handler", "--cache-file", cache_file])
    second = runner.invoke(cli, ["search", "click handler", "--cache-file", cache_file])

    assert first.exit_code == 0, first.output
    assert "Served from cache" not in first.output
    assert "Served from cache" in second.output
    assert backend.calls["rpc:match_documents"] == 1


def test_search_consults_empty_cache(runner, wired, store, tmp_path):
    store.insert([make_record(0)])
    with patch("seshat.cli.SemanticCache") as cache_cls:
        cache = cache_cls.return_value
        cache.__len__.return_value = 0
        cache.get.return_value = None
        result = runner.invoke(cli, ["search", "click handler", "--cache-file", str(tmp_path / "cache.json")])

    assert result.exit_code == 0, result.output
    cache.get.assert_called_once()
    cache.set.assert_called_once()
    cache.close.assert_called_once()


def test_hybrid_search_keeps_zero_threshold(runner, wired, store):
    store.insert([make_record(0)])
    with patch.object(store, "hybrid_search", wraps=store.hybrid_search) as hybrid:
        result = runner.invoke(cli, ["search", "click handler", "--hybrid", "--threshold", "0"])

    assert result.exit_code == 0, result.output
    assert hybrid.call_args.kwargs["threshold"] == 0.0


def test_hybrid_search_default_threshold(runner, wired, store):
    with patch.object(store, "hybrid_search", wraps=store.hybrid_search) as hybrid:
        result = runner.invoke(cli, ["search", "click handler", "--hybrid"])

    assert result.exit_code == 0, result.output
    assert hybrid.call_args.kwargs["threshold"] == 0.7


def test_stats(runner, wired, store):
    store.insert([make_record(0), make_record(1)])
    result = runner.invoke(cli, ["stats"])

    assert result.exit_code == 0, result.output
    assert "Total Chunks" in result.output
    assert "Circuit Breaker" in result.output


def test_health(runner, wired):
    result = runner.invoke(cli, ["health"])
    assert result.exit_code == 0, result.output
    assert "HEALTHY" in result.output


def test_health_unhealthy(runner, wired, backend):
    backend.failures = [RemoteServiceError("service unavailable", status_code=503)]
    result = runner.invoke(cli, ["health"])
    assert result.exit_code == 1
    assert "UNHEALTHY" in result.output
    assert "service unavailable" in result.output


def test_missing_configuration(runner):
    with patch("seshat.cli.load_settings", return_value=Settings()):
        result = runner.invoke(cli, ["stats"])
    assert result.exit_code == 1
    assert "SUPABASE_URL" in result.output
