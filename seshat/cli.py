"""Command-line interface for Seshat.

This module provides a Click-based CLI for chunking crawled pages, generating
embeddings, loading them into the vector store, migrating pre-embedded
exports, and inspecting the store.
"""

import json
import logging
from pathlib import Path
import signal
import sys
from typing import Any

import click
from rich.console import Console
from rich.panel import Panel
from rich.progress import (
    BarColumn,
    Progress,
    SpinnerColumn,
    TaskProgressColumn,
    TextColumn,
    TimeRemainingColumn,
)
from rich.table import Table

from seshat.config import Settings
from seshat.ingestion.checkpoint import CheckpointStore, FileCheckpointStore, GCSCheckpointStore
from seshat.ingestion.chunker import Chunk, DocumentChunker
from seshat.ingestion.embedder import EmbeddingGenerator, GeminiEmbeddingClient, save_embeddings
from seshat.ingestion.migrator import MigrationCoordinator
from seshat.ingestion.pipeline import IngestionPipeline, load_pages
from seshat.shared.errors import SeshatError
from seshat.shared.semantic_cache import SemanticCache, SemanticCacheConfig
from seshat.shared.transport import SupabaseTransport
from seshat.shared.utils.logger import setup_logger
from seshat.shared.vector_store import VectorStoreClient, VectorStoreConfig

console = Console()

STATUS_COLORS = {"healthy": "green", "degraded": "yellow", "unhealthy": "red"}
STATUS_SYMBOLS = {"healthy": "✓", "degraded": "⚠", "unhealthy": "✗"}
PREVIEW_CHARS = 500


def load_settings() -> Settings:
    setup_logger("seshat", level=logging.INFO)
    return Settings.from_env()


def build_store(settings: Settings) -> VectorStoreClient:
    """Create a store client from settings.

    Raises:
        ConfigurationError: If Supabase credentials are missing.
    """
    url, key = settings.require_supabase()
    transport = SupabaseTransport(url, key, timeout=settings.request_timeout)
    config = VectorStoreConfig(batch_size=settings.store_batch_size, dimensions=settings.embedding_dimensions)
    return VectorStoreClient(transport, config)


def build_generator(settings: Settings) -> EmbeddingGenerator:
    """Create an embedding generator from settings.

    Raises:
        ConfigurationError: If the embedding API key is missing.
    """
    client = GeminiEmbeddingClient(
        api_key=settings.require_google_ai_key(),
        model=settings.embedding_model,
        dimensions=settings.embedding_dimensions,
        timeout=settings.request_timeout,
    )
    return EmbeddingGenerator(
        client,
        dimensions=settings.embedding_dimensions,
        batch_size=settings.embedding_batch_size,
        requests_per_minute=settings.embedding_rpm,
    )


def _progress() -> Progress:
    return Progress(
        SpinnerColumn(),
        TextColumn("[bold blue]{task.description}"),
        BarColumn(),
        TaskProgressColumn(),
        TimeRemainingColumn(),
        console=console,
    )


def _key_value_table(rows: list[tuple[str, str]]) -> Table:
    table = Table(show_header=False, box=None, padding=(0, 2))
    table.add_column("Key", style="dim")
    table.add_column("Value")
    for key, value in rows:
        table.add_row(key, value)
    return table


def _fail(error: Exception) -> None:
    console.print(f"\n[bold red]✗ Error:[/bold red] {error}")
    raise click.Abort from error


@click.group()
@click.version_option(package_name="seshat")
def cli() -> None:
    """Seshat - documentation ingestion and vector retrieval.

    Chunk crawled pages, embed them, and keep them searchable in Supabase.
    """


@cli.command()
@click.argument("input_file", type=click.Path(exists=True, dir_okay=False))
@click.option("--output", "-o", default="chunks.json", help="Output file (default: chunks.json)")
@click.option("--chunk-size", default=None, type=int, help="Chunk size in tokens (default: 450)")
@click.option("--overlap", default=None, type=int, help="Overlap in tokens (default: 68)")
def chunk(input_file: str, output: str, chunk_size: int | None, overlap: int | None) -> None:
    """Split crawled pages into chunks and write them as JSON."""
    console.print(Panel.fit("✂ Chunking Pages", style="bold magenta"))

    try:
        settings = load_settings()
        chunker = DocumentChunker(
            chunk_size=chunk_size or settings.chunk_size,
            overlap=overlap if overlap is not None else settings.chunk_overlap,
        )
        result = chunker.process_pages(load_pages(input_file))
        output_path = Path(output)
        output_path.parent.mkdir(parents=True, exist_ok=True)
        output_path.write_text(json.dumps([c.to_dict() for c in result.chunks], indent=2), encoding="utf-8")
    except (SeshatError, ValueError, OSError) as e:
        _fail(e)

    stats = result.stats
    table = Table(show_header=True, header_style="bold cyan")
    table.add_column("Metric", style="dim")
    table.add_column("Value", justify="right")
    table.add_row("Pages", f"{stats['total_pages']:,}")
    table.add_row("Skipped Pages", f"{stats['skipped_pages']:,}")
    table.add_row("Chunks", f"{stats['total_chunks']:,}")
    table.add_row("Chunks per Page", f"{stats['average_chunks_per_page']:.1f}")
    for chunk_type, count in sorted(stats["chunk_types"].items()):
        table.add_row(f"  {chunk_type}", f"{count:,}")
    console.print(table)
    console.print(f"\n[green]✓ Chunks written to {output}[/green]")


@cli.command()
@click.argument("input_file", type=click.Path(exists=True, dir_okay=False))
@click.option("--output-dir", "-o", default="embeddings", help="Directory for the embeddings file")
def embed(input_file: str, output_dir: str) -> None:
    """Generate embeddings for a chunks file written by `seshat chunk`."""
    console.print(Panel.fit("🧮 Generating Embeddings", style="bold magenta"))

    try:
        settings = load_settings()
        generator = build_generator(settings)
        with Path(input_file).open(encoding="utf-8") as f:
            chunks = [Chunk.from_dict(item) for item in json.load(f)]

        with _progress() as progress:
            task = progress.add_task("Embedding chunks...", total=len(chunks))

            def progress_callback(current: int, total: int) -> None:
                progress.update(task, completed=current, total=total)

            result = generator.process_chunks(chunks, progress_callback=progress_callback)
        path = save_embeddings(result.embedded, output_dir) if result.embedded else None
    except (SeshatError, OSError, ValueError, KeyError) as e:
        _fail(e)

    usage = result.usage
    console.print(
        _key_value_table(
            [
                ("Embedded", f"{result.success_count:,}/{len(chunks):,}"),
                ("Failed", f"{len(result.failures):,}"),
                ("Requests", f"{usage.requests:,}"),
                ("Estimated Tokens", f"{usage.tokens:,}"),
                ("Retries", f"{usage.retries:,}"),
                ("Duration", f"{result.duration_seconds:.2f}s"),
            ]
        )
    )
    if path:
        console.print(f"\n[green]✓ Embeddings written to {path}[/green]")
    if result.failures:
        console.print(f"\n[yellow]⚠ {len(result.failures)} chunk(s) failed to embed. Check logs for details.[/yellow]")


@cli.command()
@click.argument("input_file", type=click.Path(exists=True, dir_okay=False))
@click.option("--output-dir", default=None, help="Also write embedded chunks to this directory")
def ingest(input_file: str, output_dir: str | None) -> None:
    """Chunk, embed and store crawled pages in one run."""
    console.print(Panel.fit("🔮 Seshat Ingestion Pipeline", style="bold magenta"))

    try:
        settings = load_settings()
        pipeline = IngestionPipeline(
            chunker=DocumentChunker(chunk_size=settings.chunk_size, overlap=settings.chunk_overlap),
            generator=build_generator(settings),
            store=build_store(settings),
            output_dir=output_dir,
        )
        with _progress() as progress:
            task = progress.add_task("Chunking pages...", total=100)

            def progress_callback(current: int, total: int, message: str) -> None:
                progress.update(task, completed=current, total=total, description=message)

            stats = pipeline.run(input_file, progress_callback=progress_callback)
    except SeshatError as e:
        _fail(e)

    console.print("\n[bold green]✓ Ingestion Complete![/bold green]\n")
    table = Table(show_header=True, header_style="bold cyan")
    table.add_column("Metric", style="dim")
    table.add_column("Value", justify="right")
    table.add_row("Pages", f"{stats.total_pages:,}")
    table.add_row("Chunks", f"{stats.total_chunks:,}")
    table.add_row("Embedded", f"{stats.embedded_chunks:,}")
    table.add_row("Embedding Failures", f"{stats.embedding_failures:,}")
    table.add_row("Stored", f"{stats.stored_chunks:,}")
    table.add_row("Duration", f"{stats.duration_seconds:.2f}s")
    table.add_row("Throughput (chunks/sec)", f"{stats.chunks_per_second:.2f}")
    console.print(table)

    if stats.embedding_failures:
        console.print(
            f"\n[yellow]⚠ {stats.embedding_failures} chunk(s) failed to embed. Check logs for details.[/yellow]"
        )


def _checkpoint_store(settings: Settings, checkpoint: str | None, gcs_bucket: str | None) -> CheckpointStore:
    path = checkpoint or settings.checkpoint_file
    if gcs_bucket:
        return GCSCheckpointStore(bucket_name=gcs_bucket, blob_name=path)
    return FileCheckpointStore(path)


@cli.command()
@click.argument("input_file", type=click.Path(exists=True, dir_okay=False))
@click.option("--batch-size", default=None, type=int, help="Records per batch (default: 50)")
@click.option("--checkpoint", default=None, help="Checkpoint file or blob name")
@click.option("--gcs-bucket", default=None, help="Keep the checkpoint in this GCS bucket")
@click.option("--verify/--no-verify", default=True, help="Count stored rows afterwards (default: on)")
def migrate(
    input_file: str,
    batch_size: int | None,
    checkpoint: str | None,
    gcs_bucket: str | None,
    verify: bool,
) -> None:
    """Migrate a pre-embedded JSON export into the vector store.

    Progress is checkpointed after every batch; rerun the same command to
    resume. Ctrl+C stops after the current batch.
    """
    console.print(Panel.fit("🚚 Vector Store Migration", style="bold magenta"))

    try:
        settings = load_settings()
        coordinator = MigrationCoordinator(
            store=build_store(settings),
            checkpoint_store=_checkpoint_store(settings, checkpoint, gcs_bucket),
            batch_size=batch_size or settings.migration_batch_size,
            dimensions=settings.embedding_dimensions,
        )

        def signal_handler(_sig: int, _frame: Any) -> None:
            console.print("\n[yellow]Stopping after the current batch...[/yellow]")
            coordinator.request_stop()

        previous = signal.signal(signal.SIGINT, signal_handler)
        try:
            report = coordinator.migrate(input_file)
        finally:
            signal.signal(signal.SIGINT, previous)
    except SeshatError as e:
        _fail(e)

    color = {"completed": "green", "partial": "yellow", "failed": "red"}[report.status]
    console.print(f"\n[bold {color}]Migration {report.status.upper()}[/bold {color}]\n")
    rows = [
        ("Total Records", f"{report.total:,}"),
        ("Successful", f"{report.successful:,} ({report.success_rate:.1f}%)"),
        ("Failed", f"{report.failed:,}"),
        ("Skipped", f"{report.skipped:,}"),
        ("Duration", f"{report.duration_seconds:.2f}s"),
    ]
    if report.resumed_from:
        rows.append(("Resumed From", f"record {report.resumed_from:,}"))
    console.print(_key_value_table(rows))

    if report.errors:
        console.print("\n[bold yellow]Batch Errors:[/bold yellow]")
        errors_table = Table(show_header=True, header_style="bold yellow")
        errors_table.add_column("Batch", justify="right")
        errors_table.add_column("Error")
        for error in report.errors:
            errors_table.add_row(str(error.batch), error.error[:80] + "..." if len(error.error) > 80 else error.error)
        console.print(errors_table)
        if report.error_count > len(report.errors):
            console.print(f"[dim]... and {report.error_count - len(report.errors)} more[/dim]")

    if report.stopped_early or report.status != "completed":
        console.print("\n[dim]Run the same command again to resume from the checkpoint.[/dim]")

    if verify:
        result = coordinator.verify()
        if result["verified"]:
            console.print(f"\n[green]✓ Database contains {result['document_count']:,} document chunks[/green]")
        else:
            console.print(f"\n[red]✗ Verification failed: {result['error']}[/red]")


@cli.command()
@click.argument("query")
@click.option("--limit", "-n", default=5, type=int, help="Number of results to return (default: 5)")
@click.option("--threshold", default=None, type=float, help="Minimum similarity (default: 0.8)")
@click.option("--hybrid", is_flag=True, help="Combine vector and full-text ranking")
@click.option("--cache-file", default=None, help="Persist a semantic result cache in this file")
def search(query: str, limit: int, threshold: float | None, hybrid: bool, cache_file: str | None) -> None:
    """Search stored chunks for content related to QUERY.

    Example: seshat search "How do I bind a click handler?" -n 3
    """
    console.print(Panel.fit(f"🔍 Searching: {query}", style="bold blue"))

    cache = None
    try:
        settings = load_settings()
        generator = build_generator(settings)
        store = build_store(settings)
        if cache_file:
            cache = SemanticCache(
                SemanticCacheConfig(enable_persistence=True, persistence_path=cache_file),
                start_cleanup=False,
            )

        with console.status("[bold blue]Searching...", spinner="dots"):
            query_embedding = generator.embed_query(query)
            hit = cache.get(query_embedding, query) if cache is not None else None
            if hit is not None:
                results = hit.data
            elif hybrid:
                results = store.hybrid_search(
                    query, query_embedding, threshold=0.7 if threshold is None else threshold, count=limit
                )
            else:
                results = store.similarity_search(query_embedding, threshold=threshold, count=limit)
            if cache is not None and hit is None:
                cache.set(query_embedding, results, query_text=query)
    except SeshatError as e:
        _fail(e)
    finally:
        if cache is not None:
            cache.close()

    if hit is not None:
        console.print(f"[dim]Served from cache (similarity {hit.similarity:.3f})[/dim]")
    if not results:
        console.print("\n[yellow]No results found.[/yellow]")
        return

    console.print(f"\n[bold]Found {len(results)} results:[/bold]\n")
    for i, row in enumerate(results, 1):
        content = row.get("chunk_content") or ""
        similarity = row.get("similarity", row.get("combined_score"))
        score = f"{similarity:.2%}" if isinstance(similarity, (int, float)) else "?"
        console.print(
            Panel(
                f"[bold]Title:[/bold] {row.get('document_title') or 'Untitled'}\n"
                f"[bold]URL:[/bold] {row.get('document_url') or 'Unknown'}\n"
                f"[bold]Similarity:[/bold] {score}\n\n"
                f"{content[:PREVIEW_CHARS]}{'...' if len(content) > PREVIEW_CHARS else ''}",
                title=f"Result {i}",
                border_style="blue",
            )
        )


@cli.command()
def stats() -> None:
    """Show database and client statistics."""
    console.print(Panel.fit("📊 Vector Store Statistics", style="bold cyan"))

    try:
        store = build_store(load_settings())
        database = store.stats()
    except SeshatError as e:
        _fail(e)

    client_stats = database.pop("client_stats", {})
    console.print("\n[bold]Database:[/bold]")
    console.print(_key_value_table([(key.replace("_", " ").title(), str(value)) for key, value in database.items()]))

    breaker = client_stats.get("circuit_breaker", {})
    console.print("\n[bold]Client:[/bold]")
    console.print(
        _key_value_table(
            [
                ("Queries", f"{client_stats.get('total_queries', 0):,}"),
                ("Errors", f"{client_stats.get('total_errors', 0):,}"),
                ("Average Latency", f"{client_stats.get('average_latency_ms', 0):.0f}ms"),
                ("Cache Hit Rate", f"{client_stats.get('cache_hit_rate', 0):.1f}%"),
                ("Circuit Breaker", str(breaker.get("state", "closed"))),
            ]
        )
    )


@cli.command()
def health() -> None:
    """Check vector store health.

    Exits with status 1 when unhealthy and 2 when degraded.
    """
    console.print(Panel.fit("🏥 Health Check", style="bold cyan"))

    try:
        store = build_store(load_settings())
    except SeshatError as e:
        _fail(e)

    report = store.health_check()
    overall = report["status"]
    color = STATUS_COLORS.get(overall, "white")
    symbol = STATUS_SYMBOLS.get(overall, "?")
    console.print(f"\n[bold {color}]{symbol} Overall Status: {overall.upper()}[/bold {color}]\n")

    rows = [
        ("Latency", f"{report['latency_ms']:.0f}ms" if "latency_ms" in report else "-"),
        ("Document Count", f"{report['document_count']:,}" if "document_count" in report else "-"),
        ("Circuit Breaker", report["circuit_breaker"]),
        ("Checked At", report["timestamp"]),
    ]
    if report.get("error"):
        rows.append(("Error", report["error"]))
    console.print(_key_value_table(rows))

    if overall == "unhealthy":
        sys.exit(1)
    elif overall == "degraded":
        sys.exit(2)


if __name__ == "__main__":
    cli()
