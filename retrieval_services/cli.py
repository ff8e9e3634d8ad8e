"""Command line interface for the retrieval engine.

Usage:
    kb ingest docs/bgp.md --title "BGP guide"
    kb search "how to configure BGP"
    kb tasks <document-id>
    kb serve --port 8000
"""
import asyncio
import json
import logging
from pathlib import Path
from typing import Optional

import click
from rich.console import Console
from rich.table import Table

from retrieval_services.retrieval_service import RetrievalService
from retrieval_services.settings import RetrievalSettings

console = Console()


def _build_service(ctx: click.Context) -> RetrievalService:
    return RetrievalService(RetrievalSettings.from_env(**ctx.obj))


@click.group(context_settings={"help_option_names": ["-h", "--help"]})
@click.option("--data-dir", envvar="KB_DATA_DIR", default="kb_data", show_default=True,
              help="Directory holding document and chunk collections.")
@click.option("--api-key", envvar="EMBEDDING_API_KEY", help="API key for the embedding/rerank provider (env EMBEDDING_API_KEY).")
@click.option("--api-base", envvar="EMBEDDING_API_BASE", help="Base URL of the OpenAI-compatible provider.")
@click.option("--debug/--no-debug", default=False, show_default=True, help="Enable debug logging.")
@click.pass_context
def cli(ctx: click.Context, data_dir: str, api_key: Optional[str], api_base: Optional[str], debug: bool):
    """Hybrid knowledge-base retrieval engine."""
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    ctx.obj = {"data_dir": data_dir, "api_key": api_key, "api_base": api_base}


@cli.command()
@click.argument("path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--title", help="Document title (defaults to the file name).")
@click.option("--category", default="general", show_default=True, help="Document category.")
@click.option("--document-id", help="Explicit document id.")
@click.option("--wait/--no-wait", default=True, show_default=True,
              help="Wait for the embedding task before exiting.")
@click.pass_context
def ingest(ctx: click.Context, path: Path, title: Optional[str], category: str,
           document_id: Optional[str], wait: bool):
    """Chunk a text/Markdown file and compute its embeddings."""

    async def run():
        service = _build_service(ctx)
        try:
            document = await service.ingest_document(
                path.read_text(encoding="utf-8"),
                title or path.name,
                document_id=document_id,
                category=category,
            )
            if wait:
                await service.task_queue.wait_idle()
            return document, await service.chunk_stats(document.id), service.task_status(document.id)
        finally:
            await service.shutdown()

    document, stats, task = asyncio.run(run())
    console.print(f"[green]Ingested[/green] {document.title} as [cyan]{document.id}[/cyan]")
    console.print(f"Chunks: {stats['parent_count']} parents, {stats['requiring_embedding']} searchable, "
                  f"{stats['with_embedding']} embedded")
    if task is not None:
        console.print(f"Embedding task {task.id}: {task.status.value} ({task.progress}%)")


@cli.command()
@click.argument("query")
@click.option("--limit", type=int, help="Maximum number of results (defaults to the intent's limit).")
@click.option("--json-output", "json_output", is_flag=True, help="Print raw JSON instead of a table.")
@click.pass_context
def search(ctx: click.Context, query: str, limit: Optional[int], json_output: bool):
    """Run a hybrid search against the knowledge base."""

    async def run():
        service = _build_service(ctx)
        try:
            return await service.search(query, limit=limit, include_parents=False)
        finally:
            await service.shutdown()

    response = asyncio.run(run())
    if json_output:
        click.echo(json.dumps(response.model_dump(mode="json", exclude={"hits": {"__all__": {"chunk": {"embedding"}}}}),
                              ensure_ascii=False, indent=2))
        return

    console.print(f"[cyan]Intent:[/cyan] {response.intent.intent.value} "
                  f"(confidence {response.intent.confidence:.2f})")
    if not response.hits:
        console.print(f"[yellow]{response.message}[/yellow]")
        return

    table = Table(title=f"Results for: {query}")
    table.add_column("#", style="dim")
    table.add_column("Score", style="green")
    table.add_column("Sources", style="magenta")
    table.add_column("Document", style="cyan")
    table.add_column("Content")
    for rank, hit in enumerate(response.hits, start=1):
        snippet = " ".join(hit.chunk.content.split())[:120]
        table.add_row(str(rank), f"{hit.score:.4f}", ",".join(hit.sources), hit.document_id, snippet)
    console.print(table)


@cli.command()
@click.argument("document_id")
@click.pass_context
def tasks(ctx: click.Context, document_id: str):
    """Show chunk statistics and embedding status of a document."""

    async def run():
        service = _build_service(ctx)
        try:
            return await service.get_document(document_id), await service.chunk_stats(document_id)
        finally:
            await service.shutdown()

    document, stats = asyncio.run(run())
    if document is None:
        raise click.ClickException(f"Document {document_id} not found")

    table = Table(title=f"{document.title} ({document.id})")
    table.add_column("Field", style="cyan")
    table.add_column("Value", style="green")
    table.add_row("status", document.status.value)
    table.add_row("embedding", document.embedding_status.value)
    for name, value in stats.items():
        table.add_row(name, str(value))
    console.print(table)


@cli.command()
@click.pass_context
def recover(ctx: click.Context):
    """Embed chunks still missing embeddings, for every ready document."""

    async def run():
        service = _build_service(ctx)
        try:
            created = await service.recover()
            await service.task_queue.wait_idle()
            return [service.get_task(task.id) for task in created]
        finally:
            await service.shutdown()

    finished = asyncio.run(run())
    if not finished:
        console.print("[green]All documents are fully embedded[/green]")
        return

    table = Table(title="Recovery tasks")
    table.add_column("Document", style="cyan")
    table.add_column("Status")
    table.add_column("Embedded", style="green")
    table.add_column("Failed", style="red")
    for task in finished:
        result = task.result or {}
        table.add_row(task.document_id, task.status.value,
                      str(result.get("success_count", 0)), str(result.get("fail_count", 0)))
    console.print(table)


@cli.command()
@click.option("--host", default="127.0.0.1", show_default=True)
@click.option("--port", type=int, default=8000, show_default=True)
@click.pass_context
def serve(ctx: click.Context, host: str, port: int):
    """Serve the HTTP API with uvicorn."""
    import uvicorn

    from retrieval_services.api import create_fastapi_app

    uvicorn.run(create_fastapi_app(_build_service(ctx)), host=host, port=port)


if __name__ == "__main__":
    cli()
