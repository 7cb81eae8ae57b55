"""Typer-based CLI for the CodeGraph indexer."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, TypeVar

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from . import __version__
from .config import load_config
from .models import JobStatus, SearchHit
from .orchestrator import IndexerServices, build_services

T = TypeVar("T")

console = Console()

app = typer.Typer(
    help="CodeGraph indexer: keep a code property graph in sync with your source tree.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)


def version_callback(value: bool):
    """Print version and exit."""
    if value:
        typer.echo(f"codegraph-indexer v{__version__}")
        raise typer.Exit()


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", help="Show debug logging."),
    version: Optional[bool] = typer.Option(
        None, "--version", "-v", help="Show version and exit.",
        callback=version_callback, is_eager=True,
    ),
):
    """Index, watch and query code graphs."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True, show_path=False)],
        force=True,
    )


def _run(work: Callable[[IndexerServices], Awaitable[T]], enrich: Optional[bool] = None) -> T:
    cfg = load_config()
    if enrich is not None:
        cfg.enrich = enrich

    async def runner() -> T:
        services = build_services(cfg)
        try:
            await services.graph.ensure_schema()
            return await work(services)
        finally:
            await services.close()

    return asyncio.run(runner())


def _rows_table(title: str, rows: List[Dict[str, Any]], columns: List[str]) -> Table:
    table = Table(title=title)
    for column in columns:
        table.add_column(column.replace("_", " ").title())
    for row in rows:
        table.add_row(*("" if row.get(c) is None else str(row.get(c)) for c in columns))
    return table


def _hits_table(title: str, hits: List[SearchHit], with_description: bool = False) -> Table:
    table = Table(title=title)
    table.add_column("Kind", style="cyan")
    table.add_column("Name", style="bold")
    table.add_column("Location")
    table.add_column("Score", justify="right")
    if with_description:
        table.add_column("Description")
    for hit in hits:
        location = hit.path if hit.line_number is None else f"{hit.path}:{hit.line_number}"
        cells = [hit.label, hit.name, location, f"{hit.score:.3f}"]
        if with_description:
            cells.append(hit.description)
        table.add_row(*cells)
    return table


# ===================================================================
# Indexing
# ===================================================================

@app.command()
def index(
    path: Path = typer.Argument(..., exists=True, file_okay=False, resolve_path=True, help="Directory to index."),
    dependency: bool = typer.Option(False, "--dependency", help="Index as a dependency (no source, no variables)."),
    enrich: bool = typer.Option(True, "--enrich/--no-enrich", help="Generate descriptions and embeddings."),
):
    """Index a directory into the code graph."""

    async def work(services: IndexerServices):
        return await services.pipeline.run(str(path), is_dependency=dependency)

    job = _run(work, enrich=enrich)
    if job is None:
        console.print("[red]✗[/red] Job record was lost.")
        raise typer.Exit(1)
    if job.status is JobStatus.FAILED:
        console.print(f"[red]✗[/red] Indexing failed: {job.error}")
        raise typer.Exit(1)
    console.print(
        f"[green]✓[/green] Indexed {job.files_processed}/{job.files_total} files from {job.path} ({job.id})"
    )


@app.command()
def watch(
    paths: List[Path] = typer.Argument(..., exists=True, file_okay=False, resolve_path=True, help="Roots to watch."),
):
    """Watch directories and re-index files as they change (Ctrl+C to stop)."""

    def report(kind: str, changed: str) -> None:
        mark = "[red]-[/red]" if kind == "unlink" else "[green]↻[/green]"
        console.print(f"  {mark} {changed}")

    async def work(services: IndexerServices) -> None:
        services.watcher.on_synced = report
        for root in paths:
            await services.watcher.watch(str(root))
            console.print(f"[cyan]👀[/cyan] Watching {root}")
        await asyncio.Event().wait()

    try:
        _run(work)
    except KeyboardInterrupt:
        console.print("[dim]Stopped.[/dim]")


# ===================================================================
# Repositories
# ===================================================================

@app.command("repos")
def list_repos():
    """List indexed repositories."""
    rows = _run(lambda s: s.repositories.list_repositories())
    if not rows:
        console.print("No repositories indexed yet.")
        return
    console.print(_rows_table("Repositories", rows, ["path", "name", "files", "is_dependency"]))


@app.command("delete-repo")
def delete_repo(
    path: Optional[Path] = typer.Argument(None, help="Repository root to delete."),
    all_repos: bool = typer.Option(False, "--all", help="Delete every repository."),
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation."),
):
    """Delete a repository (or everything) from the graph."""
    if path is None and not all_repos:
        raise typer.BadParameter("Give a repository path or --all.")
    target = "every repository" if all_repos else str(path)
    if not yes and not typer.confirm(f"Delete {target} from the graph?"):
        raise typer.Exit(1)

    async def work(services: IndexerServices) -> None:
        if all_repos:
            await services.repositories.delete_all()
        else:
            await services.repositories.delete_repository(str(path))

    _run(work)
    console.print(f"[green]✓[/green] Deleted {target}")


@app.command()
def stats():
    """Show node and relationship counts."""
    result = _run(lambda s: s.repositories.get_stats())
    table = Table(title="Graph statistics")
    table.add_column("Item")
    table.add_column("Count", justify="right")
    for name, value in vars(result).items():
        table.add_row(name.replace("_", " ").title(), str(value))
    console.print(table)


# ===================================================================
# Queries
# ===================================================================

@app.command()
def search(
    query: str = typer.Argument(..., help="Symbol name or fragment."),
    limit: int = typer.Option(20, "--limit", "-n"),
):
    """Full-text search over function, class and variable names."""
    hits = _run(lambda s: s.search.fulltext_search(query, limit=limit))
    console.print(_hits_table(f"Symbols matching '{query}'", hits))


@app.command()
def semantic(
    query: str = typer.Argument(..., help="Natural-language question."),
    limit: int = typer.Option(10, "--limit", "-n"),
):
    """Semantic search over generated descriptions."""
    hits = _run(lambda s: s.search.semantic_search(query, limit=limit))
    if not hits:
        console.print("No described symbols match (has the code been enriched?).")
        return
    console.print(_hits_table(f"Closest to '{query}'", hits, with_description=True))


@app.command()
def callers(name: str = typer.Argument(..., help="Function name.")):
    """Functions that call NAME."""
    rows = _run(lambda s: s.analysis.find_callers(name))
    console.print(_rows_table(f"Callers of {name}", rows, ["name", "path", "line_number", "call_line"]))


@app.command()
def callees(name: str = typer.Argument(..., help="Function name.")):
    """Functions called by NAME."""
    rows = _run(lambda s: s.analysis.find_callees(name))
    console.print(_rows_table(f"Called by {name}", rows, ["name", "path", "line_number", "call_line"]))


@app.command("dead-code")
def dead_code(repo: Optional[Path] = typer.Option(None, "--repo", help="Limit to one repository.")):
    """Functions with no known callers."""
    rows = _run(lambda s: s.analysis.dead_code(str(repo) if repo else None))
    console.print(_rows_table("Possibly unused functions", rows, ["name", "path", "line_number"]))


@app.command()
def complexity(limit: int = typer.Option(10, "--limit", "-n")):
    """Most complex functions by cyclomatic complexity."""
    rows = _run(lambda s: s.analysis.most_complex_functions(limit=limit))
    console.print(_rows_table("Most complex functions", rows, ["name", "path", "line_number", "complexity"]))


@app.command()
def hierarchy(name: str = typer.Argument(..., help="Class name.")):
    """Parents and children of class NAME."""
    result = _run(lambda s: s.analysis.class_hierarchy(name))
    console.print(_rows_table(f"Parents of {name}", result["parents"], ["name", "path", "depth"]))
    console.print(_rows_table(f"Children of {name}", result["children"], ["name", "path", "depth"]))


if __name__ == "__main__":
    app()
