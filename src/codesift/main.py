"""
CodeSift CLI - Main entry point for the application.

This module defines the command-line interface using Typer.
"""

import json
import logging
import signal
import threading
from datetime import timedelta
from typing import Any, Optional

import typer
from rich import print as rprint
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table
from sqlalchemy.exc import SQLAlchemyError

from .chunking import TextSplitterChunker
from .config import CodeSiftConfig, ConfigError
from .database import Database
from .embedding_cache import EmbeddingCache
from .embeddings import EmbeddingError, OpenAIEmbeddingClient
from .git_manager import GitRepository
from .models import InvalidStatusTransitionError, RepoStatus, Workspace
from .orchestrator import IndexingCancelled, IndexingOrchestrator
from .repository_manager import (
    RepositoryError,
    add_repository,
    count_repositories,
    get_repository,
    get_repository_info,
    list_index_runs,
    list_repositories,
    recover_stale_repositories,
    remove_repository,
    request_reindex,
)
from .search import SearchResultFormatter, search_code
from .vector_store import QdrantVectorStore
from .worker import WorkerPool
from .workspace_manager import (
    WorkspaceError,
    count_workspaces,
    create_workspace,
    ensure_default_workspace,
    list_workspaces,
    resolve_workspace,
)

# Create the main Typer application
app = typer.Typer(
    name="codesift",
    help="CodeSift - incremental semantic indexing for git repositories.",
    add_completion=False,
    no_args_is_help=True,
    rich_markup_mode="rich",
)

console = Console()
err_console = Console(stderr=True)

STATUS_STYLES = {
    RepoStatus.PENDING: "yellow",
    RepoStatus.CLONING: "cyan",
    RepoStatus.INDEXING: "blue",
    RepoStatus.COMPLETED: "green",
    RepoStatus.FAILED: "red",
}


def setup_logging(level: str) -> None:
    """Route all log records through rich on stderr."""
    root = logging.getLogger()
    root.setLevel(level)
    if not any(isinstance(h, RichHandler) for h in root.handlers):
        root.addHandler(
            RichHandler(console=err_console, rich_tracebacks=True, show_path=False)
        )


def _config(ctx: typer.Context) -> CodeSiftConfig:
    return ctx.obj


def _open_database(config: CodeSiftConfig) -> Database:
    database = Database(database_url=config.database_url)
    database.create_db_and_tables()
    return database


def _build_vector_store(config: CodeSiftConfig) -> QdrantVectorStore:
    try:
        return QdrantVectorStore(
            location=config.vector_store_location,
            collection_name=config.collection_name,
            dimensions=config.embedding_dimensions,
        )
    except RuntimeError as e:
        # Embedded storage admits one client at a time
        raise _fail(
            f"Cannot open vector store at {config.vector_store_location}: {e}. "
            "Set CODESIFT_QDRANT_URL to share a Qdrant server between processes."
        ) from e


def _resolve_workspace(database: Database, reference: Optional[str]) -> Workspace:
    try:
        if reference is None:
            return ensure_default_workspace(database)
        return resolve_workspace(database, reference)
    except WorkspaceError as e:
        raise _fail(str(e)) from e


def _build_embedder(config: CodeSiftConfig) -> OpenAIEmbeddingClient:
    return OpenAIEmbeddingClient(
        model=config.embedding_model,
        api_key=config.openai_api_key,
    )


def _build_orchestrator(
    config: CodeSiftConfig, database: Database
) -> IndexingOrchestrator:
    return IndexingOrchestrator(
        database=database,
        git_manager=GitRepository(config.clone_dir, token=config.git_token),
        chunker=TextSplitterChunker(config.chunk_size, config.chunk_overlap),
        embedder=_build_embedder(config),
        cache=EmbeddingCache(
            database,
            max_entries=config.cache_max_entries,
            evict_fraction=config.cache_evict_fraction,
        ),
        vector_store=_build_vector_store(config),
        config=config,
    )


def _fail(message: str) -> typer.Exit:
    console.print(f"[red]Error:[/red] {message}")
    return typer.Exit(1)


def _format_status(status: RepoStatus) -> str:
    style = STATUS_STYLES.get(status, "white")
    return f"[{style}]{status.value}[/{style}]"


def version_callback(value: bool) -> None:
    """Show version information."""
    if value:
        from . import __version__

        rprint(f"[bold blue]CodeSift[/bold blue] version [green]{__version__}[/green]")
        raise typer.Exit()


@app.callback()
def main(
    ctx: typer.Context,
    log_level: Optional[str] = typer.Option(
        None, "--log-level", help="Logging level (default: CODESIFT_LOG_LEVEL or INFO)"
    ),
    _version: Optional[bool] = typer.Option(
        None,
        "--version",
        callback=version_callback,
        is_eager=True,
        help="Show version and exit.",
    ),
) -> None:
    """
    CodeSift - incremental semantic indexing for git repositories.

    Register repositories, run workers that index them into a vector store,
    and search the indexed code.
    """
    try:
        config = CodeSiftConfig.from_env()
    except ConfigError as e:
        raise _fail(str(e)) from e

    if log_level:
        config.log_level = log_level.upper()
    try:
        setup_logging(config.log_level)
    except ValueError as e:
        raise _fail(f"Invalid log level: {config.log_level}") from e
    ctx.obj = config


@app.command()
def init(ctx: typer.Context) -> None:
    """
    Create the database and clone directory.
    """
    config = _config(ctx)
    try:
        database = _open_database(config)
    except SQLAlchemyError as e:
        raise _fail(f"Cannot initialize database: {e}") from e
    config.clone_dir.mkdir(parents=True, exist_ok=True)
    workspace = ensure_default_workspace(database)

    info = database.get_database_info()
    console.print("[green]Database ready[/green]")
    console.print(f"[dim]URL: {info['database_url']}[/dim]")
    console.print(f"[dim]Clone directory: {config.clone_dir}[/dim]")
    console.print(f"[dim]Default workspace: {workspace.slug} (id {workspace.id})[/dim]")


@app.command(name="workspace-create")
def workspace_create(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Workspace name"),
    slug: Optional[str] = typer.Option(None, "--slug", help="Handle (default: from name)"),
    description: Optional[str] = typer.Option(None, "--description", help="Free text"),
) -> None:
    """
    Create a workspace to group repositories.

    Examples:
        codesift workspace-create "Backend Services"
        codesift workspace-create Frontend --slug web
    """
    database = _open_database(_config(ctx))
    try:
        workspace = create_workspace(database, name, slug=slug, description=description)
    except WorkspaceError as e:
        raise _fail(str(e)) from e
    console.print(
        f"[green]Created workspace {workspace.id}:[/green] {workspace.name} ({workspace.slug})"
    )


@app.command()
def workspaces(
    ctx: typer.Context,
    limit: int = typer.Option(20, "--limit", help="Page size (1-100)"),
    offset: int = typer.Option(0, "--offset", help="Rows to skip"),
    json_output: bool = typer.Option(False, "--json", help="Output in JSON format"),
) -> None:
    """
    List workspaces, newest first.
    """
    database = _open_database(_config(ctx))
    items = list_workspaces(database, limit=limit, offset=offset)

    if json_output:
        data = [
            {
                "id": ws.id,
                "name": ws.name,
                "slug": ws.slug,
                "description": ws.description,
                "repositories": count_repositories(database, workspace_id=ws.id),
                "created_at": ws.created_at.isoformat(),
            }
            for ws in items
        ]
        print(json.dumps(data, indent=2))
        return

    if not items:
        console.print("[yellow]No workspaces found[/yellow]")
        console.print("[dim]Create one with: codesift workspace-create <name>[/dim]")
        return

    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("ID", justify="right", style="cyan")
    table.add_column("Slug", style="blue")
    table.add_column("Name")
    table.add_column("Repositories", justify="right")
    table.add_column("Description", style="dim", max_width=40)
    for ws in items:
        table.add_row(
            str(ws.id),
            ws.slug,
            ws.name,
            str(count_repositories(database, workspace_id=ws.id)),
            ws.description or "",
        )
    console.print(table)
    console.print(f"[dim]{len(items)} of {count_workspaces(database)} workspaces[/dim]")


@app.command()
def add(
    ctx: typer.Context,
    repo_url: str = typer.Argument(..., help="Repository URL to index"),
    workspace: Optional[str] = typer.Option(
        None, "--workspace", "-w", help="Workspace id or slug (default: default)"
    ),
) -> None:
    """
    Register a repository for indexing.

    The repository is queued as pending; a running worker picks it up.

    Examples:
        codesift add https://github.com/tiangolo/fastapi
        codesift add git@github.com:pallets/flask.git -w backend
    """
    database = _open_database(_config(ctx))
    target = _resolve_workspace(database, workspace)
    try:
        repository = add_repository(database, repo_url, target.id)
    except (RepositoryError, WorkspaceError) as e:
        raise _fail(str(e)) from e

    console.print(
        f"[green]Added repository {repository.id}:[/green] {repository.url} "
        f"(workspace {repository.workspace_id})"
    )


@app.command(name="list")
def list_command(
    ctx: typer.Context,
    workspace: Optional[str] = typer.Option(
        None, "--workspace", "-w", help="Workspace id or slug (default: all)"
    ),
    status: Optional[RepoStatus] = typer.Option(
        None, "--status", "-s", case_sensitive=False, help="Only this status"
    ),
    limit: int = typer.Option(20, "--limit", help="Page size (1-100)"),
    offset: int = typer.Option(0, "--offset", help="Rows to skip"),
    json_output: bool = typer.Option(False, "--json", help="Output in JSON format"),
) -> None:
    """
    List registered repositories, newest first.
    """
    database = _open_database(_config(ctx))
    workspace_id = None
    if workspace is not None:
        workspace_id = _resolve_workspace(database, workspace).id
    repositories = list_repositories(
        database, workspace_id=workspace_id, status=status, limit=limit, offset=offset
    )

    if json_output:
        data = [
            {
                "id": repo.id,
                "workspace_id": repo.workspace_id,
                "url": repo.url,
                "status": repo.status.value,
                "last_commit_sha": repo.last_commit_sha,
                "file_count": repo.file_count,
                "chunk_count": repo.chunk_count,
                "error_message": repo.error_message,
                "updated_at": repo.updated_at.isoformat(),
            }
            for repo in repositories
        ]
        print(json.dumps(data, indent=2))
        return

    if not repositories:
        console.print("[yellow]No repositories found[/yellow]")
        console.print("[dim]Add one with: codesift add <repo-url>[/dim]")
        return

    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("ID", justify="right", style="cyan")
    table.add_column("Workspace", justify="right")
    table.add_column("URL", style="blue", max_width=50)
    table.add_column("Status", justify="center")
    table.add_column("Files", justify="right")
    table.add_column("Chunks", justify="right")
    table.add_column("Commit", style="dim")

    for repo in repositories:
        table.add_row(
            str(repo.id),
            str(repo.workspace_id),
            repo.url,
            _format_status(repo.status),
            str(repo.file_count),
            str(repo.chunk_count),
            (repo.last_commit_sha or "")[:10],
        )
    console.print(table)

    total = count_repositories(database, workspace_id=workspace_id, status=status)
    console.print(f"[dim]{len(repositories)} of {total} repositories[/dim]")


@app.command()
def show(
    ctx: typer.Context,
    repository_id: int = typer.Argument(..., help="Repository id"),
) -> None:
    """
    Show a repository and its recent index runs.
    """
    database = _open_database(_config(ctx))
    try:
        info = get_repository_info(database, repository_id)
    except RepositoryError as e:
        raise _fail(str(e)) from e

    console.print(f"[bold]{info['url']}[/bold] (id {info['id']}, workspace {info['workspace_id']})")
    console.print(f"Status: {_format_status(RepoStatus(info['status']))}")
    console.print(f"Branch: {info['default_branch']}  Commit: {info['last_commit_sha'] or '-'}")
    console.print(f"Files: {info['file_count']}  Chunks: {info['chunk_count']}")
    if info["error_message"]:
        console.print(f"[red]Error:[/red] {info['error_message']}")

    runs = list_index_runs(database, repository_id, limit=5)
    if not runs:
        return

    table = Table(title="Recent runs", show_header=True, header_style="bold magenta")
    table.add_column("Run", justify="right")
    table.add_column("Status")
    table.add_column("Started", style="dim")
    table.add_column("+/~/-/=", justify="right")
    table.add_column("Failed", justify="right")
    table.add_column("Chunks", justify="right")
    table.add_column("Cache hit/miss", justify="right")
    for run in runs:
        table.add_row(
            str(run.id),
            run.status.value,
            run.started_at.strftime("%Y-%m-%d %H:%M:%S"),
            f"{run.files_added}/{run.files_changed}/{run.files_deleted}/{run.files_unchanged}",
            str(run.files_failed),
            str(run.chunks_indexed),
            f"{run.cache_hits}/{run.cache_misses}",
        )
    console.print(table)


@app.command()
def reindex(
    ctx: typer.Context,
    repository_id: int = typer.Argument(..., help="Repository id"),
) -> None:
    """
    Queue a completed or failed repository for re-indexing.
    """
    database = _open_database(_config(ctx))
    try:
        repository = request_reindex(database, repository_id)
    except RepositoryError as e:
        raise _fail(str(e)) from e
    console.print(f"[green]Repository {repository.id} queued:[/green] {repository.status.value}")


@app.command()
def remove(
    ctx: typer.Context,
    repository_id: int = typer.Argument(..., help="Repository id"),
    force: bool = typer.Option(False, "--force", help="Skip confirmation prompt"),
) -> None:
    """
    Remove a repository, its file records, vectors and checkout.
    """
    config = _config(ctx)
    database = _open_database(config)
    try:
        repository = get_repository(database, repository_id)
    except RepositoryError as e:
        raise _fail(str(e)) from e

    if repository.status.is_active:
        raise _fail(f"Repository {repository_id} is being indexed; try again later")

    if not force:
        if not typer.confirm(f"Remove repository {repository_id} ({repository.url})?"):
            console.print("[blue]Operation cancelled[/blue]")
            raise typer.Exit()

    vector_store = _build_vector_store(config)
    try:
        removed = remove_repository(database, vector_store, repository_id)
    finally:
        vector_store.close()
    GitRepository(config.clone_dir).remove_checkout(repository_id)
    if removed:
        console.print(f"[green]Removed repository {repository_id}[/green]")
    else:
        console.print(f"[yellow]Repository {repository_id} was already gone[/yellow]")


@app.command()
def index(
    ctx: typer.Context,
    repository_id: int = typer.Argument(..., help="Repository id"),
) -> None:
    """
    Run the indexing pipeline for one repository in this process.

    Ctrl+C stops the run at the next file; the run is recorded as cancelled.
    """
    config = _config(ctx)
    database = _open_database(config)
    try:
        repository = get_repository(database, repository_id)
        if repository.status in (RepoStatus.COMPLETED, RepoStatus.FAILED):
            request_reindex(database, repository_id)
        orchestrator = _build_orchestrator(config, database)
    except (RepositoryError, InvalidStatusTransitionError, EmbeddingError) as e:
        raise _fail(str(e)) from e

    cancel_event = threading.Event()

    def _handle_signal(signum: int, _frame: Any) -> None:
        logging.getLogger(__name__).info("Received signal %d, cancelling", signum)
        cancel_event.set()

    previous_handler = signal.signal(signal.SIGINT, _handle_signal)
    try:
        summary = orchestrator.index_repository(repository_id, cancel_event=cancel_event)
    except IndexingCancelled as e:
        raise _fail(f"Indexing cancelled: {e}") from e
    except (RepositoryError, InvalidStatusTransitionError, EmbeddingError) as e:
        raise _fail(str(e)) from e
    finally:
        signal.signal(signal.SIGINT, previous_handler)
        orchestrator.vector_store.close()

    if not summary.succeeded:
        raise _fail(f"Indexing {summary.status.value}: {summary.error_message}")

    console.print(
        f"[green]Indexed repository {repository_id}[/green] at {summary.to_commit}: "
        f"{summary.files_added} added, {summary.files_changed} changed, "
        f"{summary.files_deleted} deleted, {summary.files_unchanged} unchanged, "
        f"{summary.files_failed} failed, {summary.chunks_indexed} chunks"
    )


@app.command()
def worker(
    ctx: typer.Context,
    workers: Optional[int] = typer.Option(None, "--workers", "-n", help="Worker threads"),
    poll_interval: Optional[float] = typer.Option(
        None, "--poll-interval", help="Seconds between queue polls"
    ),
) -> None:
    """
    Run indexing workers until interrupted (SIGINT/SIGTERM).
    """
    config = _config(ctx)
    database = _open_database(config)
    try:
        orchestrator = _build_orchestrator(config, database)
        pool = WorkerPool(
            database,
            orchestrator,
            workers=workers or config.workers,
            poll_interval=poll_interval or config.poll_interval,
        )
    except (EmbeddingError, ValueError) as e:
        raise _fail(str(e)) from e

    recovered = recover_stale_repositories(database, timedelta(seconds=config.stale_after))
    if recovered:
        console.print(f"[yellow]Re-queued stale repositories:[/yellow] {recovered}")

    def _handle_signal(signum: int, _frame: Any) -> None:
        logging.getLogger(__name__).info("Received signal %d, shutting down", signum)
        pool.request_stop()

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    console.print(f"[green]Running {pool.workers} workers[/green] (Ctrl+C to stop)")
    try:
        pool.run_forever()
    finally:
        orchestrator.vector_store.close()
    console.print(f"[dim]Processed {pool.processed} repositories[/dim]")


@app.command()
def recover(
    ctx: typer.Context,
    older_than: Optional[float] = typer.Option(
        None, "--older-than", help="Seconds without progress (default: CODESIFT_STALE_AFTER)"
    ),
) -> None:
    """
    Re-queue repositories stuck in cloning or indexing.
    """
    config = _config(ctx)
    database = _open_database(config)
    seconds = config.stale_after if older_than is None else older_than
    recovered = recover_stale_repositories(database, timedelta(seconds=seconds))
    if recovered:
        console.print(f"[green]Re-queued {len(recovered)} repositories:[/green] {recovered}")
    else:
        console.print("[dim]No stale repositories[/dim]")


@app.command(name="cache-stats")
def cache_stats(ctx: typer.Context) -> None:
    """
    Show embedding cache size.
    """
    config = _config(ctx)
    cache = EmbeddingCache(
        _open_database(config),
        max_entries=config.cache_max_entries,
        evict_fraction=config.cache_evict_fraction,
    )
    stats = cache.stats()
    console.print(f"Entries: {stats.entries} / {cache.max_entries}")


@app.command(name="cache-evict")
def cache_evict(
    ctx: typer.Context,
    clear: bool = typer.Option(False, "--all", help="Remove every entry"),
) -> None:
    """
    Evict least-recently-used embedding cache entries.
    """
    config = _config(ctx)
    cache = EmbeddingCache(
        _open_database(config),
        max_entries=config.cache_max_entries,
        evict_fraction=config.cache_evict_fraction,
    )
    removed = cache.clear() if clear else cache.evict(force=True)
    console.print(f"[green]Removed {removed} cache entries[/green]")


@app.command()
def search(
    ctx: typer.Context,
    query: str = typer.Argument(..., help="Natural-language or code query"),
    workspace: Optional[str] = typer.Option(
        None, "--workspace", "-w", help="Workspace id or slug (default: default)"
    ),
    repo: Optional[int] = typer.Option(None, "--repo", "-r", help="Only this repository"),
    limit: int = typer.Option(
        10, "--limit", help="Maximum results (1-100; other values use 10)"
    ),
    detailed: bool = typer.Option(
        False, "-d", "--detailed", help="Show results with syntax highlighting"
    ),
    json_output: bool = typer.Option(False, "--json", help="Output in JSON format"),
) -> None:
    """
    Semantic search over indexed code.
    """
    config = _config(ctx)
    target = _resolve_workspace(_open_database(config), workspace)
    try:
        embedder = _build_embedder(config)
    except EmbeddingError as e:
        raise _fail(str(e)) from e
    vector_store = _build_vector_store(config)
    try:
        results = search_code(
            embedder,
            vector_store,
            query,
            workspace_id=target.id,
            repository_id=repo,
            limit=limit,
        )
    except (ValueError, EmbeddingError) as e:
        raise _fail(str(e)) from e
    finally:
        vector_store.close()

    if json_output:
        print(json.dumps([r.to_dict() for r in results], indent=2))
        return

    if not results:
        console.print(f"[yellow]No matches for '{query}'[/yellow]")
        return

    formatter = SearchResultFormatter(console)
    if detailed:
        for panel in formatter.format_results_detailed(results):
            console.print(panel)
    else:
        console.print(formatter.format_results_table(results, query))


if __name__ == "__main__":
    app()
