"""
Semantic code search over indexed repositories.

Queries are embedded with the same client used for indexing and matched
against the vector store, scoped to a workspace and optionally a single
repository.
"""

from dataclasses import dataclass
from typing import Any, Union

from rich.console import Console
from rich.panel import Panel
from rich.syntax import Syntax
from rich.table import Table
from rich.text import Text

from .embeddings import EmbeddingClient, EmbeddingError
from .vector_store import SearchHit, VectorFilter, VectorStore

DEFAULT_SEARCH_LIMIT = 10
MAX_SEARCH_LIMIT = 100

# Language tags that rich's lexers don't know under the same name
_SYNTAX_ALIASES = {
    "csharp": "csharp",
    "objective-c": "objc",
    "hcl": "terraform",
    "protobuf": "protobuf",
}


@dataclass
class SearchResult:
    """One matching chunk."""

    repository_id: int
    file_path: str
    start_line: int
    end_line: int
    language: str
    content: str
    score: float

    @classmethod
    def from_hit(cls, hit: SearchHit) -> "SearchResult":
        payload = hit.payload
        return cls(
            repository_id=int(payload.get("repository_id", 0)),
            file_path=str(payload.get("file_path", "")),
            start_line=int(payload.get("start_line", 1)),
            end_line=int(payload.get("end_line", 1)),
            language=str(payload.get("language", "unknown")),
            content=str(payload.get("content", "")),
            score=float(hit.score),
        )

    def __str__(self) -> str:
        return f"{self.file_path}:{self.start_line}-{self.end_line} ({self.score:.3f})"

    def to_rich_panel(self) -> Panel:
        """Create a rich panel for this search result."""
        renderable: Union[Syntax, Text]
        if self.language != "unknown":
            renderable = Syntax(
                self.content.rstrip("\n"),
                _SYNTAX_ALIASES.get(self.language, self.language),
                line_numbers=True,
                start_line=self.start_line,
            )
        else:
            renderable = Text(self.content)

        title = (
            f"[bold blue]{self.file_path}[/bold blue]:"
            f"[bold yellow]{self.start_line}-{self.end_line}[/bold yellow]"
            f" [dim]score {self.score:.3f}[/dim]"
        )
        return Panel(renderable, title=title, border_style="cyan")

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "repository_id": self.repository_id,
            "file_path": self.file_path,
            "start_line": self.start_line,
            "end_line": self.end_line,
            "language": self.language,
            "content": self.content,
            "score": self.score,
        }


def search_code(
    embedder: EmbeddingClient,
    vector_store: VectorStore,
    query: str,
    workspace_id: int,
    repository_id: int | None = None,
    limit: int = DEFAULT_SEARCH_LIMIT,
) -> list[SearchResult]:
    """
    Find the chunks most similar to a natural-language or code query.

    Args:
        embedder: Client used to embed the query
        vector_store: Store holding the indexed chunks
        query: Search text
        workspace_id: Workspace to search in
        repository_id: Restrict results to one repository
        limit: Maximum number of results; values outside 1..100 use the
            default of 10

    Returns:
        Results ordered by descending similarity

    Raises:
        ValueError: If the query is empty
        EmbeddingError: If the query cannot be embedded
    """
    query = query.strip()
    if not query:
        raise ValueError("Search query cannot be empty")
    if limit <= 0 or limit > MAX_SEARCH_LIMIT:
        limit = DEFAULT_SEARCH_LIMIT

    vectors = embedder.embed([query])
    if len(vectors) != 1:
        raise EmbeddingError(f"Expected 1 query embedding, got {len(vectors)}")

    hits = vector_store.search(
        vectors[0],
        VectorFilter(workspace_id=workspace_id, repository_id=repository_id),
        limit,
    )
    return [SearchResult.from_hit(hit) for hit in hits]


class SearchResultFormatter:
    """Rich formatting for search results."""

    def __init__(self, console: Console | None = None):
        """Initialize formatter with optional console."""
        self.console = console or Console()

    def format_results_table(self, results: list[SearchResult], query: str = "") -> Table:
        """Format search results as a rich table."""
        table = Table(title=f"Search Results: '{query}'" if query else "Search Results")
        table.add_column("Score", style="green", justify="right")
        table.add_column("Repo", style="magenta", justify="right")
        table.add_column("File", style="cyan", no_wrap=True)
        table.add_column("Lines", style="magenta", justify="right")
        table.add_column("Content", style="white")

        for result in results:
            # First non-blank line as a preview
            preview = next(
                (line.strip() for line in result.content.splitlines() if line.strip()), ""
            )
            if len(preview) > 80:
                preview = preview[:77] + "..."

            table.add_row(
                f"{result.score:.3f}",
                str(result.repository_id),
                result.file_path,
                f"{result.start_line}-{result.end_line}",
                preview,
            )

        return table

    def format_results_detailed(self, results: list[SearchResult]) -> list[Panel]:
        """Format search results as detailed panels."""
        return [result.to_rich_panel() for result in results]
