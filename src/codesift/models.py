"""
Database models for CodeSift using SQLModel.

This module defines the workspace, repository, file, embedding cache and
index run tables, plus the closed ``RepoStatus`` enumeration with its allowed
transition table.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from sqlalchemy import Column, Text, UniqueConstraint
from sqlmodel import Field, SQLModel


def utc_now() -> datetime:
    """Current instant as naive UTC at microsecond resolution."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class InvalidStatusTransitionError(Exception):
    """Raised when a status change is not in the transition table."""

    def __init__(self, current: "RepoStatus", requested: "RepoStatus"):
        self.current = current
        self.requested = requested
        super().__init__(
            f"Invalid status transition: {current.value} -> {requested.value}"
        )


class RepoStatus(str, Enum):
    """Indexing status of a repository."""

    PENDING = "pending"
    CLONING = "cloning"
    INDEXING = "indexing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_active(self) -> bool:
        """True while a pipeline run owns the repository."""
        return self in (RepoStatus.CLONING, RepoStatus.INDEXING)

    def can_transition_to(self, target: "RepoStatus") -> bool:
        return target in ALLOWED_TRANSITIONS[self]

    def ensure_transition(self, target: "RepoStatus") -> None:
        if not self.can_transition_to(target):
            raise InvalidStatusTransitionError(self, target)

    @classmethod
    def predecessors_of(cls, target: "RepoStatus") -> tuple["RepoStatus", ...]:
        """All statuses from which ``target`` may be entered."""
        return tuple(s for s in cls if target in ALLOWED_TRANSITIONS[s])


# Cloning/Indexing -> Pending is reserved for stale-run recovery.
ALLOWED_TRANSITIONS: dict[RepoStatus, frozenset[RepoStatus]] = {
    RepoStatus.PENDING: frozenset({RepoStatus.CLONING}),
    RepoStatus.CLONING: frozenset(
        {RepoStatus.INDEXING, RepoStatus.FAILED, RepoStatus.PENDING}
    ),
    RepoStatus.INDEXING: frozenset(
        {RepoStatus.COMPLETED, RepoStatus.FAILED, RepoStatus.PENDING}
    ),
    RepoStatus.COMPLETED: frozenset({RepoStatus.PENDING}),
    RepoStatus.FAILED: frozenset({RepoStatus.PENDING}),
}


class RunStatus(str, Enum):
    """Terminal and in-flight states of a single pipeline execution."""

    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class Workspace(SQLModel, table=True):
    """A named group of repositories; searches are scoped to one workspace."""

    id: Optional[int] = Field(default=None, primary_key=True)
    name: str = Field(description="Display name")
    slug: str = Field(unique=True, index=True, description="URL-safe unique handle")
    description: Optional[str] = Field(
        default=None, sa_column=Column(Text, nullable=True)
    )
    created_at: datetime = Field(default_factory=utc_now, index=True)
    updated_at: datetime = Field(default_factory=utc_now)


class Repository(SQLModel, table=True):
    """
    A git repository registered for indexing.

    The ``status`` column is the job queue: workers claim ``pending`` rows
    and the orchestrator drives them to ``completed`` or ``failed``.
    """

    __table_args__ = (
        UniqueConstraint("workspace_id", "url", name="uq_repository_workspace_url"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    workspace_id: int = Field(
        foreign_key="workspace.id", index=True, description="Owning workspace"
    )
    url: str = Field(description="Normalized git repository URL")
    owner: str = Field(default="", description="Repository owner parsed from URL")
    name: str = Field(default="", description="Repository name parsed from URL")
    default_branch: str = Field(default="main")
    status: RepoStatus = Field(default=RepoStatus.PENDING, index=True)
    error_message: Optional[str] = Field(
        default=None, sa_column=Column(Text, nullable=True)
    )
    last_commit_sha: Optional[str] = Field(default=None)
    active_run_id: Optional[int] = Field(
        default=None, description="Index run that currently owns the repository"
    )
    file_count: int = Field(default=0)
    chunk_count: int = Field(default=0)
    created_at: datetime = Field(default_factory=utc_now, index=True)
    updated_at: datetime = Field(default_factory=utc_now)


class IndexedFile(SQLModel, table=True):
    """
    A file of a repository that has been embedded and stored.

    ``file_key`` is the stable identifier used to address the file's
    points in the vector store.
    """

    __tablename__ = "indexed_file"
    __table_args__ = (
        UniqueConstraint("repository_id", "path", name="uq_indexed_file_repo_path"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    repository_id: int = Field(index=True)
    path: str = Field(description="POSIX path relative to the checkout root")
    file_key: str = Field(index=True)
    content_hash: str = Field(index=True, description="SHA-256 of file bytes")
    language: str = Field(default="unknown")
    size_bytes: int = Field(default=0)
    chunk_count: int = Field(default=0)
    indexed_at: Optional[datetime] = Field(default=None)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)


class EmbeddingCacheEntry(SQLModel, table=True):
    """Embedding vector keyed by chunk content hash and model."""

    __tablename__ = "embedding_cache"
    __table_args__ = (
        UniqueConstraint("content_hash", "model", name="uq_embedding_cache_hash_model"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    content_hash: str = Field(index=True)
    model: str = Field(index=True)
    dimensions: int
    vector_json: str = Field(sa_column=Column(Text, nullable=False))
    use_count: int = Field(default=0)
    created_at: datetime = Field(default_factory=utc_now)
    last_used_at: datetime = Field(default_factory=utc_now, index=True)


class IndexRun(SQLModel, table=True):
    """History record of one pipeline execution."""

    __tablename__ = "index_run"

    id: Optional[int] = Field(default=None, primary_key=True)
    repository_id: int = Field(index=True)
    status: RunStatus = Field(default=RunStatus.RUNNING)
    from_commit: Optional[str] = Field(default=None)
    to_commit: Optional[str] = Field(default=None)
    files_added: int = Field(default=0)
    files_changed: int = Field(default=0)
    files_deleted: int = Field(default=0)
    files_unchanged: int = Field(default=0)
    files_failed: int = Field(default=0)
    chunks_indexed: int = Field(default=0)
    cache_hits: int = Field(default=0)
    cache_misses: int = Field(default=0)
    embedding_calls: int = Field(default=0)
    error_message: Optional[str] = Field(
        default=None, sa_column=Column(Text, nullable=True)
    )
    started_at: datetime = Field(default_factory=utc_now)
    finished_at: Optional[datetime] = Field(default=None)
