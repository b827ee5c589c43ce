"""
Repository CRUD operations, status transitions and the job queue claim.

This module provides high-level functions for managing repository records:
registering, reading, listing and removing repositories, the compare-and-swap
status transitions the pipeline relies on, the re-index trigger, stale run
recovery and the atomic claim used by the worker pool.
"""

import logging
import re
from datetime import datetime, timedelta
from typing import Any, Final

from sqlalchemy import delete, func, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import aliased
from sqlmodel import Session, select

from .database import Database
from .git_manager import DEFAULT_BRANCH
from .models import (
    IndexedFile,
    IndexRun,
    InvalidStatusTransitionError,
    Repository,
    RepoStatus,
    RunStatus,
    Workspace,
    utc_now,
)
from .vector_store import VectorFilter, VectorStore
from .workspace_manager import WorkspaceNotFoundError

logger = logging.getLogger(__name__)

DEFAULT_LIST_LIMIT = 20
MAX_LIST_LIMIT = 100


class RepositoryError(Exception):
    """Base exception for repository operations."""

    pass


class RepositoryNotFoundError(RepositoryError):
    """Raised when a repository is not found."""

    pass


class RepositoryAlreadyExistsError(RepositoryError):
    """Raised when trying to add a repository that already exists."""

    pass


class RepositoryAlreadyActiveError(RepositoryError):
    """Raised when a re-index is requested while a run owns the repository."""

    pass


class RunOwnershipLostError(RepositoryError):
    """Raised when a run writes to a repository that another run now owns."""

    def __init__(self, repository_id: int, run_id: int):
        self.repository_id = repository_id
        self.run_id = run_id
        super().__init__(f"Index run {run_id} no longer owns repository {repository_id}")


class _NoWork:
    """Result of a claim when no repository is pending."""

    _instance: "_NoWork | None" = None

    def __new__(cls) -> "_NoWork":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return "NO_WORK"


NO_WORK: Final = _NoWork()


def normalize_url(url: str) -> str:
    """Strip whitespace, a trailing slash and a ``.git`` suffix."""
    url = url.strip().rstrip("/")
    if url.endswith(".git"):
        url = url[: -len(".git")]
    return url.rstrip("/")


def parse_repository_url(url: str) -> tuple[str, str]:
    """Extract ``(owner, name)`` from a repository URL.

    Handles ``https://host/owner/name``, ``git@host:owner/name`` and local
    paths; components are the last two ``/``- or ``:``-separated parts.
    """
    parts = [p for p in re.split(r"[/:]", normalize_url(url)) if p]
    if len(parts) >= 2:
        return parts[-2], parts[-1]
    if len(parts) == 1:
        return "", parts[0]
    return "", ""


def add_repository(database: Database, url: str, workspace_id: int) -> Repository:
    """Register a repository for indexing in the ``pending`` state.

    Args:
        database: Target database
        url: Git repository URL
        workspace_id: Owning workspace

    Returns:
        Created Repository instance

    Raises:
        RepositoryAlreadyExistsError: If the URL is already registered in the workspace
        RepositoryError: If the URL is empty
        WorkspaceNotFoundError: If the workspace does not exist
    """
    normalized = normalize_url(url)
    if not normalized:
        raise RepositoryError("Repository URL cannot be empty")
    owner, name = parse_repository_url(normalized)

    def _create(session: Session) -> Repository:
        if session.get(Workspace, workspace_id) is None:
            raise WorkspaceNotFoundError(f"Workspace {workspace_id} not found")
        existing = session.exec(
            select(Repository).where(
                Repository.workspace_id == workspace_id, Repository.url == normalized
            )
        ).first()
        if existing is not None:
            raise RepositoryAlreadyExistsError(
                f"Repository '{normalized}' already exists in workspace {workspace_id}"
            )

        now = utc_now()
        repository = Repository(
            workspace_id=workspace_id,
            url=normalized,
            owner=owner,
            name=name,
            default_branch=DEFAULT_BRANCH,
            status=RepoStatus.PENDING,
            created_at=now,
            updated_at=now,
        )
        session.add(repository)
        session.flush()
        session.refresh(repository)
        return repository

    try:
        return database.run_transaction(_create)
    except IntegrityError as e:
        raise RepositoryAlreadyExistsError(
            f"Repository '{normalized}' already exists in workspace {workspace_id}"
        ) from e


def get_repository(database: Database, repository_id: int) -> Repository:
    """Get repository by id.

    Raises:
        RepositoryNotFoundError: If repository is not found
    """
    repository = database.run_query(lambda s: s.get(Repository, repository_id))
    if repository is None:
        raise RepositoryNotFoundError(f"Repository {repository_id} not found")
    return repository


def list_repositories(
    database: Database,
    workspace_id: int | None = None,
    status: RepoStatus | None = None,
    limit: int = DEFAULT_LIST_LIMIT,
    offset: int = 0,
) -> list[Repository]:
    """List repositories, newest first, with optional filters.

    ``limit`` outside 1..100 falls back to the default page size.
    """
    if limit <= 0 or limit > MAX_LIST_LIMIT:
        limit = DEFAULT_LIST_LIMIT
    offset = max(offset, 0)

    statement = select(Repository)
    if workspace_id is not None:
        statement = statement.where(Repository.workspace_id == workspace_id)
    if status is not None:
        statement = statement.where(Repository.status == status)
    statement = (
        statement.order_by(Repository.created_at.desc(), Repository.id.desc())
        .limit(limit)
        .offset(offset)
    )

    return database.run_query(lambda s: list(s.exec(statement).all()))


def count_repositories(
    database: Database,
    workspace_id: int | None = None,
    status: RepoStatus | None = None,
) -> int:
    statement = select(func.count()).select_from(Repository)
    if workspace_id is not None:
        statement = statement.where(Repository.workspace_id == workspace_id)
    if status is not None:
        statement = statement.where(Repository.status == status)
    return int(database.run_query(lambda s: s.exec(statement).one()))


def get_repository_info(database: Database, repository_id: int) -> dict[str, Any]:
    """Get repository details including live file and chunk totals.

    Raises:
        RepositoryNotFoundError: If repository is not found
    """

    def _info(session: Session) -> dict[str, Any] | None:
        repository = session.get(Repository, repository_id)
        if repository is None:
            return None
        file_count, chunk_count = session.exec(
            select(
                func.count(IndexedFile.id),
                func.coalesce(func.sum(IndexedFile.chunk_count), 0),
            ).where(IndexedFile.repository_id == repository_id)
        ).one()
        return {
            "id": repository.id,
            "workspace_id": repository.workspace_id,
            "url": repository.url,
            "owner": repository.owner,
            "name": repository.name,
            "default_branch": repository.default_branch,
            "status": repository.status.value,
            "error_message": repository.error_message,
            "last_commit_sha": repository.last_commit_sha,
            "file_count": int(file_count),
            "chunk_count": int(chunk_count),
            "created_at": repository.created_at,
            "updated_at": repository.updated_at,
        }

    info = database.run_query(_info)
    if info is None:
        raise RepositoryNotFoundError(f"Repository {repository_id} not found")
    return info


def list_index_runs(
    database: Database, repository_id: int, limit: int = DEFAULT_LIST_LIMIT
) -> list[IndexRun]:
    """Most recent pipeline runs of a repository, newest first."""
    statement = (
        select(IndexRun)
        .where(IndexRun.repository_id == repository_id)
        .order_by(IndexRun.started_at.desc(), IndexRun.id.desc())
        .limit(limit)
    )
    return database.run_query(lambda s: list(s.exec(statement).all()))


def transition_status(
    database: Database,
    repository_id: int,
    target: RepoStatus,
    from_statuses: tuple[RepoStatus, ...] | None = None,
    run_id: int | None = None,
    **values: Any,
) -> Repository:
    """Move a repository to ``target`` if the transition table allows it.

    The write is a single conditional UPDATE guarded by the set of allowed
    predecessor statuses, so concurrent writers cannot both win.

    Args:
        database: Target database
        repository_id: Repository to update
        target: New status
        from_statuses: Narrow the allowed predecessors further
        run_id: Only succeed while this index run owns the repository
        **values: Extra columns to write in the same statement

    Returns:
        The updated repository

    Raises:
        RepositoryNotFoundError: If repository is not found
        InvalidStatusTransitionError: If the current status may not move to ``target``
        RunOwnershipLostError: If ``run_id`` is given and another run owns the repository
    """
    predecessors = RepoStatus.predecessors_of(target)
    if from_statuses is not None:
        predecessors = tuple(s for s in predecessors if s in from_statuses)

    statement = (
        update(Repository)
        .where(Repository.id == repository_id)
        .where(Repository.status.in_(predecessors))
    )
    if run_id is not None:
        statement = statement.where(Repository.active_run_id == run_id)

    def _transition(session: Session) -> Repository | tuple[RepoStatus, int | None] | None:
        result = session.execute(
            statement.values(status=target, updated_at=utc_now(), **values).execution_options(
                synchronize_session=False
            )
        )
        if result.rowcount == 0:
            return session.exec(
                select(Repository.status, Repository.active_run_id).where(
                    Repository.id == repository_id
                )
            ).first()
        return session.get(Repository, repository_id, populate_existing=True)

    outcome = database.run_transaction(_transition)
    if outcome is None:
        raise RepositoryNotFoundError(f"Repository {repository_id} not found")
    if isinstance(outcome, Repository):
        return outcome

    current, owner = outcome
    if run_id is not None and current in predecessors and owner != run_id:
        raise RunOwnershipLostError(repository_id, run_id)
    raise InvalidStatusTransitionError(current, target)


def mark_cloning(database: Database, repository_id: int) -> Repository:
    return transition_status(database, repository_id, RepoStatus.CLONING)


def mark_cloned(
    database: Database,
    repository_id: int,
    commit_sha: str,
    branch: str,
    run_id: int | None = None,
) -> Repository:
    """Record the cloned commit and move ``cloning -> indexing``."""
    return transition_status(
        database,
        repository_id,
        RepoStatus.INDEXING,
        run_id=run_id,
        last_commit_sha=commit_sha,
        default_branch=branch,
    )


def mark_failed(
    database: Database, repository_id: int, message: str, run_id: int | None = None
) -> Repository:
    """Move an active repository to ``failed`` and persist the error message."""
    return transition_status(
        database,
        repository_id,
        RepoStatus.FAILED,
        run_id=run_id,
        error_message=message,
        active_run_id=None,
    )


def begin_index_run(database: Database, repository_id: int) -> IndexRun:
    """Record a new ``running`` index run and make it the repository's owner.

    Both writes happen in one transaction, and only while the repository
    is ``cloning``.

    Raises:
        RepositoryNotFoundError: If repository is not found
        InvalidStatusTransitionError: If the repository is not ``cloning``
    """

    def _begin(session: Session) -> IndexRun | None:
        repository = session.get(Repository, repository_id)
        if repository is None:
            return None
        run = IndexRun(
            repository_id=repository_id,
            status=RunStatus.RUNNING,
            from_commit=repository.last_commit_sha,
            started_at=utc_now(),
        )
        session.add(run)
        session.flush()
        result = session.execute(
            update(Repository)
            .where(Repository.id == repository_id)
            .where(Repository.status == RepoStatus.CLONING)
            .values(active_run_id=run.id, updated_at=utc_now())
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            current = session.exec(
                select(Repository.status).where(Repository.id == repository_id)
            ).one()
            raise InvalidStatusTransitionError(current, RepoStatus.CLONING)
        session.refresh(run)
        return run

    run = database.run_transaction(_begin)
    if run is None:
        raise RepositoryNotFoundError(f"Repository {repository_id} not found")
    return run


def touch_repository(database: Database, repository_id: int, run_id: int) -> bool:
    """Heartbeat of a running pipeline.

    Bumps ``updated_at`` so stale recovery leaves the repository alone,
    but only while ``run_id`` still owns it in an active status.

    Returns:
        False if the run has lost the repository (re-queued, removed or
        claimed by another run)
    """
    active = [s for s in RepoStatus if s.is_active]

    def _touch(session: Session) -> bool:
        result = session.execute(
            update(Repository)
            .where(Repository.id == repository_id)
            .where(Repository.active_run_id == run_id)
            .where(Repository.status.in_(active))
            .values(updated_at=utc_now())
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    return database.run_transaction(_touch)


def mark_completed(
    database: Database, repository_id: int, run_id: int | None = None
) -> Repository:
    """Move ``indexing -> completed`` and refresh the denormalized counts."""

    def _counts(session: Session) -> tuple[int, int]:
        file_count, chunk_count = session.exec(
            select(
                func.count(IndexedFile.id),
                func.coalesce(func.sum(IndexedFile.chunk_count), 0),
            ).where(IndexedFile.repository_id == repository_id)
        ).one()
        return int(file_count), int(chunk_count)

    file_count, chunk_count = database.run_query(_counts)
    return transition_status(
        database,
        repository_id,
        RepoStatus.COMPLETED,
        run_id=run_id,
        error_message=None,
        active_run_id=None,
        file_count=file_count,
        chunk_count=chunk_count,
    )


def request_reindex(database: Database, repository_id: int) -> Repository:
    """Queue a repository for re-indexing.

    Only resets the status to ``pending``; the worker pool picks it up on
    its next poll.

    Raises:
        RepositoryNotFoundError: If repository is not found
        RepositoryAlreadyActiveError: If a run currently owns the repository
    """
    try:
        return transition_status(
            database,
            repository_id,
            RepoStatus.PENDING,
            from_statuses=(RepoStatus.COMPLETED, RepoStatus.FAILED),
            error_message=None,
        )
    except InvalidStatusTransitionError as e:
        if e.current.is_active:
            raise RepositoryAlreadyActiveError(
                f"Repository {repository_id} is already being indexed"
            ) from e
        if e.current is RepoStatus.PENDING:
            return get_repository(database, repository_id)
        raise


def claim_pending_repository(database: Database) -> "Repository | _NoWork":
    """Atomically claim the oldest pending repository.

    A single conditional UPDATE selects the oldest ``pending`` row (row
    locks are skipped where the engine supports ``FOR UPDATE SKIP LOCKED``)
    and moves it to ``cloning`` in the same statement.

    Returns:
        The claimed repository, or ``NO_WORK`` if nothing is pending
    """
    pending = aliased(Repository)
    oldest_pending = (
        select(pending.id)
        .where(pending.status == RepoStatus.PENDING)
        .order_by(pending.created_at, pending.id)
        .limit(1)
        .with_for_update(skip_locked=True)
        .scalar_subquery()
    )

    def _claim(session: Session) -> Repository | None:
        result = session.execute(
            update(Repository)
            .where(Repository.id == oldest_pending)
            .where(Repository.status == RepoStatus.PENDING)
            .values(status=RepoStatus.CLONING, updated_at=utc_now())
            .returning(Repository.id)
            .execution_options(synchronize_session=False)
        )
        claimed_id = result.scalar_one_or_none()
        if claimed_id is None:
            return None
        return session.get(Repository, claimed_id, populate_existing=True)

    repository = database.run_transaction(_claim)
    if repository is None:
        return NO_WORK
    return repository


def recover_stale_repositories(
    database: Database, older_than: timedelta, now: datetime | None = None
) -> list[int]:
    """Return repositories stuck in an active status to ``pending``.

    A run that crashed leaves its repository in ``cloning`` or
    ``indexing``; once ``updated_at`` is older than ``older_than`` the
    repository is re-queued.

    Returns:
        Ids of the re-queued repositories
    """
    cutoff = (now or utc_now()) - older_than
    active = [s for s in RepoStatus if s.is_active]

    def _recover(session: Session) -> list[int]:
        result = session.execute(
            update(Repository)
            .where(Repository.status.in_(active))
            .where(Repository.updated_at < cutoff)
            .values(status=RepoStatus.PENDING, active_run_id=None, updated_at=utc_now())
            .returning(Repository.id)
            .execution_options(synchronize_session=False)
        )
        return sorted(result.scalars().all())

    recovered = database.run_transaction(_recover)
    for repository_id in recovered:
        logger.warning("Re-queued stale repository %d", repository_id)
    return recovered


def remove_repository(
    database: Database, vector_store: VectorStore, repository_id: int
) -> bool:
    """Remove a repository with its files, runs and vector-store points.

    Vector points go first so a failure leaves the records in place for
    another attempt.

    Returns:
        True if the repository was removed, False if it didn't exist
    """
    repository = database.run_query(lambda s: s.get(Repository, repository_id))
    if repository is None:
        return False

    vector_store.delete_by_filter(
        VectorFilter(
            workspace_id=repository.workspace_id, repository_id=repository_id
        )
    )

    def _delete(session: Session) -> None:
        session.execute(
            delete(IndexedFile).where(IndexedFile.repository_id == repository_id)
        )
        session.execute(delete(IndexRun).where(IndexRun.repository_id == repository_id))
        session.execute(delete(Repository).where(Repository.id == repository_id))

    database.run_transaction(_delete)
    logger.info("Removed repository %d (%s)", repository_id, repository.url)
    return True
