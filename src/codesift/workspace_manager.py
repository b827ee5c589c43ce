"""
Workspace CRUD operations.

Workspaces group repositories; every repository belongs to exactly one and
searches are scoped to one. Each workspace has a unique slug that the CLI
accepts in place of its id.
"""

import logging
import re
from typing import Optional

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from .database import Database
from .models import Repository, Workspace, utc_now

logger = logging.getLogger(__name__)

DEFAULT_WORKSPACE_SLUG = "default"
DEFAULT_LIST_LIMIT = 20
MAX_LIST_LIMIT = 100


class WorkspaceError(Exception):
    """Base exception for workspace operations."""

    pass


class WorkspaceNotFoundError(WorkspaceError):
    """Raised when a workspace is not found."""

    pass


class WorkspaceAlreadyExistsError(WorkspaceError):
    """Raised when a slug is already taken."""

    pass


class WorkspaceNotEmptyError(WorkspaceError):
    """Raised when deleting a workspace that still has repositories."""

    pass


def slugify(name: str) -> str:
    """Lowercase ``name`` and collapse runs of other characters into ``-``."""
    return re.sub(r"[^a-z0-9]+", "-", name.lower()).strip("-")


def create_workspace(
    database: Database,
    name: str,
    slug: Optional[str] = None,
    description: Optional[str] = None,
) -> Workspace:
    """Create a workspace.

    Args:
        database: Target database
        name: Display name
        slug: Unique handle; derived from ``name`` when omitted
        description: Optional free text

    Returns:
        Created Workspace instance

    Raises:
        WorkspaceAlreadyExistsError: If the slug is taken
        WorkspaceError: If the name or slug is empty
    """
    name = name.strip()
    if not name:
        raise WorkspaceError("Workspace name cannot be empty")
    slug = slugify(slug if slug is not None else name)
    if not slug:
        raise WorkspaceError(f"Cannot derive a slug from '{name}'")

    def _create(session: Session) -> Workspace:
        if session.exec(select(Workspace).where(Workspace.slug == slug)).first() is not None:
            raise WorkspaceAlreadyExistsError(f"Workspace '{slug}' already exists")
        now = utc_now()
        workspace = Workspace(
            name=name, slug=slug, description=description, created_at=now, updated_at=now
        )
        session.add(workspace)
        session.flush()
        session.refresh(workspace)
        return workspace

    try:
        workspace = database.run_transaction(_create)
    except IntegrityError as e:
        raise WorkspaceAlreadyExistsError(f"Workspace '{slug}' already exists") from e
    logger.info("Created workspace %d (%s)", workspace.id, workspace.slug)
    return workspace


def get_workspace(database: Database, workspace_id: int) -> Workspace:
    """Get workspace by id.

    Raises:
        WorkspaceNotFoundError: If workspace is not found
    """
    workspace = database.run_query(lambda s: s.get(Workspace, workspace_id))
    if workspace is None:
        raise WorkspaceNotFoundError(f"Workspace {workspace_id} not found")
    return workspace


def get_workspace_by_slug(database: Database, slug: str) -> Workspace:
    """Get workspace by slug.

    Raises:
        WorkspaceNotFoundError: If workspace is not found
    """
    workspace = database.run_query(
        lambda s: s.exec(select(Workspace).where(Workspace.slug == slug)).first()
    )
    if workspace is None:
        raise WorkspaceNotFoundError(f"Workspace '{slug}' not found")
    return workspace


def resolve_workspace(database: Database, reference: str) -> Workspace:
    """Look a workspace up by numeric id or by slug."""
    reference = reference.strip()
    if reference.isdigit():
        return get_workspace(database, int(reference))
    return get_workspace_by_slug(database, reference)


def ensure_default_workspace(database: Database) -> Workspace:
    """Return the ``default`` workspace, creating it on first use."""
    try:
        return get_workspace_by_slug(database, DEFAULT_WORKSPACE_SLUG)
    except WorkspaceNotFoundError:
        pass
    try:
        return create_workspace(database, "Default", slug=DEFAULT_WORKSPACE_SLUG)
    except WorkspaceAlreadyExistsError:
        return get_workspace_by_slug(database, DEFAULT_WORKSPACE_SLUG)


def list_workspaces(
    database: Database, limit: int = DEFAULT_LIST_LIMIT, offset: int = 0
) -> list[Workspace]:
    """List workspaces, newest first.

    ``limit`` outside 1..100 falls back to the default page size.
    """
    if limit <= 0 or limit > MAX_LIST_LIMIT:
        limit = DEFAULT_LIST_LIMIT
    statement = (
        select(Workspace)
        .order_by(Workspace.created_at.desc(), Workspace.id.desc())
        .limit(limit)
        .offset(max(offset, 0))
    )
    return database.run_query(lambda s: list(s.exec(statement).all()))


def count_workspaces(database: Database) -> int:
    return int(
        database.run_query(lambda s: s.exec(select(func.count()).select_from(Workspace)).one())
    )


def delete_workspace(database: Database, workspace_id: int) -> None:
    """Delete an empty workspace.

    Raises:
        WorkspaceNotFoundError: If workspace is not found
        WorkspaceNotEmptyError: If repositories still belong to it
    """

    def _delete(session: Session) -> None:
        workspace = session.get(Workspace, workspace_id)
        if workspace is None:
            raise WorkspaceNotFoundError(f"Workspace {workspace_id} not found")
        repositories = session.exec(
            select(func.count())
            .select_from(Repository)
            .where(Repository.workspace_id == workspace_id)
        ).one()
        if repositories:
            raise WorkspaceNotEmptyError(
                f"Workspace {workspace_id} still has {repositories} repositories"
            )
        session.delete(workspace)

    database.run_transaction(_delete)
    logger.info("Deleted workspace %d", workspace_id)
