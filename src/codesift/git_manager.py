"""
Git checkout management for CodeSift.

This module provides the GitRepository class used by the indexing pipeline
to make shallow clones of repositories into the local clone directory and
to read the checked-out commit. Uses GitPython for git operations.
"""

import logging
import re
import shutil
from dataclasses import dataclass
from pathlib import Path
from urllib.parse import quote, urlsplit, urlunsplit

from git import GitCommandError, InvalidGitRepositoryError, NoSuchPathError, Repo

logger = logging.getLogger(__name__)

DEFAULT_BRANCH = "main"

# Substrings of git's stderr, checked in order
_CLONE_ERROR_PATTERNS: tuple[tuple[str, tuple[str, ...]], ...] = (
    (
        "auth",
        (
            "authentication failed",
            "could not read username",
            "could not read password",
            "permission denied",
            "invalid username or password",
            "returned error: 403",
        ),
    ),
    (
        "not_found",
        (
            "repository not found",
            "does not exist",
            "does not appear to be a git repository",
            "not found",
            "returned error: 404",
        ),
    ),
    (
        "network",
        (
            "could not resolve host",
            "network is unreachable",
            "temporary failure",
            "connection timed out",
            "connection refused",
            "operation timed out",
            "unable to access",
        ),
    ),
)


class GitOperationError(Exception):
    """Raised when a git operation on a checkout fails."""

    pass


class CloneError(GitOperationError):
    """Raised when a repository cannot be cloned.

    ``category`` is one of ``auth``, ``not_found``, ``network`` or ``clone``.
    """

    def __init__(self, category: str, detail: str):
        self.category = category
        self.detail = detail
        super().__init__(f"{category}: {detail}")


@dataclass(frozen=True)
class CheckoutMetadata:
    head_commit_sha: str
    branch: str


def classify_clone_error(message: str) -> str:
    lowered = message.lower()
    for category, fragments in _CLONE_ERROR_PATTERNS:
        if any(fragment in lowered for fragment in fragments):
            return category
    return "clone"


# GitPython formats captured output as "\n  stderr: '<output>'"
_STDERR_WRAPPER = re.compile(r"^stderr: '(.*)'$", re.DOTALL)


def _clone_error_detail(error: GitCommandError) -> str:
    stderr = error.stderr.strip() if isinstance(error.stderr, str) else ""
    stderr = _STDERR_WRAPPER.sub(r"\1", stderr)
    lines = [line.strip() for line in stderr.splitlines() if line.strip()]
    fatal = [line for line in lines if line.lower().startswith(("fatal:", "error:"))]
    if fatal:
        return fatal[-1]
    if lines:
        return lines[-1]
    return str(error)


def with_token(url: str, token: str | None) -> str:
    """Embed an access token as basic-auth credentials in an https URL.

    Other URL schemes (ssh, local paths) are returned unchanged.
    """
    if not token:
        return url
    parts = urlsplit(url)
    if parts.scheme not in ("http", "https") or not parts.hostname:
        return url
    netloc = f"x-access-token:{quote(token, safe='')}@{parts.hostname}"
    if parts.port:
        netloc += f":{parts.port}"
    return urlunsplit((parts.scheme, netloc, parts.path, parts.query, parts.fragment))


def redact(text: str, token: str | None) -> str:
    if not token:
        return text
    return text.replace(quote(token, safe=""), "***").replace(token, "***")


class GitRepository:
    """
    Git checkout management class for CodeSift.

    Each repository is checked out into ``<clone_dir>/<repository id>``.
    A clone always replaces any previous checkout.
    """

    def __init__(self, clone_dir: str | Path, token: str | None = None):
        """
        Initialize GitRepository manager.

        Args:
            clone_dir: Directory holding one checkout per repository
            token: Optional access token for private https repositories
        """
        self.clone_dir = Path(clone_dir)
        self.token = token
        self.clone_dir.mkdir(parents=True, exist_ok=True)

    def get_local_path(self, repository_id: int) -> Path:
        return self.clone_dir / str(repository_id)

    def clone(self, url: str, repository_id: int) -> Path:
        """
        Shallow-clone a repository, replacing any existing checkout.

        Args:
            url: Git repository URL or local path
            repository_id: Repository the checkout belongs to

        Returns:
            Path of the fresh checkout

        Raises:
            CloneError: If git fails; partial checkouts are removed
        """
        local_path = self.get_local_path(repository_id)
        self.remove_checkout(repository_id)

        logger.info("Cloning %s into %s", url, local_path)
        try:
            Repo.clone_from(
                with_token(url, self.token),
                local_path,
                depth=1,
                single_branch=True,
            )
        except GitCommandError as e:
            shutil.rmtree(local_path, ignore_errors=True)
            detail = redact(_clone_error_detail(e), self.token)
            raise CloneError(classify_clone_error(detail), detail) from e
        except OSError as e:
            shutil.rmtree(local_path, ignore_errors=True)
            raise CloneError("clone", str(e)) from e

        return local_path

    def get_metadata(self, repository_id: int) -> CheckoutMetadata:
        """
        Read the checked-out commit and branch.

        Raises:
            GitOperationError: If the checkout is missing or has no HEAD commit
        """
        local_path = self.get_local_path(repository_id)
        try:
            repo = Repo(local_path)
            sha = repo.head.commit.hexsha
            branch = DEFAULT_BRANCH if repo.head.is_detached else repo.active_branch.name
        except (InvalidGitRepositoryError, NoSuchPathError) as e:
            raise GitOperationError(f"not a git checkout: {local_path}") from e
        except (ValueError, TypeError, GitCommandError) as e:
            # ValueError: HEAD points at an unborn branch
            raise GitOperationError(f"failed to read HEAD: {e}") from e
        return CheckoutMetadata(head_commit_sha=sha, branch=branch)

    def remove_checkout(self, repository_id: int) -> bool:
        """
        Delete a repository's checkout.

        Returns:
            True if a checkout existed and was removed
        """
        local_path = self.get_local_path(repository_id)
        if not local_path.exists():
            return False
        shutil.rmtree(local_path)
        return True

    def cleanup_orphaned_checkouts(self, known_ids: set[int]) -> list[str]:
        """
        Remove checkout directories that belong to no known repository.

        Returns:
            Names of the removed directories
        """
        removed: list[str] = []
        for local_dir in sorted(self.clone_dir.iterdir()):
            if not local_dir.is_dir():
                continue
            if local_dir.name.isdigit() and int(local_dir.name) in known_ids:
                continue
            try:
                shutil.rmtree(local_dir)
            except OSError as e:
                logger.warning("Failed to remove orphaned checkout %s: %s", local_dir, e)
                continue
            removed.append(local_dir.name)
        return removed
