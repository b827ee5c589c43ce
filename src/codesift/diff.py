"""
Incremental diffing of a checkout against persisted file records.
"""

from collections.abc import Mapping
from dataclasses import dataclass
from enum import Enum


class FileChange(str, Enum):
    ADDED = "added"
    CHANGED = "changed"
    UNCHANGED = "unchanged"
    DELETED = "deleted"


@dataclass(frozen=True)
class FileDiff:
    """Partition of the union of current and previous paths."""

    added: tuple[str, ...] = ()
    changed: tuple[str, ...] = ()
    unchanged: tuple[str, ...] = ()
    deleted: tuple[str, ...] = ()

    def status_of(self, path: str) -> FileChange | None:
        for change, paths in (
            (FileChange.ADDED, self.added),
            (FileChange.CHANGED, self.changed),
            (FileChange.UNCHANGED, self.unchanged),
            (FileChange.DELETED, self.deleted),
        ):
            if path in paths:
                return change
        return None

    def counts(self) -> dict[str, int]:
        return {
            FileChange.ADDED.value: len(self.added),
            FileChange.CHANGED.value: len(self.changed),
            FileChange.UNCHANGED.value: len(self.unchanged),
            FileChange.DELETED.value: len(self.deleted),
        }

    @property
    def needs_indexing(self) -> frozenset[str]:
        """Paths whose chunks must be (re)computed."""
        return frozenset(self.added) | frozenset(self.changed)


def classify(current: Mapping[str, str], previous: Mapping[str, str]) -> FileDiff:
    """Classify every path of both snapshots into exactly one category.

    Args:
        current: ``path -> digest`` for the files on disk now
        previous: ``path -> digest`` for the persisted file records

    Returns:
        FileDiff with sorted path tuples
    """
    added: list[str] = []
    changed: list[str] = []
    unchanged: list[str] = []

    for path, digest in current.items():
        old = previous.get(path)
        if old is None:
            added.append(path)
        elif old != digest:
            changed.append(path)
        else:
            unchanged.append(path)

    deleted = [path for path in previous if path not in current]

    return FileDiff(
        added=tuple(sorted(added)),
        changed=tuple(sorted(changed)),
        unchanged=tuple(sorted(unchanged)),
        deleted=tuple(sorted(deleted)),
    )
