"""
Tests for repository CRUD, status transitions and the job queue claim.
"""

import threading
from datetime import timedelta

import pytest
from sqlmodel import select

from codesift.models import (
    IndexedFile,
    IndexRun,
    InvalidStatusTransitionError,
    RepoStatus,
    RunStatus,
    utc_now,
)
from codesift.repository_manager import (
    NO_WORK,
    RepositoryAlreadyActiveError,
    RepositoryAlreadyExistsError,
    RepositoryError,
    RepositoryNotFoundError,
    RunOwnershipLostError,
    add_repository,
    begin_index_run,
    claim_pending_repository,
    count_repositories,
    get_repository,
    get_repository_info,
    list_index_runs,
    list_repositories,
    mark_cloned,
    mark_cloning,
    mark_completed,
    mark_failed,
    normalize_url,
    parse_repository_url,
    recover_stale_repositories,
    remove_repository,
    request_reindex,
    touch_repository,
    transition_status,
)
from codesift.vector_store import VectorFilter, VectorPoint, file_key_for, point_id
from codesift.workspace_manager import WorkspaceNotFoundError

from conftest import InMemoryVectorStore


def _drive_to(database, repository_id, status):
    """Walk a pending repository through the pipeline statuses."""
    if status is RepoStatus.PENDING:
        return
    mark_cloning(database, repository_id)
    if status is RepoStatus.CLONING:
        return
    if status is RepoStatus.FAILED:
        mark_failed(database, repository_id, "boom")
        return
    mark_cloned(database, repository_id, "abc123", "main")
    if status is RepoStatus.COMPLETED:
        mark_completed(database, repository_id)


class TestUrlParsing:
    """Test URL normalization and owner/name extraction."""

    @pytest.mark.parametrize(
        "raw, expected",
        [
            ("https://github.com/acme/widget.git", "https://github.com/acme/widget"),
            ("  https://github.com/acme/widget/  ", "https://github.com/acme/widget"),
            ("git@github.com:acme/widget.git", "git@github.com:acme/widget"),
        ],
    )
    def test_normalize_url(self, raw, expected):
        """Test that suffixes and whitespace are stripped."""
        assert normalize_url(raw) == expected

    @pytest.mark.parametrize(
        "url, expected",
        [
            ("https://github.com/acme/widget", ("acme", "widget")),
            ("git@github.com:acme/widget.git", ("acme", "widget")),
            ("/srv/git/widget", ("git", "widget")),
            ("widget", ("", "widget")),
        ],
    )
    def test_parse_repository_url(self, url, expected):
        """Test owner and name extraction."""
        assert parse_repository_url(url) == expected


class TestAddAndRead:
    """Test registering and reading repositories."""

    def test_add_repository(self, database):
        """Test that a new repository starts pending."""
        repo = add_repository(database, "https://github.com/acme/widget.git", workspace_id=3)

        assert repo.id is not None
        assert repo.url == "https://github.com/acme/widget"
        assert repo.owner == "acme"
        assert repo.name == "widget"
        assert repo.status is RepoStatus.PENDING
        assert repo.default_branch == "main"
        assert get_repository(database, repo.id).url == repo.url

    def test_duplicate_in_same_workspace_rejected(self, database):
        """Test that the same normalized URL cannot be added twice."""
        add_repository(database, "https://github.com/acme/widget", workspace_id=1)
        with pytest.raises(RepositoryAlreadyExistsError):
            add_repository(database, "https://github.com/acme/widget.git/", workspace_id=1)

    def test_same_url_in_other_workspace_allowed(self, database):
        """Test that uniqueness is scoped to the workspace."""
        a = add_repository(database, "https://github.com/acme/widget", workspace_id=1)
        b = add_repository(database, "https://github.com/acme/widget", workspace_id=2)
        assert a.id != b.id

    def test_empty_url_rejected(self, database):
        """Test that a blank URL is refused."""
        with pytest.raises(RepositoryError):
            add_repository(database, "   ", workspace_id=1)

    def test_unknown_workspace_rejected(self, database):
        """Test that a repository needs an existing workspace."""
        with pytest.raises(WorkspaceNotFoundError):
            add_repository(database, "https://github.com/acme/widget", workspace_id=999)
        assert count_repositories(database) == 0

    def test_get_missing_repository(self, database):
        """Test that an unknown id raises."""
        with pytest.raises(RepositoryNotFoundError):
            get_repository(database, 999)
        with pytest.raises(RepositoryNotFoundError):
            get_repository_info(database, 999)

    def test_get_repository_info_counts_files(self, database):
        """Test that info sums live file and chunk counts."""
        repo = add_repository(database, "https://github.com/acme/widget", workspace_id=1)

        def _add_files(session):
            for path, chunks in (("a.py", 2), ("b.py", 3)):
                session.add(
                    IndexedFile(
                        repository_id=repo.id,
                        path=path,
                        file_key=file_key_for(repo.id, path),
                        content_hash="h-" + path,
                        chunk_count=chunks,
                    )
                )

        database.run_transaction(_add_files)
        info = get_repository_info(database, repo.id)

        assert info["file_count"] == 2
        assert info["chunk_count"] == 5
        assert info["status"] == "pending"


class TestListing:
    """Test listing and counting."""

    def test_list_newest_first_with_filters(self, database):
        """Test ordering and workspace/status filters."""
        first = add_repository(database, "https://github.com/a/one", workspace_id=1)
        second = add_repository(database, "https://github.com/a/two", workspace_id=1)
        add_repository(database, "https://github.com/a/three", workspace_id=2)
        _drive_to(database, first.id, RepoStatus.FAILED)

        ids = [r.id for r in list_repositories(database, workspace_id=1)]
        assert ids == [second.id, first.id]

        failed = list_repositories(database, status=RepoStatus.FAILED)
        assert [r.id for r in failed] == [first.id]
        assert count_repositories(database) == 3
        assert count_repositories(database, workspace_id=2) == 1

    def test_limit_and_offset(self, database):
        """Test pagination and limit fallback."""
        for i in range(25):
            add_repository(database, f"https://github.com/a/r{i}", workspace_id=1)

        assert len(list_repositories(database, limit=5)) == 5
        assert len(list_repositories(database, limit=0)) == 20
        assert len(list_repositories(database, limit=500)) == 20
        assert len(list_repositories(database, limit=20, offset=20)) == 5


class TestStatusTransitions:
    """Test compare-and-swap status changes."""

    def test_happy_path(self, database):
        """Test pending -> cloning -> indexing -> completed."""
        repo = add_repository(database, "https://github.com/a/b", workspace_id=1)

        assert mark_cloning(database, repo.id).status is RepoStatus.CLONING
        cloned = mark_cloned(database, repo.id, "deadbeef", "trunk")
        assert cloned.status is RepoStatus.INDEXING
        assert cloned.last_commit_sha == "deadbeef"
        assert cloned.default_branch == "trunk"

        done = mark_completed(database, repo.id)
        assert done.status is RepoStatus.COMPLETED
        assert done.file_count == 0

    def test_mark_failed_records_message(self, database):
        """Test that failure stores the error message."""
        repo = add_repository(database, "https://github.com/a/b", workspace_id=1)
        mark_cloning(database, repo.id)

        failed = mark_failed(database, repo.id, "clone failed (auth): denied")
        assert failed.status is RepoStatus.FAILED
        assert failed.error_message == "clone failed (auth): denied"

    def test_invalid_transition_rejected(self, database):
        """Test that pending cannot jump to completed."""
        repo = add_repository(database, "https://github.com/a/b", workspace_id=1)

        with pytest.raises(InvalidStatusTransitionError) as exc_info:
            mark_completed(database, repo.id)

        assert exc_info.value.current is RepoStatus.PENDING
        assert exc_info.value.requested is RepoStatus.COMPLETED
        assert get_repository(database, repo.id).status is RepoStatus.PENDING

    def test_transition_missing_repository(self, database):
        """Test that transitions on an unknown id raise not found."""
        with pytest.raises(RepositoryNotFoundError):
            transition_status(database, 42, RepoStatus.CLONING)

    def test_concurrent_cas_has_single_winner(self, database):
        """Test that only one of many racing transitions succeeds."""
        repo = add_repository(database, "https://github.com/a/b", workspace_id=1)
        outcomes = []
        lock = threading.Lock()

        def _attempt():
            try:
                mark_cloning(database, repo.id)
                result = "won"
            except InvalidStatusTransitionError:
                result = "lost"
            with lock:
                outcomes.append(result)

        threads = [threading.Thread(target=_attempt) for _ in range(6)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert outcomes.count("won") == 1
        assert outcomes.count("lost") == 5

    def test_transition_table(self):
        """Test the closed transition table."""
        assert RepoStatus.PENDING.can_transition_to(RepoStatus.CLONING)
        assert not RepoStatus.PENDING.can_transition_to(RepoStatus.INDEXING)
        assert not RepoStatus.COMPLETED.can_transition_to(RepoStatus.INDEXING)
        assert set(RepoStatus.predecessors_of(RepoStatus.PENDING)) == {
            RepoStatus.CLONING,
            RepoStatus.INDEXING,
            RepoStatus.COMPLETED,
            RepoStatus.FAILED,
        }


class TestRequestReindex:
    """Test the re-index trigger."""

    @pytest.mark.parametrize("status", [RepoStatus.COMPLETED, RepoStatus.FAILED])
    def test_terminal_repository_requeued(self, database, status):
        """Test that finished repositories go back to pending."""
        repo = add_repository(database, "https://github.com/a/b", workspace_id=1)
        _drive_to(database, repo.id, status)

        requeued = request_reindex(database, repo.id)
        assert requeued.status is RepoStatus.PENDING
        assert requeued.error_message is None

    @pytest.mark.parametrize("status", [RepoStatus.CLONING, RepoStatus.INDEXING])
    def test_active_repository_refused(self, database, status):
        """Test that a repository owned by a run is not reset."""
        repo = add_repository(database, "https://github.com/a/b", workspace_id=1)
        _drive_to(database, repo.id, status)

        with pytest.raises(RepositoryAlreadyActiveError):
            request_reindex(database, repo.id)
        assert get_repository(database, repo.id).status is status

    def test_pending_repository_unchanged(self, database):
        """Test that re-queueing a pending repository is a no-op."""
        repo = add_repository(database, "https://github.com/a/b", workspace_id=1)
        assert request_reindex(database, repo.id).status is RepoStatus.PENDING

    def test_missing_repository(self, database):
        """Test that an unknown id raises not found."""
        with pytest.raises(RepositoryNotFoundError):
            request_reindex(database, 77)


class TestClaim:
    """Test the atomic job queue claim."""

    def test_no_work(self, database):
        """Test that an empty queue returns the sentinel."""
        result = claim_pending_repository(database)
        assert result is NO_WORK
        assert not result

    def test_claims_oldest_first(self, database):
        """Test FIFO claim order and the cloning transition."""
        first = add_repository(database, "https://github.com/a/one", workspace_id=1)
        second = add_repository(database, "https://github.com/a/two", workspace_id=1)

        claimed = claim_pending_repository(database)
        assert claimed.id == first.id
        assert claimed.status is RepoStatus.CLONING
        assert claim_pending_repository(database).id == second.id
        assert claim_pending_repository(database) is NO_WORK

    def test_skips_non_pending(self, database):
        """Test that only pending repositories are claimed."""
        done = add_repository(database, "https://github.com/a/one", workspace_id=1)
        _drive_to(database, done.id, RepoStatus.COMPLETED)

        assert claim_pending_repository(database) is NO_WORK

    def test_concurrent_claims_are_exclusive(self, database):
        """Test that racing workers never claim the same repository."""
        ids = {
            add_repository(database, f"https://github.com/a/r{i}", workspace_id=1).id
            for i in range(20)
        }
        claimed: list[int] = []
        lock = threading.Lock()

        def _worker():
            while True:
                result = claim_pending_repository(database)
                if result is NO_WORK:
                    return
                with lock:
                    claimed.append(result.id)

        threads = [threading.Thread(target=_worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert sorted(claimed) == sorted(ids)
        assert len(set(claimed)) == len(claimed)


class TestStaleRecovery:
    """Test re-queueing of abandoned runs."""

    def test_recovers_only_old_active_repositories(self, database):
        """Test that stale active rows return to pending."""
        cloning = add_repository(database, "https://github.com/a/one", workspace_id=1)
        indexing = add_repository(database, "https://github.com/a/two", workspace_id=1)
        done = add_repository(database, "https://github.com/a/three", workspace_id=1)
        _drive_to(database, cloning.id, RepoStatus.CLONING)
        _drive_to(database, indexing.id, RepoStatus.INDEXING)
        _drive_to(database, done.id, RepoStatus.COMPLETED)

        assert recover_stale_repositories(database, timedelta(hours=1)) == []

        later = utc_now() + timedelta(hours=2)
        recovered = recover_stale_repositories(database, timedelta(hours=1), now=later)

        assert recovered == sorted([cloning.id, indexing.id])
        assert get_repository(database, cloning.id).status is RepoStatus.PENDING
        assert get_repository(database, indexing.id).status is RepoStatus.PENDING
        assert get_repository(database, done.id).status is RepoStatus.COMPLETED

    def test_recovery_clears_run_owner(self, database):
        """Test that a re-queued repository no longer belongs to its old run."""
        repo = add_repository(database, "https://github.com/a/b", workspace_id=1)
        mark_cloning(database, repo.id)
        run = begin_index_run(database, repo.id)

        later = utc_now() + timedelta(hours=2)
        assert recover_stale_repositories(database, timedelta(hours=1), now=later) == [repo.id]

        recovered = get_repository(database, repo.id)
        assert recovered.status is RepoStatus.PENDING
        assert recovered.active_run_id is None
        assert touch_repository(database, repo.id, run.id) is False


class TestRunOwnership:
    """Test the run ownership token and heartbeat."""

    def _owned(self, database):
        repo = add_repository(database, "https://github.com/a/b", workspace_id=1)
        mark_cloning(database, repo.id)
        return repo, begin_index_run(database, repo.id)

    def test_begin_index_run_binds_owner(self, database):
        """Test that the new run is running and owns the repository."""
        repo, run = self._owned(database)

        assert run.status is RunStatus.RUNNING
        assert run.repository_id == repo.id
        assert get_repository(database, repo.id).active_run_id == run.id

    def test_begin_index_run_requires_cloning(self, database):
        """Test that a pending repository cannot start a run, and no run row is left."""
        repo = add_repository(database, "https://github.com/a/b", workspace_id=1)

        with pytest.raises(InvalidStatusTransitionError):
            begin_index_run(database, repo.id)
        assert list_index_runs(database, repo.id) == []

    def test_begin_index_run_missing_repository(self, database):
        """Test that an unknown id raises not found."""
        with pytest.raises(RepositoryNotFoundError):
            begin_index_run(database, 404)

    def test_touch_bumps_updated_at(self, database):
        """Test that the heartbeat advances the last-progress timestamp."""
        repo, run = self._owned(database)
        before = get_repository(database, repo.id).updated_at

        assert touch_repository(database, repo.id, run.id) is True
        assert get_repository(database, repo.id).updated_at >= before

    def test_touch_by_other_run_refused(self, database):
        """Test that a run that does not own the repository cannot renew it."""
        repo, run = self._owned(database)
        assert touch_repository(database, repo.id, run.id + 1) is False

    def test_owned_transitions(self, database):
        """Test that the owning run can drive the repository to completed."""
        repo, run = self._owned(database)

        mark_cloned(database, repo.id, "abc", "main", run_id=run.id)
        done = mark_completed(database, repo.id, run_id=run.id)

        assert done.status is RepoStatus.COMPLETED
        assert done.active_run_id is None

    def test_superseded_run_cannot_write(self, database):
        """Test that the old run loses once recovery and a new run take over."""
        repo, old_run = self._owned(database)
        later = utc_now() + timedelta(hours=2)
        recover_stale_repositories(database, timedelta(hours=1), now=later)
        mark_cloning(database, repo.id)
        new_run = begin_index_run(database, repo.id)

        with pytest.raises(RunOwnershipLostError) as exc_info:
            mark_cloned(database, repo.id, "abc", "main", run_id=old_run.id)
        assert exc_info.value.run_id == old_run.id

        with pytest.raises(RunOwnershipLostError):
            mark_failed(database, repo.id, "late failure", run_id=old_run.id)

        current = get_repository(database, repo.id)
        assert current.status is RepoStatus.CLONING
        assert current.active_run_id == new_run.id
        assert current.error_message is None

    def test_wrong_status_is_not_ownership_loss(self, database):
        """Test that a status mismatch still raises an invalid transition."""
        repo, run = self._owned(database)
        with pytest.raises(InvalidStatusTransitionError):
            mark_completed(database, repo.id, run_id=run.id)


class TestRemove:
    """Test repository removal."""

    def test_remove_repository_cascades(self, database):
        """Test that files, runs and vectors go with the repository."""
        repo = add_repository(database, "https://github.com/a/b", workspace_id=1)
        other = add_repository(database, "https://github.com/a/c", workspace_id=1)
        store = InMemoryVectorStore()
        for target in (repo, other):
            key = file_key_for(target.id, "a.py")
            store.upsert(
                [
                    VectorPoint(
                        id=point_id(key, 0),
                        vector=[0.1] * 8,
                        payload={
                            "workspace_id": 1,
                            "repository_id": target.id,
                            "file_key": key,
                        },
                    )
                ]
            )

        def _seed(session):
            session.add(
                IndexedFile(
                    repository_id=repo.id,
                    path="a.py",
                    file_key=file_key_for(repo.id, "a.py"),
                    content_hash="h",
                )
            )
            session.add(IndexRun(repository_id=repo.id))

        database.run_transaction(_seed)

        assert remove_repository(database, store, repo.id) is True

        with pytest.raises(RepositoryNotFoundError):
            get_repository(database, repo.id)
        assert database.run_query(lambda s: s.exec(select(IndexedFile)).all()) == []
        assert list_index_runs(database, repo.id) == []
        assert store.count(VectorFilter(repository_id=repo.id)) == 0
        assert store.count(VectorFilter(repository_id=other.id)) == 1

    def test_remove_missing_repository(self, database):
        """Test that removing an unknown id returns False."""
        assert remove_repository(database, InMemoryVectorStore(), 404) is False
