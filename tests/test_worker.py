"""
Tests for the background worker pool with real git, SQLite and threads.
"""

import logging

import pytest
from sqlmodel import select

from codesift.chunking import TextSplitterChunker
from codesift.embedding_cache import EmbeddingCache
from codesift.git_manager import GitRepository
from codesift.models import IndexRun, RepoStatus, RunStatus
from codesift.orchestrator import IndexingCancelled, IndexingOrchestrator, RunSuperseded
from codesift.repository_manager import add_repository, get_repository
from codesift.worker import WorkerPool

from conftest import FakeEmbedder, InMemoryVectorStore, python_source, wait_for


def _files(n):
    return {f"mod_{i}.py": python_source(i) for i in range(n)}


@pytest.fixture
def make_pool(tmp_path, database, config):
    pools = []

    def _make(embedder=None, workers=2):
        orchestrator = IndexingOrchestrator(
            database,
            GitRepository(tmp_path / "clones"),
            TextSplitterChunker(),
            embedder or FakeEmbedder(),
            EmbeddingCache(database),
            InMemoryVectorStore(),
            config,
        )
        pool = WorkerPool(database, orchestrator, workers=workers, poll_interval=0.05)
        pools.append(pool)
        return pool

    yield _make
    for pool in pools:
        pool.stop(cancel_in_flight=True, timeout=30)


def _status(database, repository_id):
    return get_repository(database, repository_id).status


def _runs(database, repository_id):
    return database.run_query(
        lambda s: s.exec(select(IndexRun).where(IndexRun.repository_id == repository_id)).all()
    )


class TestWorkerPool:
    """Test claiming and processing queued repositories."""

    def test_processes_all_pending_repositories(self, database, make_pool, make_source_repo):
        """Test that every queued repository is indexed exactly once."""
        ids = [
            add_repository(database, make_source_repo(_files(3)).url, workspace_id=1).id
            for _ in range(4)
        ]
        pool = make_pool(workers=2)

        pool.start()
        assert wait_for(
            lambda: all(_status(database, i) is RepoStatus.COMPLETED for i in ids), timeout=60
        )
        assert pool.stop(timeout=30) is True

        assert pool.processed == 4
        for repository_id in ids:
            runs = _runs(database, repository_id)
            assert [r.status for r in runs] == [RunStatus.COMPLETED]

    def test_picks_up_work_added_later(self, database, make_pool, make_source_repo):
        """Test that idle workers poll for new repositories."""
        pool = make_pool(workers=1)
        pool.start()

        repo = add_repository(database, make_source_repo(_files(1)).url, workspace_id=1)

        assert wait_for(lambda: _status(database, repo.id) is RepoStatus.COMPLETED)
        assert pool.stop(timeout=30) is True

    def test_graceful_stop_waits_for_in_flight(self, database, make_pool, make_source_repo):
        """Test that stop lets a running pipeline finish."""
        repo = add_repository(database, make_source_repo(_files(3)).url, workspace_id=1)
        pool = make_pool(embedder=FakeEmbedder(delay=0.2), workers=1)

        pool.start()
        assert wait_for(lambda: pool.in_flight == {0: repo.id})
        assert pool.stop(timeout=30) is True

        assert not pool.is_running
        assert _status(database, repo.id) is RepoStatus.COMPLETED

    def test_stop_cancels_in_flight(self, database, make_pool, make_source_repo):
        """Test that cancel_in_flight ends the run at a file boundary."""
        repo = add_repository(database, make_source_repo(_files(10)).url, workspace_id=1)
        embedder = FakeEmbedder(delay=0.3)
        pool = make_pool(embedder=embedder, workers=1)

        pool.start()
        assert wait_for(lambda: embedder.call_count >= 1)
        assert pool.stop(cancel_in_flight=True, timeout=30) is True

        assert embedder.call_count < 10
        assert [r.status for r in _runs(database, repo.id)] == [RunStatus.CANCELLED]
        assert _status(database, repo.id) is RepoStatus.INDEXING

    def test_stopped_pool_claims_nothing(self, database, make_pool, make_source_repo):
        """Test that no work is claimed after stop."""
        pool = make_pool(workers=2)
        pool.start()
        assert pool.stop(timeout=30) is True

        repo = add_repository(database, make_source_repo(_files(1)).url, workspace_id=1)

        assert _status(database, repo.id) is RepoStatus.PENDING

    def test_start_twice_rejected(self, make_pool):
        """Test that a running pool cannot be started again."""
        pool = make_pool(workers=1)
        pool.start()
        with pytest.raises(RuntimeError):
            pool.start()

    def test_invalid_settings(self, database):
        """Test constructor validation."""
        with pytest.raises(ValueError):
            WorkerPool(database, orchestrator=None, workers=0)
        with pytest.raises(ValueError):
            WorkerPool(database, orchestrator=None, poll_interval=0)


class TestProcessNext:
    """Test a single claim-and-run step."""

    def test_no_work(self, database, make_pool):
        """Test that an empty queue returns False."""
        assert make_pool().process_next() is False

    def test_orchestrator_exception_is_contained(self, database):
        """Test that a crashing pipeline does not kill the worker."""
        repo = add_repository(database, "https://example.invalid/a/b", workspace_id=1)

        class CrashingOrchestrator:
            def index_repository(self, repository_id, cancel_event=None):
                raise RuntimeError("crash")

        pool = WorkerPool(database, CrashingOrchestrator(), workers=1, poll_interval=0.05)

        assert pool.process_next() is True
        assert pool.processed == 1
        assert pool.in_flight == {}
        assert _status(database, repo.id) is RepoStatus.CLONING

    def test_cancelled_run_is_not_an_error(self, database, caplog):
        """Test that a cancelled or superseded run is logged without a traceback."""
        add_repository(database, "https://example.invalid/a/b", workspace_id=1)
        add_repository(database, "https://example.invalid/a/c", workspace_id=1)
        outcomes = iter([IndexingCancelled("Indexing cancelled"), RunSuperseded("lost")])

        class StoppingOrchestrator:
            def index_repository(self, repository_id, cancel_event=None):
                raise next(outcomes)

        pool = WorkerPool(database, StoppingOrchestrator(), workers=1, poll_interval=0.05)

        with caplog.at_level(logging.INFO, logger="codesift.worker"):
            assert pool.process_next() is True
            assert pool.process_next() is True

        assert pool.processed == 2
        assert not [r for r in caplog.records if r.levelno >= logging.ERROR]
        assert any("cancelled repository" in r.getMessage() for r in caplog.records)
        assert any("abandoned repository" in r.getMessage() for r in caplog.records)
