"""
Shared fixtures: real SQLite databases, real git repositories built with
GitPython, an in-process Qdrant and a deterministic embedding client.
"""

import hashlib
import threading
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path

import pytest
from git import Repo

from codesift.chunking import TextSplitterChunker
from codesift.config import CodeSiftConfig
from codesift.database import Database
from codesift.embedding_cache import EmbeddingCache
from codesift.git_manager import GitRepository
from codesift.orchestrator import IndexingOrchestrator
from codesift.vector_store import QdrantVectorStore, SearchHit, VectorFilter, VectorPoint
from codesift.workspace_manager import create_workspace

FAKE_DIMENSIONS = 8
SEEDED_WORKSPACES = 8


class FakeEmbedder:
    """Deterministic embedding client that records every request."""

    def __init__(self, model: str = "fake-embedding", fail_on: str | None = None, delay: float = 0.0):
        self.model = model
        self.fail_on = fail_on
        self.delay = delay
        self.calls: list[list[str]] = []
        self._lock = threading.Lock()

    @property
    def call_count(self) -> int:
        return len(self.calls)

    @property
    def texts_embedded(self) -> int:
        return sum(len(batch) for batch in self.calls)

    def embed(self, texts: Sequence[str]) -> list[list[float]]:
        with self._lock:
            self.calls.append(list(texts))
        if self.delay:
            time.sleep(self.delay)
        if self.fail_on is not None and any(self.fail_on in t for t in texts):
            raise RuntimeError("embedding service unavailable")
        return [fake_vector(t) for t in texts]


def fake_vector(text: str) -> list[float]:
    digest = hashlib.sha256(text.encode("utf-8")).digest()
    return [b / 255.0 + 0.01 for b in digest[:FAKE_DIMENSIONS]]


class FakeClock:
    """Manually advanced clock for cache recency tests."""

    def __init__(self, start: datetime = datetime(2024, 1, 1)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float = 1.0) -> datetime:
        self.now += timedelta(seconds=seconds)
        return self.now


class InMemoryVectorStore:
    """Thread-safe vector store for worker pool tests."""

    def __init__(self):
        self.points: dict[str, VectorPoint] = {}
        self._lock = threading.Lock()

    @staticmethod
    def _matches(point: VectorPoint, vector_filter: VectorFilter) -> bool:
        return all(point.payload.get(k) == v for k, v in vector_filter.conditions().items())

    def upsert(self, points: Sequence[VectorPoint]) -> None:
        with self._lock:
            for point in points:
                self.points[point.id] = point

    def delete_by_filter(self, vector_filter: VectorFilter) -> None:
        if vector_filter.is_empty:
            raise ValueError("Refusing to delete with an empty filter")
        with self._lock:
            self.points = {
                pid: p for pid, p in self.points.items() if not self._matches(p, vector_filter)
            }

    def search(self, vector, vector_filter: VectorFilter, limit: int = 10) -> list[SearchHit]:
        with self._lock:
            matching = [p for p in self.points.values() if self._matches(p, vector_filter)]
        return [SearchHit(id=p.id, score=1.0, payload=p.payload) for p in matching[:limit]]

    def count(self, vector_filter: VectorFilter | None = None) -> int:
        with self._lock:
            if vector_filter is None:
                return len(self.points)
            return sum(1 for p in self.points.values() if self._matches(p, vector_filter))


class SourceRepo:
    """A local git repository used as a clone source."""

    def __init__(self, path: Path):
        self.path = path
        path.mkdir(parents=True, exist_ok=True)
        self.repo = Repo.init(path)
        with self.repo.config_writer() as config:
            config.set_value("user", "name", "CodeSift Tests")
            config.set_value("user", "email", "tests@codesift.dev")
            config.set_value("commit", "gpgsign", "false")
        self.repo.git.checkout("-b", "main")

    @property
    def url(self) -> str:
        return str(self.path)

    @property
    def head_sha(self) -> str:
        return self.repo.head.commit.hexsha

    def write(self, relative_path: str, content: str | bytes) -> None:
        target = self.path / relative_path
        target.parent.mkdir(parents=True, exist_ok=True)
        if isinstance(content, bytes):
            target.write_bytes(content)
        else:
            target.write_text(content)

    def delete(self, relative_path: str) -> None:
        (self.path / relative_path).unlink()

    def commit(self, message: str = "update") -> str:
        self.repo.git.add("-A")
        self.repo.git.commit("-m", message, "--allow-empty")
        return self.head_sha


def python_source(i: int) -> str:
    return f"def function_{i}():\n    return {i}\n"


@dataclass
class Pipeline:
    database: Database
    orchestrator: IndexingOrchestrator
    embedder: FakeEmbedder
    cache: EmbeddingCache
    vector_store: QdrantVectorStore
    git_manager: GitRepository


@pytest.fixture
def empty_database(tmp_path):
    """Real SQLite database in a temporary directory, with no rows."""
    db = Database(db_path=str(tmp_path / "codesift.db"))
    db.create_db_and_tables()
    yield db
    db.close()


@pytest.fixture
def database(empty_database):
    """Database with workspaces 1..8 (``ws-1`` .. ``ws-8``) already created."""
    for i in range(1, SEEDED_WORKSPACES + 1):
        create_workspace(empty_database, f"Workspace {i}", slug=f"ws-{i}")
    return empty_database


@pytest.fixture
def make_source_repo(tmp_path) -> Callable[..., SourceRepo]:
    """Factory for local git repositories with an initial commit."""
    counter = iter(range(1000))

    def _make(files: dict[str, str | bytes] | None = None, name: str | None = None) -> SourceRepo:
        source = SourceRepo(tmp_path / "sources" / (name or f"repo{next(counter)}"))
        for path, content in (files or {}).items():
            source.write(path, content)
        source.commit("initial")
        return source

    return _make


@pytest.fixture
def config(tmp_path):
    return CodeSiftConfig(home=tmp_path / "home", embedding_dimensions=FAKE_DIMENSIONS)


@pytest.fixture
def fake_embedder():
    return FakeEmbedder()


@pytest.fixture
def vector_store():
    store = QdrantVectorStore(":memory:", collection_name="test_chunks", dimensions=FAKE_DIMENSIONS)
    yield store
    store.close()


@pytest.fixture
def pipeline(tmp_path, database, config, fake_embedder, vector_store) -> Pipeline:
    """Orchestrator wired to real storage, git and Qdrant, with a fake embedder."""
    cache = EmbeddingCache(database)
    git_manager = GitRepository(tmp_path / "clones")
    orchestrator = IndexingOrchestrator(
        database=database,
        git_manager=git_manager,
        chunker=TextSplitterChunker(),
        embedder=fake_embedder,
        cache=cache,
        vector_store=vector_store,
        config=config,
    )
    return Pipeline(
        database=database,
        orchestrator=orchestrator,
        embedder=fake_embedder,
        cache=cache,
        vector_store=vector_store,
        git_manager=git_manager,
    )


def wait_for(predicate: Callable[[], bool], timeout: float = 15.0, interval: float = 0.02) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()
