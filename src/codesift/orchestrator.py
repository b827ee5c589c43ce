"""
Per-repository indexing pipeline.

``IndexingOrchestrator.index_repository`` takes one repository from
``cloning`` (or ``pending``, when invoked directly) through clone, diff,
chunk, embed and upsert to ``completed``, recording the run in the
``index_run`` table. Only whole-run failures change the repository status;
a file that fails is logged, counted and retried on the next run.
"""

import logging
import threading
from collections.abc import Sequence
from dataclasses import dataclass, field
from pathlib import Path

from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, select

from .chunking import Chunk, Chunker, chunk_with_fallback
from .config import CodeSiftConfig
from .database import Database
from .diff import FileDiff, classify
from .embedding_cache import EmbeddingCache, chunk_digest
from .embeddings import EmbeddingClient, EmbeddingLimits, embed_in_batches
from .file_walker import WalkedFile, hash_bytes, walk_repository
from .git_manager import CloneError, GitOperationError, GitRepository
from .models import (
    IndexedFile,
    IndexRun,
    InvalidStatusTransitionError,
    Repository,
    RepoStatus,
    RunStatus,
    utc_now,
)
from .repository_manager import (
    RepositoryError,
    RunOwnershipLostError,
    begin_index_run,
    get_repository,
    mark_cloned,
    mark_cloning,
    mark_completed,
    mark_failed,
    touch_repository,
)
from .vector_store import VectorFilter, VectorPoint, VectorStore, file_key_for, point_id

logger = logging.getLogger(__name__)


class PipelineError(Exception):
    """An unrecoverable stage failure; the message is persisted on the repository."""

    pass


class IndexingCancelled(Exception):
    """Raised at a file boundary when the run's cancel event is set.

    ``index_repository`` finalizes the run as ``cancelled`` and re-raises;
    the repository status is left as last written.
    """

    pass


class RunSuperseded(IndexingCancelled):
    """Raised when the run finds it no longer owns its repository.

    Stale recovery or another run took the repository over, so this run
    stops without writing to it.
    """

    pass


@dataclass
class IndexRunSummary:
    repository_id: int
    run_id: int
    status: RunStatus
    from_commit: str | None = None
    to_commit: str | None = None
    files_added: int = 0
    files_changed: int = 0
    files_deleted: int = 0
    files_unchanged: int = 0
    files_failed: int = 0
    chunks_indexed: int = 0
    cache_hits: int = 0
    cache_misses: int = 0
    embedding_calls: int = 0
    error_message: str | None = None
    failed_paths: list[str] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.status is RunStatus.COMPLETED


class _CountingEmbedder:
    """Counts requests made to the wrapped embedding client."""

    def __init__(self, client: EmbeddingClient):
        self._client = client
        self.model = client.model
        self.calls = 0

    def embed(self, texts: Sequence[str]) -> list[list[float]]:
        self.calls += 1
        return self._client.embed(texts)


def _check_cancelled(cancel_event: threading.Event | None) -> None:
    if cancel_event is not None and cancel_event.is_set():
        raise IndexingCancelled("Indexing cancelled")


def _superseded(e: RunOwnershipLostError) -> RunSuperseded:
    return RunSuperseded(str(e))


class IndexingOrchestrator:
    """Runs the indexing pipeline for one repository at a time.

    All collaborators are injected; one instance is shared by every worker
    of a pool.
    """

    def __init__(
        self,
        database: Database,
        git_manager: GitRepository,
        chunker: Chunker,
        embedder: EmbeddingClient,
        cache: EmbeddingCache,
        vector_store: VectorStore,
        config: CodeSiftConfig | None = None,
    ):
        self.database = database
        self.git_manager = git_manager
        self.chunker = chunker
        self.embedder = embedder
        self.cache = cache
        self.vector_store = vector_store
        self.config = config or CodeSiftConfig()
        self.limits = EmbeddingLimits(
            max_batch_items=self.config.embed_batch_items,
            max_item_chars=self.config.embed_max_item_chars,
            max_batch_chars=self.config.embed_max_batch_chars,
        )

    def index_repository(
        self, repository_id: int, cancel_event: threading.Event | None = None
    ) -> IndexRunSummary:
        """
        Run the full pipeline for a repository.

        Args:
            repository_id: Repository to index; must be ``pending`` or ``cloning``
            cancel_event: Checked between files; when set the run stops early

        Returns:
            Summary of the run. Stage failures (clone, metadata, listing)
            return a ``failed`` summary instead of raising.

        Raises:
            RepositoryNotFoundError: If the repository does not exist
            InvalidStatusTransitionError: If the repository is in another status
            IndexingCancelled: If ``cancel_event`` was set, or the run lost
                its repository (``RunSuperseded``); the run is recorded as
                ``cancelled`` first
        """
        repository = get_repository(self.database, repository_id)

        if repository.status is RepoStatus.PENDING:
            repository = mark_cloning(self.database, repository_id)
        elif repository.status is not RepoStatus.CLONING:
            raise InvalidStatusTransitionError(repository.status, RepoStatus.CLONING)

        summary = self._start_run(repository)
        embedder = _CountingEmbedder(self.embedder)
        logger.info(
            "Starting index run %d for repository %d (%s)",
            summary.run_id,
            repository_id,
            repository.url,
        )

        try:
            self._run(repository, summary, embedder, cancel_event)
        except IndexingCancelled as e:
            logger.info(
                "Index run %d for repository %d stopped: %s", summary.run_id, repository_id, e
            )
            summary.status = RunStatus.CANCELLED
            summary.error_message = str(e)
            summary.embedding_calls = embedder.calls
            self._finish_run(summary)
            raise
        except PipelineError as e:
            logger.error("Indexing repository %d failed: %s", repository_id, e)
            self._mark_failed(repository_id, summary.run_id, str(e))
            summary.status = RunStatus.FAILED
            summary.error_message = str(e)
        except Exception as e:
            logger.exception("Unexpected error indexing repository %d", repository_id)
            self._mark_failed(repository_id, summary.run_id, str(e))
            summary.status = RunStatus.FAILED
            summary.error_message = str(e)
            summary.embedding_calls = embedder.calls
            self._finish_run(summary)
            raise
        else:
            summary.status = RunStatus.COMPLETED

        summary.embedding_calls = embedder.calls
        self._finish_run(summary)
        if summary.succeeded:
            logger.info(
                "Indexed repository %d: %d added, %d changed, %d deleted, "
                "%d unchanged, %d failed, %d chunks",
                repository_id,
                summary.files_added,
                summary.files_changed,
                summary.files_deleted,
                summary.files_unchanged,
                summary.files_failed,
                summary.chunks_indexed,
            )
        return summary

    def _run(
        self,
        repository: Repository,
        summary: IndexRunSummary,
        embedder: _CountingEmbedder,
        cancel_event: threading.Event | None,
    ) -> None:
        repository_id = repository.id

        try:
            checkout = self.git_manager.clone(repository.url, repository_id)
        except CloneError as e:
            raise PipelineError(f"clone failed ({e.category}): {e.detail}") from e

        try:
            metadata = self.git_manager.get_metadata(repository_id)
        except GitOperationError as e:
            raise PipelineError(f"metadata extraction failed: {e}") from e

        try:
            repository = mark_cloned(
                self.database,
                repository_id,
                metadata.head_commit_sha,
                metadata.branch,
                run_id=summary.run_id,
            )
        except RunOwnershipLostError as e:
            raise _superseded(e) from e
        except (RepositoryError, InvalidStatusTransitionError, SQLAlchemyError) as e:
            raise PipelineError(f"post-clone update failed: {e}") from e
        summary.to_commit = metadata.head_commit_sha
        logger.info(
            "Cloned repository %d at %s (%s)",
            repository_id,
            metadata.head_commit_sha,
            metadata.branch,
        )

        try:
            walked = walk_repository(
                checkout, max_file_bytes=self.config.max_file_bytes
            )
        except OSError as e:
            raise PipelineError(f"file listing failed: {e}") from e

        previous = self._load_file_records(repository_id)
        diff = classify(
            {f.path: f.content_hash for f in walked},
            {path: record.content_hash for path, record in previous.items()},
        )
        summary.files_added = len(diff.added)
        summary.files_changed = len(diff.changed)
        summary.files_unchanged = len(diff.unchanged)
        logger.info(
            "Found %d indexable files in repository %d: %s",
            len(walked),
            repository_id,
            diff.counts(),
        )

        for path in diff.deleted:
            self._checkpoint(repository_id, summary.run_id, cancel_event)
            try:
                self.remove_deleted_file(repository, previous[path])
            except Exception as e:
                logger.warning("Failed to remove deleted file %s: %s", path, e)
                summary.files_failed += 1
                summary.failed_paths.append(path)
            else:
                summary.files_deleted += 1

        self._index_files(
            repository, checkout, walked, diff, previous, summary, embedder, cancel_event
        )

        self._checkpoint(repository_id, summary.run_id, cancel_event)
        try:
            mark_completed(self.database, repository_id, run_id=summary.run_id)
        except RunOwnershipLostError as e:
            raise _superseded(e) from e

    def _checkpoint(
        self, repository_id: int, run_id: int, cancel_event: threading.Event | None
    ) -> None:
        """File-boundary check: honour cancellation and renew ownership."""
        _check_cancelled(cancel_event)
        if not touch_repository(self.database, repository_id, run_id):
            raise RunSuperseded(
                f"Index run {run_id} no longer owns repository {repository_id}"
            )

    def _index_files(
        self,
        repository: Repository,
        checkout: Path,
        walked: list[WalkedFile],
        diff: FileDiff,
        previous: dict[str, IndexedFile],
        summary: IndexRunSummary,
        embedder: _CountingEmbedder,
        cancel_event: threading.Event | None,
    ) -> None:
        to_index = diff.needs_indexing
        for walked_file in walked:
            if walked_file.path not in to_index:
                continue
            self._checkpoint(repository.id, summary.run_id, cancel_event)
            try:
                chunk_count = self.index_file(
                    repository,
                    checkout,
                    walked_file,
                    previous.get(walked_file.path),
                    summary,
                    embedder,
                )
            except Exception as e:
                logger.warning("Failed to index %s: %s", walked_file.path, e)
                summary.files_failed += 1
                summary.failed_paths.append(walked_file.path)
                continue
            summary.chunks_indexed += chunk_count
            logger.debug("Indexed %s (%d chunks)", walked_file.path, chunk_count)

    def index_file(
        self,
        repository: Repository,
        checkout: Path,
        walked_file: WalkedFile,
        existing: IndexedFile | None,
        summary: IndexRunSummary,
        embedder: EmbeddingClient,
    ) -> int:
        """
        Chunk, embed and store one added or changed file.

        The file record is written last, so any failure before it leaves
        the file classified as added/changed for the next run.

        Returns:
            Number of chunks stored
        """
        raw = (checkout / walked_file.path).read_bytes()
        text = raw.decode("utf-8", errors="replace")
        chunks = chunk_with_fallback(self.chunker, text, walked_file.language)
        vectors = self._embed_chunks(chunks, summary, embedder)

        if existing is not None:
            file_key = existing.file_key
        else:
            file_key = file_key_for(repository.id, walked_file.path)
        file_filter = VectorFilter(
            workspace_id=repository.workspace_id,
            repository_id=repository.id,
            file_key=file_key,
        )
        if existing is not None:
            self.vector_store.delete_by_filter(file_filter)

        points = [
            VectorPoint(
                id=point_id(file_key, index),
                vector=vector,
                payload={
                    "workspace_id": repository.workspace_id,
                    "repository_id": repository.id,
                    "file_key": file_key,
                    "file_path": walked_file.path,
                    "chunk_index": index,
                    "content": chunk.content,
                    "start_line": chunk.start_line,
                    "end_line": chunk.end_line,
                    "language": walked_file.language,
                },
            )
            for index, (chunk, vector) in enumerate(zip(chunks, vectors))
        ]
        self.vector_store.upsert(points)

        self._upsert_file_record(
            repository.id,
            walked_file,
            file_key=file_key,
            content_hash=hash_bytes(raw),
            size_bytes=len(raw),
            chunk_count=len(chunks),
        )
        return len(chunks)

    def _embed_chunks(
        self, chunks: list[Chunk], summary: IndexRunSummary, embedder: EmbeddingClient
    ) -> list[list[float]]:
        """Vectors for ``chunks`` in order, from the cache where possible."""
        if not chunks:
            return []

        model = embedder.model
        digests = [chunk_digest(chunk.content) for chunk in chunks]
        text_by_digest = dict(zip(digests, (chunk.content for chunk in chunks)))

        vectors = self.cache.lookup_many(text_by_digest, model)
        missing = [d for d in text_by_digest if d not in vectors]
        summary.cache_hits += len(text_by_digest) - len(missing)
        summary.cache_misses += len(missing)

        if missing:
            fresh = embed_in_batches(
                embedder, [text_by_digest[d] for d in missing], self.limits
            )
            new_vectors = dict(zip(missing, fresh))
            self.cache.store_many(model, new_vectors)
            vectors.update(new_vectors)

        return [vectors[d] for d in digests]

    def remove_deleted_file(self, repository: Repository, record: IndexedFile) -> None:
        """
        Remove a file that disappeared from the checkout.

        Vector points are deleted before the record; if that fails the
        record stays so the next run retries the deletion.
        """
        self.vector_store.delete_by_filter(
            VectorFilter(
                workspace_id=repository.workspace_id,
                repository_id=repository.id,
                file_key=record.file_key,
            )
        )

        def _delete(session: Session) -> None:
            stored = session.get(IndexedFile, record.id)
            if stored is not None:
                session.delete(stored)

        self.database.run_transaction(_delete)
        logger.debug("Removed deleted file %s", record.path)

    def _load_file_records(self, repository_id: int) -> dict[str, IndexedFile]:
        records = self.database.run_query(
            lambda s: s.exec(
                select(IndexedFile).where(IndexedFile.repository_id == repository_id)
            ).all()
        )
        return {record.path: record for record in records}

    def _upsert_file_record(
        self,
        repository_id: int,
        walked_file: WalkedFile,
        file_key: str,
        content_hash: str,
        size_bytes: int,
        chunk_count: int,
    ) -> None:
        now = utc_now()

        def _upsert(session: Session) -> None:
            record = session.exec(
                select(IndexedFile).where(
                    IndexedFile.repository_id == repository_id,
                    IndexedFile.path == walked_file.path,
                )
            ).first()
            if record is None:
                record = IndexedFile(
                    repository_id=repository_id,
                    path=walked_file.path,
                    file_key=file_key,
                    created_at=now,
                )
            record.content_hash = content_hash
            record.language = walked_file.language
            record.size_bytes = size_bytes
            record.chunk_count = chunk_count
            record.indexed_at = now
            record.updated_at = now
            session.add(record)

        self.database.run_transaction(_upsert)

    def _mark_failed(self, repository_id: int, run_id: int, message: str) -> None:
        try:
            mark_failed(self.database, repository_id, message, run_id=run_id)
        except (RepositoryError, InvalidStatusTransitionError, SQLAlchemyError) as e:
            logger.error("Could not mark repository %d failed: %s", repository_id, e)

    def _start_run(self, repository: Repository) -> IndexRunSummary:
        run = begin_index_run(self.database, repository.id)
        return IndexRunSummary(
            repository_id=repository.id,
            run_id=run.id,
            status=RunStatus.RUNNING,
            from_commit=run.from_commit,
        )

    def _finish_run(self, summary: IndexRunSummary) -> None:
        def _update(session: Session) -> None:
            run = session.get(IndexRun, summary.run_id)
            if run is None:
                return
            run.status = summary.status
            run.to_commit = summary.to_commit
            run.files_added = summary.files_added
            run.files_changed = summary.files_changed
            run.files_deleted = summary.files_deleted
            run.files_unchanged = summary.files_unchanged
            run.files_failed = summary.files_failed
            run.chunks_indexed = summary.chunks_indexed
            run.cache_hits = summary.cache_hits
            run.cache_misses = summary.cache_misses
            run.embedding_calls = summary.embedding_calls
            run.error_message = summary.error_message
            run.finished_at = utc_now()
            session.add(run)

        try:
            self.database.run_transaction(_update)
        except SQLAlchemyError as e:
            logger.error("Could not finalize index run %d: %s", summary.run_id, e)
