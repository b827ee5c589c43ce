"""
Vector store adapter.

Chunks are stored as points keyed by a deterministic UUID so re-indexing a
file overwrites rather than duplicates. Every point carries its workspace,
repository and file identifiers in the payload for filtered deletes and
searches.
"""

import logging
import uuid
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any, Protocol

import tenacity
from qdrant_client import QdrantClient
from qdrant_client.http.exceptions import ResponseHandlingException
from qdrant_client.http.models import (
    Distance,
    FieldCondition,
    Filter,
    FilterSelector,
    MatchValue,
    PayloadSchemaType,
    PointStruct,
    VectorParams,
)

logger = logging.getLogger(__name__)

DEFAULT_COLLECTION = "code_chunks"

# Namespace for file keys and point ids
CODESIFT_NAMESPACE = uuid.UUID("5b6f1c2e-8a0d-4e4b-9f57-3c2d1e0a9b71")

FILTER_FIELDS = ("workspace_id", "repository_id", "file_key")


def file_key_for(repository_id: int, path: str) -> str:
    """Stable vector-store identifier of a file within a repository."""
    return str(uuid.uuid5(CODESIFT_NAMESPACE, f"{repository_id}:{path}"))


def point_id(file_key: str, chunk_index: int) -> str:
    """Deterministic point id of one chunk of a file."""
    return str(uuid.uuid5(CODESIFT_NAMESPACE, f"{file_key}#{chunk_index}"))


@dataclass(frozen=True)
class VectorPoint:
    id: str
    vector: Sequence[float]
    payload: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class VectorFilter:
    """Conjunction of payload equality conditions; None fields are ignored."""

    workspace_id: int | None = None
    repository_id: int | None = None
    file_key: str | None = None

    def conditions(self) -> dict[str, int | str]:
        return {
            name: getattr(self, name)
            for name in FILTER_FIELDS
            if getattr(self, name) is not None
        }

    @property
    def is_empty(self) -> bool:
        return not self.conditions()


@dataclass(frozen=True)
class SearchHit:
    id: str
    score: float
    payload: Mapping[str, Any]


class VectorStore(Protocol):
    def upsert(self, points: Sequence[VectorPoint]) -> None: ...

    def delete_by_filter(self, vector_filter: VectorFilter) -> None: ...

    def search(
        self, vector: Sequence[float], vector_filter: VectorFilter, limit: int
    ) -> list[SearchHit]: ...


class VectorStoreError(Exception):
    """Raised when the vector store rejects an operation."""

    pass


def is_retryable_qdrant_error(exc: BaseException) -> bool:
    """qdrant-client wraps transport failures in ResponseHandlingException."""
    return isinstance(exc, ResponseHandlingException)


def _log_qdrant_retry(retry_state: tenacity.RetryCallState) -> None:
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    if exc is None:
        return
    logger.warning(
        "Qdrant attempt %d failed, retrying: %s: %s",
        retry_state.attempt_number,
        type(exc).__name__,
        exc,
    )


_retry_qdrant = tenacity.retry(
    retry=tenacity.retry_if_exception(is_retryable_qdrant_error),
    stop=tenacity.stop_after_attempt(3),
    wait=tenacity.wait_exponential(multiplier=0.5, max=5),
    before_sleep=_log_qdrant_retry,
    reraise=True,
)


def _to_qdrant_filter(vector_filter: VectorFilter) -> Filter | None:
    conditions = [
        FieldCondition(key=key, match=MatchValue(value=value))
        for key, value in vector_filter.conditions().items()
    ]
    return Filter(must=conditions) if conditions else None


class QdrantVectorStore:
    """Vector store backed by a single Qdrant collection.

    ``location`` is a server URL, a directory for qdrant-client's embedded
    on-disk mode, or ``":memory:"`` for a throwaway in-process collection.
    An embedded directory is locked by the client that opens it, so only
    one process at a time can use it; run a Qdrant server to share a store
    between a worker and other commands.
    """

    def __init__(
        self,
        location: str = ":memory:",
        collection_name: str = DEFAULT_COLLECTION,
        dimensions: int = 1536,
        client: QdrantClient | None = None,
    ):
        self.collection_name = collection_name
        self.dimensions = dimensions
        self._is_local = client is None and not location.startswith(("http://", "https://"))

        if client is None:
            if not self._is_local:
                client = QdrantClient(url=location)
            elif location == ":memory:":
                client = QdrantClient(location=location)
            else:
                client = QdrantClient(path=location)
        self._client = client
        self._ready = False

    def ensure_collection(self) -> None:
        """Create the collection (cosine distance) if it does not exist."""
        if self._ready:
            return

        if not self._client.collection_exists(self.collection_name):
            logger.info(
                "Creating Qdrant collection %s (%d dimensions)",
                self.collection_name,
                self.dimensions,
            )
            self._client.create_collection(
                collection_name=self.collection_name,
                vectors_config=VectorParams(size=self.dimensions, distance=Distance.COSINE),
            )
            # Local mode has no payload indexes
            if not self._is_local:
                for key in ("workspace_id", "repository_id"):
                    self._client.create_payload_index(
                        self.collection_name, key, PayloadSchemaType.INTEGER
                    )
                self._client.create_payload_index(
                    self.collection_name, "file_key", PayloadSchemaType.KEYWORD
                )

        self._ready = True

    @_retry_qdrant
    def upsert(self, points: Sequence[VectorPoint]) -> None:
        """Insert or overwrite points, waiting until they are searchable."""
        if not points:
            return
        self.ensure_collection()

        for point in points:
            if len(point.vector) != self.dimensions:
                raise VectorStoreError(
                    f"Point {point.id} has {len(point.vector)} dimensions, "
                    f"collection expects {self.dimensions}"
                )

        self._client.upsert(
            collection_name=self.collection_name,
            points=[
                PointStruct(id=p.id, vector=list(p.vector), payload=dict(p.payload))
                for p in points
            ],
            wait=True,
        )

    @_retry_qdrant
    def delete_by_filter(self, vector_filter: VectorFilter) -> None:
        """Delete every point matching the filter.

        Raises:
            ValueError: If the filter has no conditions
        """
        qdrant_filter = _to_qdrant_filter(vector_filter)
        if qdrant_filter is None:
            raise ValueError("Refusing to delete with an empty filter")
        self.ensure_collection()

        self._client.delete(
            collection_name=self.collection_name,
            points_selector=FilterSelector(filter=qdrant_filter),
            wait=True,
        )

    @_retry_qdrant
    def search(
        self, vector: Sequence[float], vector_filter: VectorFilter, limit: int = 10
    ) -> list[SearchHit]:
        self.ensure_collection()
        response = self._client.query_points(
            collection_name=self.collection_name,
            query=list(vector),
            query_filter=_to_qdrant_filter(vector_filter),
            limit=limit,
            with_payload=True,
        )
        return [
            SearchHit(id=str(hit.id), score=hit.score, payload=hit.payload or {})
            for hit in response.points
        ]

    def count(self, vector_filter: VectorFilter | None = None) -> int:
        """Exact number of points, optionally restricted by a filter."""
        self.ensure_collection()
        result = self._client.count(
            collection_name=self.collection_name,
            count_filter=_to_qdrant_filter(vector_filter) if vector_filter else None,
            exact=True,
        )
        return result.count

    def close(self) -> None:
        self._client.close()
