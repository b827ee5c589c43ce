"""
Content-addressed embedding cache.

Vectors are keyed by the SHA-256 of a chunk's text and the embedding model
that produced them. The cache is shared by every repository and workspace
and is purely advisory: any failure degrades to a miss.
"""

import hashlib
import json
import logging
import math
import threading
from collections.abc import Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import delete, func, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlmodel import Session, select

from .database import Database
from .models import EmbeddingCacheEntry, utc_now

logger = logging.getLogger(__name__)

DEFAULT_MAX_ENTRIES = 100_000
DEFAULT_EVICT_FRACTION = 0.1

# SQLite's default host-parameter limit is 999
_LOOKUP_BATCH = 500


def chunk_digest(text: str) -> str:
    """Stable content hash of a chunk's text."""
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def _decode_vector(raw: str, dimensions: int) -> list[float] | None:
    try:
        vector = json.loads(raw)
    except (TypeError, ValueError):
        return None
    if not isinstance(vector, list) or len(vector) != dimensions:
        return None
    return [float(v) for v in vector]


@dataclass(frozen=True)
class CacheStats:
    entries: int
    hits: int
    misses: int
    evictions: int

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        return self.hits / total if total else 0.0


class EmbeddingCache:
    """Embedding cache backed by the ``embedding_cache`` table.

    Hit/miss/eviction counters are per instance; entries are global.
    """

    def __init__(
        self,
        database: Database,
        max_entries: int = DEFAULT_MAX_ENTRIES,
        evict_fraction: float = DEFAULT_EVICT_FRACTION,
        clock: Callable[[], datetime] = utc_now,
    ):
        if max_entries < 1:
            raise ValueError("max_entries must be at least 1")
        if not 0 < evict_fraction <= 1:
            raise ValueError("evict_fraction must be in (0, 1]")

        self.database = database
        self.max_entries = max_entries
        self.evict_fraction = evict_fraction
        self._clock = clock
        self._lock = threading.Lock()
        self._hits = 0
        self._misses = 0
        self._evictions = 0

    def _count(self, hits: int = 0, misses: int = 0, evictions: int = 0) -> None:
        with self._lock:
            self._hits += hits
            self._misses += misses
            self._evictions += evictions

    def lookup(self, content_hash: str, model: str) -> list[float] | None:
        """Return the cached vector for ``(content_hash, model)`` or None."""
        return self.lookup_many([content_hash], model).get(content_hash)

    def lookup_many(
        self, content_hashes: Iterable[str], model: str
    ) -> dict[str, list[float]]:
        """Look up many digests at once.

        Every hit bumps ``use_count`` and ``last_used_at`` with one atomic
        UPDATE per batch. Undecodable rows count as misses.

        Returns:
            ``digest -> vector`` for the hits only
        """
        unique = list(dict.fromkeys(h for h in content_hashes if h))
        if not unique:
            return {}

        found: dict[str, list[float]] = {}
        for start in range(0, len(unique), _LOOKUP_BATCH):
            batch = unique[start : start + _LOOKUP_BATCH]
            try:
                found.update(self._lookup_batch(batch, model))
            except SQLAlchemyError as e:
                logger.warning("Embedding cache lookup failed, treating as miss: %s", e)

        self._count(hits=len(found), misses=len(unique) - len(found))
        return found

    def _lookup_batch(self, batch: Sequence[str], model: str) -> dict[str, list[float]]:
        now = self._clock()

        def _fetch(session: Session) -> dict[str, list[float]]:
            rows = session.exec(
                select(EmbeddingCacheEntry).where(
                    EmbeddingCacheEntry.model == model,
                    EmbeddingCacheEntry.content_hash.in_(batch),
                )
            ).all()

            hits: dict[str, list[float]] = {}
            hit_ids: list[int] = []
            for row in rows:
                vector = _decode_vector(row.vector_json, row.dimensions)
                if vector is None:
                    logger.warning(
                        "Ignoring corrupt embedding cache entry %s", row.content_hash
                    )
                    continue
                hits[row.content_hash] = vector
                hit_ids.append(row.id)

            if hit_ids:
                session.execute(
                    update(EmbeddingCacheEntry)
                    .where(EmbeddingCacheEntry.id.in_(hit_ids))
                    .values(
                        use_count=EmbeddingCacheEntry.use_count + 1,
                        last_used_at=now,
                    )
                    .execution_options(synchronize_session=False)
                )
            return hits

        return self.database.run_transaction(_fetch)

    def store(self, content_hash: str, model: str, vector: Sequence[float]) -> None:
        """Cache one vector."""
        self.store_many(model, {content_hash: vector})

    def store_many(self, model: str, vectors: Mapping[str, Sequence[float]]) -> int:
        """Cache vectors for ``model``.

        Existing keys are left as they are unless their stored vector no
        longer decodes, in which case it is overwritten.

        Returns:
            Number of entries inserted or repaired
        """
        if not vectors:
            return 0

        inserted = 0
        for content_hash, vector in vectors.items():
            try:
                if self._insert(content_hash, model, vector):
                    inserted += 1
            except SQLAlchemyError as e:
                logger.warning("Embedding cache store failed for %s: %s", content_hash, e)

        try:
            self.evict()
        except SQLAlchemyError as e:
            logger.warning("Embedding cache eviction failed: %s", e)
        return inserted

    def _insert(self, content_hash: str, model: str, vector: Sequence[float]) -> bool:
        now = self._clock()
        payload = json.dumps([float(v) for v in vector])

        def _add(session: Session) -> bool:
            existing = session.exec(
                select(EmbeddingCacheEntry).where(
                    EmbeddingCacheEntry.content_hash == content_hash,
                    EmbeddingCacheEntry.model == model,
                )
            ).first()
            if existing is not None:
                if _decode_vector(existing.vector_json, existing.dimensions) is not None:
                    return False
                logger.warning("Replacing corrupt embedding cache entry %s", content_hash)
                existing.vector_json = payload
                existing.dimensions = len(vector)
                existing.use_count = 0
                existing.created_at = now
                existing.last_used_at = now
                session.add(existing)
                return True
            session.add(
                EmbeddingCacheEntry(
                    content_hash=content_hash,
                    model=model,
                    dimensions=len(vector),
                    vector_json=payload,
                    use_count=0,
                    created_at=now,
                    last_used_at=now,
                )
            )
            session.flush()
            return True

        try:
            return self.database.run_transaction(_add)
        except IntegrityError:
            # Another worker cached the same chunk first
            return False

    def size(self) -> int:
        return int(
            self.database.run_query(
                lambda s: s.exec(
                    select(func.count()).select_from(EmbeddingCacheEntry)
                ).one()
            )
        )

    def evict(self, force: bool = False) -> int:
        """Drop least-recently-used entries.

        Runs when the cache holds more than ``max_entries`` (or always, when
        ``force`` is set) and removes ``max(size - max_entries,
        floor(size * evict_fraction))`` entries in one statement.

        Returns:
            Number of entries removed
        """

        def _evict(session: Session) -> int:
            size = session.exec(
                select(func.count()).select_from(EmbeddingCacheEntry)
            ).one()
            if size <= self.max_entries and not force:
                return 0

            to_remove = max(size - self.max_entries, math.floor(size * self.evict_fraction))
            if to_remove <= 0:
                return 0

            victims = (
                select(EmbeddingCacheEntry.id)
                .order_by(EmbeddingCacheEntry.last_used_at, EmbeddingCacheEntry.id)
                .limit(to_remove)
            )
            result = session.execute(
                delete(EmbeddingCacheEntry)
                .where(EmbeddingCacheEntry.id.in_(victims))
                .execution_options(synchronize_session=False)
            )
            return result.rowcount

        removed = self.database.run_transaction(_evict)
        if removed:
            self._count(evictions=removed)
            logger.info("Evicted %d embedding cache entries", removed)
        return removed

    def clear(self) -> int:
        """Remove every entry. Returns the number removed."""

        def _clear(session: Session) -> int:
            result = session.execute(
                delete(EmbeddingCacheEntry).execution_options(synchronize_session=False)
            )
            return result.rowcount

        return self.database.run_transaction(_clear)

    def stats(self) -> CacheStats:
        with self._lock:
            hits, misses, evictions = self._hits, self._misses, self._evictions
        return CacheStats(
            entries=self.size(), hits=hits, misses=misses, evictions=evictions
        )
