"""
Embedding service client and request batching.
"""

import logging
from collections.abc import Iterator, Sequence
from dataclasses import dataclass
from typing import Protocol

import openai
import tenacity

logger = logging.getLogger(__name__)

DEFAULT_EMBEDDING_MODEL = "text-embedding-3-small"
DEFAULT_EMBEDDING_DIMENSIONS = 1536

# Rough budget of ~4 characters per token against an 8000-token request cap
DEFAULT_MAX_BATCH_ITEMS = 2048
DEFAULT_MAX_ITEM_CHARS = 8000 * 4
DEFAULT_MAX_BATCH_CHARS = DEFAULT_MAX_ITEM_CHARS * 8

RETRYABLE_STATUS_CODES = frozenset({429, 500, 502, 503, 504})


class EmbeddingError(Exception):
    """Raised when the embedding service fails or returns unusable output."""

    pass


class EmbeddingClient(Protocol):
    """Anything that turns texts into vectors, one per text, in order."""

    model: str

    def embed(self, texts: Sequence[str]) -> list[list[float]]: ...


@dataclass(frozen=True)
class EmbeddingLimits:
    max_batch_items: int = DEFAULT_MAX_BATCH_ITEMS
    max_item_chars: int = DEFAULT_MAX_ITEM_CHARS
    max_batch_chars: int = DEFAULT_MAX_BATCH_CHARS

    def __post_init__(self) -> None:
        if self.max_batch_items < 1 or self.max_item_chars < 1:
            raise ValueError("Embedding limits must be positive")
        if self.max_batch_chars < self.max_item_chars:
            raise ValueError("max_batch_chars must be at least max_item_chars")


def iter_batches(
    texts: Sequence[str], limits: EmbeddingLimits
) -> Iterator[list[str]]:
    """Yield consecutive batches of ``texts`` that fit within ``limits``.

    Texts longer than ``max_item_chars`` are truncated first. Concatenating
    the batches gives back the (truncated) input in its original order.
    """
    batch: list[str] = []
    batch_chars = 0

    for text in texts:
        if len(text) > limits.max_item_chars:
            text = text[: limits.max_item_chars]

        if batch and (
            len(batch) >= limits.max_batch_items
            or batch_chars + len(text) > limits.max_batch_chars
        ):
            yield batch
            batch = []
            batch_chars = 0

        batch.append(text)
        batch_chars += len(text)

    if batch:
        yield batch


def embed_in_batches(
    client: EmbeddingClient,
    texts: Sequence[str],
    limits: EmbeddingLimits | None = None,
) -> list[list[float]]:
    """Embed ``texts`` with as few calls as the limits allow.

    Returns:
        One vector per input text, in input order

    Raises:
        EmbeddingError: If the client fails or returns the wrong number of vectors
    """
    if not texts:
        return []

    limits = limits or EmbeddingLimits()
    vectors: list[list[float]] = []

    for batch in iter_batches(texts, limits):
        try:
            result = client.embed(batch)
        except EmbeddingError:
            raise
        except Exception as e:
            raise EmbeddingError(f"Embedding request failed: {e}") from e

        if len(result) != len(batch):
            raise EmbeddingError(
                f"Expected {len(batch)} embeddings, got {len(result)}"
            )
        vectors.extend(result)

    if len(vectors) != len(texts):
        raise EmbeddingError(f"Expected {len(texts)} embeddings, got {len(vectors)}")
    return vectors


def is_retryable_openai_error(exc: BaseException) -> bool:
    """Check if an OpenAI SDK error is transient.

    Retries on:
    - Timeouts and connection errors
    - HTTP 429 (rate limit)
    - HTTP 5xx (server errors)
    """
    if isinstance(exc, (openai.APITimeoutError, openai.APIConnectionError)):
        return True
    if isinstance(exc, openai.APIStatusError):
        return exc.status_code in RETRYABLE_STATUS_CODES
    return False


def _log_openai_retry(retry_state: tenacity.RetryCallState) -> None:
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    if exc is None:
        return
    logger.warning(
        "Embedding attempt %d failed, retrying: %s: %s",
        retry_state.attempt_number,
        type(exc).__name__,
        exc,
    )


class OpenAIEmbeddingClient:
    """Embedding client for the OpenAI embeddings API."""

    def __init__(
        self,
        model: str = DEFAULT_EMBEDDING_MODEL,
        api_key: str | None = None,
        dimensions: int | None = None,
        timeout: float = 30.0,
        client: openai.OpenAI | None = None,
    ):
        """Initialize client.

        Args:
            model: Embedding model name
            api_key: API key; the SDK falls back to OPENAI_API_KEY when None
            dimensions: Requested output size, or None for the model default
            timeout: Request timeout in seconds
            client: Preconfigured SDK client to use instead of building one
        """
        self.model = model
        self.dimensions = dimensions
        if client is None:
            try:
                client = openai.OpenAI(api_key=api_key, timeout=timeout, max_retries=0)
            except openai.OpenAIError as e:
                raise EmbeddingError(f"Cannot create OpenAI client: {e}") from e
        self._client = client

    @tenacity.retry(
        retry=tenacity.retry_if_exception(is_retryable_openai_error),
        stop=tenacity.stop_after_attempt(3),
        wait=tenacity.wait_exponential(multiplier=0.5, max=5),
        before_sleep=_log_openai_retry,
        reraise=True,
    )
    def _create(self, texts: list[str]) -> list[list[float]]:
        kwargs = {"model": self.model, "input": texts}
        if self.dimensions is not None:
            kwargs["dimensions"] = self.dimensions
        response = self._client.embeddings.create(**kwargs)
        data = sorted(response.data, key=lambda item: item.index)
        return [list(item.embedding) for item in data]

    def embed(self, texts: Sequence[str]) -> list[list[float]]:
        """Embed texts in a single request.

        Raises:
            EmbeddingError: On non-retryable errors or once retries run out
        """
        if not texts:
            return []
        try:
            vectors = self._create(list(texts))
        except openai.OpenAIError as e:
            raise EmbeddingError(f"OpenAI embeddings request failed: {e}") from e

        if len(vectors) != len(texts):
            raise EmbeddingError(f"Expected {len(texts)} embeddings, got {len(vectors)}")
        return vectors
