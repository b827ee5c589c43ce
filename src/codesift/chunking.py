"""
Splitting file contents into embeddable chunks.

The default chunker wraps langchain's ``RecursiveCharacterTextSplitter``,
which splits on a language's syntax boundaries (classes, functions, then
blank lines, lines and words) and merges pieces up to a character budget.
Pieces are mapped back to the 1-based line span they came from.
"""

import logging
from dataclasses import dataclass
from typing import Protocol

from langchain_text_splitters import Language, RecursiveCharacterTextSplitter

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 1500  # characters, roughly 400 tokens of code
DEFAULT_CHUNK_OVERLAP = 0

# Separators for languages the splitter has no grammar hints for
GENERIC_SEPARATORS = ["\n\n\n", "\n\n", "\n", " ", ""]

# File walker tags that the splitter spells differently
_LANGUAGE_ALIASES: dict[str, Language] = {
    "javascript": Language.JS,
    "typescript": Language.TS,
    "protobuf": Language.PROTO,
    "solidity": Language.SOL,
}


@dataclass(frozen=True)
class Chunk:
    """A contiguous span of a file. Line numbers are 1-based and inclusive."""

    content: str
    start_line: int
    end_line: int


class Chunker(Protocol):
    def chunk(self, text: str, language: str) -> list[Chunk]: ...


def splitter_language(language: str) -> Language | None:
    """The splitter's ``Language`` for a file walker tag, if it has one."""
    if language in _LANGUAGE_ALIASES:
        return _LANGUAGE_ALIASES[language]
    try:
        return Language(language)
    except ValueError:
        return None


class TextSplitterChunker:
    """Syntax-aware chunker built on ``RecursiveCharacterTextSplitter``.

    One splitter is built per language on first use and reused; splitters
    hold no per-call state, so an instance can be shared by worker threads.

    Args:
        chunk_size: Maximum chunk length in characters
        chunk_overlap: Characters repeated between neighbouring chunks
    """

    def __init__(
        self, chunk_size: int = DEFAULT_CHUNK_SIZE, chunk_overlap: int = DEFAULT_CHUNK_OVERLAP
    ):
        if chunk_size < 1:
            raise ValueError("chunk_size must be positive")
        if not 0 <= chunk_overlap < chunk_size:
            raise ValueError("chunk_overlap must be in [0, chunk_size)")
        self.chunk_size = chunk_size
        self.chunk_overlap = chunk_overlap
        self._splitters: dict[Language | None, RecursiveCharacterTextSplitter] = {}

    def _splitter_for(self, language: str) -> RecursiveCharacterTextSplitter:
        key = splitter_language(language)
        splitter = self._splitters.get(key)
        if splitter is not None:
            return splitter

        if key is not None:
            try:
                splitter = RecursiveCharacterTextSplitter.from_language(
                    key, chunk_size=self.chunk_size, chunk_overlap=self.chunk_overlap
                )
            except ValueError:
                logger.debug("No separators for %s, using generic splitting", key.value)
        if splitter is None:
            splitter = RecursiveCharacterTextSplitter(
                chunk_size=self.chunk_size,
                chunk_overlap=self.chunk_overlap,
                separators=GENERIC_SEPARATORS,
            )
        self._splitters[key] = splitter
        return splitter

    def chunk(self, text: str, language: str) -> list[Chunk]:
        if not text.strip():
            return []

        chunks: list[Chunk] = []
        cursor = 0
        for piece in self._splitter_for(language).split_text(text):
            start = text.find(piece, cursor)
            if start == -1:
                raise ValueError("Split piece does not occur in the source text")
            start_line = text.count("\n", 0, start) + 1
            chunks.append(
                Chunk(content=piece, start_line=start_line, end_line=start_line + piece.count("\n"))
            )
            cursor = start + 1
        return chunks


def chunk_with_fallback(chunker: Chunker, text: str, language: str) -> list[Chunk]:
    """Chunk ``text``, falling back to one whole-file chunk.

    The fallback applies when the chunker raises or returns nothing for text
    that is not blank. Blank text yields no chunks.
    """
    if not text.strip():
        return []

    try:
        chunks = chunker.chunk(text, language)
    except Exception as e:
        logger.warning("Chunker failed for %s content, using whole file: %s", language, e)
        chunks = []

    if chunks:
        return chunks

    line_count = max(1, len(text.splitlines()))
    return [Chunk(content=text, start_line=1, end_line=line_count)]
