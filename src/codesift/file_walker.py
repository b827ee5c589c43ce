"""
Checkout walking and content hashing.

Produces the ordered list of indexable files of a repository checkout with
their SHA-256 digests and language tags.
"""

import hashlib
import logging
import os
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)

HASH_BLOCK_BYTES = 64 * 1024
BINARY_SNIFF_BYTES = 8 * 1024
DEFAULT_MAX_FILE_BYTES = 1024 * 1024

SKIP_DIRS = frozenset(
    {
        "node_modules",
        "vendor",
        "dist",
        "build",
        "target",
        "__pycache__",
        ".git",
        ".svn",
        ".hg",
        "coverage",
        ".idea",
        ".vscode",
        "bin",
        "obj",
        ".cache",
        ".pytest_cache",
        ".mypy_cache",
        "venv",
        ".venv",
        "env",
        ".env",
        "deps",
        "_deps",
        "third_party",
        "external",
        "packages",
        ".nuget",
        ".gradle",
        ".cargo",
        "cmake-build",
        "out",
        "output",
        ".terraform",
        ".next",
        ".turbo",
    }
)

EXTENSION_TO_LANGUAGE: dict[str, str] = {
    ".go": "go",
    ".py": "python",
    ".js": "javascript",
    ".jsx": "javascript",
    ".ts": "typescript",
    ".tsx": "typescript",
    ".rs": "rust",
    ".java": "java",
    ".kt": "kotlin",
    ".scala": "scala",
    ".c": "c",
    ".h": "c",
    ".cpp": "cpp",
    ".cc": "cpp",
    ".cxx": "cpp",
    ".hpp": "cpp",
    ".cs": "csharp",
    ".rb": "ruby",
    ".php": "php",
    ".swift": "swift",
    ".m": "objective-c",
    ".mm": "objective-c",
    ".lua": "lua",
    ".pl": "perl",
    ".pm": "perl",
    ".r": "r",
    ".jl": "julia",
    ".ex": "elixir",
    ".exs": "elixir",
    ".erl": "erlang",
    ".hrl": "erlang",
    ".clj": "clojure",
    ".cljs": "clojure",
    ".hs": "haskell",
    ".ml": "ocaml",
    ".mli": "ocaml",
    ".fs": "fsharp",
    ".fsx": "fsharp",
    ".dart": "dart",
    ".elm": "elm",
    ".vue": "vue",
    ".svelte": "svelte",
    ".sql": "sql",
    ".sh": "bash",
    ".bash": "bash",
    ".zsh": "bash",
    ".yaml": "yaml",
    ".yml": "yaml",
    ".toml": "toml",
    ".json": "json",
    ".xml": "xml",
    ".html": "html",
    ".htm": "html",
    ".css": "css",
    ".scss": "scss",
    ".md": "markdown",
    ".mdx": "markdown",
    ".rst": "rst",
    ".proto": "protobuf",
    ".graphql": "graphql",
    ".gql": "graphql",
    ".tf": "hcl",
    ".zig": "zig",
    ".sol": "solidity",
}

# Indexed but without a language mapping
_UNMAPPED_TEXT_EXTENSIONS = frozenset(
    {
        ".astro",
        ".fish",
        ".ps1",
        ".bat",
        ".cmd",
        ".sass",
        ".less",
        ".txt",
        ".tfvars",
        ".nix",
        ".nim",
        ".v",
        ".move",
    }
)

INDEXABLE_EXTENSIONS = frozenset(EXTENSION_TO_LANGUAGE) | _UNMAPPED_TEXT_EXTENSIONS


@dataclass(frozen=True)
class WalkedFile:
    """An indexable file found in a checkout."""

    path: str
    content_hash: str
    size_bytes: int
    language: str


def detect_language(path: str) -> str:
    """Best-effort language tag from the file extension."""
    return EXTENSION_TO_LANGUAGE.get(Path(path).suffix.lower(), "unknown")


def is_indexable_path(path: str) -> bool:
    return Path(path).suffix.lower() in INDEXABLE_EXTENSIONS


def hash_file(path: str | Path) -> str:
    """SHA-256 hex digest of a file's bytes, streamed in blocks."""
    h = hashlib.sha256()
    with open(path, "rb") as f:
        while block := f.read(HASH_BLOCK_BYTES):
            h.update(block)
    return h.hexdigest()


def hash_bytes(content: bytes) -> str:
    return hashlib.sha256(content).hexdigest()


def is_binary(path: str | Path) -> bool:
    """A file is treated as binary if its first 8 KiB contain a NUL byte."""
    with open(path, "rb") as f:
        head = f.read(BINARY_SNIFF_BYTES)
    return b"\x00" in head


def iter_candidate_paths(
    root: Path, skip_dirs: frozenset[str] = SKIP_DIRS
) -> list[Path]:
    """Files under ``root`` surviving the directory and name filters, sorted."""
    result: list[Path] = []
    for dirpath, dirnames, filenames in os.walk(root):
        # Prune in place; sorting keeps the walk order deterministic
        dirnames[:] = sorted(
            d for d in dirnames if d not in skip_dirs and not d.startswith(".")
        )
        for filename in sorted(filenames):
            if filename.startswith("."):
                continue
            if not is_indexable_path(filename):
                continue
            result.append(Path(dirpath) / filename)
    return result


def walk_repository(
    root: str | Path,
    max_file_bytes: int = DEFAULT_MAX_FILE_BYTES,
    skip_dirs: frozenset[str] = SKIP_DIRS,
) -> list[WalkedFile]:
    """Walk a checkout and digest every indexable file.

    Args:
        root: Checkout root
        max_file_bytes: Files larger than this are skipped
        skip_dirs: Directory names never descended into

    Returns:
        Indexable files in walk order, paths POSIX and relative to ``root``

    Raises:
        FileNotFoundError: If ``root`` does not exist
        NotADirectoryError: If ``root`` is not a directory
    """
    root = Path(root)
    if not root.exists():
        raise FileNotFoundError(f"Checkout root not found: {root}")
    if not root.is_dir():
        raise NotADirectoryError(f"Checkout root is not a directory: {root}")

    walked: list[WalkedFile] = []
    for full_path in iter_candidate_paths(root, skip_dirs):
        rel = full_path.relative_to(root).as_posix()
        try:
            size = full_path.stat().st_size
            if size > max_file_bytes:
                logger.debug("Skipping oversized file %s (%d bytes)", rel, size)
                continue
            if is_binary(full_path):
                logger.debug("Skipping binary file %s", rel)
                continue
            digest = hash_file(full_path)
        except OSError as e:
            logger.warning("Skipping unreadable file %s: %s", rel, e)
            continue

        walked.append(
            WalkedFile(
                path=rel,
                content_hash=digest,
                size_bytes=size,
                language=detect_language(rel),
            )
        )

    return walked
