"""
CodeSift - Incremental semantic indexing for git repositories

Clones repositories, chunks and embeds their source files, and keeps a
vector store in sync with each repository's latest commit.
"""

__version__ = "0.1.0"

from .main import app

__all__ = ["app", "__version__"]
