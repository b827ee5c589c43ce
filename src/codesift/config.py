"""
Runtime configuration for CodeSift.

Settings are read by pydantic-settings from ``CODESIFT_*`` environment
variables (and, from the CLI, a ``.env`` file in the working directory) into
a single ``CodeSiftConfig`` instance that is passed to the components that
need it.
"""

from pathlib import Path
from typing import Optional

from pydantic import AliasChoices, Field, ValidationError, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

ENV_PREFIX = "CODESIFT_"


class ConfigError(Exception):
    """Raised when a configuration value cannot be parsed."""

    pass


def _default_home() -> Path:
    return Path.home() / ".codesift"


class CodeSiftConfig(BaseSettings):
    """All tunables for the indexing pipeline and worker pool.

    Every field maps to ``CODESIFT_<FIELD>``; ``OPENAI_API_KEY`` is also
    accepted for the API key. Paths left unset are derived from ``home``.
    """

    model_config = SettingsConfigDict(
        env_prefix=ENV_PREFIX,
        env_file=None,
        env_file_encoding="utf-8",
        env_ignore_empty=True,
        extra="ignore",
        populate_by_name=True,
    )

    home: Path = Field(default_factory=_default_home)
    database_url: Optional[str] = None
    clone_dir: Optional[Path] = None

    workers: int = Field(default=2, ge=1)
    poll_interval: float = Field(default=5.0, gt=0)
    stale_after: float = Field(default=3600.0, gt=0)

    max_file_bytes: int = Field(default=1024 * 1024, ge=1)
    chunk_size: int = Field(default=1500, ge=1)
    chunk_overlap: int = Field(default=0, ge=0)

    embedding_model: str = "text-embedding-3-small"
    embedding_dimensions: int = Field(default=1536, ge=1)
    embed_batch_items: int = Field(default=2048, ge=1)
    embed_max_item_chars: int = Field(default=32_000, ge=1)
    embed_max_batch_chars: int = Field(default=32_000 * 8, ge=1)
    openai_api_key: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("CODESIFT_OPENAI_API_KEY", "OPENAI_API_KEY"),
    )

    cache_max_entries: int = Field(default=100_000, ge=1)
    cache_evict_fraction: float = Field(default=0.1, gt=0, le=1)

    # Remote Qdrant server; when unset an embedded store lives at qdrant_path
    qdrant_url: Optional[str] = None
    qdrant_path: Optional[Path] = None
    collection_name: str = "code_chunks"

    git_token: Optional[str] = None
    log_level: str = "INFO"

    @field_validator("log_level")
    @classmethod
    def _upper_log_level(cls, value: str) -> str:
        return value.upper()

    @model_validator(mode="after")
    def _derive_paths(self) -> "CodeSiftConfig":
        if self.clone_dir is None:
            self.clone_dir = self.home / "repos"
        if self.database_url is None:
            self.database_url = f"sqlite:///{self.home / 'db.sqlite'}"
        if self.qdrant_path is None:
            self.qdrant_path = self.home / "qdrant"
        if self.chunk_overlap >= self.chunk_size:
            raise ValueError("chunk_overlap must be smaller than chunk_size")
        return self

    @property
    def vector_store_location(self) -> str:
        """Server URL if configured, else the embedded store directory."""
        return self.qdrant_url or str(self.qdrant_path)

    @classmethod
    def from_env(cls, dotenv: bool = True) -> "CodeSiftConfig":
        """Build configuration from ``CODESIFT_*`` environment variables.

        Args:
            dotenv: Also read a ``.env`` file from the working directory

        Returns:
            Populated configuration

        Raises:
            ConfigError: If a variable cannot be parsed or is out of range
        """
        try:
            return cls(_env_file=".env" if dotenv else None)
        except ValidationError as e:
            raise ConfigError(format_validation_error(e)) from e


def format_validation_error(error: ValidationError) -> str:
    """One line per invalid setting, named by its environment variable."""
    problems = []
    for item in error.errors():
        field = ".".join(str(part) for part in item["loc"])
        name = f"{ENV_PREFIX}{field.upper()}" if field else "configuration"
        problems.append(f"{name}: {item['msg']}")
    return "Invalid configuration: " + "; ".join(problems)
