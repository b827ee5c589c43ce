"""
Database initialization, session management and transactional access.

This module owns the SQLAlchemy engine for a CodeSift database and provides
the retrying ``run_query``/``run_transaction`` executors every other
component uses to touch the repository, file, cache and run tables.
"""

import logging
from collections.abc import Callable, Generator
from contextlib import contextmanager
from pathlib import Path
from typing import Any, TypeVar

import tenacity
from sqlalchemy import event
from sqlalchemy.engine import make_url
from sqlalchemy.engine.base import Engine
from sqlalchemy.exc import DBAPIError
from sqlmodel import Session, SQLModel, create_engine

# Register all tables on SQLModel.metadata
from . import models  # noqa: F401

logger = logging.getLogger(__name__)

T = TypeVar("T")

MAX_ATTEMPTS = 3
BASE_DELAY_SECONDS = 0.01
MAX_DELAY_SECONDS = 1.0
SQLITE_BUSY_TIMEOUT_SECONDS = 30

# serialization_failure, deadlock_detected, connection exceptions
RETRYABLE_SQLSTATES = frozenset({"40001", "40P01", "08000", "08003", "08006"})
RETRYABLE_SQLITE_MESSAGES = (
    "database is locked",
    "database table is locked",
    "database is busy",
)


def is_retryable_error(exc: BaseException) -> bool:
    """Check if a storage error is transient and safe to retry.

    Only driver-level errors qualify: invalidated connections, PostgreSQL
    serialization failures/deadlocks/connection errors, and SQLite lock
    contention. Everything else (constraint violations, programming errors,
    application exceptions) must propagate.
    """
    if not isinstance(exc, DBAPIError):
        return False

    if exc.connection_invalidated:
        return True

    orig = exc.orig
    sqlstate = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    if sqlstate in RETRYABLE_SQLSTATES:
        return True

    message = str(orig).lower()
    return any(fragment in message for fragment in RETRYABLE_SQLITE_MESSAGES)


def _log_retry(retry_state: tenacity.RetryCallState) -> None:
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    if exc is None:
        return
    logger.warning(
        "Transient database error on attempt %d, retrying: %s: %s",
        retry_state.attempt_number,
        type(exc).__name__,
        exc,
    )


_retry_transient = tenacity.retry(
    retry=tenacity.retry_if_exception(is_retryable_error),
    stop=tenacity.stop_after_attempt(MAX_ATTEMPTS),
    wait=tenacity.wait_exponential(
        multiplier=BASE_DELAY_SECONDS, min=BASE_DELAY_SECONDS, max=MAX_DELAY_SECONDS
    ),
    before_sleep=_log_retry,
    reraise=True,
)


class DatabaseConfig:
    """Configuration for database setup."""

    def __init__(self, database_url: str | None = None, db_path: str | None = None):
        """Initialize database configuration.

        Args:
            database_url: SQLAlchemy URL. Takes precedence over ``db_path``.
            db_path: SQLite file path. Defaults to ~/.codesift/db.sqlite
        """
        if database_url is None:
            if db_path is None:
                db_path = str(Path.home() / ".codesift" / "db.sqlite")
            database_url = f"sqlite:///{db_path}"

        self.database_url = database_url
        url = make_url(database_url)
        self.is_sqlite = url.get_backend_name() == "sqlite"

        if self.is_sqlite and url.database and url.database != ":memory:":
            self.db_path: Path | None = Path(url.database)
        else:
            self.db_path = None


def _install_sqlite_hooks(engine: Engine) -> None:
    """Give pysqlite real transactions.

    The driver's implicit BEGIN is disabled and every transaction starts
    with BEGIN IMMEDIATE so a read-modify-write unit holds the write lock
    from its first statement.
    """

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection: Any, _connection_record: Any) -> None:
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute(f"PRAGMA busy_timeout={SQLITE_BUSY_TIMEOUT_SECONDS * 1000}")
        cursor.close()

    @event.listens_for(engine, "begin")
    def _on_begin(connection: Any) -> None:
        connection.exec_driver_sql("BEGIN IMMEDIATE")


class Database:
    """A CodeSift database: engine, sessions and retrying executors.

    Instances are constructed explicitly and passed to the components that
    need them; there is no process-wide engine.
    """

    def __init__(
        self,
        database_url: str | None = None,
        db_path: str | None = None,
        echo: bool = False,
    ):
        self.config = DatabaseConfig(database_url=database_url, db_path=db_path)
        self._echo = echo
        self._engine: Engine | None = None

    @property
    def dialect_name(self) -> str:
        return self.get_engine().dialect.name

    def get_engine(self) -> Engine:
        """Get or create the engine for this database."""
        if self._engine is None:
            if self.config.db_path is not None:
                self.config.db_path.parent.mkdir(parents=True, exist_ok=True)

            if self.config.is_sqlite:
                engine = create_engine(
                    self.config.database_url,
                    echo=self._echo,
                    connect_args={
                        "check_same_thread": False,
                        "timeout": SQLITE_BUSY_TIMEOUT_SECONDS,
                    },
                )
                _install_sqlite_hooks(engine)
            else:
                engine = create_engine(
                    self.config.database_url, echo=self._echo, pool_pre_ping=True
                )
            self._engine = engine

        return self._engine

    def create_db_and_tables(self) -> None:
        """Create all tables that do not exist yet."""
        SQLModel.metadata.create_all(self.get_engine())

    @contextmanager
    def get_session(self) -> Generator[Session, None, None]:
        """Get database session context manager.

        Yields:
            SQLModel Session instance; rolled back if the block raises
        """
        with Session(self.get_engine(), expire_on_commit=False) as session:
            try:
                yield session
            except BaseException:
                session.rollback()
                raise

    @_retry_transient
    def run_query(self, fn: Callable[[Session], T]) -> T:
        """Run ``fn`` in a short-lived session and commit what it wrote.

        Intended for reads and single-statement writes. Retries transient
        storage errors; the result of ``fn`` is returned unchanged.
        """
        with self.get_session() as session:
            result = fn(session)
            session.commit()
            return result

    @_retry_transient
    def run_transaction(self, fn: Callable[[Session], T]) -> T:
        """Run ``fn`` inside a single transaction.

        The transaction commits only if ``fn`` returns; any exception,
        including KeyboardInterrupt and SystemExit, rolls it back. Transient
        storage errors retry the whole unit of work.
        """
        with Session(self.get_engine(), expire_on_commit=False) as session:
            with session.begin():
                return fn(session)

    def get_database_info(self) -> dict[str, str | bool | float]:
        """Get database information and status."""
        info: dict[str, str | bool | float] = {
            "database_url": self.config.database_url,
            "is_sqlite": self.config.is_sqlite,
        }

        db_path = self.config.db_path
        if db_path is not None:
            info["database_path"] = str(db_path)
            info["database_exists"] = db_path.exists()
            if db_path.exists():
                size_bytes = db_path.stat().st_size
                info["size_mb"] = round(size_bytes / (1024 * 1024), 2)

        return info

    def reset_database(self) -> None:
        """Drop and recreate all tables.

        WARNING: This will delete all data!
        """
        engine = self.get_engine()
        SQLModel.metadata.drop_all(engine)
        SQLModel.metadata.create_all(engine)

    def close(self) -> None:
        """Dispose of the engine and its pooled connections."""
        if self._engine is not None:
            self._engine.dispose()
            self._engine = None
