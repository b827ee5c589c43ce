"""
Background worker pool draining the repository job queue.

Each worker thread claims one pending repository at a time and runs the
indexing pipeline for it synchronously. Workers coordinate only through the
database claim, so several pools (in one or many processes) can share a
queue.
"""

import logging
import threading

from sqlalchemy.exc import SQLAlchemyError

from .database import Database
from .orchestrator import IndexingCancelled, IndexingOrchestrator, RunSuperseded
from .repository_manager import NO_WORK, claim_pending_repository

logger = logging.getLogger(__name__)

DEFAULT_WORKERS = 2
DEFAULT_POLL_INTERVAL = 5.0


class WorkerPool:
    """Fixed-size pool of indexing worker threads."""

    def __init__(
        self,
        database: Database,
        orchestrator: IndexingOrchestrator,
        workers: int = DEFAULT_WORKERS,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
    ):
        if workers < 1:
            raise ValueError("workers must be at least 1")
        if poll_interval <= 0:
            raise ValueError("poll_interval must be positive")

        self.database = database
        self.orchestrator = orchestrator
        self.workers = workers
        self.poll_interval = poll_interval

        self._stop_event = threading.Event()
        self._cancel_event = threading.Event()
        self._threads: list[threading.Thread] = []
        self._lock = threading.Lock()
        self._in_flight: dict[int, int] = {}
        self._processed = 0

    @property
    def is_running(self) -> bool:
        return any(t.is_alive() for t in self._threads)

    @property
    def in_flight(self) -> dict[int, int]:
        """``worker id -> repository id`` for runs in progress."""
        with self._lock:
            return dict(self._in_flight)

    @property
    def processed(self) -> int:
        with self._lock:
            return self._processed

    def start(self) -> None:
        """Start the worker threads.

        Raises:
            RuntimeError: If the pool is already running
        """
        if self.is_running:
            raise RuntimeError("Worker pool is already running")

        self._stop_event.clear()
        self._cancel_event.clear()
        logger.info("Starting %d indexing workers", self.workers)
        self._threads = [
            threading.Thread(
                target=self._run_worker,
                args=(worker_id,),
                name=f"codesift-worker-{worker_id}",
                daemon=True,
            )
            for worker_id in range(self.workers)
        ]
        for thread in self._threads:
            thread.start()

    def request_stop(self, cancel_in_flight: bool = False) -> None:
        """Stop claiming new work without waiting. Safe from signal handlers."""
        self._stop_event.set()
        if cancel_in_flight:
            self._cancel_event.set()

    def stop(self, cancel_in_flight: bool = False, timeout: float | None = None) -> bool:
        """
        Stop the pool.

        No new repositories are claimed once this is called. Returns after
        every in-flight run has returned, or after ``timeout`` seconds.

        Args:
            cancel_in_flight: Also ask running pipelines to stop at the next file
            timeout: Maximum seconds to wait, or None to wait indefinitely

        Returns:
            True if every worker thread exited
        """
        logger.info("Stopping indexing workers")
        self.request_stop(cancel_in_flight=cancel_in_flight)
        stopped = self.join(timeout)
        if stopped:
            logger.info("All workers stopped")
        else:
            logger.warning("Workers still running after %.1fs: %s", timeout, self.in_flight)
        return stopped

    def join(self, timeout: float | None = None) -> bool:
        """Wait for the worker threads to exit. Returns True if all did."""
        for thread in self._threads:
            thread.join(timeout)
        return not self.is_running

    def run_forever(self) -> None:
        """Run the pool in the calling thread until stopped.

        Returns after ``request_stop``/``stop`` (e.g. from a signal handler)
        or a KeyboardInterrupt, once in-flight runs have finished.
        """
        self.start()
        try:
            while not self._stop_event.wait(self.poll_interval):
                pass
        except KeyboardInterrupt:
            logger.info("Interrupted")
        self.stop()

    def process_next(self, worker_id: int = 0) -> bool:
        """
        Claim one pending repository and index it.

        Returns:
            True if a repository was claimed, False if there was no work or
            the claim failed
        """
        try:
            repository = claim_pending_repository(self.database)
        except SQLAlchemyError as e:
            logger.error("Worker %d failed to claim a pending repository: %s", worker_id, e)
            return False

        if repository is NO_WORK:
            return False

        logger.info(
            "Worker %d claimed repository %d (%s)", worker_id, repository.id, repository.url
        )
        with self._lock:
            self._in_flight[worker_id] = repository.id
        try:
            summary = self.orchestrator.index_repository(
                repository.id, cancel_event=self._cancel_event
            )
            logger.info(
                "Worker %d finished repository %d: %s",
                worker_id,
                repository.id,
                summary.status.value,
            )
        except RunSuperseded as e:
            logger.warning("Worker %d abandoned repository %d: %s", worker_id, repository.id, e)
        except IndexingCancelled:
            logger.info("Worker %d cancelled repository %d", worker_id, repository.id)
        except Exception:
            logger.exception("Worker %d failed indexing repository %d", worker_id, repository.id)
        finally:
            with self._lock:
                self._in_flight.pop(worker_id, None)
                self._processed += 1
        return True

    def _run_worker(self, worker_id: int) -> None:
        logger.info("Worker %d started", worker_id)
        while not self._stop_event.is_set():
            if self.process_next(worker_id):
                continue
            self._stop_event.wait(self.poll_interval)
        logger.info("Worker %d stopping", worker_id)
