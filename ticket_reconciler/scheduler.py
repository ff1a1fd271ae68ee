"""
Background scheduling for the Ticket Reconciler.

A thread-based scheduler: one loop thread runs the full pipeline on a fixed
interval, and every manual trigger gets its own thread, job id and cancel
event, so manual and periodic runs never wait on each other.
"""

import logging
import threading
from typing import Optional

from .sync import KIND_ALL, SYNC_KINDS, SyncService


logger = logging.getLogger(__name__)


class SyncScheduler:
    """
    Runs the recurring sync and on-demand triggers.

    Overlapping runs of the same kind are allowed; reconciliation is
    idempotent.
    """

    def __init__(
        self,
        service: SyncService,
        interval_seconds: float = 3600,
        run_on_start: bool = True,
    ):
        """
        Initialize the scheduler.

        Args:
            service: Sync service executing the jobs.
            interval_seconds: Delay between periodic runs.
            run_on_start: Run the pipeline immediately instead of after one interval.
        """
        self._service = service
        self._interval = interval_seconds
        self._run_on_start = run_on_start
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._lock = threading.Lock()
        self._cancel_events: dict[str, threading.Event] = {}
        self._workers: dict[str, threading.Thread] = {}

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        """Start the periodic loop on a daemon thread."""
        if self.running:
            logger.warning("Scheduler already running")
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="sync-scheduler", daemon=True)
        self._thread.start()
        logger.info(f"Scheduler started, interval {self._interval:.0f}s")

    def stop(self, timeout: Optional[float] = None) -> None:
        """Stop the loop and cancel every job still running."""
        self._stop.set()
        with self._lock:
            for event in self._cancel_events.values():
                event.set()
            workers = list(self._workers.values())
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        for worker in workers:
            worker.join(timeout)
        logger.info("Scheduler stopped")

    def _loop(self) -> None:
        if not self._run_on_start and self._stop.wait(self._interval):
            return
        while not self._stop.is_set():
            self._run_periodic()
            if self._stop.wait(self._interval):
                break

    def _run_periodic(self) -> None:
        registry = self._service.registry
        job_id = registry.start_job(KIND_ALL)
        cancel = self._track(job_id)
        logger.info(f"Periodic sync {job_id} starting")
        try:
            self._service.execute(job_id, KIND_ALL, cancel)
        finally:
            self._untrack(job_id)

    def _track(self, job_id: str) -> threading.Event:
        cancel = threading.Event()
        with self._lock:
            self._cancel_events[job_id] = cancel
        return cancel

    def _untrack(self, job_id: str) -> None:
        with self._lock:
            self._cancel_events.pop(job_id, None)
            self._workers.pop(job_id, None)

    def trigger(self, kind: str) -> str:
        """
        Run one sync kind now on its own thread.

        Args:
            kind: One of the sync kinds, e.g. "service_desk" or "all".

        Returns:
            The job id to poll.

        Raises:
            ValueError: If ``kind`` is not a known sync kind.
        """
        if kind not in SYNC_KINDS:
            raise ValueError(f"Unknown sync kind '{kind}', expected one of {', '.join(SYNC_KINDS)}")

        job_id = self._service.registry.start_job(kind)
        cancel = self._track(job_id)

        def work() -> None:
            try:
                self._service.execute(job_id, kind, cancel)
            finally:
                self._untrack(job_id)

        worker = threading.Thread(target=work, name=f"sync-{kind}-{job_id[:8]}", daemon=True)
        with self._lock:
            self._workers[job_id] = worker
        worker.start()
        logger.info(f"Manual {kind} sync triggered as job {job_id}")
        return job_id

    def cancel(self, job_id: str) -> bool:
        """
        Ask a running job to stop at its next record boundary.

        Returns:
            True if the job was running and has been signalled.
        """
        with self._lock:
            event = self._cancel_events.get(job_id)
        if event is None:
            return False
        event.set()
        logger.info(f"Cancellation requested for job {job_id}")
        return True

    def wait(self, job_id: str, timeout: Optional[float] = None) -> None:
        """Block until a manually triggered job's thread has finished."""
        with self._lock:
            worker = self._workers.get(job_id)
        if worker is not None:
            worker.join(timeout)
