"""
Job-status registry for the Ticket Reconciler.

Process-wide record of every sync job started since the process came up,
keyed by a generated job id. Any number of threads may read while each job
is updated by the one thread running it.
"""

import logging
import threading
import uuid
from typing import Optional

from .models import JobState, JobStatus, utc_now


logger = logging.getLogger(__name__)


class JobRegistry:
    """
    Thread-safe map of job id to JobStatus.

    Entries are kept for the life of the process.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._jobs: dict[str, JobStatus] = {}

    def start_job(self, kind: str) -> str:
        """
        Register a new running job.

        Args:
            kind: What the job does, e.g. "service_desk" or "orphans".

        Returns:
            The generated job id.
        """
        job_id = uuid.uuid4().hex
        status = JobStatus(
            job_id=job_id,
            kind=kind,
            state=JobState.RUNNING,
            message="Starting...",
            progress=0.0,
            started_at=utc_now(),
        )
        with self._lock:
            self._jobs[job_id] = status
        logger.info(f"Job {job_id} ({kind}) started")
        return job_id

    def update_status(
        self,
        job_id: str,
        state: JobState,
        message: str = "",
        progress: Optional[float] = None,
    ) -> None:
        """
        Record a job's new state.

        Completed jobs are forced to 100% and finished jobs get a finish time.
        Unknown job ids are ignored with a warning.
        """
        with self._lock:
            current = self._jobs.get(job_id)
            if current is None:
                logger.warning(f"Status update for unknown job {job_id} ignored")
                return
            if state is JobState.COMPLETED:
                progress = 100.0
            elif progress is None:
                progress = current.progress
            finished_at = utc_now() if state in (JobState.COMPLETED, JobState.FAILED) else None
            self._jobs[job_id] = current.model_copy(update={
                "state": state,
                "message": message,
                "progress": min(max(float(progress), 0.0), 100.0),
                "finished_at": finished_at,
            })

        if state is JobState.FAILED:
            logger.error(f"Job {job_id} ({current.kind}) failed: {message}")
        elif state is JobState.COMPLETED:
            logger.info(f"Job {job_id} ({current.kind}) completed: {message}")
        else:
            logger.debug(f"Job {job_id} ({current.kind}) {state.value}: {message}")

    def get_status(self, job_id: str) -> JobStatus:
        """Current status of a job; unknown ids report Idle."""
        with self._lock:
            status = self._jobs.get(job_id)
            if status is None:
                return JobStatus(job_id=job_id, state=JobState.IDLE, message="No such job")
            return status.model_copy()

    def list_jobs(self, kind: Optional[str] = None) -> list[JobStatus]:
        """All known jobs, most recently started first."""
        with self._lock:
            jobs = [job.model_copy() for job in self._jobs.values()]
        if kind is not None:
            jobs = [job for job in jobs if job.kind == kind]
        return sorted(jobs, key=lambda job: job.started_at or utc_now(), reverse=True)
