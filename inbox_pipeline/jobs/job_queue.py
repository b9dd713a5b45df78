"""
Durable priority job queue backed by the queue_jobs table.

Lower priority values are served first; ties go to the earlier job. Failed
jobs are retried with exponential backoff until max_attempts is reached.
"""

import threading
import time
from datetime import datetime, timedelta, timezone
from typing import Any

from inbox_pipeline.config import settings
from inbox_pipeline.core.database import Database
from inbox_pipeline.core.logging import get_logger
from inbox_pipeline.core.models import JobStatus, QueueJob, Task, TaskType

log = get_logger(__name__)


def default_priorities() -> dict[TaskType, int]:
    return {
        TaskType.CLASSIFY: settings.classify_priority,
        TaskType.EXTRACT: settings.extract_priority,
        TaskType.SYNC: settings.sync_priority,
    }


class JobQueue:
    """Enqueue, claim and settle jobs for one named queue."""

    def __init__(
        self,
        db: Database,
        queue_name: str | None = None,
        max_attempts: int | None = None,
        backoff_seconds: float | None = None,
        priorities: dict[TaskType, int] | None = None,
    ):
        self.db = db
        self.queue_name = queue_name or settings.queue_name
        self.max_attempts = max_attempts or settings.queue_max_attempts
        self.backoff_seconds = (
            backoff_seconds if backoff_seconds is not None else settings.queue_backoff_seconds
        )
        self.priorities = priorities or default_priorities()
        self._id_lock = threading.Lock()
        self._last_ms = 0

    def _next_timestamp(self) -> int:
        # Strictly increasing per process so job ids never collide
        with self._id_lock:
            ms = max(int(time.time() * 1000), self._last_ms + 1)
            self._last_ms = ms
            return ms

    def enqueue(self, task: Task) -> QueueJob:
        """
        Persist a task as a WAITING job.

        Args:
            task: Work to run; its priority overrides the per-type default

        Returns:
            The stored QueueJob
        """
        priority = task.priority if task.priority is not None else self.priorities[task.task_type]
        target = task.message_id if task.message_id is not None else task.account_id

        job = QueueJob(
            job_id=f"{task.task_type.value}-{target}-{self._next_timestamp()}",
            queue_name=self.queue_name,
            task_type=task.task_type,
            priority=priority,
            max_attempts=self.max_attempts,
            payload=task.to_payload(),
        )
        stored = self.db.insert_job(job)

        log.info(
            "job_enqueued",
            job_id=stored.job_id,
            task_type=task.task_type.value,
            message_id=task.message_id,
            priority=priority,
        )
        return stored

    def claim(self) -> QueueJob | None:
        """Take the next runnable job, or None if the queue is idle."""
        return self.db.claim_next_job(self.queue_name)

    def report_progress(self, job: QueueJob, progress: int) -> None:
        job.progress = max(0, min(100, int(progress)))
        self.db.update_job_progress(job.job_id, job.progress)

    def complete(self, job: QueueJob, result: dict[str, Any] | None = None) -> None:
        job.status = JobStatus.COMPLETED
        job.progress = 100
        job.result = result or {}
        self.db.complete_job(job.job_id, job.result)
        log.info("job_completed", job_id=job.job_id, attempts=job.attempts)

    def backoff_delay(self, attempts: int) -> float:
        """Seconds to wait before the next attempt after `attempts` tries."""
        return self.backoff_seconds * (2 ** max(attempts - 1, 0))

    def fail(self, job: QueueJob, error: str, permanent: bool = False) -> bool:
        """
        Settle a failed attempt.

        Args:
            job: The claimed job
            error: Error description stored on the job
            permanent: Skip retries (data errors that can never succeed)

        Returns:
            True if the job was scheduled for another attempt
        """
        job.error = error

        if not permanent and job.attempts < job.max_attempts:
            delay = self.backoff_delay(job.attempts)
            job.status = JobStatus.DELAYED
            job.run_at = datetime.now(timezone.utc) + timedelta(seconds=delay)
            self.db.schedule_job_retry(job.job_id, error, job.run_at)
            log.warning(
                "job_retry_scheduled",
                job_id=job.job_id,
                attempts=job.attempts,
                delay_seconds=delay,
                error=error,
            )
            return True

        job.status = JobStatus.FAILED
        job.failed_at = datetime.now(timezone.utc)
        self.db.fail_job(job.job_id, error)
        log.error(
            "job_failed",
            job_id=job.job_id,
            attempts=job.attempts,
            permanent=permanent,
            error=error,
        )
        return False

    def has_open_job(self, message_id: int, task_type: TaskType) -> bool:
        return self.db.has_open_job(self.queue_name, message_id, task_type)

    def reclaim_stalled(self, lease_seconds: float) -> list[QueueJob]:
        """
        Release ACTIVE jobs that stopped reporting for longer than the lease.

        A claimed job refreshes its heartbeat on claim and on every progress
        report. One that goes quiet belongs to a worker that died or was
        abandoned at shutdown. It is retried if attempts remain, otherwise
        failed.

        Args:
            lease_seconds: Silence after which an ACTIVE job counts as stalled

        Returns:
            The reclaimed jobs in their new state
        """
        cutoff = datetime.now(timezone.utc) - timedelta(seconds=lease_seconds)
        reclaimed = self.db.reclaim_stalled_jobs(
            self.queue_name, cutoff, f"Job stalled: no heartbeat for {lease_seconds:.0f}s"
        )

        for job in reclaimed:
            log.warning(
                "job_stalled_reclaimed",
                job_id=job.job_id,
                attempts=job.attempts,
                status=job.status.value,
            )
        return reclaimed

    def stats(self) -> dict[str, int]:
        """Job counts per status, e.g. {"waiting": 3, "active": 1, ...}."""
        counts = self.db.get_job_stats(self.queue_name)
        return {status.value.lower(): counts.get(status.value, 0) for status in JobStatus}
