"""
Recovery sweeper for work that fell out of the queue.

Each pass does three things, oldest first and in bounded batches:

- releases ACTIVE jobs whose worker stopped heartbeating, so they are
  retried or failed instead of staying ACTIVE forever;
- re-queues classification for PENDING messages that have no open
  classify job (the enqueue after admission failed);
- re-queues extraction for CLASSIFIED messages in the recovery categories
  whose extract task was never durably queued.

The stages ignore duplicates, so a task queued twice is harmless.
"""

from datetime import datetime, timedelta, timezone

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from inbox_pipeline.config import settings
from inbox_pipeline.core.database import Database
from inbox_pipeline.core.logging import get_logger
from inbox_pipeline.core.models import (
    Classification,
    Message,
    MessageStatus,
    QueueJob,
    Task,
    TaskType,
)
from inbox_pipeline.jobs.job_queue import JobQueue
from inbox_pipeline.pipeline.state import MessageStateMachine

log = get_logger(__name__)


class RecoverySweeper:
    """Periodically repairs stalled jobs and messages stuck without a task."""

    def __init__(
        self,
        db: Database,
        queue: JobQueue,
        categories: list[Classification] | None = None,
        grace_minutes: int | None = None,
        batch_size: int | None = None,
        interval_seconds: int | None = None,
        extract_priority: int | None = None,
        classify_priority: int | None = None,
        stall_seconds: int | None = None,
        state: MessageStateMachine | None = None,
        scheduler: BackgroundScheduler | None = None,
    ):
        self.db = db
        self.queue = queue
        self.categories = categories or [
            Classification(value.upper()) for value in settings.recovery_categories
        ]
        self.grace_minutes = grace_minutes or settings.recovery_grace_minutes
        self.batch_size = batch_size or settings.recovery_batch_size
        self.interval_seconds = interval_seconds or settings.recovery_interval_seconds
        self.extract_priority = extract_priority or settings.extract_priority
        self.classify_priority = classify_priority or settings.classify_priority
        self.stall_seconds = stall_seconds or settings.queue_stall_seconds
        self.state = state or MessageStateMachine(db)
        self.scheduler = scheduler or BackgroundScheduler()

    def start(self) -> None:
        self.scheduler.add_job(
            self.sweep,
            trigger=IntervalTrigger(seconds=self.interval_seconds),
            id="recovery_sweep",
            name="Reclaim stalled jobs and re-queue stuck messages",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        if not self.scheduler.running:
            self.scheduler.start()
        log.info("recovery_sweeper_started", interval_seconds=self.interval_seconds)

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
        log.info("recovery_sweeper_stopped")

    def sweep(self) -> dict[str, int]:
        """
        Run one recovery pass.

        Returns:
            {"reclaimed": n, "classify_requeued": n, "processed": n, "errors": n}
            where "processed" counts re-queued extractions
        """
        stats = {"reclaimed": 0, "classify_requeued": 0, "processed": 0, "errors": 0}
        cutoff = datetime.now(timezone.utc) - timedelta(minutes=self.grace_minutes)

        self._reclaim_stalled(stats)
        self._requeue(stats, "classify_requeued", MessageStatus.PENDING, None, TaskType.CLASSIFY, cutoff)
        self._requeue(stats, "processed", MessageStatus.CLASSIFIED, self.categories, TaskType.EXTRACT, cutoff)

        if any(stats.values()):
            log.info("recovery_sweep_complete", **stats)
        return stats

    def _reclaim_stalled(self, stats: dict[str, int]) -> None:
        try:
            reclaimed = self.queue.reclaim_stalled(self.stall_seconds)
        except Exception as e:
            log.error("recovery_reclaim_error", error=str(e))
            stats["errors"] += 1
            return

        stats["reclaimed"] += len(reclaimed)
        for job in reclaimed:
            self._release_message(job, stats)

    def _release_message(self, job: QueueJob, stats: dict[str, int]) -> None:
        # A classify job that died mid-run leaves its message in PROCESSING.
        # FAILED lets the retried job reopen it through the retry edge.
        message_id = job.payload.get("message_id")
        if job.task_type != TaskType.CLASSIFY or message_id is None:
            return

        try:
            self.state.advance(
                message_id,
                [MessageStatus.PROCESSING],
                MessageStatus.FAILED,
                error_message=job.error or "Job stalled",
            )
        except Exception as e:
            stats["errors"] += 1
            log.error("recovery_release_error", message_id=message_id, error=str(e))

    def _requeue(
        self,
        stats: dict[str, int],
        counter: str,
        status: MessageStatus,
        categories: list[Classification] | None,
        task_type: TaskType,
        cutoff: datetime,
    ) -> None:
        try:
            stuck = self.db.get_stuck_messages(
                status,
                categories,
                older_than=cutoff,
                limit=self.batch_size,
            )
        except Exception as e:
            log.error("recovery_query_error", status=status.value, error=str(e))
            stats["errors"] += 1
            return

        for message in stuck:
            try:
                if self.queue.has_open_job(message.id, task_type):
                    continue
                self.queue.enqueue(self._task_for(message, task_type))
                stats[counter] += 1
                log.info(
                    "recovery_requeued",
                    message_id=message.id,
                    task_type=task_type.value,
                    classification=message.classification.value,
                )
            except Exception as e:
                stats["errors"] += 1
                log.error("recovery_requeue_error", message_id=message.id, error=str(e))

    def _task_for(self, message: Message, task_type: TaskType) -> Task:
        priority = self.classify_priority if task_type == TaskType.CLASSIFY else self.extract_priority
        return Task(
            task_type=task_type,
            account_id=message.account_id,
            message_id=message.id,
            priority=priority,
        )
