"""
Bounded worker pool consuming the job queue.

Each worker thread claims one job at a time, runs it through the stage
dispatcher and settles it. On stop, a worker finishes its current job
before exiting.
"""

import threading

from inbox_pipeline.config import settings
from inbox_pipeline.core.errors import PermanentTaskError
from inbox_pipeline.core.logging import bind_context, clear_context, get_logger
from inbox_pipeline.jobs.job_queue import JobQueue
from inbox_pipeline.pipeline.stages import StageDispatcher

log = get_logger(__name__)


class WorkerPool:
    """Fixed number of threads pulling jobs from one queue."""

    def __init__(
        self,
        queue: JobQueue,
        dispatcher: StageDispatcher,
        concurrency: int | None = None,
        poll_interval: float | None = None,
    ):
        self.queue = queue
        self.dispatcher = dispatcher
        self.concurrency = concurrency or settings.queue_concurrency
        self.poll_interval = poll_interval or settings.queue_poll_interval_seconds
        self._stop = threading.Event()
        self._threads: list[threading.Thread] = []

    @property
    def is_running(self) -> bool:
        return any(thread.is_alive() for thread in self._threads)

    def start(self) -> None:
        if self.is_running:
            return

        self._stop.clear()
        self._threads = [
            threading.Thread(target=self._run_loop, name=f"worker-{i}", daemon=True)
            for i in range(self.concurrency)
        ]
        for thread in self._threads:
            thread.start()
        log.info("worker_pool_started", concurrency=self.concurrency, queue=self.queue.queue_name)

    def stop(self, timeout: float = 30.0) -> None:
        self._stop.set()
        for thread in self._threads:
            thread.join(timeout=timeout)
        self._threads = []
        log.info("worker_pool_stopped")

    def _run_loop(self) -> None:
        while not self._stop.is_set():
            try:
                processed = self.run_once()
            except Exception as e:
                log.error("worker_loop_error", error=str(e))
                processed = False

            if not processed:
                self._stop.wait(self.poll_interval)

    def run_once(self) -> bool:
        """
        Claim and run a single job.

        Returns:
            True if a job was processed, False if the queue was idle
        """
        job = self.queue.claim()
        if job is None:
            return False

        bind_context(
            job_id=job.job_id,
            task_type=job.task_type.value,
            message_id=job.payload.get("message_id"),
        )
        try:
            log.info("job_started", attempts=job.attempts)
            result = self.dispatcher.dispatch(
                job,
                lambda pct: self.queue.report_progress(job, pct),
            )
            self.queue.complete(job, result.to_dict())

        except PermanentTaskError as e:
            self.queue.fail(job, str(e), permanent=True)

        except Exception as e:
            log.exception("job_error", error=str(e))
            self.queue.fail(job, str(e) or type(e).__name__)

        finally:
            clear_context()

        return True
