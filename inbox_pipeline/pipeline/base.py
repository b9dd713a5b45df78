"""
Abstract base class for stage handlers.
"""

from abc import ABC, abstractmethod
from typing import Callable

from inbox_pipeline.core.models import QueueJob, StageResult, Task, TaskType

ProgressCallback = Callable[[int], None]


class BaseStage(ABC):
    """Abstract handler interface for one kind of queued task."""

    task_type: TaskType

    @abstractmethod
    def run(self, task: Task, job: QueueJob | None, progress: ProgressCallback) -> StageResult:
        """
        Run the stage for a task.

        Args:
            task: Task payload taken from the queue
            job: The claimed job (None when run outside the queue)
            progress: Callback receiving 0..100 progress reports

        Returns:
            StageResult with success status and details

        Raises:
            PermanentTaskError: the task can never succeed
        """
        pass


def is_retry(job: QueueJob | None) -> bool:
    """True when the job has been attempted before."""
    return job is not None and job.attempts > 1
