"""
Stage handlers for queued tasks: classify, extract and sync.

Handlers are safe to run more than once for the same message. A handler
that loses a compare-and-set on the message status returns a skipped
result instead of repeating work another execution already did.
"""

from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeoutError
from typing import Any, Callable, Protocol

from inbox_pipeline.classifiers.base import BaseClassifier, BaseExtractor
from inbox_pipeline.config import settings
from inbox_pipeline.core.database import Database
from inbox_pipeline.core.errors import PermanentTaskError
from inbox_pipeline.core.logging import get_logger
from inbox_pipeline.core.models import (
    Classification,
    ClassificationResult,
    ExtractedData,
    Message,
    MessageStatus,
    QueueJob,
    StageResult,
    Task,
    TaskType,
)
from inbox_pipeline.jobs.job_queue import JobQueue
from inbox_pipeline.pipeline.base import BaseStage, ProgressCallback, is_retry
from inbox_pipeline.pipeline.state import MessageStateMachine
from inbox_pipeline.services.broadcaster import (
    EventType,
    StatusBroadcaster,
    StatusEvent,
    safe_broadcast,
)

log = get_logger(__name__)


def call_with_timeout(
    executor: ThreadPoolExecutor,
    timeout: float,
    fn: Callable[..., Any],
    *args,
) -> Any:
    """
    Run fn(*args) on the executor and wait at most `timeout` seconds.

    The call is not cancelled on timeout; its result is discarded.

    Raises:
        TimeoutError: the call did not finish in time
    """
    future = executor.submit(fn, *args)
    try:
        return future.result(timeout=timeout)
    except FutureTimeoutError as e:
        raise TimeoutError(f"timed out after {timeout}s") from e


def parse_categories(values: list[str]) -> frozenset[Classification]:
    return frozenset(Classification(value.upper()) for value in values)


class _MessageStage(BaseStage):
    """Shared plumbing for stages that operate on one message."""

    def __init__(self, db: Database, state: MessageStateMachine, broadcaster: StatusBroadcaster):
        self.db = db
        self.state = state
        self.broadcaster = broadcaster

    def _load(self, task: Task) -> Message:
        if task.message_id is None:
            raise PermanentTaskError(f"{task.task_type.value} task without message_id")
        message = self.db.get_message(task.message_id)
        if message is None:
            raise PermanentTaskError(f"Message {task.message_id} not found")
        return message

    def _emit(self, event_type: EventType, message: Message, text: str, progress: int | None = None, **data):
        safe_broadcast(self.broadcaster, StatusEvent(
            type=event_type,
            message_id=message.id,
            account_id=message.account_id,
            progress=progress,
            message=text,
            data=data,
        ))

    def _mark_failed(self, message: Message, error: Exception) -> None:
        """Best-effort FAILED write and notification; never masks the original error."""
        error_text = str(error) or type(error).__name__
        try:
            self.state.fail(message.id, error_text)
        except Exception as e:
            log.error("mark_failed_error", message_id=message.id, error=str(e))
        self._emit(EventType.FAILED, message, f"Processing failed: {error_text}")


class ClassifyStage(_MessageStage):
    """Decides whether a message is financial and what kind it is."""

    task_type = TaskType.CLASSIFY

    def __init__(
        self,
        db: Database,
        state: MessageStateMachine,
        queue: JobQueue,
        classifier: BaseClassifier,
        broadcaster: StatusBroadcaster,
        executor: ThreadPoolExecutor,
        timeout: float | None = None,
        always_extract: frozenset[Classification] | None = None,
        extract_priority: int | None = None,
    ):
        super().__init__(db, state, broadcaster)
        self.queue = queue
        self.classifier = classifier
        self.executor = executor
        self.timeout = timeout or settings.classify_timeout_seconds
        self.always_extract = (
            always_extract if always_extract is not None
            else parse_categories(settings.always_extract_categories)
        )
        self.extract_priority = extract_priority or settings.extract_priority

    def run(self, task: Task, job: QueueJob | None, progress: ProgressCallback) -> StageResult:
        message = self._load(task)

        retry = is_retry(job)
        expected = [MessageStatus.PENDING]
        if retry:
            expected.append(MessageStatus.FAILED)

        if not self.state.advance(message.id, expected, MessageStatus.PROCESSING, retry=retry):
            log.info("classify_already_claimed", message_id=message.id, status=message.status.value)
            return StageResult(
                success=True,
                message_id=message.id,
                action="skipped_already_claimed",
                details={"status": message.status.value},
            )

        try:
            return self._classify(message, progress)
        except Exception as e:
            log.error("classify_stage_error", message_id=message.id, error=str(e))
            self._mark_failed(message, e)
            raise

    def _classify(self, message: Message, progress: ProgressCallback) -> StageResult:
        progress(10)
        self._emit(EventType.STARTED, message, f"Classifying: {message.subject}", progress=10)

        progress(30)
        result = self._call_classifier(message)
        progress(70)

        classification = result.classification
        should_extract = result.is_financial or classification in self.always_extract
        target = MessageStatus.CLASSIFIED if should_extract else MessageStatus.COMPLETED

        moved = self.state.advance(
            message.id,
            [MessageStatus.PROCESSING],
            target,
            classification=classification,
            confidence=result.confidence,
            language=result.language,
            reasoning=result.reasoning,
        )
        if not moved:
            return StageResult(
                success=True,
                message_id=message.id,
                action="skipped_status_changed",
            )
        progress(90)

        if should_extract:
            self._queue_extraction(message, classification)

        details = {
            "classification": classification.value,
            "confidence": result.confidence,
            "is_financial": result.is_financial,
            "degraded": result.degraded,
            "extract": should_extract,
        }
        self._emit(
            EventType.CLASSIFIED,
            message,
            f"Classified as {classification.value}",
            progress=90,
            **details,
        )
        if not should_extract:
            self._emit(EventType.COMPLETED, message, "Processing complete", progress=100)

        progress(100)
        log.info("message_classified", message_id=message.id, **details)
        return StageResult(
            success=True,
            message_id=message.id,
            action="classified" if should_extract else "completed",
            details=details,
        )

    def _queue_extraction(self, message: Message, classification: Classification) -> None:
        try:
            self.queue.enqueue(Task(
                task_type=TaskType.EXTRACT,
                account_id=message.account_id,
                message_id=message.id,
                priority=self.extract_priority,
            ))
        except Exception as e:
            # The message is about to be failed; an always-extract one must
            # still end up with a row.
            if classification in self.always_extract:
                log.warning(
                    "extraction_placeholder",
                    message_id=message.id,
                    classification=classification.value,
                    error=str(e),
                )
                self.db.insert_extracted_data(ExtractedData.placeholder(message.id))
            raise

    def _call_classifier(self, message: Message) -> ClassificationResult:
        try:
            return call_with_timeout(
                self.executor,
                self.timeout,
                self.classifier.classify,
                message.subject,
                message.text_for_ai,
                message.sender,
            )
        except TimeoutError as e:
            log.warning("classify_timeout", message_id=message.id, timeout=self.timeout)
            return ClassificationResult.unclassified(str(e))
        except Exception as e:
            log.warning("classify_collaborator_error", message_id=message.id, error=str(e))
            return ClassificationResult.unclassified(str(e))


class ExtractStage(_MessageStage):
    """Extracts transaction details from a classified message."""

    task_type = TaskType.EXTRACT

    def __init__(
        self,
        db: Database,
        state: MessageStateMachine,
        extractor: BaseExtractor,
        broadcaster: StatusBroadcaster,
        executor: ThreadPoolExecutor,
        timeout: float | None = None,
        always_extract: frozenset[Classification] | None = None,
    ):
        super().__init__(db, state, broadcaster)
        self.extractor = extractor
        self.executor = executor
        self.timeout = timeout or settings.extract_timeout_seconds
        self.always_extract = (
            always_extract if always_extract is not None
            else parse_categories(settings.always_extract_categories)
        )

    def run(self, task: Task, job: QueueJob | None, progress: ProgressCallback) -> StageResult:
        message = self._load(task)

        existing = self.db.get_extracted_data(message.id)
        if message.status == MessageStatus.COMPLETED or existing:
            if existing and message.status == MessageStatus.CLASSIFIED:
                # Row written before the message reached CLASSIFIED again
                self.state.advance(message.id, [MessageStatus.CLASSIFIED], MessageStatus.COMPLETED)
            log.info("extract_already_done", message_id=message.id)
            return StageResult(success=True, message_id=message.id, action="skipped_already_extracted")

        if message.status == MessageStatus.FAILED and is_retry(job):
            if not self.state.advance(
                message.id, [MessageStatus.FAILED], MessageStatus.CLASSIFIED, retry=True
            ):
                return StageResult(success=True, message_id=message.id, action="skipped_status_changed")
        elif message.status != MessageStatus.CLASSIFIED:
            log.warning("extract_not_classified", message_id=message.id, status=message.status.value)
            return StageResult(
                success=True,
                message_id=message.id,
                action="skipped_not_classified",
                details={"status": message.status.value},
            )

        try:
            return self._extract(message, progress)
        except Exception as e:
            log.error("extract_stage_error", message_id=message.id, error=str(e))
            self._mark_failed(message, e)
            raise

    def _extract(self, message: Message, progress: ProgressCallback) -> StageResult:
        progress(10)
        self._emit(EventType.STARTED, message, f"Extracting: {message.subject}", progress=10)

        placeholder = False
        try:
            result = call_with_timeout(
                self.executor,
                self.timeout,
                self.extractor.extract,
                message.subject,
                message.text_for_ai,
                message.classification.value.lower(),
            )
            data = result.to_extracted_data(message.id)
        except Exception as e:
            if message.classification not in self.always_extract:
                raise
            log.warning(
                "extraction_placeholder",
                message_id=message.id,
                classification=message.classification.value,
                error=str(e),
            )
            data = ExtractedData.placeholder(message.id)
            placeholder = True
        progress(70)

        inserted = self.db.insert_extracted_data(data)
        self.state.advance(message.id, [MessageStatus.CLASSIFIED], MessageStatus.COMPLETED)
        progress(90)

        details = {
            "amount": data.amount,
            "currency": data.currency,
            "merchant_name": data.merchant_name,
            "confidence": data.confidence,
            "placeholder": placeholder,
            "inserted": inserted,
        }
        self._emit(EventType.EXTRACTED, message, "Transaction data extracted", progress=90, **details)
        self._emit(EventType.COMPLETED, message, "Processing complete", progress=100)

        progress(100)
        log.info("message_extracted", message_id=message.id, **details)
        return StageResult(
            success=True,
            message_id=message.id,
            action="placeholder" if placeholder else "extracted",
            details=details,
        )


class AccountChecker(Protocol):
    def check_account(self, account_id: int) -> Any:
        ...


class SyncStage(BaseStage):
    """Runs one change check for an account through the queue."""

    task_type = TaskType.SYNC

    def __init__(self, db: Database, checker: AccountChecker):
        self.db = db
        self.checker = checker

    def run(self, task: Task, job: QueueJob | None, progress: ProgressCallback) -> StageResult:
        if self.db.get_account(task.account_id) is None:
            raise PermanentTaskError(f"Account {task.account_id} not found")

        progress(10)
        result = self.checker.check_account(task.account_id)
        progress(100)

        return StageResult(
            success=result.success,
            message_id=None,
            action="synced",
            details={"account_id": task.account_id, "admitted": result.admitted},
        )


class StageDispatcher:
    """Routes each task to the handler for its TaskType."""

    def __init__(self, stages: list[BaseStage]):
        self.handlers: dict[TaskType, BaseStage] = {stage.task_type: stage for stage in stages}
        missing = [t.value for t in TaskType if t not in self.handlers]
        if missing:
            raise ValueError(f"No stage handler for task types: {missing}")

    def dispatch(self, job: QueueJob, progress: ProgressCallback) -> StageResult:
        task = job.task
        return self.handlers[task.task_type].run(task, job, progress)
