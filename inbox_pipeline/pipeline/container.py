"""
Wiring for the whole pipeline.

Pipeline builds every component from settings (or injected overrides) and
owns their start/stop order.
"""

from concurrent.futures import ThreadPoolExecutor

from inbox_pipeline.classifiers.base import BaseClassifier, BaseExtractor
from inbox_pipeline.config import Settings, settings as default_settings
from inbox_pipeline.core.database import Database
from inbox_pipeline.core.logging import get_logger
from inbox_pipeline.core.models import Classification, TaskType
from inbox_pipeline.jobs.job_queue import JobQueue
from inbox_pipeline.jobs.worker import WorkerPool
from inbox_pipeline.monitoring.change_detector import ChangeDetector
from inbox_pipeline.monitoring.recovery import RecoverySweeper
from inbox_pipeline.pipeline.admission import Admission
from inbox_pipeline.pipeline.stages import (
    ClassifyStage,
    ExtractStage,
    StageDispatcher,
    SyncStage,
    parse_categories,
)
from inbox_pipeline.pipeline.state import MessageStateMachine
from inbox_pipeline.services.broadcaster import NullBroadcaster, StatusBroadcaster
from inbox_pipeline.services.classifier_client import RemoteClassifierClient
from inbox_pipeline.services.imap import IMAPMailbox
from inbox_pipeline.services.mailbox import MailboxFactory

log = get_logger(__name__)


def http_timeout(config: Settings) -> float:
    """
    HTTP timeout for the classifier service, never longer than a stage timeout.

    A call that outlives its stage timeout is abandoned but keeps an ai-call
    thread busy until the HTTP request gives up.
    """
    return min(
        config.classifier_timeout,
        config.classify_timeout_seconds,
        config.extract_timeout_seconds,
    )


class Pipeline:
    """Container for the intake pipeline components."""

    def __init__(
        self,
        db: Database | None = None,
        classifier: BaseClassifier | None = None,
        extractor: BaseExtractor | None = None,
        mailbox_factory: MailboxFactory | None = None,
        broadcaster: StatusBroadcaster | None = None,
        config: Settings | None = None,
    ):
        config = config or default_settings
        self.config = config

        self.db = db or Database(config.database_url)
        self.broadcaster = broadcaster or NullBroadcaster()

        client = None
        if classifier is None or extractor is None:
            client = RemoteClassifierClient(
                base_url=config.classifier_service_url,
                timeout=http_timeout(config),
            )
        self.classifier = classifier or client
        self.extractor = extractor or client
        self._client = client

        self.executor = ThreadPoolExecutor(
            max_workers=max(config.queue_concurrency * 2, 4),
            thread_name_prefix="ai-call",
        )

        self.state = MessageStateMachine(self.db)
        self.admission = Admission(self.db)
        self.queue = JobQueue(
            self.db,
            queue_name=config.queue_name,
            max_attempts=config.queue_max_attempts,
            backoff_seconds=config.queue_backoff_seconds,
            priorities={
                TaskType.CLASSIFY: config.classify_priority,
                TaskType.EXTRACT: config.extract_priority,
                TaskType.SYNC: config.sync_priority,
            },
        )

        self.detector = ChangeDetector(
            self.db,
            self.admission,
            self.queue,
            mailbox_factory or IMAPMailbox.for_account,
            broadcaster=self.broadcaster,
            interval_seconds=config.monitor_interval_seconds,
            fallback_max_results=config.fallback_max_results,
            fallback_days=config.fallback_days,
            classify_priority=config.classify_priority,
        )

        always_extract = parse_categories(config.always_extract_categories)
        self.dispatcher = StageDispatcher([
            ClassifyStage(
                self.db,
                self.state,
                self.queue,
                self.classifier,
                self.broadcaster,
                self.executor,
                timeout=config.classify_timeout_seconds,
                always_extract=always_extract,
                extract_priority=config.extract_priority,
            ),
            ExtractStage(
                self.db,
                self.state,
                self.extractor,
                self.broadcaster,
                self.executor,
                timeout=config.extract_timeout_seconds,
                always_extract=always_extract,
            ),
            SyncStage(self.db, self.detector),
        ])

        self.workers = WorkerPool(
            self.queue,
            self.dispatcher,
            concurrency=config.queue_concurrency,
            poll_interval=config.queue_poll_interval_seconds,
        )

        self.sweeper = RecoverySweeper(
            self.db,
            self.queue,
            categories=[Classification(value.upper()) for value in config.recovery_categories],
            grace_minutes=config.recovery_grace_minutes,
            batch_size=config.recovery_batch_size,
            interval_seconds=config.recovery_interval_seconds,
            extract_priority=config.extract_priority,
            classify_priority=config.classify_priority,
            stall_seconds=config.queue_stall_seconds,
            state=self.state,
        )

    def start(self) -> None:
        self.workers.start()
        self.detector.start()
        if self.config.recovery_enabled:
            self.sweeper.start()
        log.info("pipeline_started")

    def stop(self) -> None:
        """Stop intake first, then let workers finish their current jobs."""
        self.detector.stop()
        if self.config.recovery_enabled:
            self.sweeper.stop()
        self.workers.stop()
        self.executor.shutdown(wait=False)
        if self._client is not None:
            self._client.close()
        log.info("pipeline_stopped")
