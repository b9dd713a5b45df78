"""
Shared pytest fixtures for inbox_pipeline tests.
"""

from concurrent.futures import ThreadPoolExecutor
from unittest.mock import MagicMock

import pytest

from inbox_pipeline.core.models import Classification, ClassificationResult, TaskType
from inbox_pipeline.jobs.job_queue import JobQueue
from inbox_pipeline.jobs.worker import WorkerPool
from inbox_pipeline.monitoring.change_detector import ChangeDetector
from inbox_pipeline.pipeline.admission import Admission
from inbox_pipeline.pipeline.stages import ClassifyStage, ExtractStage, StageDispatcher, SyncStage
from inbox_pipeline.pipeline.state import MessageStateMachine
from inbox_pipeline.tests.fakes import (
    InMemoryDatabase,
    RecordingBroadcaster,
    ScriptedClassifier,
    ScriptedExtractor,
    ScriptedMailbox,
)

ALWAYS_EXTRACT = frozenset({Classification.CREDIT_CARD})


@pytest.fixture
def db() -> InMemoryDatabase:
    return InMemoryDatabase()


@pytest.fixture
def account(db):
    """Connected account with an established sync cursor."""
    return db.add_account(sync_cursor="100")


@pytest.fixture
def mailbox() -> ScriptedMailbox:
    return ScriptedMailbox(start=100)


@pytest.fixture
def classifier() -> ScriptedClassifier:
    return ScriptedClassifier()


@pytest.fixture
def extractor() -> ScriptedExtractor:
    return ScriptedExtractor()


@pytest.fixture
def broadcaster() -> RecordingBroadcaster:
    return RecordingBroadcaster()


@pytest.fixture
def executor():
    pool = ThreadPoolExecutor(max_workers=4)
    yield pool
    pool.shutdown(wait=False)


@pytest.fixture
def state(db) -> MessageStateMachine:
    return MessageStateMachine(db)


@pytest.fixture
def admission(db) -> Admission:
    return Admission(db)


@pytest.fixture
def queue(db) -> JobQueue:
    return JobQueue(
        db,
        queue_name="test-queue",
        max_attempts=3,
        backoff_seconds=2.0,
        priorities={TaskType.CLASSIFY: 1, TaskType.EXTRACT: 3, TaskType.SYNC: 5},
    )


@pytest.fixture
def classify_stage(db, state, queue, classifier, broadcaster, executor) -> ClassifyStage:
    return ClassifyStage(
        db,
        state,
        queue,
        classifier,
        broadcaster,
        executor,
        timeout=0.5,
        always_extract=ALWAYS_EXTRACT,
        extract_priority=3,
    )


@pytest.fixture
def extract_stage(db, state, extractor, broadcaster, executor) -> ExtractStage:
    return ExtractStage(
        db,
        state,
        extractor,
        broadcaster,
        executor,
        timeout=0.5,
        always_extract=ALWAYS_EXTRACT,
    )


@pytest.fixture
def detector(db, admission, queue, mailbox, broadcaster) -> ChangeDetector:
    """Change detector with a mock scheduler; checks run synchronously."""
    scheduler = MagicMock()
    scheduler.running = False
    return ChangeDetector(
        db,
        admission,
        queue,
        lambda account: mailbox,
        broadcaster=broadcaster,
        interval_seconds=30,
        fallback_max_results=15,
        fallback_days=1,
        classify_priority=1,
        scheduler=scheduler,
    )


@pytest.fixture
def dispatcher(db, classify_stage, extract_stage, detector) -> StageDispatcher:
    return StageDispatcher([classify_stage, extract_stage, SyncStage(db, detector)])


@pytest.fixture
def worker(queue, dispatcher) -> WorkerPool:
    return WorkerPool(queue, dispatcher, concurrency=1, poll_interval=0.01)


@pytest.fixture
def drain(worker):
    """Run queued jobs synchronously until the queue is idle."""
    def _drain(limit: int = 50) -> int:
        processed = 0
        while processed < limit and worker.run_once():
            processed += 1
        return processed
    return _drain


@pytest.fixture
def financial_result() -> ClassificationResult:
    return ClassificationResult(
        is_financial=True,
        confidence=0.92,
        category="banking",
        reasoning="Transaction alert from a bank",
    )
