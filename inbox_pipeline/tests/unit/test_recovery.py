"""Unit tests for the recovery sweeper."""

from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest

from inbox_pipeline.core.models import Classification, JobStatus, MessageStatus, Task, TaskType
from inbox_pipeline.monitoring.recovery import RecoverySweeper
from inbox_pipeline.tests.fakes import make_raw

S = MessageStatus


@pytest.fixture
def sweeper(db, queue) -> RecoverySweeper:
    scheduler = MagicMock()
    scheduler.running = False
    return RecoverySweeper(
        db,
        queue,
        categories=[Classification.CREDIT_CARD, Classification.BANKING, Classification.PAYMENT],
        grace_minutes=5,
        batch_size=10,
        interval_seconds=60,
        extract_priority=3,
        classify_priority=1,
        stall_seconds=600,
        scheduler=scheduler,
    )


@pytest.fixture
def classified(db, admission, state, account):
    """Create a CLASSIFIED message with the given classification and age."""
    def _make(external_id: str, classification: Classification, minutes_old: int):
        message = admission.admit(make_raw(external_id, subject=external_id), account).message
        state.advance(message.id, [S.PENDING], S.PROCESSING)
        state.advance(message.id, [S.PROCESSING], S.CLASSIFIED, classification=classification)
        db.set_updated_at(message.id, minutes_ago(minutes_old))
        return message
    return _make


def extract_jobs(db):
    return [job for job in db.jobs.values() if job.task_type == TaskType.EXTRACT]


def classify_jobs(db):
    return [job for job in db.jobs.values() if job.task_type == TaskType.CLASSIFY]


def minutes_ago(minutes: int) -> datetime:
    return datetime.now(timezone.utc) - timedelta(minutes=minutes)


class TestSweep:
    """Tests for RecoverySweeper.sweep."""

    def test_requeues_stuck_messages(self, db, sweeper, classified):
        stuck = classified("stuck", Classification.CREDIT_CARD, minutes_old=10)

        stats = sweeper.sweep()

        assert stats["processed"] == 1
        assert stats["errors"] == 0
        jobs = extract_jobs(db)
        assert [job.payload["message_id"] for job in jobs] == [stuck.id]
        assert jobs[0].priority == 3

    def test_grace_period_respected(self, db, sweeper, classified):
        classified("fresh", Classification.CREDIT_CARD, minutes_old=1)

        assert sweeper.sweep()["processed"] == 0
        assert extract_jobs(db) == []

    def test_other_categories_ignored(self, sweeper, classified):
        classified("invest", Classification.INVESTMENT, minutes_old=30)
        assert sweeper.sweep()["processed"] == 0

    def test_oldest_first_and_bounded(self, db, queue, classified):
        sweeper = RecoverySweeper(
            db, queue, categories=[Classification.BANKING], grace_minutes=5, batch_size=2,
            scheduler=MagicMock(),
        )
        newest = classified("a", Classification.BANKING, minutes_old=6)
        oldest = classified("b", Classification.BANKING, minutes_old=60)
        middle = classified("c", Classification.BANKING, minutes_old=30)

        sweeper.sweep()

        requeued = [job.payload["message_id"] for job in sorted(extract_jobs(db), key=lambda j: j.id)]
        assert requeued == [oldest.id, middle.id]
        assert newest.id not in requeued

    def test_enqueue_error_counted(self, db, classified):
        classified("x", Classification.PAYMENT, minutes_old=10)
        classified("y", Classification.PAYMENT, minutes_old=20)
        queue = MagicMock()
        queue.reclaim_stalled.return_value = []
        queue.has_open_job.return_value = False
        queue.enqueue.side_effect = [RuntimeError("db down"), MagicMock()]

        stats = RecoverySweeper(
            db, queue, categories=[Classification.PAYMENT], grace_minutes=5, scheduler=MagicMock(),
        ).sweep()

        assert stats["processed"] == 1
        assert stats["errors"] == 1

    def test_open_extract_job_not_duplicated(self, db, sweeper, classified):
        classified("stuck", Classification.CREDIT_CARD, minutes_old=10)

        sweeper.sweep()
        second = sweeper.sweep()

        assert second["processed"] == 0
        assert len(extract_jobs(db)) == 1

    def test_sweep_then_extract_completes(self, db, sweeper, classified, drain):
        """Test a re-queued extraction completes the stuck message."""
        stuck = classified("stuck", Classification.CREDIT_CARD, minutes_old=10)

        sweeper.sweep()
        drain()

        assert db.get_message(stuck.id).status == S.COMPLETED
        assert db.get_extracted_data(stuck.id) is not None


class TestPendingRecovery:
    """Tests for messages admitted without a classify task."""

    def test_orphaned_pending_requeued(self, db, sweeper, admission, account, drain):
        message = admission.admit(make_raw("orphan", subject="Team lunch"), account).message
        db.set_updated_at(message.id, minutes_ago(10))

        stats = sweeper.sweep()
        drain()

        assert stats["classify_requeued"] == 1
        jobs = classify_jobs(db)
        assert [job.payload["message_id"] for job in jobs] == [message.id]
        assert jobs[0].priority == 1
        assert db.get_message(message.id).status == S.COMPLETED

    def test_pending_with_waiting_job_left_alone(self, db, sweeper, queue, admission, account):
        message = admission.admit(make_raw("queued"), account).message
        queue.enqueue(Task(task_type=TaskType.CLASSIFY, account_id=account.id, message_id=message.id))
        db.set_updated_at(message.id, minutes_ago(10))

        assert sweeper.sweep()["classify_requeued"] == 0
        assert len(classify_jobs(db)) == 1

    def test_fresh_pending_left_alone(self, db, sweeper, admission, account):
        admission.admit(make_raw("fresh"), account)

        assert sweeper.sweep()["classify_requeued"] == 0
        assert classify_jobs(db) == []


class TestStalledJobs:
    """Tests for reclaiming ACTIVE jobs whose worker went away."""

    def test_abandoned_job_retried_to_completion(self, db, sweeper, queue, admission, account, worker, drain):
        """Test a claimed job that was never settled is released and then completes."""
        message = admission.admit(make_raw("m1", subject="Team lunch"), account).message
        job = queue.enqueue(Task(task_type=TaskType.CLASSIFY, account_id=account.id, message_id=message.id))
        queue.claim()
        assert worker.run_once() is False

        db.set_job_updated_at(job.job_id, minutes_ago(20))
        stats = sweeper.sweep()
        drain()

        assert stats["reclaimed"] == 1
        assert db.jobs[job.job_id].status == JobStatus.COMPLETED
        assert db.jobs[job.job_id].attempts == 2
        assert db.get_message(message.id).status == S.COMPLETED

    def test_message_stuck_processing_released(self, db, sweeper, queue, state, admission, account, drain):
        """Test a classify job that died mid-run frees its message for the retry."""
        message = admission.admit(make_raw("m1", subject="Team lunch"), account).message
        job = queue.enqueue(Task(task_type=TaskType.CLASSIFY, account_id=account.id, message_id=message.id))
        queue.claim()
        state.advance(message.id, [S.PENDING], S.PROCESSING)

        db.set_job_updated_at(job.job_id, minutes_ago(20))
        sweeper.sweep()
        assert db.get_message(message.id).status == S.FAILED

        drain()

        assert db.jobs[job.job_id].status == JobStatus.COMPLETED
        assert db.get_message(message.id).status == S.COMPLETED

    def test_exhausted_job_failed(self, db, sweeper, queue, account):
        job = queue.enqueue(Task(task_type=TaskType.SYNC, account_id=account.id))
        queue.claim()
        db.jobs[job.job_id].attempts = 3
        db.set_job_updated_at(job.job_id, minutes_ago(20))

        sweeper.sweep()

        stored = db.jobs[job.job_id]
        assert stored.status == JobStatus.FAILED
        assert stored.error.startswith("Job stalled")

    def test_recent_heartbeat_kept(self, db, sweeper, queue, account):
        job = queue.enqueue(Task(task_type=TaskType.SYNC, account_id=account.id))
        queue.claim()
        queue.report_progress(job, 50)

        assert sweeper.sweep()["reclaimed"] == 0
        assert db.jobs[job.job_id].status == JobStatus.ACTIVE


class TestLifecycle:
    def test_start_registers_interval_job(self, sweeper):
        sweeper.start()

        sweeper.scheduler.add_job.assert_called_once()
        assert sweeper.scheduler.add_job.call_args.kwargs["id"] == "recovery_sweep"
        sweeper.scheduler.start.assert_called_once()
