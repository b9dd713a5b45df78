"""
In-memory test doubles for the pipeline's collaborators.

InMemoryDatabase implements the Database methods the pipeline calls, with
the same compare-and-set and uniqueness semantics as the SQL versions.
"""

import itertools
import threading
import time
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any

from inbox_pipeline.classifiers.base import BaseClassifier, BaseExtractor
from inbox_pipeline.core.database import TRANSITION_FIELDS
from inbox_pipeline.core.errors import CursorRejectedError, MailboxError
from inbox_pipeline.core.models import (
    Account,
    Classification,
    ClassificationResult,
    ExtractedData,
    ExtractionResult,
    JobStatus,
    Message,
    MessageStatus,
    QueueJob,
    TaskType,
)
from inbox_pipeline.services.broadcaster import StatusEvent
from inbox_pipeline.services.mailbox import ChangeSet, MessageRef, RawMessage


def _now() -> datetime:
    return datetime.now(timezone.utc)


class InMemoryDatabase:
    """Thread-safe stand-in for Database."""

    def __init__(self):
        self._lock = threading.Lock()
        self._ids = itertools.count(1)
        self.accounts: dict[int, Account] = {}
        self.messages: dict[int, Message] = {}
        self.extracted: dict[int, ExtractedData] = {}
        self.jobs: dict[str, QueueJob] = {}
        self.status_history: dict[int, list[MessageStatus]] = {}

    # Accounts

    def add_account(
        self,
        address: str = "alerts@example.com",
        sync_cursor: str | None = None,
        is_connected: bool = True,
    ) -> Account:
        with self._lock:
            account = Account(
                id=next(self._ids),
                address=address,
                is_connected=is_connected,
                sync_cursor=sync_cursor,
            )
            self.accounts[account.id] = account
            return replace(account)

    def get_account(self, account_id: int) -> Account | None:
        with self._lock:
            account = self.accounts.get(account_id)
            return replace(account) if account else None

    def update_sync_cursor(self, account_id: int, cursor: str) -> None:
        with self._lock:
            self.accounts[account_id].sync_cursor = cursor
            self.accounts[account_id].last_sync_at = _now()

    def mark_account_checked(self, account_id: int) -> None:
        with self._lock:
            if account_id in self.accounts:
                self.accounts[account_id].last_checked_at = _now()

    # Messages

    def get_message(self, message_id: int) -> Message | None:
        with self._lock:
            message = self.messages.get(message_id)
            return replace(message) if message else None

    def get_message_by_external_id(self, external_id: str) -> Message | None:
        with self._lock:
            for message in self.messages.values():
                if message.external_id == external_id:
                    return replace(message)
            return None

    def find_message_by_fingerprint(self, account_id: int, fingerprint: str) -> Message | None:
        with self._lock:
            for message in self.messages.values():
                if message.account_id == account_id and message.fingerprint == fingerprint:
                    return replace(message)
            return None

    def insert_message(self, message: Message) -> Message | None:
        with self._lock:
            if any(m.external_id == message.external_id for m in self.messages.values()):
                return None
            now = _now()
            stored = replace(message, id=next(self._ids), created_at=now, updated_at=now)
            self.messages[stored.id] = stored
            self.status_history[stored.id] = [stored.status]
            return replace(stored)

    def transition_message(
        self,
        message_id: int,
        expected: list[MessageStatus],
        target: MessageStatus,
        fields: dict[str, Any] | None = None,
    ) -> bool:
        fields = fields or {}
        unknown = set(fields) - TRANSITION_FIELDS
        if unknown:
            raise ValueError(f"Cannot write columns during transition: {sorted(unknown)}")

        with self._lock:
            message = self.messages.get(message_id)
            if message is None or message.status not in expected:
                return False
            for column, value in fields.items():
                if column == "classification" and not isinstance(value, Classification):
                    value = Classification(value)
                setattr(message, column, value)
            message.status = target
            message.updated_at = _now()
            self.status_history[message_id].append(target)
            return True

    def set_updated_at(self, message_id: int, updated_at: datetime) -> None:
        with self._lock:
            self.messages[message_id].updated_at = updated_at

    def get_stuck_messages(
        self,
        status: MessageStatus,
        classifications: list[Classification] | None,
        older_than: datetime,
        limit: int,
    ) -> list[Message]:
        with self._lock:
            stuck = [
                m for m in self.messages.values()
                if m.status == status
                and (classifications is None or m.classification in classifications)
                and m.updated_at < older_than
            ]
            stuck.sort(key=lambda m: m.updated_at)
            return [replace(m) for m in stuck[:limit]]

    def get_message_stats(self) -> dict[str, int]:
        with self._lock:
            counts: dict[str, int] = {}
            for message in self.messages.values():
                counts[message.status.value] = counts.get(message.status.value, 0) + 1
            return counts

    # Extracted data

    def insert_extracted_data(self, data: ExtractedData) -> bool:
        with self._lock:
            if data.message_id in self.extracted:
                return False
            data.id = next(self._ids)
            self.extracted[data.message_id] = replace(data)
            return True

    def get_extracted_data(self, message_id: int) -> ExtractedData | None:
        with self._lock:
            data = self.extracted.get(message_id)
            return replace(data) if data else None

    # Queue jobs

    def insert_job(self, job: QueueJob) -> QueueJob:
        with self._lock:
            if job.job_id in self.jobs:
                raise ValueError(f"Duplicate job id {job.job_id}")
            stored = replace(job, id=next(self._ids), created_at=_now(), run_at=_now(), updated_at=_now())
            self.jobs[stored.job_id] = stored
            return replace(stored)

    def claim_next_job(self, queue_name: str) -> QueueJob | None:
        with self._lock:
            now = _now()
            runnable = [
                job for job in self.jobs.values()
                if job.queue_name == queue_name
                and job.status in (JobStatus.WAITING, JobStatus.DELAYED)
                and (job.run_at is None or job.run_at <= now)
            ]
            if not runnable:
                return None
            job = min(runnable, key=lambda j: (j.priority, j.id))
            job.status = JobStatus.ACTIVE
            job.attempts += 1
            job.started_at = now
            job.updated_at = now
            return replace(job)

    def has_open_job(self, queue_name: str, message_id: int, task_type: TaskType) -> bool:
        open_statuses = (JobStatus.WAITING, JobStatus.ACTIVE, JobStatus.DELAYED)
        with self._lock:
            return any(
                job.queue_name == queue_name
                and job.task_type == task_type
                and job.payload.get("message_id") == message_id
                and job.status in open_statuses
                for job in self.jobs.values()
            )

    def reclaim_stalled_jobs(self, queue_name: str, stalled_before: datetime, error: str) -> list[QueueJob]:
        with self._lock:
            now = _now()
            reclaimed = []
            for job in self.jobs.values():
                if job.queue_name != queue_name or job.status != JobStatus.ACTIVE:
                    continue
                if job.updated_at is None or job.updated_at >= stalled_before:
                    continue
                if job.attempts < job.max_attempts:
                    job.status = JobStatus.DELAYED
                else:
                    job.status = JobStatus.FAILED
                    job.failed_at = now
                job.error = error
                job.run_at = now
                job.updated_at = now
                reclaimed.append(replace(job))
            return reclaimed

    def update_job_progress(self, job_id: str, progress: int) -> None:
        with self._lock:
            self.jobs[job_id].progress = progress
            self.jobs[job_id].updated_at = _now()

    def complete_job(self, job_id: str, result: dict[str, Any]) -> None:
        with self._lock:
            job = self.jobs[job_id]
            job.status = JobStatus.COMPLETED
            job.progress = 100
            job.result = result
            job.error = None
            job.completed_at = _now()

    def schedule_job_retry(self, job_id: str, error: str, run_at: datetime) -> None:
        with self._lock:
            job = self.jobs[job_id]
            job.status = JobStatus.DELAYED
            job.error = error
            job.run_at = run_at

    def fail_job(self, job_id: str, error: str) -> None:
        with self._lock:
            job = self.jobs[job_id]
            job.status = JobStatus.FAILED
            job.error = error
            job.failed_at = _now()

    def get_job_stats(self, queue_name: str) -> dict[str, int]:
        with self._lock:
            counts: dict[str, int] = {}
            for job in self.jobs.values():
                if job.queue_name == queue_name:
                    counts[job.status.value] = counts.get(job.status.value, 0) + 1
            return counts

    # Test helpers

    def make_runnable(self) -> None:
        """Expire every retry backoff."""
        with self._lock:
            for job in self.jobs.values():
                if job.status == JobStatus.DELAYED:
                    job.run_at = _now()

    def set_job_updated_at(self, job_id: str, updated_at: datetime) -> None:
        """Backdate a job's last heartbeat."""
        with self._lock:
            self.jobs[job_id].updated_at = updated_at

    def jobs_for(self, message_id: int, task_type: str | None = None) -> list[QueueJob]:
        with self._lock:
            return [
                replace(job) for job in self.jobs.values()
                if job.payload.get("message_id") == message_id
                and (task_type is None or job.task_type.value == task_type)
            ]


def make_raw(
    external_id: str,
    subject: str = "Hello",
    sender: str = "bank@example.com",
    body: str = "",
    date: datetime | None = None,
) -> RawMessage:
    return RawMessage(
        id=external_id,
        thread_id=f"thread-{external_id}",
        message_id=f"<{external_id}@example.com>",
        subject=subject,
        sender=sender,
        recipients=["alerts@example.com"],
        date=date or datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc),
        body=body,
        body_preview=body[:200],
    )


class ScriptedMailbox:
    """
    Mailbox whose cursor is the sequence number of the last delivered message.

    Messages added with deliver() are reported by get_changes_since; every
    stored message is available to list_recent and get_full.
    """

    def __init__(self, start: int = 100, valid: bool = True):
        self.head = start
        self.valid = valid
        self.reject_cursor = False
        self.broken_ids: set[str] = set()
        self.messages: dict[str, RawMessage] = {}
        self.sequence: list[tuple[int, str]] = []
        self.calls: list[tuple[str, Any]] = []
        self.closed = 0

    def deliver(self, raw: RawMessage) -> None:
        self.head += 1
        self.messages[raw.id] = raw
        self.sequence.append((self.head, raw.id))

    def list_recent(self, max_results: int, days_back: int) -> list[MessageRef]:
        self.calls.append(("list_recent", (max_results, days_back)))
        return [MessageRef(id=mid) for _, mid in self.sequence[-max_results:]]

    def get_full(self, message_id: str) -> RawMessage:
        self.calls.append(("get_full", message_id))
        if message_id in self.broken_ids:
            raise MailboxError(f"cannot fetch {message_id}")
        return self.messages[message_id]

    def get_changes_since(self, cursor: str | None) -> ChangeSet:
        self.calls.append(("get_changes_since", cursor))
        if cursor is None:
            return ChangeSet(messages=[], new_cursor=str(self.head))
        if self.reject_cursor:
            raise CursorRejectedError(f"cursor {cursor} expired")
        refs = [MessageRef(id=mid) for seq, mid in self.sequence if seq > int(cursor)]
        return ChangeSet(messages=refs, new_cursor=str(self.head))

    def validate_credentials(self) -> bool:
        return self.valid

    def close(self) -> None:
        self.closed += 1


class ScriptedClassifier(BaseClassifier):
    """Answers by subject; unknown subjects get the default result."""

    def __init__(self, default: ClassificationResult | None = None):
        self.default = default or ClassificationResult(
            is_financial=False, confidence=0.9, category="non_financial"
        )
        self.results: dict[str, ClassificationResult] = {}
        self.errors: dict[str, Exception] = {}
        self.delays: dict[str, float] = {}
        self.calls: list[str] = []
        self._lock = threading.Lock()

    def classify(self, subject: str, body: str, sender: str) -> ClassificationResult:
        with self._lock:
            self.calls.append(subject)
        if subject in self.delays:
            time.sleep(self.delays[subject])
        if subject in self.errors:
            raise self.errors[subject]
        return self.results.get(subject, self.default)


class ScriptedExtractor(BaseExtractor):
    """Answers by subject; unknown subjects get an empty result."""

    def __init__(self):
        self.results: dict[str, ExtractionResult] = {}
        self.errors: dict[str, Exception] = {}
        self.calls: list[tuple[str, str]] = []

    def extract(self, subject: str, body: str, category: str) -> ExtractionResult:
        self.calls.append((subject, category))
        if subject in self.errors:
            raise self.errors[subject]
        return self.results.get(subject, ExtractionResult(category=category, confidence=0.5))


class RecordingBroadcaster:
    """Keeps every event; raises on broadcast when `broken` is set."""

    def __init__(self, broken: bool = False):
        self.broken = broken
        self.events: list[StatusEvent] = []
        self._lock = threading.Lock()

    def broadcast(self, event: StatusEvent) -> None:
        if self.broken:
            raise ConnectionError("transport down")
        with self._lock:
            self.events.append(event)

    def types_for(self, message_id: int) -> list[str]:
        return [e.type.value for e in self.events if e.message_id == message_id]
