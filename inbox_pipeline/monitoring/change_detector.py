"""
Per-account change detection.

Each monitored account gets an interval job on the detector's scheduler.
A check asks the mailbox for changes since the stored sync cursor, admits
what it reports and queues a classify task for every new message. When
there is no cursor, or the mailbox rejects it, the check falls back to
listing recent messages.
"""

import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from inbox_pipeline.config import settings
from inbox_pipeline.core.database import Database
from inbox_pipeline.core.errors import MailboxError
from inbox_pipeline.core.logging import get_logger
from inbox_pipeline.core.models import Account, Message, MessageStatus, Task, TaskType
from inbox_pipeline.jobs.job_queue import JobQueue
from inbox_pipeline.pipeline.admission import Admission
from inbox_pipeline.services.broadcaster import (
    EventType,
    NullBroadcaster,
    StatusBroadcaster,
    StatusEvent,
    safe_broadcast,
)
from inbox_pipeline.services.mailbox import Mailbox, MailboxFactory

log = get_logger(__name__)

MIN_INTERVAL_SECONDS = 10


@dataclass
class MonitoringSession:
    """State of one monitored account."""

    account_id: int
    address: str = ""
    interval_seconds: int = 30
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    last_check_at: datetime | None = None
    checks: int = 0
    admitted: int = 0

    def to_dict(self) -> dict:
        return {
            "account_id": self.account_id,
            "address": self.address,
            "interval_seconds": self.interval_seconds,
            "started_at": self.started_at.isoformat(),
            "last_check_at": self.last_check_at.isoformat() if self.last_check_at else None,
            "checks": self.checks,
            "admitted": self.admitted,
        }


@dataclass
class MonitorResult:
    success: bool
    message: str


@dataclass
class CheckResult:
    """Outcome of a single change check."""

    account_id: int
    success: bool = True
    discovered: int = 0
    admitted: int = 0
    used_fallback: bool = False
    cursor_advanced: bool = False
    error: str | None = None


class ChangeDetector:
    """Polls monitored mailboxes and admits new messages."""

    def __init__(
        self,
        db: Database,
        admission: Admission,
        queue: JobQueue,
        mailbox_factory: MailboxFactory,
        broadcaster: StatusBroadcaster | None = None,
        interval_seconds: int | None = None,
        fallback_max_results: int | None = None,
        fallback_days: int | None = None,
        classify_priority: int | None = None,
        scheduler: BackgroundScheduler | None = None,
    ):
        self.db = db
        self.admission = admission
        self.queue = queue
        self.mailbox_factory = mailbox_factory
        self.broadcaster = broadcaster or NullBroadcaster()
        self.interval_seconds = max(
            MIN_INTERVAL_SECONDS, interval_seconds or settings.monitor_interval_seconds
        )
        self.fallback_max_results = fallback_max_results or settings.fallback_max_results
        self.fallback_days = fallback_days or settings.fallback_days
        self.classify_priority = classify_priority or settings.classify_priority
        self.scheduler = scheduler or BackgroundScheduler()

        self._sessions: dict[int, MonitoringSession] = {}
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        if not self.scheduler.running:
            self.scheduler.start()
            log.info("change_detector_started", interval_seconds=self.interval_seconds)

    def stop(self) -> None:
        self.stop_all_monitoring()
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
        log.info("change_detector_stopped")

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def is_monitoring(self, account_id: int) -> bool:
        with self._lock:
            return account_id in self._sessions

    def get_session(self, account_id: int) -> MonitoringSession | None:
        with self._lock:
            return self._sessions.get(account_id)

    def active_sessions(self) -> list[MonitoringSession]:
        with self._lock:
            return list(self._sessions.values())

    def set_check_interval(self, seconds: int) -> int:
        """Set the interval for sessions started from now on. Returns the applied value."""
        self.interval_seconds = max(MIN_INTERVAL_SECONDS, int(seconds))
        log.info("check_interval_updated", interval_seconds=self.interval_seconds)
        return self.interval_seconds

    def start_monitoring(self, account_id: int) -> MonitorResult:
        """
        Begin periodic checks for an account and run one check now.

        Returns:
            MonitorResult; success=False carries the reason
        """
        if self.is_monitoring(account_id):
            return MonitorResult(False, f"Account {account_id} is already being monitored")

        account = self.db.get_account(account_id)
        if account is None:
            return MonitorResult(False, f"Account {account_id} not found")
        if not account.is_connected:
            return MonitorResult(False, f"Account {account.address} is not connected")

        mailbox = self.mailbox_factory(account)
        try:
            valid = mailbox.validate_credentials()
        finally:
            mailbox.close()
        if not valid:
            return MonitorResult(False, f"Invalid credentials for {account.address}")

        session = MonitoringSession(
            account_id=account_id,
            address=account.address,
            interval_seconds=self.interval_seconds,
        )
        with self._lock:
            if account_id in self._sessions:
                return MonitorResult(False, f"Account {account_id} is already being monitored")
            self._sessions[account_id] = session

        self.scheduler.add_job(
            self._tick,
            trigger=IntervalTrigger(seconds=session.interval_seconds),
            args=[account_id],
            id=self._job_id(account_id),
            name=f"Check mailbox {account.address}",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        log.info(
            "monitoring_started",
            account_id=account_id,
            address=account.address,
            interval_seconds=session.interval_seconds,
        )
        safe_broadcast(self.broadcaster, StatusEvent(
            type=EventType.STARTED,
            account_id=account_id,
            message=f"Started monitoring {account.address}",
        ))

        self.check_once(session)
        return MonitorResult(True, f"Started monitoring {account.address}")

    def stop_monitoring(self, account_id: int) -> MonitorResult:
        """Cancel future checks for an account. A check already running finishes."""
        with self._lock:
            session = self._sessions.pop(account_id, None)

        if session is None:
            return MonitorResult(False, f"Account {account_id} is not being monitored")

        try:
            self.scheduler.remove_job(self._job_id(account_id))
        except JobLookupError:
            pass

        log.info("monitoring_stopped", account_id=account_id, checks=session.checks)
        safe_broadcast(self.broadcaster, StatusEvent(
            type=EventType.COMPLETED,
            account_id=account_id,
            message=f"Stopped monitoring {session.address}",
        ))
        return MonitorResult(True, f"Stopped monitoring {session.address}")

    def stop_all_monitoring(self) -> None:
        for session in self.active_sessions():
            self.stop_monitoring(session.account_id)

    def trigger_manual_sync(self, account_id: int) -> MonitorResult:
        """Run a check now for a monitored account."""
        session = self.get_session(account_id)
        if session is None:
            return MonitorResult(False, f"Account {account_id} is not being monitored")

        result = self.check_once(session)
        if not result.success:
            return MonitorResult(False, f"Sync failed: {result.error}")
        return MonitorResult(True, f"Sync complete: {result.admitted} new messages")

    def queue_sync(self, account_id: int) -> MonitorResult:
        """Queue a change check for any account; a worker runs it at sync priority."""
        if self.db.get_account(account_id) is None:
            return MonitorResult(False, f"Account {account_id} not found")

        job = self.queue.enqueue(Task(task_type=TaskType.SYNC, account_id=account_id))
        return MonitorResult(True, f"Sync queued as {job.job_id}")

    def check_account(self, account_id: int) -> CheckResult:
        """Run one check for an account whether or not it is monitored."""
        session = self.get_session(account_id) or MonitoringSession(account_id=account_id)
        return self.check_once(session)

    # ------------------------------------------------------------------
    # Checks
    # ------------------------------------------------------------------

    @staticmethod
    def _job_id(account_id: int) -> str:
        return f"monitor-{account_id}"

    def _tick(self, account_id: int) -> None:
        session = self.get_session(account_id)
        if session is not None:
            self.check_once(session)

    def check_once(self, session: MonitoringSession) -> CheckResult:
        """
        Run one change check. Never raises; failures are logged and the
        next tick tries again.
        """
        result = CheckResult(account_id=session.account_id)

        try:
            account = self.db.get_account(session.account_id)
            if account is None:
                log.warning("monitor_account_missing", account_id=session.account_id)
                result.success = False
                result.error = "Account not found"
                return result

            mailbox = self.mailbox_factory(account)
            try:
                self._check_mailbox(account, mailbox, result)
            finally:
                mailbox.close()

        except Exception as e:
            log.error("monitor_check_error", account_id=session.account_id, error=str(e))
            result.success = False
            result.error = str(e)

        finally:
            session.last_check_at = datetime.now(timezone.utc)
            session.checks += 1
            session.admitted += result.admitted
            try:
                self.db.mark_account_checked(session.account_id)
            except Exception as e:
                log.error("mark_checked_error", account_id=session.account_id, error=str(e))

        log.info(
            "monitor_check_complete",
            account_id=session.account_id,
            discovered=result.discovered,
            admitted=result.admitted,
            used_fallback=result.used_fallback,
        )
        return result

    def _check_mailbox(self, account: Account, mailbox: Mailbox, result: CheckResult) -> None:
        if not account.sync_cursor:
            # Seed from the current position; nothing before it counts as new
            seed = mailbox.get_changes_since(None)
            self._save_cursor(account, seed.new_cursor, result)
            self._check_recent(account, mailbox, result)
            return

        try:
            changes = mailbox.get_changes_since(account.sync_cursor)
        except MailboxError as e:
            log.warning("monitor_cursor_failed", account_id=account.id, error=str(e))
            self._check_recent(account, mailbox, result)
            seed = mailbox.get_changes_since(None)
            self._save_cursor(account, seed.new_cursor, result)
            return

        result.discovered = len(changes.messages)
        all_admitted = True
        for ref in changes.messages:
            all_admitted = self._admit(account, mailbox, ref.id, result) and all_admitted

        # Hold the cursor back so the next tick sees failed messages again
        if all_admitted:
            self._save_cursor(account, changes.new_cursor, result)

    def _check_recent(self, account: Account, mailbox: Mailbox, result: CheckResult) -> None:
        result.used_fallback = True
        refs = mailbox.list_recent(self.fallback_max_results, days_back=self.fallback_days)
        result.discovered += len(refs)

        for ref in refs:
            if self.admission.is_known(ref.id):
                continue
            self._admit(account, mailbox, ref.id, result)

    def _save_cursor(self, account: Account, cursor: str | None, result: CheckResult) -> None:
        if cursor and cursor != account.sync_cursor:
            self.db.update_sync_cursor(account.id, cursor)
            account.sync_cursor = cursor
            result.cursor_advanced = True

    def _admit(self, account: Account, mailbox: Mailbox, external_id: str, result: CheckResult) -> bool:
        """Admit one message. Returns False if it could not be fetched or stored."""
        try:
            raw = mailbox.get_full(external_id)
            admitted = self.admission.admit(raw, account)
            message = admitted.message

            if not admitted.created:
                # Stored earlier but its classify task was never queued
                if message.status == MessageStatus.PENDING and not self.queue.has_open_job(
                    message.id, TaskType.CLASSIFY
                ):
                    log.warning("classify_task_missing", message_id=message.id, external_id=external_id)
                    self._enqueue_classify(account, message)
                return True

            self._enqueue_classify(account, message)
            result.admitted += 1

            safe_broadcast(self.broadcaster, StatusEvent(
                type=EventType.STARTED,
                message_id=message.id,
                account_id=account.id,
                progress=0,
                message=f"New email: {message.subject}",
            ))
            return True

        except Exception as e:
            log.error(
                "message_admission_error",
                account_id=account.id,
                external_id=external_id,
                error=str(e),
            )
            return False

    def _enqueue_classify(self, account: Account, message: Message) -> None:
        self.queue.enqueue(Task(
            task_type=TaskType.CLASSIFY,
            account_id=account.id,
            message_id=message.id,
            priority=self.classify_priority,
        ))
