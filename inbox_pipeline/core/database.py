"""
Database repository for the intake pipeline.

Provides PostgreSQL operations for accounts, messages, extracted data
and the durable job queue.
"""

from contextlib import contextmanager
from datetime import datetime
from decimal import Decimal
from typing import Any, Generator

import psycopg
from psycopg.rows import dict_row

from inbox_pipeline.config import settings
from inbox_pipeline.core.logging import get_logger
from inbox_pipeline.core.models import (
    Account,
    Classification,
    ExtractedData,
    JobStatus,
    Message,
    MessageStatus,
    QueueJob,
    TaskType,
    TransactionType,
)

log = get_logger(__name__)

# Columns a status transition may write alongside the status itself
TRANSITION_FIELDS = frozenset({
    "classification",
    "confidence",
    "language",
    "reasoning",
    "error_message",
})

MESSAGE_COLUMNS = """
    id, account_id, external_id, thread_id, rfc822_message_id, subject, sender,
    recipients, received_at, fingerprint, status, classification, confidence,
    language, reasoning, body, body_preview, has_attachments, labels,
    error_message, created_at, updated_at
"""


def _float(value: Any) -> float | None:
    if value is None:
        return None
    if isinstance(value, Decimal):
        return float(value)
    return value


class Database:
    """PostgreSQL database operations for the pipeline."""

    def __init__(self, connection_string: str | None = None):
        """
        Initialize database connection settings.

        Args:
            connection_string: PostgreSQL connection URL. Uses settings if not provided.
        """
        self.connection_string = connection_string or settings.database_url

    @contextmanager
    def get_connection(self) -> Generator[psycopg.Connection, None, None]:
        """Get a database connection as a context manager."""
        conn = psycopg.connect(self.connection_string, row_factory=dict_row)
        try:
            yield conn
        finally:
            conn.close()

    def init_schema(self) -> None:
        """Initialize database schema (create tables if not exist)."""
        schema_sql = """
        -- accounts: monitored mailboxes (lifecycle owned elsewhere)
        CREATE TABLE IF NOT EXISTS accounts (
            id SERIAL PRIMARY KEY,
            address VARCHAR(255) NOT NULL,
            credentials JSONB NOT NULL DEFAULT '{}',
            is_connected BOOLEAN NOT NULL DEFAULT TRUE,
            sync_cursor VARCHAR(255),
            last_checked_at TIMESTAMPTZ,
            last_sync_at TIMESTAMPTZ,
            created_at TIMESTAMPTZ DEFAULT NOW()
        );

        -- messages: one row per distinct external id
        CREATE TABLE IF NOT EXISTS messages (
            id SERIAL PRIMARY KEY,
            account_id INTEGER REFERENCES accounts(id) ON DELETE CASCADE,
            external_id VARCHAR(255) UNIQUE NOT NULL,
            thread_id VARCHAR(255),
            rfc822_message_id TEXT,
            subject TEXT NOT NULL DEFAULT '',
            sender TEXT NOT NULL DEFAULT '',
            recipients JSONB NOT NULL DEFAULT '[]',
            received_at TIMESTAMPTZ,
            fingerprint VARCHAR(64) NOT NULL,
            status VARCHAR(20) NOT NULL DEFAULT 'PENDING',
            classification VARCHAR(20) NOT NULL DEFAULT 'UNCLASSIFIED',
            confidence NUMERIC(3, 2),
            language VARCHAR(10) NOT NULL DEFAULT 'en',
            reasoning TEXT,
            body TEXT NOT NULL DEFAULT '',
            body_preview TEXT NOT NULL DEFAULT '',
            has_attachments BOOLEAN NOT NULL DEFAULT FALSE,
            labels JSONB NOT NULL DEFAULT '[]',
            error_message TEXT,
            created_at TIMESTAMPTZ DEFAULT NOW(),
            updated_at TIMESTAMPTZ DEFAULT NOW()
        );

        CREATE INDEX IF NOT EXISTS idx_messages_account_status ON messages(account_id, status);
        CREATE INDEX IF NOT EXISTS idx_messages_fingerprint ON messages(account_id, fingerprint);
        CREATE INDEX IF NOT EXISTS idx_messages_stuck ON messages(status, classification, updated_at);

        -- extracted_data: at most one row per message
        CREATE TABLE IF NOT EXISTS extracted_data (
            id SERIAL PRIMARY KEY,
            message_id INTEGER UNIQUE NOT NULL REFERENCES messages(id) ON DELETE CASCADE,
            amount NUMERIC(15, 2),
            currency VARCHAR(10),
            transaction_date TIMESTAMPTZ,
            merchant_name TEXT,
            merchant_category TEXT,
            account_number VARCHAR(50),
            transaction_type VARCHAR(20) NOT NULL DEFAULT 'UNKNOWN',
            description TEXT,
            reference_number TEXT,
            confidence NUMERIC(3, 2) NOT NULL DEFAULT 0,
            created_at TIMESTAMPTZ DEFAULT NOW()
        );

        -- queue_jobs: the durable work queue
        CREATE TABLE IF NOT EXISTS queue_jobs (
            id SERIAL PRIMARY KEY,
            job_id VARCHAR(255) UNIQUE NOT NULL,
            queue_name VARCHAR(100) NOT NULL,
            task_type VARCHAR(20) NOT NULL,
            status VARCHAR(20) NOT NULL DEFAULT 'WAITING',
            priority INTEGER NOT NULL DEFAULT 0,
            attempts INTEGER NOT NULL DEFAULT 0,
            max_attempts INTEGER NOT NULL DEFAULT 3,
            payload JSONB NOT NULL DEFAULT '{}',
            progress INTEGER NOT NULL DEFAULT 0,
            result JSONB,
            error TEXT,
            run_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            started_at TIMESTAMPTZ,
            completed_at TIMESTAMPTZ,
            failed_at TIMESTAMPTZ,
            created_at TIMESTAMPTZ DEFAULT NOW(),
            updated_at TIMESTAMPTZ DEFAULT NOW()
        );

        CREATE INDEX IF NOT EXISTS idx_queue_jobs_next
            ON queue_jobs(queue_name, status, priority, id);
        """

        with self.get_connection() as conn:
            conn.execute(schema_sql)
            conn.commit()
            log.info("database_schema_initialized")

    # ------------------------------------------------------------------
    # Accounts
    # ------------------------------------------------------------------

    def get_account(self, account_id: int) -> Account | None:
        """Fetch a single account by ID."""
        sql = """
        SELECT id, address, credentials, is_connected, sync_cursor,
               last_checked_at, last_sync_at
        FROM accounts
        WHERE id = %s
        """

        with self.get_connection() as conn:
            row = conn.execute(sql, (account_id,)).fetchone()
            if not row:
                return None

            return Account(
                id=row["id"],
                address=row["address"],
                credentials=row["credentials"] or {},
                is_connected=row["is_connected"],
                sync_cursor=row["sync_cursor"],
                last_checked_at=row["last_checked_at"],
                last_sync_at=row["last_sync_at"],
            )

    def update_sync_cursor(self, account_id: int, cursor: str) -> None:
        """Advance an account's sync cursor."""
        with self.get_connection() as conn:
            conn.execute(
                "UPDATE accounts SET sync_cursor = %s, last_sync_at = NOW() WHERE id = %s",
                (cursor, account_id),
            )
            conn.commit()
            log.debug("sync_cursor_updated", account_id=account_id, cursor=cursor)

    def mark_account_checked(self, account_id: int) -> None:
        """Record the time of the latest change check."""
        with self.get_connection() as conn:
            conn.execute(
                "UPDATE accounts SET last_checked_at = NOW() WHERE id = %s",
                (account_id,),
            )
            conn.commit()

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    def get_message(self, message_id: int) -> Message | None:
        """Fetch a single message by ID."""
        sql = f"SELECT {MESSAGE_COLUMNS} FROM messages WHERE id = %s"

        with self.get_connection() as conn:
            row = conn.execute(sql, (message_id,)).fetchone()
            return self._row_to_message(row) if row else None

    def get_message_by_external_id(self, external_id: str) -> Message | None:
        """Fetch a message by its mailbox-assigned ID."""
        sql = f"SELECT {MESSAGE_COLUMNS} FROM messages WHERE external_id = %s"

        with self.get_connection() as conn:
            row = conn.execute(sql, (external_id,)).fetchone()
            return self._row_to_message(row) if row else None

    def find_message_by_fingerprint(self, account_id: int, fingerprint: str) -> Message | None:
        """Fetch a message of the account with the same content fingerprint."""
        sql = f"""
        SELECT {MESSAGE_COLUMNS} FROM messages
        WHERE account_id = %s AND fingerprint = %s
        ORDER BY id
        LIMIT 1
        """

        with self.get_connection() as conn:
            row = conn.execute(sql, (account_id, fingerprint)).fetchone()
            return self._row_to_message(row) if row else None

    def insert_message(self, message: Message) -> Message | None:
        """
        Insert a new message record.

        Args:
            message: Message to insert

        Returns:
            The stored message, or None if the external id already exists
        """
        sql = f"""
        INSERT INTO messages (
            account_id, external_id, thread_id, rfc822_message_id, subject, sender,
            recipients, received_at, fingerprint, status, body, body_preview,
            has_attachments, labels
        ) VALUES (
            %(account_id)s, %(external_id)s, %(thread_id)s, %(rfc822_message_id)s,
            %(subject)s, %(sender)s, %(recipients)s, %(received_at)s, %(fingerprint)s,
            %(status)s, %(body)s, %(body_preview)s, %(has_attachments)s, %(labels)s
        )
        ON CONFLICT (external_id) DO NOTHING
        RETURNING {MESSAGE_COLUMNS}
        """

        params = {
            "account_id": message.account_id,
            "external_id": message.external_id,
            "thread_id": message.thread_id,
            "rfc822_message_id": message.rfc822_message_id,
            "subject": message.subject,
            "sender": message.sender,
            "recipients": psycopg.types.json.Json(message.recipients),
            "received_at": message.received_at,
            "fingerprint": message.fingerprint,
            "status": message.status.value,
            "body": message.body,
            "body_preview": message.body_preview,
            "has_attachments": message.has_attachments,
            "labels": psycopg.types.json.Json(message.labels),
        }

        with self.get_connection() as conn:
            row = conn.execute(sql, params).fetchone()
            conn.commit()

            if not row:
                return None

            log.info("message_inserted", message_id=row["id"], external_id=message.external_id)
            return self._row_to_message(row)

    def transition_message(
        self,
        message_id: int,
        expected: list[MessageStatus],
        target: MessageStatus,
        fields: dict[str, Any] | None = None,
    ) -> bool:
        """
        Compare-and-set a message's status.

        Args:
            message_id: Message to update
            expected: Statuses the row must currently have
            target: New status
            fields: Extra columns to write in the same statement

        Returns:
            True if this call changed the row
        """
        fields = fields or {}
        unknown = set(fields) - TRANSITION_FIELDS
        if unknown:
            raise ValueError(f"Cannot write columns during transition: {sorted(unknown)}")

        assignments = ["status = %(target)s", "updated_at = NOW()"]
        params: dict[str, Any] = {
            "target": target.value,
            "expected": [status.value for status in expected],
            "message_id": message_id,
        }
        for column, value in fields.items():
            assignments.append(f"{column} = %({column})s")
            params[column] = value.value if isinstance(value, Classification) else value

        sql = f"""
        UPDATE messages
        SET {", ".join(assignments)}
        WHERE id = %(message_id)s AND status = ANY(%(expected)s)
        """

        with self.get_connection() as conn:
            cursor = conn.execute(sql, params)
            conn.commit()
            return cursor.rowcount == 1

    def get_stuck_messages(
        self,
        status: MessageStatus,
        classifications: list[Classification] | None,
        older_than: datetime,
        limit: int,
    ) -> list[Message]:
        """
        Fetch messages sitting in a status since before `older_than`, oldest first.

        classifications=None matches every classification.
        """
        sql = f"""
        SELECT {MESSAGE_COLUMNS} FROM messages
        WHERE status = %s
          AND (%s::text[] IS NULL OR classification = ANY(%s::text[]))
          AND updated_at < %s
        ORDER BY updated_at ASC
        LIMIT %s
        """
        values = [c.value for c in classifications] if classifications is not None else None

        with self.get_connection() as conn:
            rows = conn.execute(sql, (
                status.value,
                values,
                values,
                older_than,
                limit,
            )).fetchall()
            return [self._row_to_message(row) for row in rows]

    def get_message_stats(self) -> dict[str, int]:
        """Count messages per status."""
        with self.get_connection() as conn:
            rows = conn.execute(
                "SELECT status, COUNT(*) AS count FROM messages GROUP BY status"
            ).fetchall()
            return {row["status"]: row["count"] for row in rows}

    # ------------------------------------------------------------------
    # Extracted data
    # ------------------------------------------------------------------

    def insert_extracted_data(self, data: ExtractedData) -> bool:
        """
        Insert the extraction row for a message.

        Returns:
            True if inserted, False if the message already had one
        """
        sql = """
        INSERT INTO extracted_data (
            message_id, amount, currency, transaction_date, merchant_name,
            merchant_category, account_number, transaction_type, description,
            reference_number, confidence
        ) VALUES (
            %(message_id)s, %(amount)s, %(currency)s, %(transaction_date)s,
            %(merchant_name)s, %(merchant_category)s, %(account_number)s,
            %(transaction_type)s, %(description)s, %(reference_number)s, %(confidence)s
        )
        ON CONFLICT (message_id) DO NOTHING
        RETURNING id
        """

        params = {
            "message_id": data.message_id,
            "amount": data.amount,
            "currency": data.currency,
            "transaction_date": data.transaction_date,
            "merchant_name": data.merchant_name,
            "merchant_category": data.merchant_category,
            "account_number": data.account_number,
            "transaction_type": data.transaction_type.value,
            "description": data.description,
            "reference_number": data.reference_number,
            "confidence": data.confidence,
        }

        with self.get_connection() as conn:
            row = conn.execute(sql, params).fetchone()
            conn.commit()
            if row:
                data.id = row["id"]
                log.info("extracted_data_inserted", message_id=data.message_id)
                return True
            return False

    def get_extracted_data(self, message_id: int) -> ExtractedData | None:
        """Fetch the extraction row for a message."""
        sql = """
        SELECT id, message_id, amount, currency, transaction_date, merchant_name,
               merchant_category, account_number, transaction_type, description,
               reference_number, confidence
        FROM extracted_data
        WHERE message_id = %s
        """

        with self.get_connection() as conn:
            row = conn.execute(sql, (message_id,)).fetchone()
            if not row:
                return None

            return ExtractedData(
                id=row["id"],
                message_id=row["message_id"],
                amount=_float(row["amount"]),
                currency=row["currency"],
                transaction_date=row["transaction_date"],
                merchant_name=row["merchant_name"],
                merchant_category=row["merchant_category"],
                account_number=row["account_number"],
                transaction_type=TransactionType.from_value(row["transaction_type"]),
                description=row["description"],
                reference_number=row["reference_number"],
                confidence=_float(row["confidence"]) or 0.0,
            )

    # ------------------------------------------------------------------
    # Queue jobs
    # ------------------------------------------------------------------

    def insert_job(self, job: QueueJob) -> QueueJob:
        """Persist a new WAITING job."""
        sql = """
        INSERT INTO queue_jobs (
            job_id, queue_name, task_type, status, priority, max_attempts, payload
        ) VALUES (%s, %s, %s, %s, %s, %s, %s)
        RETURNING *
        """

        with self.get_connection() as conn:
            row = conn.execute(sql, (
                job.job_id,
                job.queue_name,
                job.task_type.value,
                job.status.value,
                job.priority,
                job.max_attempts,
                psycopg.types.json.Json(job.payload),
            )).fetchone()
            conn.commit()
            return self._row_to_job(row)

    def claim_next_job(self, queue_name: str) -> QueueJob | None:
        """
        Atomically take the next runnable job.

        Lowest priority value first, ties broken by enqueue order. Rows locked
        by another worker are skipped.
        """
        sql = """
        UPDATE queue_jobs
        SET status = 'ACTIVE',
            attempts = attempts + 1,
            started_at = NOW(),
            updated_at = NOW()
        WHERE id = (
            SELECT id FROM queue_jobs
            WHERE queue_name = %s
              AND status IN ('WAITING', 'DELAYED')
              AND run_at <= NOW()
            ORDER BY priority ASC, id ASC
            LIMIT 1
            FOR UPDATE SKIP LOCKED
        )
        RETURNING *
        """

        with self.get_connection() as conn:
            row = conn.execute(sql, (queue_name,)).fetchone()
            conn.commit()
            return self._row_to_job(row) if row else None

    def has_open_job(self, queue_name: str, message_id: int, task_type: TaskType) -> bool:
        """True if a WAITING, ACTIVE or DELAYED job of this type targets the message."""
        sql = """
        SELECT 1 FROM queue_jobs
        WHERE queue_name = %s
          AND task_type = %s
          AND payload->>'message_id' = %s
          AND status IN ('WAITING', 'ACTIVE', 'DELAYED')
        LIMIT 1
        """

        with self.get_connection() as conn:
            row = conn.execute(sql, (queue_name, task_type.value, str(message_id))).fetchone()
            return row is not None

    def reclaim_stalled_jobs(self, queue_name: str, stalled_before: datetime, error: str) -> list[QueueJob]:
        """
        Release ACTIVE jobs whose last heartbeat is older than `stalled_before`.

        Jobs with attempts left go back to DELAYED and are runnable at once;
        the rest are marked FAILED.
        """
        sql = """
        UPDATE queue_jobs
        SET status = CASE WHEN attempts < max_attempts THEN 'DELAYED' ELSE 'FAILED' END,
            failed_at = CASE WHEN attempts < max_attempts THEN failed_at ELSE NOW() END,
            error = %s,
            run_at = NOW(),
            updated_at = NOW()
        WHERE queue_name = %s
          AND status = 'ACTIVE'
          AND updated_at < %s
        RETURNING *
        """

        with self.get_connection() as conn:
            rows = conn.execute(sql, (error, queue_name, stalled_before)).fetchall()
            conn.commit()
            return [self._row_to_job(row) for row in rows]

    def update_job_progress(self, job_id: str, progress: int) -> None:
        with self.get_connection() as conn:
            conn.execute(
                "UPDATE queue_jobs SET progress = %s, updated_at = NOW() WHERE job_id = %s",
                (progress, job_id),
            )
            conn.commit()

    def complete_job(self, job_id: str, result: dict[str, Any]) -> None:
        sql = """
        UPDATE queue_jobs
        SET status = 'COMPLETED', progress = 100, result = %s, error = NULL,
            completed_at = NOW(), updated_at = NOW()
        WHERE job_id = %s
        """

        with self.get_connection() as conn:
            conn.execute(sql, (psycopg.types.json.Json(result), job_id))
            conn.commit()

    def schedule_job_retry(self, job_id: str, error: str, run_at: datetime) -> None:
        sql = """
        UPDATE queue_jobs
        SET status = 'DELAYED', error = %s, run_at = %s, updated_at = NOW()
        WHERE job_id = %s
        """

        with self.get_connection() as conn:
            conn.execute(sql, (error, run_at, job_id))
            conn.commit()

    def fail_job(self, job_id: str, error: str) -> None:
        sql = """
        UPDATE queue_jobs
        SET status = 'FAILED', error = %s, failed_at = NOW(), updated_at = NOW()
        WHERE job_id = %s
        """

        with self.get_connection() as conn:
            conn.execute(sql, (error, job_id))
            conn.commit()

    def get_job_stats(self, queue_name: str) -> dict[str, int]:
        """Count jobs per status for a queue."""
        sql = """
        SELECT status, COUNT(*) AS count FROM queue_jobs
        WHERE queue_name = %s
        GROUP BY status
        """

        with self.get_connection() as conn:
            rows = conn.execute(sql, (queue_name,)).fetchall()
            return {row["status"]: row["count"] for row in rows}

    # ------------------------------------------------------------------
    # Row mapping
    # ------------------------------------------------------------------

    @staticmethod
    def _row_to_message(row: dict[str, Any]) -> Message:
        try:
            classification = Classification(row["classification"])
        except ValueError:
            classification = Classification.OTHER

        return Message(
            id=row["id"],
            account_id=row["account_id"],
            external_id=row["external_id"],
            thread_id=row["thread_id"],
            rfc822_message_id=row["rfc822_message_id"],
            subject=row["subject"] or "",
            sender=row["sender"] or "",
            recipients=row["recipients"] or [],
            received_at=row["received_at"],
            fingerprint=row["fingerprint"],
            status=MessageStatus(row["status"]),
            classification=classification,
            confidence=_float(row["confidence"]),
            language=row["language"] or "en",
            reasoning=row["reasoning"],
            body=row["body"] or "",
            body_preview=row["body_preview"] or "",
            has_attachments=row["has_attachments"] or False,
            labels=row["labels"] or [],
            error_message=row["error_message"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    @staticmethod
    def _row_to_job(row: dict[str, Any]) -> QueueJob:
        return QueueJob(
            id=row["id"],
            job_id=row["job_id"],
            queue_name=row["queue_name"],
            task_type=TaskType(row["task_type"]),
            status=JobStatus(row["status"]),
            priority=row["priority"],
            attempts=row["attempts"],
            max_attempts=row["max_attempts"],
            payload=row["payload"] or {},
            progress=row["progress"],
            result=row["result"],
            error=row["error"],
            run_at=row["run_at"],
            started_at=row["started_at"],
            completed_at=row["completed_at"],
            failed_at=row["failed_at"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )
