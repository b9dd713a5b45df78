"""
Deduplication and admission of discovered messages.

A message is admitted at most once per external id. The unique constraint
on messages.external_id is the arbiter; lookups before the insert only
avoid needless writes.
"""

from inbox_pipeline.core.database import Database
from inbox_pipeline.core.logging import get_logger
from inbox_pipeline.core.models import (
    Account,
    AdmissionResult,
    Message,
    MessageStatus,
    compute_fingerprint,
)
from inbox_pipeline.services.mailbox import RawMessage

log = get_logger(__name__)


class Admission:
    """Persists newly discovered messages as PENDING records."""

    def __init__(self, db: Database):
        self.db = db

    def is_known(self, external_id: str) -> bool:
        return self.db.get_message_by_external_id(external_id) is not None

    def admit(self, raw: RawMessage, account: Account) -> AdmissionResult:
        """
        Admit a message discovered in an account's mailbox.

        Args:
            raw: Full message from the mailbox
            account: Owning account

        Returns:
            AdmissionResult with created=True only for the call that
            inserted the record
        """
        existing = self.db.get_message_by_external_id(raw.id)
        if existing:
            log.debug("message_already_admitted", external_id=raw.id, message_id=existing.id)
            return AdmissionResult(message=existing, created=False)

        fingerprint = compute_fingerprint(raw.sender, raw.subject, raw.date)
        duplicate = self.db.find_message_by_fingerprint(account.id, fingerprint)
        if duplicate:
            log.info(
                "message_duplicate_fingerprint",
                external_id=raw.id,
                duplicate_of=duplicate.id,
            )
            return AdmissionResult(message=duplicate, created=False)

        message = Message(
            account_id=account.id,
            external_id=raw.id,
            thread_id=raw.thread_id,
            rfc822_message_id=raw.message_id,
            subject=raw.subject,
            sender=raw.sender,
            recipients=list(raw.recipients),
            received_at=raw.date,
            fingerprint=fingerprint,
            status=MessageStatus.PENDING,
            body=raw.body,
            body_preview=raw.body_preview,
            has_attachments=raw.has_attachments,
            labels=list(raw.labels),
        )

        stored = self.db.insert_message(message)
        if stored is None:
            # Lost the race to a concurrent admission
            winner = self.db.get_message_by_external_id(raw.id)
            log.info("message_admission_conflict", external_id=raw.id)
            return AdmissionResult(message=winner or message, created=False)

        log.info(
            "message_admitted",
            message_id=stored.id,
            account_id=account.id,
            subject=raw.subject[:80],
        )
        return AdmissionResult(message=stored, created=True)
