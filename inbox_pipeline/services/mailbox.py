"""
Mailbox collaborator interface.

The pipeline only talks to mailboxes through this protocol; IMAPMailbox in
services/imap.py is the production adapter and tests use scripted fakes.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Protocol

from inbox_pipeline.core.models import Account


@dataclass
class MessageRef:
    """Lightweight pointer to a message in the mailbox."""

    id: str
    thread_id: str | None = None


@dataclass
class RawMessage:
    """Full message as returned by the mailbox."""

    id: str
    thread_id: str | None = None
    message_id: str | None = None  # RFC822 Message-ID header
    subject: str = ""
    sender: str = ""
    recipients: list[str] = field(default_factory=list)
    date: datetime | None = None
    body: str = ""
    body_preview: str = ""
    has_attachments: bool = False
    labels: list[str] = field(default_factory=list)


@dataclass
class ChangeSet:
    """Messages added since a cursor, and the cursor to store next."""

    messages: list[MessageRef] = field(default_factory=list)
    new_cursor: str | None = None


class Mailbox(Protocol):
    """Operations the pipeline needs from a mailbox provider."""

    def list_recent(self, max_results: int, days_back: int) -> list[MessageRef]:
        ...

    def get_full(self, message_id: str) -> RawMessage:
        ...

    def get_changes_since(self, cursor: str | None) -> ChangeSet:
        """
        Report messages added after `cursor`.

        With no cursor, returns the current cursor and no messages.
        Raises CursorRejectedError when the cursor is no longer valid.
        """
        ...

    def validate_credentials(self) -> bool:
        ...

    def close(self) -> None:
        ...


MailboxFactory = Callable[[Account], Mailbox]
