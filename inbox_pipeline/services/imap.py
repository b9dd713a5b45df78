"""
IMAP adapter for the mailbox collaborator.

Sync cursors have the form "{UIDVALIDITY}:{last seen UID}". A server-side
UIDVALIDITY change invalidates every stored cursor for the folder.
"""

import imaplib
import re
from datetime import datetime, timedelta
from email import message_from_bytes
from email.header import decode_header as email_decode_header
from email.utils import getaddresses, parsedate_to_datetime

from inbox_pipeline.config import settings
from inbox_pipeline.core.errors import CursorRejectedError, MailboxError
from inbox_pipeline.core.logging import get_logger
from inbox_pipeline.core.models import Account
from inbox_pipeline.services.mailbox import ChangeSet, MessageRef, RawMessage

log = get_logger(__name__)

STATUS_RE = re.compile(rb"UIDVALIDITY (\d+).*UIDNEXT (\d+)|UIDNEXT (\d+).*UIDVALIDITY (\d+)")
PREVIEW_LENGTH = 200


class IMAPMailbox:
    """IMAP mailbox for one account and folder."""

    def __init__(
        self,
        address: str,
        password: str,
        host: str | None = None,
        folder: str | None = None,
    ):
        self.address = address
        self.password = password
        self.host = host or settings.imap_host
        self.folder = folder or settings.imap_folder
        self._conn: imaplib.IMAP4_SSL | None = None

    @classmethod
    def for_account(cls, account: Account) -> "IMAPMailbox":
        """Build a mailbox from an account's opaque credentials."""
        credentials = account.credentials or {}
        return cls(
            address=credentials.get("username", account.address),
            password=credentials.get("password", ""),
            host=credentials.get("host"),
            folder=credentials.get("folder"),
        )

    def connect(self) -> None:
        """Connect and authenticate to IMAP server."""
        log.info("imap_connecting", host=self.host, address=self.address)
        conn = None
        try:
            conn = imaplib.IMAP4_SSL(self.host)
            conn.login(self.address, self.password)
            conn.select(self.folder, readonly=True)
            self._conn = conn  # Only set if login succeeds
            log.info("imap_connected")
        except (imaplib.IMAP4.error, OSError) as e:
            if conn:
                try:
                    conn.logout()
                except (imaplib.IMAP4.error, OSError):
                    pass
            raise MailboxError(f"IMAP connection failed: {e}") from e

    def close(self) -> None:
        """Close IMAP connection."""
        if self._conn:
            try:
                self._conn.logout()
            except (imaplib.IMAP4.error, OSError):
                pass
            self._conn = None
            log.info("imap_disconnected")

    def __enter__(self):
        self.connect()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def validate_credentials(self) -> bool:
        """Try to log in; False when the server refuses."""
        try:
            self._ensure_connected()
            return True
        except MailboxError as e:
            log.warning("imap_credentials_invalid", address=self.address, error=str(e))
            return False

    def get_changes_since(self, cursor: str | None) -> ChangeSet:
        uid_validity, uid_next = self._folder_status()
        last_uid = uid_next - 1

        if cursor is None:
            return ChangeSet(messages=[], new_cursor=f"{uid_validity}:{last_uid}")

        cursor_validity, cursor_uid = self._parse_cursor(cursor)
        if cursor_validity != uid_validity:
            raise CursorRejectedError(
                f"UIDVALIDITY changed from {cursor_validity} to {uid_validity}"
            )

        if last_uid <= cursor_uid:
            return ChangeSet(messages=[], new_cursor=cursor)

        # "n:*" always matches the highest UID, even when it is below n
        uids = [uid for uid in self._search(f"UID {cursor_uid + 1}:*") if uid > cursor_uid]
        refs = [MessageRef(id=self._external_id(uid_validity, uid)) for uid in uids]
        new_last = max(uids) if uids else cursor_uid

        log.info("imap_changes", address=self.address, count=len(refs))
        return ChangeSet(messages=refs, new_cursor=f"{uid_validity}:{new_last}")

    def list_recent(self, max_results: int, days_back: int) -> list[MessageRef]:
        uid_validity, _ = self._folder_status()
        since = datetime.now() - timedelta(days=days_back)
        uids = self._search(f"SINCE {since.strftime('%d-%b-%Y')}")
        uids = uids[-max_results:]  # Most recent

        log.info("imap_list_recent", address=self.address, count=len(uids))
        return [MessageRef(id=self._external_id(uid_validity, uid)) for uid in uids]

    def get_full(self, message_id: str) -> RawMessage:
        uid = message_id.rsplit(":", 1)[-1]
        conn = self._ensure_connected()

        try:
            _, msg_data = conn.uid("FETCH", uid, "(RFC822)")
        except (imaplib.IMAP4.error, OSError) as e:
            raise MailboxError(f"IMAP fetch failed for UID {uid}: {e}") from e

        if not msg_data or not isinstance(msg_data[0], tuple):
            raise MailboxError(f"Message UID {uid} not found")

        return self._parse_message(message_id, msg_data[0][1])

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _ensure_connected(self) -> imaplib.IMAP4_SSL:
        if not self._conn:
            self.connect()
        return self._conn

    def _folder_status(self) -> tuple[int, int]:
        conn = self._ensure_connected()
        try:
            _, data = conn.status(self.folder, "(UIDVALIDITY UIDNEXT)")
        except (imaplib.IMAP4.error, OSError) as e:
            raise MailboxError(f"IMAP status failed: {e}") from e

        match = STATUS_RE.search(data[0] if data else b"")
        if not match:
            raise MailboxError(f"Unexpected STATUS response: {data!r}")

        if match.group(1):
            return int(match.group(1)), int(match.group(2))
        return int(match.group(4)), int(match.group(3))

    def _search(self, criteria: str) -> list[int]:
        conn = self._ensure_connected()
        try:
            _, data = conn.uid("SEARCH", None, f"({criteria})")
        except (imaplib.IMAP4.error, OSError) as e:
            raise MailboxError(f"IMAP search failed: {e}") from e

        if not data or not data[0]:
            return []
        return sorted(int(uid) for uid in data[0].split())

    @staticmethod
    def _parse_cursor(cursor: str) -> tuple[int, int]:
        try:
            validity, uid = cursor.split(":", 1)
            return int(validity), int(uid)
        except ValueError as e:
            raise CursorRejectedError(f"Unparsable sync cursor: {cursor!r}") from e

    def _external_id(self, uid_validity: int, uid: int) -> str:
        return f"imap:{self.address}:{self.folder}:{uid_validity}:{uid}"

    def _decode_header(self, header: str) -> str:
        """Decode MIME-encoded email header."""
        if not header:
            return ""
        decoded_parts = []
        for part, charset in email_decode_header(header):
            if isinstance(part, bytes):
                decoded_parts.append(part.decode(charset or "utf-8", errors="replace"))
            else:
                decoded_parts.append(part)
        return "".join(decoded_parts).replace("\r\n", "").replace("\n", "")

    def _parse_message(self, external_id: str, raw: bytes) -> RawMessage:
        msg = message_from_bytes(raw)

        date = None
        date_str = msg.get("Date")
        if date_str:
            try:
                date = parsedate_to_datetime(date_str)
            except (TypeError, ValueError):
                pass

        body_plain, body_html = self._get_body(msg)
        body = body_plain or re.sub(r"<[^>]+>", " ", body_html)

        has_attachments = False
        if msg.is_multipart():
            for part in msg.walk():
                if "attachment" in part.get("Content-Disposition", ""):
                    has_attachments = True
                    break

        recipients = [
            address
            for _, address in getaddresses([msg.get("To", ""), msg.get("Cc", "")])
            if address
        ]
        references = msg.get("References", "").split()

        return RawMessage(
            id=external_id,
            thread_id=references[0] if references else msg.get("Message-ID"),
            message_id=msg.get("Message-ID"),
            subject=self._decode_header(msg.get("Subject", "")),
            sender=self._decode_header(msg.get("From", "")),
            recipients=recipients,
            date=date,
            body=body,
            body_preview=" ".join(body.split())[:PREVIEW_LENGTH],
            has_attachments=has_attachments,
            labels=[self.folder],
        )

    def _get_body(self, msg) -> tuple[str, str]:
        """Extract plain text and HTML body from message."""
        text_plain = ""
        text_html = ""

        if msg.is_multipart():
            for part in msg.walk():
                if "attachment" in part.get("Content-Disposition", ""):
                    continue

                payload = part.get_payload(decode=True)
                if not payload:
                    continue

                text = payload.decode(part.get_content_charset() or "utf-8", errors="ignore")
                if part.get_content_type() == "text/plain":
                    text_plain += text
                elif part.get_content_type() == "text/html":
                    text_html += text
        else:
            payload = msg.get_payload(decode=True)
            if payload:
                text = payload.decode(msg.get_content_charset() or "utf-8", errors="ignore")
                if msg.get_content_type() == "text/html":
                    text_html = text
                else:
                    text_plain = text

        return text_plain, text_html
