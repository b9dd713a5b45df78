"""
Data models for the intake pipeline.

Uses dataclasses for clean, typed data structures.
"""

import hashlib
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class MessageStatus(str, Enum):
    """Processing status of a discovered message."""

    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    CLASSIFIED = "CLASSIFIED"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    MANUAL_REVIEW = "MANUAL_REVIEW"  # Terminal for automation

    @property
    def is_terminal(self) -> bool:
        return self in (MessageStatus.COMPLETED, MessageStatus.MANUAL_REVIEW)


class Classification(str, Enum):
    """Internal classification of a message."""

    BANKING = "BANKING"
    CREDIT_CARD = "CREDIT_CARD"
    INVESTMENT = "INVESTMENT"
    PAYMENT = "PAYMENT"
    BILL = "BILL"
    INSURANCE = "INSURANCE"
    TAX = "TAX"
    LOAN = "LOAN"
    OTHER = "OTHER"
    NON_FINANCIAL = "NON_FINANCIAL"
    UNCLASSIFIED = "UNCLASSIFIED"

    @classmethod
    def from_category(cls, category: str | None) -> "Classification":
        """Map a collaborator category (e.g. 'credit_card') to a Classification.

        Unknown categories land in OTHER; a missing category is UNCLASSIFIED.
        """
        if not category:
            return cls.UNCLASSIFIED
        return _CATEGORY_MAP.get(category.strip().lower(), cls.OTHER)


_CATEGORY_MAP: dict[str, Classification] = {
    "banking": Classification.BANKING,
    "credit_card": Classification.CREDIT_CARD,
    "investment": Classification.INVESTMENT,
    "payment": Classification.PAYMENT,
    "subscription": Classification.PAYMENT,
    "bill": Classification.BILL,
    "tax": Classification.TAX,
    "insurance": Classification.INSURANCE,
    "loan": Classification.LOAN,
    "other": Classification.OTHER,
    "other_financial": Classification.OTHER,
    "non_financial": Classification.NON_FINANCIAL,
    "unclassified": Classification.UNCLASSIFIED,
}


class TransactionType(str, Enum):
    """Kind of transaction found by extraction."""

    DEBIT = "DEBIT"
    CREDIT = "CREDIT"
    PAYMENT = "PAYMENT"
    TRANSFER = "TRANSFER"
    FEE = "FEE"
    INTEREST = "INTEREST"
    DIVIDEND = "DIVIDEND"
    UNKNOWN = "UNKNOWN"

    @classmethod
    def from_value(cls, value: str | None) -> "TransactionType":
        if not value:
            return cls.UNKNOWN
        try:
            return cls(value.strip().upper())
        except ValueError:
            return cls.UNKNOWN


class TaskType(str, Enum):
    """Kinds of work the queue carries."""

    SYNC = "sync"
    CLASSIFY = "classify"
    EXTRACT = "extract"


class JobStatus(str, Enum):
    """Lifecycle of a queue job row."""

    WAITING = "WAITING"
    ACTIVE = "ACTIVE"
    DELAYED = "DELAYED"  # Waiting for a retry backoff to elapse
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


def compute_fingerprint(sender: str, subject: str, received_at: datetime | None) -> str:
    """Content fingerprint used for duplicate suppression: sha256 of sender|subject|date."""
    stamp = received_at.isoformat() if received_at else ""
    content = f"{sender}|{subject}|{stamp}"
    return hashlib.sha256(content.encode("utf-8")).hexdigest()


def _clamp(value: Any, low: float = 0.0, high: float = 1.0) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return low
    return max(low, min(high, number))


def _to_float(value: Any) -> float | None:
    if value is None or value == "":
        return None
    if isinstance(value, str):
        value = value.replace(",", "").strip()
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _to_str(value: Any) -> str | None:
    if value is None or value == "":
        return None
    return str(value)


@dataclass
class Account:
    """A monitored mailbox."""

    id: int | None = None
    address: str = ""
    credentials: dict[str, Any] = field(default_factory=dict)  # Opaque to the core
    is_connected: bool = True
    sync_cursor: str | None = None
    last_checked_at: datetime | None = None
    last_sync_at: datetime | None = None


@dataclass
class Message:
    """A discovered mail item and its pipeline state."""

    id: int | None = None
    account_id: int | None = None
    external_id: str = ""
    thread_id: str | None = None
    rfc822_message_id: str | None = None
    subject: str = ""
    sender: str = ""
    recipients: list[str] = field(default_factory=list)
    received_at: datetime | None = None
    fingerprint: str = ""
    status: MessageStatus = MessageStatus.PENDING
    classification: Classification = Classification.UNCLASSIFIED
    confidence: float | None = None
    language: str = "en"
    reasoning: str | None = None
    body: str = ""
    body_preview: str = ""
    has_attachments: bool = False
    labels: list[str] = field(default_factory=list)
    error_message: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def text_for_ai(self) -> str:
        """Body if it has been fetched, else the preview."""
        return self.body or self.body_preview or ""


@dataclass
class ExtractedData:
    """Transaction details extracted from a message (at most one per message)."""

    message_id: int
    amount: float | None = None
    currency: str | None = None
    transaction_date: datetime | None = None
    merchant_name: str | None = None
    merchant_category: str | None = None
    account_number: str | None = None
    transaction_type: TransactionType = TransactionType.UNKNOWN
    description: str | None = None
    reference_number: str | None = None
    confidence: float = 0.0
    id: int | None = None

    @classmethod
    def placeholder(cls, message_id: int) -> "ExtractedData":
        """Empty row written when an always-extract message yields nothing."""
        return cls(message_id=message_id, confidence=0.0)

    @property
    def is_placeholder(self) -> bool:
        return self.amount is None and self.merchant_name is None and self.confidence == 0.0


@dataclass
class ClassificationResult:
    """Result from the classification collaborator."""

    is_financial: bool
    confidence: float
    category: str
    language: str = "en"
    reasoning: str = ""
    degraded: bool = False  # Heuristic or failure substitute

    @property
    def classification(self) -> Classification:
        return Classification.from_category(self.category)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ClassificationResult":
        """Create ClassificationResult from a classifier response dict."""
        is_financial = data.get("isFinancial", data.get("is_financial", False))
        return cls(
            is_financial=bool(is_financial),
            confidence=_clamp(data.get("confidence")),
            category=str(data.get("category") or "unknown"),
            language=str(data.get("language") or "en"),
            reasoning=str(data.get("reasoning") or "AI classification"),
        )

    @classmethod
    def unclassified(cls, reason: str) -> "ClassificationResult":
        """Low-confidence substitute used when the classifier times out or errors."""
        return cls(
            is_financial=False,
            confidence=0.1,
            category="unclassified",
            reasoning=f"Classification failed: {reason}",
            degraded=True,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "isFinancial": self.is_financial,
            "confidence": self.confidence,
            "category": self.category,
            "language": self.language,
            "reasoning": self.reasoning,
            "degraded": self.degraded,
        }


@dataclass
class ExtractionResult:
    """Result from the extraction collaborator."""

    amount: float | None = None
    currency: str | None = None
    date: str | None = None
    merchant_name: str | None = None
    account_number: str | None = None
    transaction_id: str | None = None
    transaction_type: str | None = None
    description: str | None = None
    category: str | None = None
    confidence: float = 0.0

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ExtractionResult":
        """Create ExtractionResult from an extractor response dict (camelCase or snake_case)."""
        def pick(camel: str, snake: str) -> Any:
            return data.get(camel, data.get(snake))

        currency = _to_str(data.get("currency"))
        return cls(
            amount=_to_float(data.get("amount")),
            currency=currency.upper() if currency else None,
            date=_to_str(data.get("date")),
            merchant_name=_to_str(pick("merchantName", "merchant_name")),
            account_number=_to_str(pick("accountNumber", "account_number")),
            transaction_id=_to_str(pick("transactionId", "transaction_id")),
            transaction_type=_to_str(pick("transactionType", "transaction_type")),
            description=_to_str(data.get("description")),
            category=_to_str(data.get("category")),
            confidence=_clamp(data.get("confidence")),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "amount": self.amount,
            "currency": self.currency,
            "date": self.date,
            "merchantName": self.merchant_name,
            "accountNumber": self.account_number,
            "transactionId": self.transaction_id,
            "transactionType": self.transaction_type,
            "description": self.description,
            "category": self.category,
            "confidence": self.confidence,
        }

    def to_extracted_data(self, message_id: int) -> ExtractedData:
        transaction_date = None
        if self.date:
            try:
                transaction_date = datetime.fromisoformat(self.date)
            except ValueError:
                pass

        return ExtractedData(
            message_id=message_id,
            amount=self.amount,
            currency=self.currency,
            transaction_date=transaction_date,
            merchant_name=self.merchant_name,
            merchant_category=self.category,
            account_number=self.account_number,
            transaction_type=TransactionType.from_value(self.transaction_type),
            description=self.description,
            reference_number=self.transaction_id,
            confidence=self.confidence,
        )


@dataclass
class Task:
    """A unit of queued work. Dispatched by task_type."""

    task_type: TaskType
    account_id: int
    message_id: int | None = None
    priority: int | None = None

    def to_payload(self) -> dict[str, Any]:
        return {
            "task_type": self.task_type.value,
            "account_id": self.account_id,
            "message_id": self.message_id,
            "priority": self.priority,
        }

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "Task":
        return cls(
            task_type=TaskType(payload["task_type"]),
            account_id=payload["account_id"],
            message_id=payload.get("message_id"),
            priority=payload.get("priority"),
        )


@dataclass
class QueueJob:
    """Durable record of an enqueued task."""

    job_id: str
    queue_name: str
    task_type: TaskType
    priority: int = 0
    status: JobStatus = JobStatus.WAITING
    attempts: int = 0
    max_attempts: int = 3
    payload: dict[str, Any] = field(default_factory=dict)
    progress: int = 0
    result: dict[str, Any] | None = None
    error: str | None = None
    run_at: datetime | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    failed_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    id: int | None = None

    @property
    def task(self) -> Task:
        return Task.from_payload(self.payload)


@dataclass
class StageResult:
    """Result from running one stage handler."""

    success: bool
    message_id: int | None
    action: str  # e.g. "classified", "completed", "skipped_already_claimed"
    details: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "message_id": self.message_id,
            "action": self.action,
            "details": self.details,
        }


@dataclass
class AdmissionResult:
    """Outcome of admitting a discovered message."""

    message: Message
    created: bool
