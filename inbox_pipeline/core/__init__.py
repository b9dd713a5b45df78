"""Core modules for the intake pipeline."""

from .logging import configure_logging, get_logger
from .models import (
    Account,
    Message,
    MessageStatus,
    Classification,
    ClassificationResult,
    ExtractionResult,
    ExtractedData,
    Task,
    TaskType,
    QueueJob,
    JobStatus,
)
from .database import Database

__all__ = [
    "configure_logging",
    "get_logger",
    "Account",
    "Message",
    "MessageStatus",
    "Classification",
    "ClassificationResult",
    "ExtractionResult",
    "ExtractedData",
    "Task",
    "TaskType",
    "QueueJob",
    "JobStatus",
    "Database",
]
