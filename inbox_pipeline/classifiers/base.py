"""
Abstract base classes for the classification and extraction collaborators.
"""

from abc import ABC, abstractmethod

from inbox_pipeline.core.models import ClassificationResult, ExtractionResult


class BaseClassifier(ABC):
    """Abstract classifier interface."""

    @abstractmethod
    def classify(self, subject: str, body: str, sender: str) -> ClassificationResult:
        """
        Decide whether a message is financial and categorize it.

        Args:
            subject: Message subject
            body: Message body, or its preview when the body was not fetched
            sender: From header

        Returns:
            ClassificationResult with category, confidence and reasoning
        """
        pass


class BaseExtractor(ABC):
    """Abstract extractor interface."""

    @abstractmethod
    def extract(self, subject: str, body: str, category: str) -> ExtractionResult:
        """
        Extract transaction details from a classified message.

        Args:
            subject: Message subject
            body: Message body
            category: Lower-case classification (e.g. 'credit_card')

        Returns:
            ExtractionResult; fields the extractor could not find are None
        """
        pass
