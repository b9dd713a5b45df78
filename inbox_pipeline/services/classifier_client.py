"""
Remote classifier client for the classifier service.

Implements the classifier and extractor interfaces by calling the remote
service via HTTP. Replies that cannot be parsed degrade to the rule-based
heuristics; transport failures raise CollaboratorError so the job is retried.
"""

import json
from typing import Any

import httpx

from inbox_pipeline.config import settings
from inbox_pipeline.core.errors import CollaboratorError
from inbox_pipeline.core.logging import get_logger
from inbox_pipeline.core.models import ClassificationResult, ExtractionResult
from inbox_pipeline.classifiers.base import BaseClassifier, BaseExtractor
from inbox_pipeline.classifiers.heuristic import (
    HeuristicClassifier,
    HeuristicExtractor,
    score_card_extraction,
)

log = get_logger(__name__)


class RemoteClassifierClient(BaseClassifier, BaseExtractor):
    """HTTP client for the remote classifier service."""

    def __init__(
        self,
        base_url: str | None = None,
        timeout: float | None = None,
        client: httpx.Client | None = None,
    ):
        self.base_url = (base_url if base_url is not None else settings.classifier_service_url).rstrip("/")
        self.timeout = timeout or settings.classifier_timeout
        self._client = client or httpx.Client(timeout=self.timeout)
        self._heuristic_classifier = HeuristicClassifier()
        self._heuristic_extractor = HeuristicExtractor()

    @property
    def is_configured(self) -> bool:
        return bool(self.base_url)

    def classify(self, subject: str, body: str, sender: str) -> ClassificationResult:
        """
        Classify a message using the remote classifier service.

        Args:
            subject: Message subject
            body: Message body (truncated to 3000 chars)
            sender: From header

        Returns:
            ClassificationResult; heuristic when the service is not configured
            or its reply cannot be parsed
        """
        if not self.is_configured:
            return self._heuristic_classifier.classify(subject, body, sender)

        payload = {
            "subject": subject,
            "body": body[:3000],
            "sender": sender,
        }
        data = self._post("/classify", payload)

        if not isinstance(data, dict) or "category" not in data:
            log.warning("classifier_malformed_response", response=str(data)[:200])
            return self._heuristic_classifier.classify(subject, body, sender)

        result = ClassificationResult.from_dict(data)
        log.info(
            "remote_classification_success",
            category=result.category,
            is_financial=result.is_financial,
            confidence=result.confidence,
        )
        return result

    def extract(self, subject: str, body: str, category: str) -> ExtractionResult:
        """
        Extract transaction details using the remote classifier service.

        Card transactions get their confidence adjusted by how complete the
        extracted fields are.
        """
        if not self.is_configured:
            result = self._heuristic_extractor.extract(subject, body, category)
        else:
            payload = {
                "subject": subject,
                "body": body[:4000],
                "category": category,
            }
            data = self._post("/extract", payload)

            if isinstance(data, dict):
                result = ExtractionResult.from_dict(data)
                result.category = result.category or category
            elif isinstance(data, str):
                result = self._heuristic_extractor.extract_from_text(data)
                result.category = category
            else:
                log.warning("extractor_malformed_response", response=str(data)[:200])
                result = self._heuristic_extractor.extract(subject, body, category)

        if category == "credit_card":
            result = score_card_extraction(result)

        log.info(
            "extraction_result",
            category=category,
            amount=result.amount,
            currency=result.currency,
            confidence=result.confidence,
        )
        return result

    def _post(self, path: str, payload: dict[str, Any]) -> Any:
        """
        POST to the service and decode the reply.

        Returns the decoded JSON, or the raw text when the body is not JSON.
        """
        try:
            response = self._client.post(f"{self.base_url}{path}", json=payload)
            response.raise_for_status()

        except httpx.HTTPStatusError as e:
            log.error(
                "classifier_http_error",
                path=path,
                status=e.response.status_code,
                error=str(e),
            )
            raise CollaboratorError(f"Classifier service error: {e}") from e

        except httpx.RequestError as e:
            log.error("classifier_request_error", path=path, error=str(e))
            raise CollaboratorError(f"Failed to reach classifier service: {e}") from e

        try:
            data = response.json()
        except json.JSONDecodeError:
            return response.text

        if isinstance(data, dict) and data.get("error"):
            error = str(data["error"])
            if "rate_limit" in error or "auth_error" in error:
                raise CollaboratorError(f"Classifier service error: {error}")
            log.warning("classifier_returned_error", path=path, error=error)
            return None

        return data

    def health_check(self) -> bool:
        """Check if the classifier service is healthy."""
        if not self.is_configured:
            return False
        try:
            response = self._client.get(f"{self.base_url}/health")
            response.raise_for_status()
            return response.json().get("status") == "healthy"
        except Exception as e:
            log.warning("classifier_health_check_failed", error=str(e))
            return False

    def close(self):
        """Close the HTTP client."""
        self._client.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
