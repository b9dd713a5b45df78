"""
Rule-based classification and extraction.

Used when the classifier service is not configured or returns output that
cannot be parsed. Results are marked degraded and carry low confidence.
"""

import re

from inbox_pipeline.core.logging import get_logger
from inbox_pipeline.core.models import ClassificationResult, ExtractionResult
from inbox_pipeline.classifiers.base import BaseClassifier, BaseExtractor

log = get_logger(__name__)

FINANCIAL_KEYWORDS = (
    "payment", "transaction", "receipt", "invoice", "bill", "charge",
    "deposit", "withdrawal", "transfer", "balance", "statement",
    "bank", "credit", "debit", "card", "account", "purchase",
    "subscription", "refund", "fee", "interest", "loan", "mortgage",
    "insurance", "tax", "investment", "trading", "portfolio",
)

CURRENCY_SYMBOL_RE = re.compile(r"[$€£¥₹₽]")
AMOUNT_RE = re.compile(r"\d+[.,]\d{2}")

# First match wins
CATEGORY_RULES = (
    (("bank", "statement"), "banking"),
    (("credit", "card"), "credit_card"),
    (("payment", "purchase"), "payment"),
    (("subscription",), "subscription"),
    (("bill", "invoice"), "bill"),
)

AMOUNT_PATTERNS = (
    re.compile(r"(?:RD\$|DOP\$|\$)\s?(\d+(?:[.,]\d{3})*(?:[.,]\d{2})?)"),
    re.compile(r"(\d+(?:[.,]\d{3})*[.,]\d{2})\s?(?:RD\$|DOP|pesos)"),
    re.compile(r"[$€£¥₹₽](\d+(?:[.,]\d{3})*[.,]\d{2})"),
)
# Trailing separator plus exactly two digits is the decimal part
DECIMAL_TAIL_RE = re.compile(r"(.*?)[.,](\d{2})")

CURRENCY_SYMBOLS = (
    (re.compile(r"RD\$|DOP\$|\$\s?DOP"), "DOP"),
    (re.compile(r"\$(?!\s?DOP)"), "USD"),
    (re.compile(r"€"), "EUR"),
    (re.compile(r"£"), "GBP"),
    (re.compile(r"¥"), "JPY"),
    (re.compile(r"₹"), "INR"),
)
CURRENCY_CODE_RE = re.compile(r"\b(USD|EUR|GBP|JPY|CAD|AUD|DOP)\b", re.IGNORECASE)

DATE_PATTERNS = (
    re.compile(r"\d{4}[/-]\d{1,2}[/-]\d{1,2}"),
    re.compile(r"\d{1,2}[/-]\d{1,2}[/-]\d{4}"),
    re.compile(r"\d{1,2}\s+de\s+\w+\s+de\s+\d{4}"),
)
DMY_RE = re.compile(r"(\d{1,2})[/-](\d{1,2})[/-](\d{4})")
YMD_RE = re.compile(r"(\d{4})[/-](\d{1,2})[/-](\d{1,2})")

MERCHANT_PATTERNS = (
    re.compile(r"(?:en|establecimiento|comercio):\s?([A-Za-z][A-Za-z ]+)"),
    re.compile(r"\b(?:at|merchant)\s+([A-Z][\w&'.-]*(?:\s+[A-Z][\w&'.-]*)*)"),
    re.compile(r"([A-Z][a-z]+(?:\s+[A-Z][a-z]+)*)\s*(?:RD\$|\$|DOP)"),
)

ACCOUNT_PATTERNS = (
    re.compile(r"(?:terminada en|últimos dígitos|ending in)\s*(\d{4})", re.IGNORECASE),
    re.compile(r"\*{4}\s*(\d{4})"),
)

TRANSACTION_TYPE_RULES = (
    (("compra", "consumo", "transacción", "purchase", "charged"), "payment"),
    (("retiro", "extracción", "withdrawal"), "debit"),
    (("depósito", "abono", "deposit"), "credit"),
    (("transferencia", "transfer"), "transfer"),
    (("comisión", "cargo", " fee"), "fee"),
    (("interest", "interés"), "interest"),
)


def normalize_date(value: str) -> str:
    """Normalize DD/MM/YYYY or YYYY/MM/DD to ISO 8601; anything else is returned as-is."""
    match = YMD_RE.search(value)
    if match:
        year, month, day = match.groups()
        return f"{year}-{month.zfill(2)}-{day.zfill(2)}"

    match = DMY_RE.search(value)
    if match:
        day, month, year = match.groups()
        return f"{year}-{month.zfill(2)}-{day.zfill(2)}"

    return value


def _parse_amount(raw: str) -> float | None:
    """Parse "1,234.56", "1.234,56" or "1234.56"; other separators group thousands."""
    match = DECIMAL_TAIL_RE.fullmatch(raw.strip())
    whole, cents = match.groups() if match else (raw.strip(), "00")
    whole = re.sub(r"[.,]", "", whole)

    try:
        return float(f"{whole or 0}.{cents}")
    except ValueError:
        return None


def _first_group(patterns, text: str) -> str | None:
    for pattern in patterns:
        match = pattern.search(text)
        if match:
            return match.group(1).strip()
    return None


class HeuristicClassifier(BaseClassifier):
    """Keyword and currency-pattern classifier."""

    def classify(self, subject: str, body: str, sender: str) -> ClassificationResult:
        text = f"{subject} {body} {sender}".lower()

        has_keywords = any(keyword in text for keyword in FINANCIAL_KEYWORDS)
        has_currency = bool(CURRENCY_SYMBOL_RE.search(text))
        has_amount = bool(AMOUNT_RE.search(text))
        is_financial = has_keywords and (has_currency or has_amount)

        category = "non_financial"
        if is_financial:
            category = "other_financial"
            for words, rule_category in CATEGORY_RULES:
                if any(word in text for word in words):
                    category = rule_category
                    break

        return ClassificationResult(
            is_financial=is_financial,
            confidence=0.7 if is_financial else 0.3,
            category=category,
            language="en",
            reasoning="Fallback rule-based classification",
            degraded=True,
        )


class HeuristicExtractor(BaseExtractor):
    """Regex extractor for amounts, currencies, dates, merchants and card fragments."""

    def extract(self, subject: str, body: str, category: str) -> ExtractionResult:
        text = f"{subject} {body}"

        amount_raw = _first_group(AMOUNT_PATTERNS, text)
        date_raw = self._find_date(text)
        account = _first_group(ACCOUNT_PATTERNS, text)

        return ExtractionResult(
            amount=_parse_amount(amount_raw) if amount_raw else None,
            currency=self._find_currency(text),
            date=normalize_date(date_raw) if date_raw else None,
            merchant_name=_first_group(MERCHANT_PATTERNS, text),
            account_number=f"****{account}" if account else None,
            transaction_type=self._find_transaction_type(text),
            category=category,
            confidence=0.5,
        )

    def extract_from_text(self, text: str) -> ExtractionResult:
        """
        Pull fields out of a free-text extractor reply that was not JSON.

        Confidence starts at 0.1 and grows with each field found, capped at 0.8.
        """
        log.info("heuristic_text_extraction")
        result = self.extract("", text, "credit_card")
        found = [
            result.amount,
            result.currency,
            result.merchant_name,
            result.date,
            result.account_number,
        ]
        result.confidence = min(0.1 + 0.2 * sum(value is not None for value in found), 0.8)
        result.transaction_type = result.transaction_type or "payment"
        return result

    @staticmethod
    def _find_currency(text: str) -> str | None:
        for pattern, code in CURRENCY_SYMBOLS:
            if pattern.search(text):
                return code
        match = CURRENCY_CODE_RE.search(text)
        return match.group(1).upper() if match else None

    @staticmethod
    def _find_date(text: str) -> str | None:
        for pattern in DATE_PATTERNS:
            match = pattern.search(text)
            if match:
                return match.group(0)
        return None

    @staticmethod
    def _find_transaction_type(text: str) -> str | None:
        lowered = text.lower()
        for words, transaction_type in TRANSACTION_TYPE_RULES:
            if any(word in lowered for word in words):
                return transaction_type
        return None


def score_card_extraction(result: ExtractionResult) -> ExtractionResult:
    """
    Adjust confidence of a card-transaction extraction by field completeness.

    Card alerts are expected to carry amount, currency, merchant, date and a
    card fragment. The more of these are missing the lower the confidence,
    always kept within 0.1..1.0.
    """
    missing = []
    score = 0.0

    if not result.amount or result.amount <= 0:
        missing.append("amount")
    else:
        score += 2

    if not result.currency:
        missing.append("currency")
    elif result.currency.upper() in ("DOP", "USD", "EUR"):
        score += 2
    else:
        score += 1

    if not result.merchant_name or len(result.merchant_name.strip()) < 2:
        missing.append("merchant_name")
    else:
        score += 1.5

    if not result.date or not result.date.strip():
        missing.append("date")
    else:
        score += 1

    if not result.account_number:
        missing.append("account_number")
    elif re.search(r"\d{4}", result.account_number):
        score += 1
    else:
        score += 0.5

    ratio = score / 7.5
    confidence = result.confidence
    if not missing:
        confidence = max(confidence, 0.8)
    elif len(missing) <= 2:
        confidence = max(confidence * ratio, 0.5)
    elif len(missing) <= 3:
        confidence = max(confidence * ratio, 0.3)
    else:
        confidence = min(confidence, 0.2)

    if missing:
        log.info("card_extraction_incomplete", missing=missing, confidence=round(confidence, 2))

    result.confidence = min(max(confidence, 0.1), 1.0)
    return result
