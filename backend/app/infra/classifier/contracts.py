"""Request/response contracts for the INF-04 offer classifier."""

from __future__ import annotations

import re
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from types import SimpleNamespace
from typing import Any, Optional, Protocol

__all__ = [
    "REJECTION_REASON",
    "ClassificationResult",
    "ClassifierGatewayError",
    "ClassifierRequest",
    "OfferClassifier",
    "OfferExtraction",
    "parse_price",
]

REJECTION_REASON = SimpleNamespace(
    MISSING_PRODUCT="MISSING_PRODUCT",
    MISSING_PRICE="MISSING_PRICE",
    MISSING_BOTH="MISSING_BOTH",
    UNCLEAR="UNCLEAR",
)

_PRICE_RE = re.compile(r"\d+(?:[.,]\d{1,2})?")


class ClassifierGatewayError(RuntimeError):
    """Raised when the classifier cannot produce a verdict."""

    def __init__(self, message: str, *, code: str, retryable: bool) -> None:
        super().__init__(message)
        self.code = code
        self.retryable = retryable


@dataclass(frozen=True)
class ClassifierRequest:
    text: Optional[str]
    media_ref: Optional[str]


@dataclass(frozen=True)
class OfferExtraction:
    """Structured fields read from a consolidated message."""

    item_name: str
    price: Decimal
    unit: Optional[str] = None
    description: Optional[str] = None
    category: Optional[str] = None
    validity_days: Optional[int] = None


@dataclass(frozen=True)
class ClassificationResult:
    """Either an extraction or a typed rejection reason, never both."""

    model_used: str
    extraction: Optional[OfferExtraction] = None
    rejection_reason: Optional[str] = None
    raw_text: Optional[str] = None

    def __post_init__(self) -> None:
        if (self.extraction is None) == (self.rejection_reason is None):
            raise ValueError("exactly one of extraction or rejection_reason is required")

    @property
    def is_valid(self) -> bool:
        return self.extraction is not None

    @classmethod
    def rejected(
        cls, reason: str, *, model_used: str, raw_text: Optional[str] = None
    ) -> "ClassificationResult":
        return cls(model_used=model_used, rejection_reason=reason, raw_text=raw_text)


class OfferClassifier(Protocol):  # pragma: no cover - interface only
    def classify(self, request: ClassifierRequest) -> ClassificationResult: ...


def parse_price(value: Any) -> Optional[Decimal]:
    """Coerce ``2.99``, ``"2,99"`` or ``"2.99 €"`` into a positive Decimal."""

    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float, Decimal)):
        candidate = str(value)
    else:
        match = _PRICE_RE.search(str(value))
        if match is None:
            return None
        candidate = match.group(0).replace(",", ".")
    try:
        price = Decimal(candidate).quantize(Decimal("0.01"))
    except InvalidOperation:
        return None
    return price if price > 0 else None
