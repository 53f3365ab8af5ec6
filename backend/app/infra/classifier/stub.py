"""Deterministic offline classifier used in dev and test profiles."""

from __future__ import annotations

import re
from typing import Optional

from .contracts import (
    REJECTION_REASON,
    ClassificationResult,
    ClassifierRequest,
    OfferExtraction,
    parse_price,
)

STUB_MODEL = "stub:offer-heuristic"

_PRICE_TOKEN_RE = re.compile(
    r"(?P<price>\d+(?:[.,]\d{1,2})?)\s*(?:€|eur|euro)?\s*(?:/\s*(?P<unit>[a-zäöüß]+))?",
    re.IGNORECASE,
)
_FILLER_WORDS = frozenset(
    {"hi", "hey", "hallo", "hello", "ok", "okay", "danke", "thanks", "test", "moin"}
)


class StubOfferClassifier:
    """Reads ``<name> <price>[/<unit>]`` out of plain text without a model."""

    model_used = STUB_MODEL

    def classify(self, request: ClassifierRequest) -> ClassificationResult:
        text = (request.text or "").strip()
        if not text:
            reason = (
                REJECTION_REASON.MISSING_BOTH
                if request.media_ref is None
                else REJECTION_REASON.UNCLEAR
            )
            return ClassificationResult.rejected(reason, model_used=STUB_MODEL)

        match = _PRICE_TOKEN_RE.search(text)
        price = parse_price(match.group("price")) if match else None
        unit = match.group("unit") if match else None
        remainder = _PRICE_TOKEN_RE.sub(" ", text) if match else text
        item_name = _item_name(remainder)

        if item_name is None and price is None:
            return ClassificationResult.rejected(
                REJECTION_REASON.MISSING_BOTH, model_used=STUB_MODEL, raw_text=text
            )
        if item_name is None:
            return ClassificationResult.rejected(
                REJECTION_REASON.MISSING_PRODUCT, model_used=STUB_MODEL, raw_text=text
            )
        if price is None:
            return ClassificationResult.rejected(
                REJECTION_REASON.MISSING_PRICE, model_used=STUB_MODEL, raw_text=text
            )
        return ClassificationResult(
            model_used=STUB_MODEL,
            extraction=OfferExtraction(item_name=item_name, price=price, unit=unit),
            raw_text=text,
        )


def _item_name(remainder: str) -> Optional[str]:
    words = [
        word
        for word in re.findall(r"[^\W\d_]+", remainder)
        if word.lower() not in _FILLER_WORDS and len(word) > 1
    ]
    if not words:
        return None
    return " ".join(words)
