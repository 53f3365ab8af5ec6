"""INF-04 offer classifier entry points."""

from __future__ import annotations

from typing import Optional

from ...config.loader import ClassifierConfig
from ..logging import get_logger
from .contracts import (
    REJECTION_REASON,
    ClassificationResult,
    ClassifierGatewayError,
    ClassifierRequest,
    OfferClassifier,
    OfferExtraction,
    parse_price,
)
from .openrouter_client import MediaLoader, OpenRouterOfferClassifier, parse_completion
from .stub import STUB_MODEL, StubOfferClassifier

logger = get_logger(__name__)

__all__ = [
    "REJECTION_REASON",
    "STUB_MODEL",
    "ClassificationResult",
    "ClassifierGatewayError",
    "ClassifierRequest",
    "OfferClassifier",
    "OfferExtraction",
    "OpenRouterOfferClassifier",
    "StubOfferClassifier",
    "build_offer_classifier",
    "parse_completion",
    "parse_price",
]


def build_offer_classifier(
    config: ClassifierConfig, *, media_loader: Optional[MediaLoader] = None
) -> OfferClassifier:
    """Return the classifier driver selected by ``classifier.provider``."""

    provider = (config.provider or "stub").lower()
    if provider == "stub":
        return StubOfferClassifier()
    if provider == "openrouter":
        if not config.api_key:
            logger.warning(
                "classifier_api_key_missing",
                extra={"provider": provider, "model": config.model},
            )
        return OpenRouterOfferClassifier(
            endpoint=config.endpoint,
            model=config.model,
            api_key=config.api_key,
            timeout_seconds=config.timeout_seconds,
            temperature=config.temperature,
            max_tokens=config.max_tokens,
            media_loader=media_loader,
        )
    raise ClassifierGatewayError(
        f"unknown classifier provider '{config.provider}'",
        code="classifier_provider_unknown",
        retryable=False,
    )
