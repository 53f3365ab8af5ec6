"""OpenRouter chat-completions driver for the INF-04 offer classifier."""

from __future__ import annotations

import base64
import json
import re
import time
from typing import Any, Callable, Dict, List, Optional, Tuple

import httpx

from ..logging import get_logger
from .contracts import (
    REJECTION_REASON,
    ClassificationResult,
    ClassifierGatewayError,
    ClassifierRequest,
    OfferExtraction,
    parse_price,
)

logger = get_logger(__name__)

MediaLoader = Callable[[str], Tuple[bytes, str]]

SYSTEM_PROMPT = """You are a validation gatekeeper for a grocery market offer system.

Your job: Check if this message contains BOTH a clear Product Name AND a Price.

Rules:
1. If BOTH product name AND price are present -> Extract and return JSON with the data
2. If MISSING product name -> Return exactly: "INVALID: MISSING_PRODUCT"
3. If MISSING price -> Return exactly: "INVALID: MISSING_PRICE"
4. If BOTH are missing -> Return exactly: "INVALID: MISSING_BOTH"
5. If the message is gibberish/unclear -> Return exactly: "INVALID: UNCLEAR_MESSAGE"

If VALID, return JSON like this:
{
    "product_name": "Extracted product name in German",
    "price": 4.99,
    "unit": "kg or Stück or Bund etc.",
    "description": "An appetizing 1-sentence description of the product in German. Do NOT include price, validity period, or unit here.",
    "ai_category": "Category from: Obst & Gemüse, Fleisch & Wurst, Milchprodukte, Backwaren, Getränke, Sonstiges",
    "validity_days": 7
}

Note on validity_days: Extract the validity period from the message if mentioned (e.g., "drei Tage" = 3, "eine Woche" = 7, "zwei Wochen" = 14). If not mentioned, default to 7 days.

If INVALID, return one of the INVALID codes above."""

_INVALID_CODES = {
    "MISSING_PRODUCT": REJECTION_REASON.MISSING_PRODUCT,
    "MISSING_PRICE": REJECTION_REASON.MISSING_PRICE,
    "MISSING_BOTH": REJECTION_REASON.MISSING_BOTH,
    "UNCLEAR_MESSAGE": REJECTION_REASON.UNCLEAR,
    "UNCLEAR": REJECTION_REASON.UNCLEAR,
}
_FENCE_RE = re.compile(r"```(?:json)?\s*|```")


class OpenRouterOfferClassifier:
    """Sends the consolidated caption (and image, when loadable) to a chat model."""

    def __init__(
        self,
        *,
        endpoint: str,
        model: str,
        api_key: Optional[str],
        timeout_seconds: float,
        temperature: float = 0.3,
        max_tokens: int = 500,
        media_loader: Optional[MediaLoader] = None,
        client: Optional[httpx.Client] = None,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self._endpoint = endpoint
        self._model = model
        self._api_key = api_key
        self._temperature = temperature
        self._max_tokens = max_tokens
        self._media_loader = media_loader
        self._timeout_seconds = timeout_seconds
        self._monotonic = monotonic
        self._client = client or httpx.Client(timeout=timeout_seconds)

    @property
    def model_used(self) -> str:
        return f"openrouter:{self._model}"

    def classify(self, request: ClassifierRequest) -> ClassificationResult:
        if not self._api_key:
            raise ClassifierGatewayError(
                "OPENROUTER_API_KEY is not configured",
                code="classifier_not_configured",
                retryable=False,
            )
        started = self._monotonic()
        messages = self._build_messages(request)
        # Media loading shares the classifier budget with the completion call.
        remaining = self._timeout_seconds - (self._monotonic() - started)
        if remaining <= 0:
            raise ClassifierGatewayError(
                "classifier budget spent loading media",
                code="classifier_timeout",
                retryable=True,
            )
        body = {
            "model": self._model,
            "messages": messages,
            "temperature": self._temperature,
            "max_tokens": self._max_tokens,
        }
        headers = {
            "Authorization": f"Bearer {self._api_key}",
            "Content-Type": "application/json",
            "X-Title": "OfferDesk Intake",
        }
        try:
            response = self._client.post(
                self._endpoint,
                json=body,
                headers=headers,
                timeout=httpx.Timeout(remaining),
            )
        except httpx.TimeoutException as exc:
            raise ClassifierGatewayError(
                "classifier request timed out", code="classifier_timeout", retryable=True
            ) from exc
        except httpx.TransportError as exc:
            raise ClassifierGatewayError(
                f"classifier transport error: {exc}",
                code="classifier_unreachable",
                retryable=True,
            ) from exc

        if response.status_code == 429 or response.status_code >= 500:
            raise ClassifierGatewayError(
                f"classifier returned HTTP {response.status_code}",
                code="classifier_unavailable",
                retryable=True,
            )
        if response.status_code >= 400:
            raise ClassifierGatewayError(
                f"classifier rejected request with HTTP {response.status_code}",
                code="classifier_http_error",
                retryable=False,
            )
        try:
            payload = response.json()
        except ValueError as exc:
            raise ClassifierGatewayError(
                "classifier response is not JSON",
                code="classifier_invalid_response",
                retryable=True,
            ) from exc

        text = _completion_text(payload)
        logger.debug(
            "classifier_completion_received",
            extra={"model": self._model, "chars": len(text)},
        )
        return parse_completion(text, model_used=self.model_used)

    def _build_messages(self, request: ClassifierRequest) -> List[Dict[str, Any]]:
        caption = (request.text or "").strip() or "No caption"
        user_text = (
            "Message to validate:\n"
            f"Caption: {caption}\n"
            f"Has Image: {'Yes' if request.media_ref else 'No'}"
        )
        messages: List[Dict[str, Any]] = [{"role": "system", "content": SYSTEM_PROMPT}]
        image_url = self._image_data_url(request.media_ref)
        if image_url:
            messages.append(
                {
                    "role": "user",
                    "content": [
                        {"type": "text", "text": user_text},
                        {"type": "image_url", "image_url": {"url": image_url}},
                    ],
                }
            )
        else:
            messages.append({"role": "user", "content": user_text})
        return messages

    def _image_data_url(self, media_ref: Optional[str]) -> Optional[str]:
        if not media_ref or self._media_loader is None:
            return None
        try:
            content, mime_type = self._media_loader(media_ref)
        except (RuntimeError, ValueError) as exc:
            raise ClassifierGatewayError(
                f"media {media_ref} could not be loaded: {exc}",
                code="classifier_media_unavailable",
                retryable=True,
            ) from exc
        encoded = base64.b64encode(content).decode("ascii")
        return f"data:{mime_type};base64,{encoded}"


def _completion_text(payload: Any) -> str:
    try:
        content = payload["choices"][0]["message"]["content"]
    except (KeyError, IndexError, TypeError):
        return ""
    return content if isinstance(content, str) else ""


def parse_completion(text: str, *, model_used: str) -> ClassificationResult:
    """Map a raw completion to an extraction or a rejection reason.

    Empty or unparsable completions count as ``UNCLEAR`` content rather than
    infrastructure failures.
    """

    stripped = (text or "").strip()
    if not stripped:
        return ClassificationResult.rejected(REJECTION_REASON.UNCLEAR, model_used=model_used)

    if stripped.upper().startswith("INVALID:"):
        code = stripped.split(":", 1)[1].strip().strip('"').upper()
        reason = _INVALID_CODES.get(code, REJECTION_REASON.UNCLEAR)
        return ClassificationResult.rejected(reason, model_used=model_used, raw_text=stripped)

    try:
        data = json.loads(_FENCE_RE.sub("", stripped).strip())
    except json.JSONDecodeError:
        logger.info("classifier_completion_unparsable", extra={"raw_text": stripped[:200]})
        return ClassificationResult.rejected(
            REJECTION_REASON.UNCLEAR, model_used=model_used, raw_text=stripped
        )
    if not isinstance(data, dict):
        return ClassificationResult.rejected(
            REJECTION_REASON.UNCLEAR, model_used=model_used, raw_text=stripped
        )

    item_name = str(data.get("product_name") or "").strip() or None
    price = parse_price(data.get("price"))
    if item_name is None and price is None:
        reason = REJECTION_REASON.MISSING_BOTH
    elif item_name is None:
        reason = REJECTION_REASON.MISSING_PRODUCT
    elif price is None:
        reason = REJECTION_REASON.MISSING_PRICE
    else:
        return ClassificationResult(
            model_used=model_used,
            extraction=OfferExtraction(
                item_name=item_name,
                price=price,
                unit=_optional_str(data.get("unit")),
                description=_optional_str(data.get("description")),
                category=_optional_str(data.get("ai_category")),
                validity_days=_optional_int(data.get("validity_days")),
            ),
            raw_text=stripped,
        )
    return ClassificationResult.rejected(reason, model_used=model_used, raw_text=stripped)


def _optional_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _optional_int(value: Any) -> Optional[int]:
    try:
        number = int(value)
    except (TypeError, ValueError):
        return None
    return number if number > 0 else None
