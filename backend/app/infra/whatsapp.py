"""INF-05 WhatsApp Cloud API client and outbound notification senders."""

from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Protocol, Tuple

import httpx

from ..config.loader import WhatsAppConfig
from .logging import get_logger

logger = get_logger(__name__)

__all__ = [
    "LoggingNotificationSender",
    "NotificationSender",
    "SentNotification",
    "WhatsAppClientError",
    "WhatsAppCloudClient",
    "WhatsAppNotificationSender",
    "build_notification_sender",
    "build_whatsapp_client",
]


class WhatsAppClientError(RuntimeError):
    """Raised when a Graph API call fails."""

    def __init__(self, message: str, *, code: str, retryable: bool) -> None:
        super().__init__(message)
        self.code = code
        self.retryable = retryable


class WhatsAppCloudClient:
    """Thin synchronous wrapper around the Graph API endpoints the pipeline needs."""

    def __init__(
        self,
        *,
        graph_base_url: str,
        phone_number_id: str,
        access_token: str,
        timeout_seconds: float = 10.0,
        client: Optional[httpx.Client] = None,
    ) -> None:
        self._base_url = graph_base_url.rstrip("/")
        self._phone_number_id = phone_number_id
        self._access_token = access_token
        self._client = client or httpx.Client(timeout=timeout_seconds)

    @property
    def _headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self._access_token}"}

    def send_text(self, to: str, body: str) -> Dict[str, Any]:
        payload = {
            "messaging_product": "whatsapp",
            "recipient_type": "individual",
            "to": to,
            "type": "text",
            "text": {"preview_url": False, "body": body},
        }
        response = self._request(
            "POST",
            f"{self._base_url}/{self._phone_number_id}/messages",
            json=payload,
        )
        return response.json()

    def get_media_url(self, media_id: str) -> str:
        response = self._request("GET", f"{self._base_url}/{media_id}")
        try:
            url = response.json().get("url")
        except (ValueError, AttributeError) as exc:
            raise WhatsAppClientError(
                f"media {media_id} lookup returned an unreadable body",
                code="whatsapp_invalid_response",
                retryable=True,
            ) from exc
        if not url:
            raise WhatsAppClientError(
                f"media {media_id} has no download url",
                code="whatsapp_media_missing",
                retryable=False,
            )
        return url

    def download_media(self, media_id: str) -> Tuple[bytes, str]:
        """Return the media bytes and their MIME type."""

        url = self.get_media_url(media_id)
        response = self._request("GET", url)
        mime_type = response.headers.get("content-type", "image/jpeg").split(";")[0]
        return response.content, mime_type

    def _request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        try:
            response = self._client.request(method, url, headers=self._headers, **kwargs)
        except httpx.TimeoutException as exc:
            raise WhatsAppClientError(
                "whatsapp request timed out", code="whatsapp_timeout", retryable=True
            ) from exc
        except httpx.TransportError as exc:
            raise WhatsAppClientError(
                f"whatsapp transport error: {exc}",
                code="whatsapp_unreachable",
                retryable=True,
            ) from exc
        if response.status_code >= 400:
            raise WhatsAppClientError(
                f"whatsapp returned HTTP {response.status_code}: {response.text[:200]}",
                code="whatsapp_http_error",
                retryable=response.status_code == 429 or response.status_code >= 500,
            )
        return response


class NotificationSender(Protocol):  # pragma: no cover - interface only
    """Best-effort delivery of a text reply to a sender."""

    def send(self, destination: str, message_text: str) -> bool: ...


@dataclass(frozen=True)
class SentNotification:
    destination: str
    message_text: str


class LoggingNotificationSender(NotificationSender):
    """Sender used when no WhatsApp credentials are configured; keeps an outbox."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._outbox: List[SentNotification] = []

    def send(self, destination: str, message_text: str) -> bool:
        with self._lock:
            self._outbox.append(SentNotification(destination, message_text))
        logger.info(
            "notification_logged",
            extra={"destination": destination, "message_text": message_text},
        )
        return True

    @property
    def outbox(self) -> List[SentNotification]:
        with self._lock:
            return list(self._outbox)


class WhatsAppNotificationSender(NotificationSender):
    """Delivers replies through the Cloud API; failures are logged, not raised."""

    def __init__(self, client: WhatsAppCloudClient) -> None:
        self._client = client

    def send(self, destination: str, message_text: str) -> bool:
        try:
            self._client.send_text(destination, message_text)
        except WhatsAppClientError as exc:
            logger.warning(
                "notification_send_failed",
                extra={
                    "destination": destination,
                    "error_code": exc.code,
                    "retryable": exc.retryable,
                },
            )
            return False
        logger.info("notification_sent", extra={"destination": destination})
        return True


def build_whatsapp_client(config: WhatsAppConfig) -> Optional[WhatsAppCloudClient]:
    if not config.is_configured:
        return None
    return WhatsAppCloudClient(
        graph_base_url=config.graph_base_url,
        phone_number_id=config.phone_number_id or "",
        access_token=config.access_token or "",
        timeout_seconds=config.timeout_seconds,
    )


def build_notification_sender(
    config: WhatsAppConfig, *, client: Optional[WhatsAppCloudClient] = None
) -> NotificationSender:
    """Return a Cloud API sender when credentials exist, else a logging sender."""

    client = client or build_whatsapp_client(config)
    if client is None:
        logger.info("whatsapp_not_configured_using_logging_sender")
        return LoggingNotificationSender()
    return WhatsAppNotificationSender(client)
