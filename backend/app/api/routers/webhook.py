"""WhatsApp Cloud API webhook: verification handshake and message intake."""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from fastapi.responses import PlainTextResponse
from pydantic import BaseModel, ConfigDict, Field

from ...api.dependencies import get_intake_service, get_settings
from ...config import Settings
from ...domain.od01_intake import InboundMessage, IntakeService
from ...domain.od04_pendingstore.gateway import PendingStoreError
from ...infra.logging import get_logger

router = APIRouter(prefix="/api/webhooks", tags=["webhooks"])
logger = get_logger(__name__)

SUPPORTED_MESSAGE_TYPES = {"text", "image"}


class TextBody(BaseModel):
    body: Optional[str] = None


class ImageBody(BaseModel):
    id: str
    caption: Optional[str] = None
    mime_type: Optional[str] = None


class WhatsAppMessage(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    sender: str = Field(alias="from")
    id: str
    type: str
    timestamp: Optional[str] = None
    text: Optional[TextBody] = None
    image: Optional[ImageBody] = None


class ChangeValue(BaseModel):
    messaging_product: Optional[str] = None
    messages: List[WhatsAppMessage] = Field(default_factory=list)
    statuses: List[Dict[str, Any]] = Field(default_factory=list)


class Change(BaseModel):
    field: Optional[str] = None
    value: ChangeValue = Field(default_factory=ChangeValue)


class WebhookEntry(BaseModel):
    id: Optional[str] = None
    changes: List[Change] = Field(default_factory=list)


class WebhookPayload(BaseModel):
    object: Optional[str] = None
    entry: List[WebhookEntry] = Field(default_factory=list)


class WebhookAck(BaseModel):
    ok: bool = True
    results: List[Dict[str, Optional[str]]] = Field(default_factory=list)


@router.get("/whatsapp", response_class=PlainTextResponse)
def verify_webhook(
    mode: Optional[str] = Query(default=None, alias="hub.mode"),
    verify_token: Optional[str] = Query(default=None, alias="hub.verify_token"),
    challenge: Optional[str] = Query(default=None, alias="hub.challenge"),
    settings: Settings = Depends(get_settings),
) -> PlainTextResponse:
    expected = settings.whatsapp.verify_token
    if mode == "subscribe" and expected and verify_token == expected:
        logger.info("webhook_verified")
        return PlainTextResponse(challenge or "")
    logger.warning("webhook_verification_failed", extra={"mode": mode})
    raise _http_error(
        status.HTTP_403_FORBIDDEN, "OD-WEBHOOK-FORBIDDEN", "Verification failed"
    )


@router.post("/whatsapp", response_model=WebhookAck)
def receive_webhook(
    payload: WebhookPayload,
    intake: IntakeService = Depends(get_intake_service),
) -> WebhookAck:
    ack = WebhookAck()
    for inbound in _inbound_messages(payload):
        try:
            outcome = intake.receive(inbound)
        except PendingStoreError as exc:
            logger.error(
                "webhook_store_unavailable",
                extra={"message_id": inbound.message_id, "error": str(exc)},
            )
            # Non-2xx so the transport redelivers the batch.
            raise _http_error(
                status.HTTP_503_SERVICE_UNAVAILABLE,
                "OD-STORE-UNAVAILABLE",
                "Pending store unavailable",
                {"message_id": inbound.message_id},
            ) from exc
        ack.results.append(
            {
                "message_id": inbound.message_id,
                "status": outcome.status,
                "entry_id": outcome.entry.entry_id if outcome.entry else None,
            }
        )
    return ack


def _inbound_messages(payload: WebhookPayload) -> List[InboundMessage]:
    inbound: List[InboundMessage] = []
    for entry in payload.entry:
        for change in entry.changes:
            if change.value.statuses and not change.value.messages:
                logger.debug("webhook_status_update_ignored")
                continue
            for message in change.value.messages:
                if message.type not in SUPPORTED_MESSAGE_TYPES:
                    logger.info(
                        "webhook_message_type_unsupported",
                        extra={"message_id": message.id, "type": message.type},
                    )
                    continue
                if message.type == "image" and message.image is not None:
                    inbound.append(
                        InboundMessage(
                            sender_key=message.sender,
                            message_id=message.id,
                            text=message.image.caption,
                            media_ref=message.image.id,
                        )
                    )
                elif message.text is not None:
                    inbound.append(
                        InboundMessage(
                            sender_key=message.sender,
                            message_id=message.id,
                            text=message.text.body,
                        )
                    )
    return inbound


def _http_error(
    status_code: int,
    error_code: str,
    message: str,
    details: Optional[Dict[str, Any]] = None,
) -> HTTPException:
    return HTTPException(
        status_code=status_code,
        detail={
            "error_code": error_code,
            "message": message,
            "details": details or {},
        },
    )
