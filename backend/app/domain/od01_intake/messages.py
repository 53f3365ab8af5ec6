"""Reply texts sent back to senders."""

from __future__ import annotations

from ...infra.classifier import REJECTION_REASON

ACCESS_DENIED_MESSAGE = (
    "Diese Nummer ist keinem Markt zugeordnet. "
    "Bitte wende dich an den Support, um Angebote senden zu können."
)

REJECTION_MESSAGES = {
    REJECTION_REASON.MISSING_PRODUCT: (
        "Ich sehe keinen Produktnamen. "
        "Bitte sende den Produktnamen zusammen mit dem Preis."
    ),
    REJECTION_REASON.MISSING_PRICE: (
        "Ich sehe keinen Preis. "
        "Bitte sende den Preis zusammen mit dem Produktnamen."
    ),
    REJECTION_REASON.MISSING_BOTH: (
        "Ich brauche sowohl den Produktnamen als auch den Preis. "
        "Bitte sende beides zusammen."
    ),
    REJECTION_REASON.UNCLEAR: (
        "Ich konnte kein Angebot erkennen. "
        "Bitte sende Produktname und Preis zusammen mit dem Bild."
    ),
}


def rejection_message(reason: str) -> str:
    return REJECTION_MESSAGES.get(reason, REJECTION_MESSAGES[REJECTION_REASON.UNCLEAR])
