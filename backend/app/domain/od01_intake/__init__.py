"""OD-01 intake package."""

from .channels import (
    Channel,
    ChannelDirectory,
    InMemoryChannelDirectory,
    PostgresChannelDirectory,
    normalize_sender_key,
)
from .messages import ACCESS_DENIED_MESSAGE, REJECTION_MESSAGES, rejection_message
from .service import (
    INTAKE_STATUS,
    InboundMessage,
    IntakeOutcome,
    IntakeService,
    Merger,
    WindowArmer,
)

__all__ = [
    "ACCESS_DENIED_MESSAGE",
    "INTAKE_STATUS",
    "REJECTION_MESSAGES",
    "Channel",
    "ChannelDirectory",
    "InMemoryChannelDirectory",
    "InboundMessage",
    "IntakeOutcome",
    "IntakeService",
    "Merger",
    "PostgresChannelDirectory",
    "WindowArmer",
    "normalize_sender_key",
    "rejection_message",
]
