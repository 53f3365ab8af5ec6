"""INF-03 pipeline events (draft created, offer rejected) for downstream review tooling."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Mapping, Protocol

from .logging import get_logger

logger = get_logger(__name__)

DRAFT_CREATED = "draft_created"
OFFER_REJECTED = "offer_rejected"

PIPELINE_TOPICS = frozenset({DRAFT_CREATED, OFFER_REJECTED})


class EventEmitter(Protocol):  # pragma: no cover - interface only
    def emit(self, topic: str, payload: Dict[str, Any]) -> None:
        ...


def qualify_topic(prefix: str, topic: str) -> str:
    if topic not in PIPELINE_TOPICS:
        raise ValueError(f"Unknown pipeline event topic: {topic!r}")
    return f"{prefix}.{topic}" if prefix else topic


@dataclass
class LoggingEventEmitter:
    """Writes each event as one ``pipeline_event`` log line.

    Review tooling tails the log stream, so the payload is copied into a plain
    dict before it is handed to the formatter.
    """

    topic_prefix: str = "offerdesk"

    def emit(self, topic: str, payload: Mapping[str, Any]) -> None:
        logger.info(
            "pipeline_event",
            extra={
                "topic": qualify_topic(self.topic_prefix, topic),
                "payload": dict(payload),
            },
        )


_emitter: EventEmitter | None = None


def get_event_emitter() -> EventEmitter:
    global _emitter
    if _emitter is None:
        _emitter = LoggingEventEmitter()
    return _emitter
