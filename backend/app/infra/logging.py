"""INF-02 structured logging helpers.

Modules log event-style message names (``pending_entry_created``) and pass
context through ``extra``. The formatters below render those extras so the
context survives into plain-text and JSON output alike.
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any, Mapping, Optional

__all__ = ["JsonFormatter", "KeyValueFormatter", "configure_logging", "get_logger"]

ROOT_LOGGER_NAME = "backend"

_RESERVED_ATTRS = frozenset(
    vars(logging.LogRecord("", logging.INFO, "", 0, "", (), None)).keys()
) | {"message", "asctime"}


def get_logger(name: str) -> logging.Logger:
    """Return a module logger; configuration is applied once by the entrypoint."""

    return logging.getLogger(name)


def _record_extras(record: logging.LogRecord) -> dict[str, Any]:
    return {
        key: value
        for key, value in record.__dict__.items()
        if key not in _RESERVED_ATTRS and not key.startswith("_")
    }


class JsonFormatter(logging.Formatter):
    """Render each record as a single JSON object."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname.lower(),
            "logger": record.name,
            "event": record.getMessage(),
        }
        payload.update(_record_extras(record))
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str, ensure_ascii=False)


class KeyValueFormatter(logging.Formatter):
    """Human-readable formatter that appends extras as ``key=value`` pairs."""

    def __init__(self) -> None:
        super().__init__("%(asctime)s %(levelname)s %(name)s %(message)s")

    def format(self, record: logging.LogRecord) -> str:
        base = super().format(record)
        extras = _record_extras(record)
        if not extras:
            return base
        rendered = " ".join(f"{key}={value!r}" for key, value in sorted(extras.items()))
        return f"{base} {rendered}"


def configure_logging(config: Optional[Mapping[str, Any]] = None) -> None:
    """Install a stream handler on the application root logger.

    Safe to call repeatedly; the handler is replaced rather than duplicated.
    """

    config = config or {}
    level_name = str(config.get("level", "INFO")).upper()
    level = logging.getLevelName(level_name)
    if not isinstance(level, int):
        level = logging.INFO

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        JsonFormatter() if config.get("json") else KeyValueFormatter()
    )
    handler.set_name("offerdesk")

    root = logging.getLogger(ROOT_LOGGER_NAME)
    for existing in list(root.handlers):
        if existing.get_name() == "offerdesk":
            root.removeHandler(existing)
    root.addHandler(handler)
    root.setLevel(level)
