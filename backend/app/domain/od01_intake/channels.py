"""Sender-to-channel authorization lookups for OD-01."""

from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Dict, Iterable, Optional, Protocol

from sqlalchemy import Table, select
from sqlalchemy.engine import Engine

from ...config.loader import ChannelConfig
from ...infra.db import get_engine
from ...infra.db.schema import channel_senders, channels
from ...infra.logging import get_logger

__all__ = [
    "Channel",
    "ChannelDirectory",
    "InMemoryChannelDirectory",
    "PostgresChannelDirectory",
    "normalize_sender_key",
]

logger = get_logger(__name__)


def normalize_sender_key(value: str) -> str:
    """Strip formatting so ``+49 151-000`` and ``49151000`` compare equal."""

    return "".join(ch for ch in (value or "") if ch.isdigit()) or (value or "").strip()


@dataclass(frozen=True)
class Channel:
    channel_id: str
    display_name: str
    is_active: bool = True


class ChannelDirectory(Protocol):  # pragma: no cover - interface only
    def resolve(self, sender_key: str) -> Optional[Channel]: ...


class InMemoryChannelDirectory(ChannelDirectory):
    """Directory seeded from the ``channels`` section of the profile."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._by_sender: Dict[str, Channel] = {}

    @classmethod
    def from_settings(cls, configs: Iterable[ChannelConfig]) -> "InMemoryChannelDirectory":
        directory = cls()
        for config in configs:
            directory.register(
                Channel(
                    channel_id=config.channel_id,
                    display_name=config.display_name,
                    is_active=config.is_active,
                ),
                config.sender_keys,
            )
        return directory

    def register(self, channel: Channel, sender_keys: Iterable[str]) -> None:
        with self._lock:
            for sender_key in sender_keys:
                self._by_sender[normalize_sender_key(sender_key)] = channel

    def resolve(self, sender_key: str) -> Optional[Channel]:
        with self._lock:
            return self._by_sender.get(normalize_sender_key(sender_key))


class PostgresChannelDirectory(ChannelDirectory):
    """Reads ``channel_senders`` joined to ``channels``."""

    def __init__(
        self,
        engine: Optional[Engine] = None,
        *,
        channels_table: Optional[Table] = None,
        senders_table: Optional[Table] = None,
    ) -> None:
        self._engine = engine or get_engine()
        self._channels = channels_table if channels_table is not None else channels
        self._senders = senders_table if senders_table is not None else channel_senders

    def resolve(self, sender_key: str) -> Optional[Channel]:
        ch = self._channels.c
        stmt = (
            select(ch.channel_id, ch.display_name, ch.is_active)
            .select_from(
                self._senders.join(
                    self._channels, self._senders.c.channel_id == ch.channel_id
                )
            )
            .where(self._senders.c.sender_key == normalize_sender_key(sender_key))
        )
        with self._engine.begin() as conn:
            row = conn.execute(stmt).mappings().first()
        if row is None:
            return None
        return Channel(
            channel_id=row["channel_id"],
            display_name=row["display_name"],
            is_active=bool(row["is_active"]),
        )
