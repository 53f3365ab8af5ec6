"""Seed script for the channel directory tables.

Copies the ``channels`` section of the active profile into ``channels`` and
``channel_senders`` so the SQL-backed directory authorizes the same senders
as the in-memory one.
"""

from __future__ import annotations

from typing import Iterable, List, Tuple

from sqlalchemy import create_engine
from sqlalchemy.dialects.postgresql import insert as pg_insert

from backend.app.config import load_settings
from backend.app.config.loader import ChannelConfig
from backend.app.domain.od01_intake import normalize_sender_key
from backend.app.infra.db.schema import channel_senders, channels


def build_seed_rows(
    configs: Iterable[ChannelConfig],
) -> Tuple[List[dict[str, object]], List[dict[str, object]]]:
    """Return channel rows and sender rows for the configured channels."""

    channel_rows: List[dict[str, object]] = []
    sender_rows: List[dict[str, object]] = []
    for config in configs:
        channel_rows.append(
            {
                "channel_id": config.channel_id,
                "display_name": config.display_name,
                "is_active": config.is_active,
            }
        )
        for sender_key in config.sender_keys:
            sender_rows.append(
                {
                    "sender_key": normalize_sender_key(sender_key),
                    "channel_id": config.channel_id,
                }
            )
    return channel_rows, sender_rows


def seed_channels() -> int:
    settings = load_settings()
    engine = create_engine(settings.database_url, future=True)
    channel_rows, sender_rows = build_seed_rows(settings.channels)
    if not channel_rows:
        return 0

    channel_stmt = pg_insert(channels).values(channel_rows)
    with engine.begin() as conn:
        conn.execute(
            channel_stmt.on_conflict_do_update(
                index_elements=[channels.c.channel_id],
                set_={
                    "display_name": channel_stmt.excluded.display_name,
                    "is_active": channel_stmt.excluded.is_active,
                },
            )
        )
        if sender_rows:
            sender_stmt = pg_insert(channel_senders).values(sender_rows)
            conn.execute(
                sender_stmt.on_conflict_do_update(
                    index_elements=[channel_senders.c.sender_key],
                    set_={"channel_id": sender_stmt.excluded.channel_id},
                )
            )

    return len(channel_rows)


def main() -> None:
    seeded = seed_channels()
    print(f"Seeded {seeded} channels into the directory.")


if __name__ == "__main__":
    main()
