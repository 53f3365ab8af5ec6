"""Canonical OD-04 pending-entry state helpers.

A pending entry is ``open`` while it accepts fragments and ``claimed`` while a
validator holds it. ``committed`` and ``rejected`` are terminal and never
stored: reaching them deletes the row. ``claimed -> open`` is only legal via
the explicit release paths (transient failure or claim-timeout recovery).
"""

from __future__ import annotations

from types import SimpleNamespace
from typing import Dict, Tuple

ENTRY_STATE = SimpleNamespace(
    OPEN="open",
    CLAIMED="claimed",
    COMMITTED="committed",
    REJECTED="rejected",
)

ADMIT_OUTCOME = SimpleNamespace(
    CREATED="created",
    MERGED="merged",
    DUPLICATE="duplicate",
)

CLAIM_STATUS = SimpleNamespace(
    CLAIMED="claimed",
    NOT_READY="not_ready",
    ALREADY_CLAIMED="already_claimed",
)

ENTRY_STATE_TRANSITIONS: Dict[str, Tuple[str, ...]] = {
    ENTRY_STATE.OPEN: (ENTRY_STATE.OPEN, ENTRY_STATE.CLAIMED),
    ENTRY_STATE.CLAIMED: (
        ENTRY_STATE.COMMITTED,
        ENTRY_STATE.REJECTED,
        ENTRY_STATE.OPEN,
    ),
    ENTRY_STATE.COMMITTED: tuple(),
    ENTRY_STATE.REJECTED: tuple(),
}

TERMINAL_STATES = frozenset({ENTRY_STATE.COMMITTED, ENTRY_STATE.REJECTED})


def ensure_transition(current_state: str, next_state: str) -> str:
    """Return ``next_state`` when the move is allowed, otherwise raise."""

    allowed = ENTRY_STATE_TRANSITIONS.get(current_state)
    if allowed is None:
        raise ValueError(f"unknown pending entry state '{current_state}'")
    if next_state not in allowed:
        raise ValueError(
            f"pending entry cannot move from '{current_state}' to '{next_state}'"
        )
    return next_state
