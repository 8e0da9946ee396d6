"""Deal stage enums and the wire <-> storage mapping.

Two closed enums describe the same set of pipeline stages:
- StoredStage: values persisted in the PostgreSQL ``deal_stage`` enum and used
  as stage_meta keys (upper-case, e.g. "QUALIFY").
- DealStage: values exposed by API schemas (lower-case, e.g. "qualify").

Conversion goes through a single exhaustive table so adding a stage to one
enum without the other fails the totality tests instead of leaking a KeyError
at request time.
"""

from __future__ import annotations

from enum import Enum


class StoredStage(str, Enum):
    """Storage-level deal stage (PG enum ``deal_stage``)."""

    NEW = "NEW"
    QUALIFY = "QUALIFY"
    PROPOSAL = "PROPOSAL"
    NEGOTIATE = "NEGOTIATE"
    WON = "WON"
    LOST = "LOST"


class DealStage(str, Enum):
    """Wire-level deal stage used by request/response schemas."""

    NEW = "new"
    QUALIFY = "qualify"
    PROPOSAL = "proposal"
    NEGOTIATE = "negotiate"
    WON = "won"
    LOST = "lost"


_WIRE_TO_STORED: dict[DealStage, StoredStage] = {
    DealStage.NEW: StoredStage.NEW,
    DealStage.QUALIFY: StoredStage.QUALIFY,
    DealStage.PROPOSAL: StoredStage.PROPOSAL,
    DealStage.NEGOTIATE: StoredStage.NEGOTIATE,
    DealStage.WON: StoredStage.WON,
    DealStage.LOST: StoredStage.LOST,
}

_STORED_TO_WIRE: dict[StoredStage, DealStage] = {
    stored: wire for wire, stored in _WIRE_TO_STORED.items()
}


def to_stored(stage: DealStage) -> StoredStage:
    """Map a wire stage to its storage stage."""
    return _WIRE_TO_STORED[stage]


def to_wire(stage: StoredStage) -> DealStage:
    """Map a storage stage to its wire stage."""
    return _STORED_TO_WIRE[stage]


def parse_stage_key(value: str) -> StoredStage | None:
    """Parse a stage key case-insensitively, accepting wire or storage spelling.

    Returns None for blank or unknown values.
    """
    normalized = value.strip().upper()
    if not normalized:
        return None
    try:
        return StoredStage(normalized)
    except ValueError:
        return None
