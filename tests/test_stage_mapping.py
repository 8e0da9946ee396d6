"""Tests for the wire <-> storage stage mapping.

Tests cover:
- Totality: every variant of each enum maps to exactly one variant and back
- parse_stage_key: case-insensitive, whitespace-tolerant, None for blank/unknown
"""

from __future__ import annotations

import pytest

from src.app.pipeline.stages import (
    DealStage,
    StoredStage,
    parse_stage_key,
    to_stored,
    to_wire,
)


class TestMappingTotality:
    def test_every_wire_stage_round_trips(self) -> None:
        for wire in DealStage:
            assert to_wire(to_stored(wire)) is wire

    def test_every_stored_stage_round_trips(self) -> None:
        for stored in StoredStage:
            assert to_stored(to_wire(stored)) is stored

    def test_mapping_is_a_bijection(self) -> None:
        images = {to_stored(wire) for wire in DealStage}
        assert images == set(StoredStage)
        assert len(DealStage) == len(StoredStage)

    def test_wire_values_are_lowercase_stored_values(self) -> None:
        for wire in DealStage:
            assert to_stored(wire).value == wire.value.upper()


class TestParseStageKey:
    @pytest.mark.parametrize("raw", ["QUALIFY", "qualify", "  Qualify  "])
    def test_accepts_any_case_and_padding(self, raw: str) -> None:
        assert parse_stage_key(raw) is StoredStage.QUALIFY

    @pytest.mark.parametrize("raw", ["", "   ", "BOGUS", "closed_won"])
    def test_blank_or_unknown_is_none(self, raw: str) -> None:
        assert parse_stage_key(raw) is None
