"""Tests for the document-number template grammar."""

from __future__ import annotations

from datetime import date

import pytest

from billing_backoffice.core.errors import NumberingError
from billing_backoffice.core.numbering import Numbering, NumberParts, PartType, SchemaPart

TODAY = date(2024, 6, 1)


class TestSchemaParts:
    def test_literal_runs_and_idle_terminator(self):
        parts = Numbering.get_schema_parts("[INV]-YY-##")
        assert parts == [
            SchemaPart(PartType.FIXED, 3, "INV"),
            SchemaPart(PartType.FIXED, 1, "-"),
            SchemaPart(PartType.YEAR, 2),
            SchemaPart(PartType.FIXED, 1, "-"),
            SchemaPart(PartType.NUMBER, 2),
            SchemaPart(PartType.IDLE, 0),
        ]

    def test_empty_schema_is_just_idle(self):
        assert Numbering.get_schema_parts("") == [SchemaPart(PartType.IDLE, 0)]

    def test_unmatched_bracket_raises(self):
        with pytest.raises(NumberingError):
            Numbering.get_schema_parts("[INV-###")


class TestParseNumber:
    def test_full_year_and_counter(self):
        parsed = Numbering.parse_number("[INV]-YYYY-####", "INV-2024-0042")
        assert parsed == NumberParts(number=42, year=2024)

    def test_two_digit_year_is_offset(self):
        parsed = Numbering.parse_number("YY-###", "24-007")
        assert parsed.year == 2024
        assert parsed.number == 7

    def test_month_and_day(self):
        parsed = Numbering.parse_number("YYMMDD-##", "240315-09")
        assert (parsed.year, parsed.month, parsed.day, parsed.number) == (2024, 3, 15, 9)

    def test_literal_mismatch(self):
        assert Numbering.parse_number("[INV]-###", "OFF-001") is None

    def test_bracketed_literal_is_not_part_of_value(self):
        assert Numbering.parse_number("[INV]-###", "[INV]-001") is None

    def test_non_digits_rejected(self):
        assert Numbering.parse_number("[INV]-###", "INV-0a1") is None

    def test_trailing_characters_rejected(self):
        assert Numbering.parse_number("[INV]-###", "INV-0012") is None


class TestMakeNumber:
    def test_counter_is_zero_padded(self):
        assert Numbering.make_number("[INV]-YYYY-####", 1, TODAY) == "INV-2024-0001"

    def test_short_year_month_day(self):
        assert Numbering.make_number("YYMMDD-##", 5, TODAY) == "240601-05"

    def test_counter_wider_than_part(self):
        assert Numbering.make_number("[A]##", 123, TODAY) == "A123"

    def test_parts_override_today(self):
        parts = NumberParts(number=3, year=2023, month=12)
        assert Numbering.make_number("YYYY-MM-###", parts, TODAY) == "2023-12-003"


class TestMakeNextNumber:
    def test_unparseable_current_starts_at_one(self):
        assert Numbering.make_next_number("[INV]-###", "[INV]-###", "[INV]-001", TODAY) == "INV-001"

    def test_empty_current_starts_at_one(self):
        assert Numbering.make_next_number("[INV]-###", "[INV]-###", "", TODAY) == "INV-001"

    def test_increments(self):
        assert Numbering.make_next_number("[INV]-###", "[INV]-###", "INV-001", TODAY) == "INV-002"

    def test_new_year_resets_counter(self):
        result = Numbering.make_next_number("[INV]-YY-###", "YY-###", "INV-23-017", TODAY)
        assert result == "INV-24-001"

    def test_same_year_continues(self):
        result = Numbering.make_next_number("[INV]-YY-###", "YY-###", "INV-24-017", TODAY)
        assert result == "INV-24-018"

    def test_yearly_increment_ignores_month_change(self):
        result = Numbering.make_next_number("[R]YYMM-##", "YY-##", "R2405-07", TODAY)
        assert result == "R2406-08"

    def test_monthly_increment_resets_on_new_month(self):
        result = Numbering.make_next_number("[R]YYMM-##", "YYMM-##", "R2405-07", TODAY)
        assert result == "R2406-01"

    def test_invalid_increment_schema(self):
        with pytest.raises(NumberingError, match="Increment schema is invalid"):
            Numbering.make_next_number("[INV]-###", "YYY", "INV-001", TODAY)
