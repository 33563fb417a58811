"""Document-number template grammar.

A template describes how numbers look, e.g. ``[INV]-YYYY-####`` renders as
``INV-2024-0001``:

* ``[literal]`` is copied verbatim;
* runs of ``Y`` / ``M`` / ``D`` are the year / month / day, sized by run
  length (``YY`` renders ``24``, ``YYYY`` renders ``2024``);
* a run of ``#`` is the sequential counter, zero-padded to the run length;
* any other single character is copied verbatim.

The *increment template* names the date parts whose change resets the
counter: with template ``YYMM-###`` and increment template ``YY-###`` the
counter restarts at 1 every new year.

Every function here is pure given its inputs plus ``today``.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import date
from enum import Enum

from .errors import NumberingError

_DIGITS = re.compile(r"^\d+$")


class PartType(str, Enum):
    FIXED = "fixed"
    YEAR = "year"
    MONTH = "month"
    DAY = "day"
    NUMBER = "number"
    IDLE = "idle"


_RUN_TYPES: dict[str, PartType] = {
    "Y": PartType.YEAR,
    "M": PartType.MONTH,
    "D": PartType.DAY,
    "#": PartType.NUMBER,
}


@dataclass(frozen=True)
class SchemaPart:
    type: PartType
    size: int
    literal: str = ""


@dataclass
class NumberParts:
    number: int | None = None
    year: int | None = None
    month: int | None = None
    day: int | None = None


@dataclass
class _Cursor:
    text: str
    pos: int = field(default=0)

    def take(self, size: int) -> str:
        chunk = self.text[self.pos:self.pos + size]
        self.pos += size
        return chunk

    @property
    def remaining(self) -> str:
        return self.text[self.pos:]


class Numbering:
    """Generate, format and parse numbers according to a template."""

    @staticmethod
    def get_schema_parts(schema: str) -> list[SchemaPart]:
        """Split *schema* into fixed and variable parts.

        The list always ends with an ``IDLE`` part of size 0.

        Raises
        ------
        NumberingError
            On an unmatched ``[``.
        """
        parts: list[SchemaPart] = []
        i = 0
        while i < len(schema):
            char = schema[i]
            if char == "[":
                end = schema.find("]", i)
                if end == -1:
                    raise NumberingError(f"Unmatched [ in schema {schema!r}")
                literal = schema[i + 1:end]
                parts.append(SchemaPart(PartType.FIXED, len(literal), literal))
                i = end + 1
                continue

            part_type = _RUN_TYPES.get(char)
            if part_type is not None:
                start = i
                while i < len(schema) and schema[i] == char:
                    i += 1
                parts.append(SchemaPart(part_type, i - start))
                continue

            parts.append(SchemaPart(PartType.FIXED, 1, char))
            i += 1

        parts.append(SchemaPart(PartType.IDLE, 0))
        return parts

    @staticmethod
    def parse_number(schema: str, value: str) -> NumberParts | None:
        """Extract year/month/day/counter from *value*.

        Returns ``None`` when *value* does not follow *schema*.
        """
        parsed = NumberParts(number=0)
        cursor = _Cursor(value)

        for part in Numbering.get_schema_parts(schema):
            chunk = cursor.take(part.size)

            if part.type == PartType.IDLE:
                continue
            if part.type == PartType.FIXED:
                if chunk != part.literal:
                    return None
                continue
            if not _DIGITS.match(chunk):
                return None

            amount = int(chunk)
            if part.type == PartType.YEAR:
                parsed.year = amount if len(chunk) == 4 else amount + 2000
            elif part.type == PartType.MONTH:
                parsed.month = amount
            elif part.type == PartType.DAY:
                parsed.day = amount
            else:
                parsed.number = amount

        if cursor.remaining:
            return None
        return parsed

    @staticmethod
    def make_number(
        schema: str,
        value: int | NumberParts,
        today: date | None = None,
    ) -> str:
        """Render *value* (a counter or full parts) through *schema*."""
        today = today or date.today()
        year, month, day = str(today.year), str(today.month), str(today.day)

        if isinstance(value, NumberParts):
            if value.year:
                year = str(value.year)
            if value.month:
                month = str(value.month)
            if value.day:
                day = str(value.day)
            number = str(value.number) if value.number is not None else None
        else:
            number = str(value)

        rendered: list[str] = []
        for part in Numbering.get_schema_parts(schema):
            if part.type == PartType.FIXED:
                rendered.append(part.literal)
            elif part.type == PartType.YEAR:
                rendered.append(year[2:4] if part.size == 2 else year)
            elif part.type == PartType.MONTH:
                rendered.append(month.zfill(part.size))
            elif part.type == PartType.DAY:
                rendered.append(day.zfill(part.size))
            elif part.type == PartType.NUMBER and number is not None:
                rendered.append(number.zfill(part.size))
        return "".join(rendered)

    @staticmethod
    def make_next_number(
        schema: str,
        increment_schema: str,
        current: str,
        today: date | None = None,
    ) -> str:
        """Return the number following *current*.

        An unparseable (or empty) *current* starts the sequence at 1.  The
        counter also restarts at 1 when a date part named in
        *increment_schema* has moved past the one stored in *current*.

        Raises
        ------
        NumberingError
            If *increment_schema* cannot round-trip its own output.
        """
        today = today or date.today()
        parsed = Numbering.parse_number(schema, current)
        if parsed is None:
            return Numbering.make_number(schema, 1, today)

        increment = Numbering.parse_number(
            increment_schema,
            Numbering.make_number(increment_schema, 0, today),
        )
        if increment is None:
            raise NumberingError("Increment schema is invalid")

        for now_part, stored_part in (
            (increment.year, parsed.year),
            (increment.month, parsed.month),
            (increment.day, parsed.day),
        ):
            if now_part and stored_part and now_part > stored_part:
                return Numbering.make_number(schema, 1, today)

        parsed.year = today.year
        parsed.month = today.month
        parsed.day = today.day
        parsed.number = (parsed.number or 0) + 1
        return Numbering.make_number(schema, parsed, today)
