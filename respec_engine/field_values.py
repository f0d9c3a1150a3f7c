# respec_engine/field_values.py

import math
from dataclasses import dataclass
from enum import Enum
from typing import Any

from respec_engine.errors import SchemaIntegrityError
from respec_engine.units import NumericReading, UnitRegistry, parse_numeric


class ValueKind(str, Enum):
    NUMERIC = "numeric"
    ENUM = "enum"
    MULTI_ENUM = "multi_enum"
    TEXT = "text"


@dataclass(frozen=True)
class FieldValue:
    """
    Tagged value assigned to a specification field.

    raw keeps what the caller supplied (canonicalised to the catalog spelling for
    enum values); reading is present whenever the raw text parses as a number,
    a bound or a range, so constraint checks never re-parse strings.
    """
    kind: ValueKind
    raw: Any
    reading: NumericReading | None = None

    @property
    def normalized_numeric(self) -> float | None:
        return self.reading.representative if self.reading else None

    @property
    def unit(self) -> str | None:
        return self.reading.unit if self.reading else None

    def display(self) -> str:
        if self.kind == ValueKind.MULTI_ENUM:
            return ", ".join(str(v) for v in self.raw)
        return str(self.raw)

    def _text_key(self):
        if self.kind == ValueKind.MULTI_ENUM:
            return tuple(sorted(str(v).strip().casefold() for v in self.raw))
        return " ".join(str(self.raw).split()).casefold()

    def equivalent(self, other: "FieldValue", units: UnitRegistry) -> bool:
        if self._text_key() == other._text_key():
            return True
        if self.reading is None or other.reading is None:
            return False
        try:
            a = units.normalize(self.reading, other.reading.unit)
        except SchemaIntegrityError:
            return False
        return _close(a.low, other.reading.low) and _close(a.high, other.reading.high)


def _close(a, b) -> bool:
    if a is None or b is None:
        return a is b
    return math.isclose(a, b, rel_tol=1e-9, abs_tol=1e-9)


def _canonical_option(raw: str, options) -> str | None:
    wanted = " ".join(raw.split()).casefold()
    for opt in options or []:
        if " ".join(str(opt).split()).casefold() == wanted:
            return opt
    return None


def coerce_field_value(raw, spec=None) -> FieldValue:
    """
    Build the tagged value for a raw assignment. spec (a Specification) is used
    to recognise enumerated options; without it only numeric/text is inferred.
    """
    if isinstance(raw, FieldValue):
        return raw

    options = list(spec.options) if spec is not None and spec.options else []

    if isinstance(raw, (list, tuple, set)):
        items = []
        for item in raw:
            item = str(item).strip()
            if not item:
                continue
            items.append(_canonical_option(item, options) or item)
        return FieldValue(ValueKind.MULTI_ENUM, tuple(items))

    if isinstance(raw, str):
        raw = raw.strip()

    reading = parse_numeric(raw)

    if isinstance(raw, str) and options:
        canonical = _canonical_option(raw, options)
        if canonical is not None:
            return FieldValue(ValueKind.ENUM, canonical, reading)

    if reading is not None:
        return FieldValue(ValueKind.NUMERIC, raw, reading)

    return FieldValue(ValueKind.TEXT, raw)


def is_unset(value, spec=None) -> bool:
    """
    True when the value does not count as an assignment (empty, or the specification's default_value).
    """
    if value is None:
        return True
    if isinstance(value, FieldValue):
        if value.kind == ValueKind.MULTI_ENUM:
            return len(value.raw) == 0
        value = value.raw
    if isinstance(value, (list, tuple, set)):
        return len(value) == 0
    text = " ".join(str(value).split())
    if not text:
        return True
    if spec is not None and spec.default_value is not None:
        return text.casefold() == " ".join(str(spec.default_value).split()).casefold()
    return False
