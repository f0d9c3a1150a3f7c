# respec_engine/units.py

import logging
import re
from dataclasses import dataclass

from respec_engine.errors import SchemaIntegrityError

logger = logging.getLogger("respec_engine")


# dimension -> unit -> factor to the dimension's base unit.
# Storage is binary (1 GB = 1024 MB), as memory and flash sizes are quoted that way.
BASE_UNIT_TABLES: dict[str, dict[str, float]] = {
    "storage": {
        "B": 1.0,
        "KB": 1024.0,
        "MB": 1024.0 ** 2,
        "GB": 1024.0 ** 3,
        "TB": 1024.0 ** 4,
    },
    "power": {"mW": 0.001, "W": 1.0, "kW": 1000.0},
    "frequency": {"Hz": 1.0, "kHz": 1e3, "MHz": 1e6, "GHz": 1e9},
    "time": {"ns": 1e-9, "us": 1e-6, "µs": 1e-6, "ms": 1e-3, "s": 1.0},
    "length": {"mm": 0.001, "cm": 0.01, "m": 1.0},
    "voltage": {"mV": 0.001, "V": 1.0},
    "current": {"mA": 0.001, "A": 1.0},
    "temperature": {"°C": 1.0, "C": 1.0},
    "bandwidth": {"bps": 1.0, "Kbps": 1e3, "Mbps": 1e6, "Gbps": 1e9},
}


_NUM = r"-?\d+(?:\.\d+)?"
_UNIT = r"[a-zA-Zµ°/]*"
_RANGE_RE = re.compile(rf"^({_NUM})\s*({_UNIT})\s*(?:-|–|to)\s*({_NUM})\s*({_UNIT})$", re.IGNORECASE)
_BOUND_RE = re.compile(rf"^(<=|>=|<|>|≤|≥|up to|at least|at most|max|min)\s*({_NUM})\s*({_UNIT})$", re.IGNORECASE)
_SINGLE_RE = re.compile(rf"^({_NUM})\s*({_UNIT})\+?$")


@dataclass(frozen=True)
class NumericReading:
    """
    A parsed numeric value: exact ("16GB"), bounded ("<10W") or a range ("10-20W").
    low/high are None when that side is open.
    """
    low: float | None
    high: float | None
    unit: str | None

    @property
    def upper(self) -> float | None:
        return self.high if self.high is not None else self.low

    @property
    def lower(self) -> float | None:
        return self.low if self.low is not None else self.high

    @property
    def representative(self) -> float | None:
        if self.low is not None and self.high is not None:
            return (self.low + self.high) / 2.0
        return self.upper


def parse_numeric(raw) -> NumericReading | None:
    """
    Returns None when the text is not a numeric reading.
    """
    if isinstance(raw, bool):
        return None
    if isinstance(raw, (int, float)):
        return NumericReading(float(raw), float(raw), None)
    if not isinstance(raw, str):
        return None

    text = raw.strip().replace(",", "")
    if not text:
        return None

    m = _SINGLE_RE.match(text)
    if m:
        value = float(m.group(1))
        unit = m.group(2) or None
        if text.endswith("+"):
            return NumericReading(value, None, unit)
        return NumericReading(value, value, unit)

    m = _BOUND_RE.match(text)
    if m:
        op = m.group(1).lower()
        value = float(m.group(2))
        unit = m.group(3) or None
        if op in ("<", "<=", "≤", "up to", "at most", "max"):
            return NumericReading(None, value, unit)
        return NumericReading(value, None, unit)

    m = _RANGE_RE.match(text)
    if m:
        low, high = float(m.group(1)), float(m.group(3))
        unit = m.group(4) or m.group(2) or None
        if low > high:
            low, high = high, low
        return NumericReading(low, high, unit)

    return None


class UnitRegistry:
    """
    Unit lookup and conversion. Extra tables (from the rules config) extend or
    override the built-in ones per dimension.
    """

    def __init__(self, extra_tables: dict | None = None):
        self._tables: dict[str, dict[str, float]] = {k: dict(v) for k, v in BASE_UNIT_TABLES.items()}
        for dimension, table in (extra_tables or {}).items():
            self._tables.setdefault(dimension, {}).update({u: float(f) for u, f in table.items()})

        self._exact: dict[str, tuple[str, float]] = {}
        self._folded: dict[str, tuple[str, float]] = {}
        for dimension, table in self._tables.items():
            for unit, factor in table.items():
                self._exact[unit] = (dimension, factor)
                # first writer wins on case collisions (mW vs MW)
                self._folded.setdefault(unit.casefold(), (dimension, factor))

    def _lookup(self, unit: str) -> tuple[str, float] | None:
        return self._exact.get(unit) or self._folded.get(unit.casefold())

    def knows(self, unit: str | None) -> bool:
        return bool(unit) and self._lookup(unit) is not None

    def dimension_of(self, unit: str) -> str | None:
        hit = self._lookup(unit)
        return hit[0] if hit else None

    def same_unit(self, a: str | None, b: str | None) -> bool:
        if not a or not b:
            return a == b
        if a == b:
            return True
        ha, hb = self._lookup(a), self._lookup(b)
        return bool(ha and hb and ha == hb)

    def convert(self, value: float, from_unit: str | None, to_unit: str | None) -> float:
        # A unit-less value is taken to already be in the target unit
        if not from_unit or not to_unit or from_unit.casefold() == to_unit.casefold():
            return value

        src = self._lookup(from_unit)
        dst = self._lookup(to_unit)
        if src is None or dst is None:
            raise SchemaIntegrityError(f"No unit conversion defined between '{from_unit}' and '{to_unit}'")
        if src[0] != dst[0]:
            raise SchemaIntegrityError(
                f"Unit mismatch: '{from_unit}' ({src[0]}) cannot be compared with '{to_unit}' ({dst[0]})"
            )
        return value * src[1] / dst[1]

    def normalize(self, reading: NumericReading, to_unit: str | None) -> NumericReading:
        if reading.unit is None or to_unit is None:
            return NumericReading(reading.low, reading.high, to_unit or reading.unit)

        def conv(v):
            return None if v is None else self.convert(v, reading.unit, to_unit)

        return NumericReading(conv(reading.low), conv(reading.high), to_unit)
