# respec_engine/mutex_rules.py

import logging
from dataclasses import dataclass

from respec_engine.errors import SchemaIntegrityError
from respec_engine.field_values import FieldValue, ValueKind
from respec_engine.units import UnitRegistry

logger = logging.getLogger("respec_engine")


HIGH_PERFORMANCE_PROCESSORS = ["Intel Core i5", "Intel Core i7", "Intel Core i9", "Intel Xeon"]

DEFAULT_MUTEX_RULES: list[dict] = [
    {
        "id": "processor-vs-low-power",
        "description": "High-performance processor incompatible with low power consumption",
        "conditions": [
            {"field_name": "processor_type", "any_of": HIGH_PERFORMANCE_PROCESSORS},
            {"field_name": "max_power_consumption", "max_at_most": {"value": 20, "unit": "W"}},
        ],
        "options": [
            {
                "label": "High performance with grid power (35-65W)",
                "outcome": "High performance processor with adequate power supply",
                "keeps": 0,
            },
            {
                "label": "Lower performance optimized for battery operation (10-20W)",
                "outcome": "Battery-optimized configuration with lower performance",
                "keeps": 1,
            },
        ],
    },
]


def _norm(text) -> str:
    return " ".join(str(text).split()).casefold()


@dataclass(frozen=True)
class FieldCondition:
    field_name: str
    section: str | None = None
    any_of: tuple[str, ...] = ()
    max_at_most: tuple[float, str | None] | None = None
    min_at_least: tuple[float, str | None] | None = None

    @classmethod
    def from_dict(cls, data: dict) -> "FieldCondition":
        def bound(key):
            b = data.get(key)
            if b is None:
                return None
            return (float(b["value"]), b.get("unit"))

        if not data.get("field_name"):
            raise ValueError(f"Mutex condition without field_name: {data}")
        cond = cls(
            field_name=data["field_name"],
            section=data.get("section"),
            any_of=tuple(data.get("any_of") or ()),
            max_at_most=bound("max_at_most"),
            min_at_least=bound("min_at_least"),
        )
        if not (cond.any_of or cond.max_at_most or cond.min_at_least):
            raise ValueError(f"Mutex condition on {cond.field_name} has no predicate")
        return cond

    def matches(self, value: FieldValue, units: UnitRegistry) -> bool:
        if self.any_of:
            wanted = {_norm(v) for v in self.any_of}
            items = value.raw if value.kind == ValueKind.MULTI_ENUM else (value.raw,)
            if not any(_norm(item) in wanted for item in items):
                return False

        if self.max_at_most or self.min_at_least:
            if value.reading is None:
                return False
            if self.max_at_most:
                limit, unit = self.max_at_most
                upper = value.reading.upper
                if upper is None:
                    return False
                if units.convert(upper, value.reading.unit, unit) > limit:
                    return False
            if self.min_at_least:
                limit, unit = self.min_at_least
                lower = value.reading.lower
                if lower is None:
                    return False
                if units.convert(lower, value.reading.unit, unit) < limit:
                    return False
        return True


@dataclass(frozen=True)
class MutexOutcome:
    label: str
    outcome: str
    keeps: tuple[int, ...]


@dataclass(frozen=True)
class MutexRule:
    """
    A cross-field incompatibility: when every condition matches a value of its
    field at the same time, the combination is flagged. Each outcome keeps the
    fields of the conditions it lists in `keeps`; the two outcomes split the
    conditions between them.
    """
    id: str
    description: str
    conditions: tuple[FieldCondition, ...]
    outcomes: tuple[MutexOutcome, MutexOutcome]

    @classmethod
    def from_dict(cls, data: dict) -> "MutexRule":
        rule_id = data.get("id")
        conditions = tuple(FieldCondition.from_dict(c) for c in data["conditions"])
        if len(data["options"]) != 2:
            raise ValueError(f"Mutex rule {rule_id} must declare exactly two options")

        # default split: first condition vs the rest
        default_keeps = [(0,), tuple(range(1, len(conditions)))]
        outcomes = []
        for i, o in enumerate(data["options"]):
            keeps = o.get("keeps", default_keeps[i])
            keeps = (keeps,) if isinstance(keeps, int) else tuple(int(k) for k in keeps)
            outcomes.append(MutexOutcome(label=o["label"], outcome=o.get("outcome", o["label"]), keeps=keeps))

        a, b = set(outcomes[0].keeps), set(outcomes[1].keeps)
        if a & b or (a | b) != set(range(len(conditions))):
            raise ValueError(f"Mutex rule {rule_id} options must split its conditions between them")
        return cls(id=rule_id, description=data["description"], conditions=conditions, outcomes=tuple(outcomes))


def build_mutex_rules(extra_rules: list[dict] | None = None, include_defaults: bool = True) -> list[MutexRule]:
    """
    Registry = built-in rules overlaid with configured ones (same id replaces).
    """
    merged: dict[str, dict] = {}
    if include_defaults:
        for rule in DEFAULT_MUTEX_RULES:
            merged[rule["id"]] = rule
    for rule in extra_rules or []:
        merged[rule["id"]] = rule
    rules = [MutexRule.from_dict(r) for r in merged.values()]
    logger.debug(f"Mutex rules registered: {[r.id for r in rules]}")
    return rules


def rule_matches(rule: MutexRule, candidates: list[list[FieldValue]], units: UnitRegistry) -> bool:
    """
    candidates[i] are the values currently held for rule.conditions[i]'s field.
    Every combination is checked; one full match is enough.
    """
    for cond, values in zip(rule.conditions, candidates):
        hit = False
        for value in values:
            try:
                if cond.matches(value, units):
                    hit = True
                    break
            except SchemaIntegrityError as e:
                raise SchemaIntegrityError(f"Mutex rule {rule.id} on {cond.field_name}: {e}") from e
        if not hit:
            return False
    return True
