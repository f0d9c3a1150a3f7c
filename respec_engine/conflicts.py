# respec_engine/conflicts.py

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class ConflictType(str, Enum):
    LOGICAL = "logical"
    MUTEX = "mutex"
    DEPENDENCY = "dependency"
    CONSTRAINT = "constraint"
    CROSS_ARTIFACT = "cross-artifact"


# lower is discussed first
CONFLICT_PRIORITY: dict[ConflictType, int] = {
    ConflictType.CROSS_ARTIFACT: 1,
    ConflictType.LOGICAL: 2,
    ConflictType.CONSTRAINT: 3,
    ConflictType.DEPENDENCY: 3,
    ConflictType.MUTEX: 4,
}

OPTION_IDS = ("option-a", "option-b", "option-c", "option-d", "option-e", "option-f")


def option_id_for(index: int) -> str:
    if index < len(OPTION_IDS):
        return OPTION_IDS[index]
    return f"option-{index + 1}"


def option_letter(option_id: str) -> str:
    return option_id.rsplit("-", 1)[-1].upper()


def conflict_id(ctype: ConflictType, affected_nodes) -> str:
    """
    Same type + same affected nodes -> same id, across passes.
    """
    return f"{ctype.value}:{'|'.join(sorted(set(affected_nodes)))}"


@dataclass(frozen=True)
class ResolutionOption:
    """
    One outcome of a conflict.

    target_nodes: what this outcome keeps; they are reset when a *different*
      option is chosen (only in `artifact` when it is set).
    clears_nodes: values this outcome resets itself.
    assign_values: spec id -> raw value this outcome writes into the mapped artifact.
    """
    id: str
    label: str
    outcome: str
    target_nodes: tuple[str, ...] = ()
    artifact: str | None = None
    clears_nodes: tuple[str, ...] = ()
    assign_values: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "label": self.label,
            "outcome": self.outcome,
            "target_nodes": list(self.target_nodes),
        }


@dataclass
class Conflict:
    id: str
    type: ConflictType
    description: str
    affected_nodes: tuple[str, ...]
    options: tuple[ResolutionOption, ...]
    priority: int
    cycle_count: int = 0
    state: str = "active"
    rule_id: str | None = None
    first_detected: datetime | None = None
    last_updated: datetime | None = None
    resolved_at: datetime | None = None
    resolved_by: str | None = None
    escalation_reason: str | None = None

    def option(self, option_id: str) -> ResolutionOption | None:
        for opt in self.options:
            if opt.id == option_id:
                return opt
        return None

    def touched_nodes(self) -> set[str]:
        nodes = set(self.affected_nodes)
        for opt in self.options:
            nodes.update(opt.target_nodes)
            nodes.update(opt.clears_nodes)
            nodes.update(opt.assign_values.keys())
        return nodes

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type.value,
            "description": self.description,
            "affected_nodes": list(self.affected_nodes),
            "resolution_options": [o.to_dict() for o in self.options],
            "cycle_count": self.cycle_count,
            "priority": self.priority,
            "state": self.state,
            "first_detected": self.first_detected.isoformat() if self.first_detected else None,
            "last_updated": self.last_updated.isoformat() if self.last_updated else None,
            "resolved_at": self.resolved_at.isoformat() if self.resolved_at else None,
            "resolved_by": self.resolved_by,
            "escalation_reason": self.escalation_reason,
        }


@dataclass(frozen=True)
class StructuredConflicts:
    """
    Read-only aggregate handed to the conversational layer.
    """
    conflicts: tuple[Conflict, ...] = ()
    current_conflict: int = 0

    @property
    def has_conflicts(self) -> bool:
        return len(self.conflicts) > 0

    @property
    def count(self) -> int:
        return len(self.conflicts)

    @property
    def total_conflicts(self) -> int:
        return len(self.conflicts)

    @property
    def system_blocked(self) -> bool:
        return self.count > 0

    @property
    def current(self) -> Conflict | None:
        if not self.conflicts:
            return None
        return self.conflicts[max(0, self.current_conflict - 1)]

    def to_dict(self) -> dict[str, Any]:
        return {
            "has_conflicts": self.has_conflicts,
            "count": self.count,
            "current_conflict": self.current_conflict,
            "total_conflicts": self.total_conflicts,
            "system_blocked": self.system_blocked,
            "conflicts": [c.to_dict() for c in self.conflicts],
        }
