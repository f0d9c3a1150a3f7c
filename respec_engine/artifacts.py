# respec_engine/artifacts.py

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Iterator

from respec_engine.conflicts import Conflict
from respec_engine.field_values import FieldValue

MAPPED = "mapped"
RESPEC = "respec"
ARTIFACT_NAMES = (MAPPED, RESPEC)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class AssignedValue:
    spec_id: str
    value: FieldValue
    is_assumption: bool = False
    priority: int = 1
    source: str = "extraction"
    updated_at: datetime | None = None

    def to_dict(self) -> dict:
        return {
            "value": self.value.raw if not isinstance(self.value.raw, tuple) else list(self.value.raw),
            "kind": self.value.kind.value,
            "is_assumption": self.is_assumption,
            "priority": self.priority,
            "source": self.source,
        }


class ConfigurationArtifact:
    """
    section -> field_name -> AssignedValue, with a spec id index.
    Only the ArtifactManager that owns the session mutates it.
    """

    def __init__(self, name: str):
        self.name = name
        self._sections: dict[str, dict[str, AssignedValue]] = {}
        self._locations: dict[str, tuple[str, str]] = {}

    def __len__(self) -> int:
        return len(self._locations)

    def __contains__(self, spec_id: str) -> bool:
        return spec_id in self._locations

    def items(self) -> Iterator[tuple[str, str, AssignedValue]]:
        for section in sorted(self._sections):
            for field_name in sorted(self._sections[section]):
                yield section, field_name, self._sections[section][field_name]

    def get(self, section: str, field_name: str) -> AssignedValue | None:
        return self._sections.get(section, {}).get(field_name)

    def get_spec(self, spec_id: str) -> AssignedValue | None:
        loc = self._locations.get(spec_id)
        if loc is None:
            return None
        return self._sections[loc[0]][loc[1]]

    def set(self, section: str, field_name: str, assigned: AssignedValue) -> None:
        self._sections.setdefault(section, {})[field_name] = assigned
        self._locations[assigned.spec_id] = (section, field_name)

    def remove(self, section: str, field_name: str) -> AssignedValue | None:
        fields = self._sections.get(section)
        if not fields or field_name not in fields:
            return None
        removed = fields.pop(field_name)
        if not fields:
            self._sections.pop(section, None)
        self._locations.pop(removed.spec_id, None)
        return removed

    def remove_spec(self, spec_id: str) -> AssignedValue | None:
        loc = self._locations.get(spec_id)
        if loc is None:
            return None
        return self.remove(*loc)

    def to_dict(self) -> dict:
        out: dict[str, dict] = {}
        for section, field_name, assigned in self.items():
            out.setdefault(section, {})[field_name] = assigned.to_dict()
        return out


@dataclass
class SessionStore:
    """
    Everything the engine holds for one session. Owned by exactly one ArtifactManager.
    """
    mapped: ConfigurationArtifact = field(default_factory=lambda: ConfigurationArtifact(MAPPED))
    respec: ConfigurationArtifact = field(default_factory=lambda: ConfigurationArtifact(RESPEC))
    active_conflicts: dict[str, Conflict] = field(default_factory=dict)
    resolved_conflicts: list[Conflict] = field(default_factory=list)
    escalated_conflicts: dict[str, Conflict] = field(default_factory=dict)
    unmapped: list[dict] = field(default_factory=list)
    last_synced: datetime | None = None

    def artifact(self, name: str) -> ConfigurationArtifact:
        if name == MAPPED:
            return self.mapped
        if name == RESPEC:
            return self.respec
        raise ValueError(f"Unknown artifact: {name}")
