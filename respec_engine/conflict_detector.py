# respec_engine/conflict_detector.py

import logging
from dataclasses import dataclass

from respec_engine.artifacts import MAPPED, RESPEC, AssignedValue, ConfigurationArtifact
from respec_engine.conflicts import (
    CONFLICT_PRIORITY,
    Conflict,
    ConflictType,
    ResolutionOption,
    conflict_id,
    option_id_for,
)
from respec_engine.field_values import FieldValue, coerce_field_value, is_unset
from respec_engine.mutex_rules import MutexRule, build_mutex_rules, rule_matches
from respec_engine.schema_model import SchemaModel, Specification
from respec_engine.units import NumericReading, UnitRegistry

logger = logging.getLogger("respec_engine")


@dataclass(frozen=True)
class ActiveSet:
    specifications: frozenset[str]
    requirements: frozenset[str]
    domains: frozenset[str]


def compute_active_set(schema: SchemaModel, mapped: ConfigurationArtifact, respec: ConfigurationArtifact) -> ActiveSet:
    """
    Specs with a non-default value in either artifact, their requirements, and
    every domain owning one of those requirements.
    """
    specs: set[str] = set()
    for artifact in (mapped, respec):
        for _section, _field, assigned in artifact.items():
            spec = schema.get_specification(assigned.spec_id)
            if not is_unset(assigned.value, spec):
                specs.add(spec.id)

    requirements = {schema.get_specification(sid).parent for sid in specs}
    domains: set[str] = set()
    for rid in requirements:
        domains.update(schema.owners_of(rid))
    return ActiveSet(frozenset(specs), frozenset(requirements), frozenset(domains))


class ConflictDetector:
    """
    Pure conflict detection over a snapshot of both artifacts.

    Holds only immutable collaborators (schema, rule registry, unit tables), so
    the same inputs always give the same conflict id set. Passes run in a fixed
    order: logical, mutex, dependency, constraint, cross-artifact.
    """

    def __init__(self, schema: SchemaModel, mutex_rules: list[MutexRule] | None = None, units: UnitRegistry | None = None):
        self.schema = schema
        self.mutex_rules = list(mutex_rules) if mutex_rules is not None else build_mutex_rules()
        self.units = units or UnitRegistry()

    # -----------------------
    # Entry point
    # -----------------------

    def detect_conflicts(
        self,
        mapped: ConfigurationArtifact,
        respec: ConfigurationArtifact,
        active_requirements,
        active_domains,
    ) -> list[Conflict]:
        active_requirements = frozenset(active_requirements)
        active_domains = frozenset(active_domains)
        ctx = _PassContext(self.schema, mapped, respec, active_requirements, active_domains)

        conflicts: list[Conflict] = []
        seen: set[str] = set()
        passes = (
            self._detect_logical,
            self._detect_mutex,
            self._detect_dependency,
            self._detect_constraint,
            self._detect_cross_artifact,
        )
        for run_pass in passes:
            for conflict in run_pass(ctx):
                if conflict.id in seen:
                    continue
                seen.add(conflict.id)
                conflicts.append(conflict)

        logger.debug(f"detect_conflicts: {len(conflicts)} conflict(s) {[c.id for c in conflicts]}")
        return conflicts

    def _new_conflict(self, ctype: ConflictType, affected, description: str, options, rule_id=None) -> Conflict:
        affected = tuple(sorted(set(affected)))
        return Conflict(
            id=conflict_id(ctype, affected),
            type=ctype,
            description=description,
            affected_nodes=affected,
            options=tuple(options),
            priority=CONFLICT_PRIORITY[ctype],
            rule_id=rule_id,
        )

    # -----------------------
    # 1. Logical
    # -----------------------

    def _detect_logical(self, ctx: "_PassContext") -> list[Conflict]:
        out = []
        for sid in sorted(ctx.active_specs):
            for other in sorted(self.schema.get_exclusions(sid)):
                if other not in ctx.active_specs or other <= sid:
                    continue
                a, b = self.schema.get_specification(sid), self.schema.get_specification(other)
                options = [
                    ResolutionOption(
                        id="option-a",
                        label=f"Keep {a.name} ({ctx.display(sid)})",
                        outcome=f"{b.name} will be cleared",
                        target_nodes=(sid,),
                    ),
                    ResolutionOption(
                        id="option-b",
                        label=f"Keep {b.name} ({ctx.display(other)})",
                        outcome=f"{a.name} will be cleared",
                        target_nodes=(other,),
                    ),
                ]
                out.append(self._new_conflict(
                    ConflictType.LOGICAL,
                    (sid, other),
                    f"{a.name} and {b.name} are mutually exclusive and cannot both be specified",
                    options,
                ))
        return out

    # -----------------------
    # 2. Mutex rules
    # -----------------------

    def _detect_mutex(self, ctx: "_PassContext") -> list[Conflict]:
        out = []
        for rule in self.mutex_rules:
            specs: list[Specification] = []
            for cond in rule.conditions:
                spec = self.schema.find_specification(cond.section, cond.field_name)
                if spec is None or spec.id not in ctx.active_specs:
                    break
                specs.append(spec)
            else:
                candidates = [[av.value for _, av in ctx.values(spec.id)] for spec in specs]
                if not rule_matches(rule, candidates, self.units):
                    continue
                options = []
                for i, outcome in enumerate(rule.outcomes):
                    options.append(ResolutionOption(
                        id=option_id_for(i),
                        label=outcome.label,
                        outcome=outcome.outcome,
                        target_nodes=tuple(sorted(specs[k].id for k in outcome.keeps)),
                    ))
                out.append(self._new_conflict(
                    ConflictType.MUTEX, [s.id for s in specs], rule.description, options, rule_id=rule.id
                ))
        return out

    # -----------------------
    # 3. Dependencies
    # -----------------------

    def _detect_dependency(self, ctx: "_PassContext") -> list[Conflict]:
        out = []
        dependents = sorted(ctx.active_requirements) + sorted(ctx.active_specs)
        for node in dependents:
            deps = self.schema.get_dependencies(node)
            if not deps:
                continue

            for dep in deps:
                if dep.kind == "all" and not ctx.is_active(dep.target):
                    out.append(self._dependency_conflict(ctx, node, [dep.target], dep.rationale))
                elif dep.kind == "none" and ctx.is_active(dep.target):
                    out.append(self._incompatibility_conflict(ctx, node, dep.target, dep.rationale))

            any_targets = [d.target for d in deps if d.kind == "any"]
            if any_targets and not any(ctx.is_active(t) for t in any_targets):
                rationale = "; ".join(d.rationale for d in deps if d.kind == "any" and d.rationale)
                out.append(self._dependency_conflict(ctx, node, any_targets, rationale))
        return out

    def _activation_values(self, target: str) -> dict:
        kind = self.schema.node_kind(target)
        if kind == "specification":
            specs = [self.schema.get_specification(target)]
        elif kind == "requirement":
            specs = self.schema.list_specifications(target)
        else:
            specs = []
            for req in self.schema.list_requirements(target):
                specs.extend(self.schema.list_specifications(req.id))

        values = {}
        for spec in specs:
            if spec.suggested_value is not None and not is_unset(spec.suggested_value, spec):
                values[spec.id] = spec.suggested_value
        return values

    def _dependency_conflict(self, ctx: "_PassContext", node: str, targets: list[str], rationale: str) -> Conflict:
        node_name = self.schema.node_name(node)
        target_names = " or ".join(self.schema.node_name(t) for t in targets)

        # first target that can actually be switched on
        activate = targets[0]
        assign = {}
        for t in targets:
            assign = self._activation_values(t)
            if assign:
                activate = t
                break
        if not assign:
            logger.debug(f"Dependency {node} -> {targets}: no suggested values to activate with")

        description = f"{node_name} requires {target_names}, which is not part of the configuration"
        if rationale:
            description += f" ({rationale})"

        options = [
            ResolutionOption(
                id="option-a",
                label=f"Drop {node_name}",
                outcome=f"{node_name} will be removed from the configuration",
                target_nodes=tuple(sorted(targets)),
            ),
            ResolutionOption(
                id="option-b",
                label=f"Add {self.schema.node_name(activate)}",
                outcome=f"{self.schema.node_name(activate)} will be added so {node_name} can stay",
                target_nodes=(node,),
                assign_values=assign,
            ),
        ]
        return self._new_conflict(ConflictType.DEPENDENCY, [node, *targets], description, options)

    def _incompatibility_conflict(self, ctx: "_PassContext", node: str, target: str, rationale: str) -> Conflict:
        node_name, target_name = self.schema.node_name(node), self.schema.node_name(target)
        description = f"{node_name} cannot be combined with {target_name}"
        if rationale:
            description += f" ({rationale})"
        options = [
            ResolutionOption(
                id="option-a",
                label=f"Keep {node_name}",
                outcome=f"{target_name} will be removed from the configuration",
                target_nodes=(node,),
            ),
            ResolutionOption(
                id="option-b",
                label=f"Keep {target_name}",
                outcome=f"{node_name} will be removed from the configuration",
                target_nodes=(target,),
            ),
        ]
        return self._new_conflict(ConflictType.DEPENDENCY, [node, target], description, options)

    # -----------------------
    # 4. Value constraints
    # -----------------------

    def _violates(self, reading: NumericReading, spec: Specification) -> bool:
        c = spec.constraint
        r = self.units.normalize(reading, c.unit) if c.unit else reading
        lower, upper = r.lower, r.upper
        if c.operator == "min":
            return lower is None or lower < c.value
        if c.operator == "max":
            return upper is None or upper > c.value
        if c.operator == "exact":
            return r.low is None or r.high is None or abs(r.low - c.value) > 1e-9 or abs(r.high - c.value) > 1e-9
        return lower is None or upper is None or lower < c.min or upper > c.max

    def _detect_constraint(self, ctx: "_PassContext") -> list[Conflict]:
        out = []
        for sid in sorted(ctx.active_specs):
            spec = self.schema.get_specification(sid)
            if spec.constraint is None:
                continue

            violating: list[tuple[str, AssignedValue]] = []
            for artifact_name, assigned in ctx.values(sid):
                reading = assigned.value.reading
                if reading is None:
                    continue
                if self._violates(reading, spec):
                    violating.append((artifact_name, assigned))
            if not violating:
                continue

            alternatives = []
            for opt in spec.options:
                reading = coerce_field_value(opt, spec).reading
                if reading is not None and not self._violates(reading, spec):
                    alternatives.append(opt)

            artifact_name, assigned = violating[0]
            description = (
                f"{spec.name} is set to {assigned.value.display()}, "
                f"but it must be {spec.constraint.describe()}"
            )
            if alternatives:
                options = [
                    ResolutionOption(
                        id=option_id_for(i),
                        label=f"Use {alt} for {spec.name}",
                        outcome=f"{spec.name} will be set to {alt}",
                        artifact=artifact_name,
                        target_nodes=(sid,),
                        clears_nodes=(sid,),
                        assign_values={sid: alt},
                    )
                    for i, alt in enumerate(alternatives)
                ]
            else:
                options = [
                    ResolutionOption(
                        id="option-a",
                        label=f"Reset {spec.name}",
                        outcome=f"{spec.name} will be cleared so a compliant value can be chosen",
                        target_nodes=(sid,),
                        clears_nodes=(sid,),
                    )
                ]
            out.append(self._new_conflict(ConflictType.CONSTRAINT, [sid], description, options))
        return out

    # -----------------------
    # 5. Mapped vs respec
    # -----------------------

    def _detect_cross_artifact(self, ctx: "_PassContext") -> list[Conflict]:
        out = []
        for sid in sorted(ctx.active_specs):
            m = ctx.mapped.get_spec(sid)
            r = ctx.respec.get_spec(sid)
            if m is None or r is None:
                continue
            spec = self.schema.get_specification(sid)
            if is_unset(m.value, spec) or is_unset(r.value, spec):
                continue
            if m.value.equivalent(r.value, self.units):
                continue
            options = [
                ResolutionOption(
                    id="option-a",
                    label=f"Keep {m.value.display()} (form value)",
                    outcome=f"{spec.name} stays {m.value.display()}; the value from the conversation is discarded",
                    target_nodes=(sid,),
                    artifact=MAPPED,
                ),
                ResolutionOption(
                    id="option-b",
                    label=f"Keep {r.value.display()} (conversation value)",
                    outcome=f"{spec.name} becomes {r.value.display()}; the form value is discarded",
                    target_nodes=(sid,),
                    artifact=RESPEC,
                ),
            ]
            out.append(self._new_conflict(
                ConflictType.CROSS_ARTIFACT,
                [sid],
                f"{spec.name} is {m.value.display()} in the form but {r.value.display()} in the conversation",
                options,
            ))
        return out


class _PassContext:
    """
    Read-only view of one detection input: active sets plus value lookups.
    """

    def __init__(self, schema: SchemaModel, mapped, respec, active_requirements, active_domains):
        self.schema = schema
        self.mapped = mapped
        self.respec = respec
        self.active_requirements = active_requirements
        self.active_domains = active_domains

        specs = set()
        for artifact in (mapped, respec):
            for _section, _field, assigned in artifact.items():
                spec = schema.get_specification(assigned.spec_id)
                if is_unset(assigned.value, spec):
                    continue
                if spec.parent not in active_requirements:
                    continue
                owners = schema.owners_of(spec.parent)
                if owners and active_domains and not (owners & active_domains):
                    continue
                specs.add(spec.id)
        self.active_specs = frozenset(specs)

    def is_active(self, node_id: str) -> bool:
        kind = self.schema.node_kind(node_id)
        if kind == "specification":
            return node_id in self.active_specs
        if kind == "requirement":
            return node_id in self.active_requirements
        return node_id in self.active_domains

    def values(self, spec_id: str) -> list[tuple[str, AssignedValue]]:
        out = []
        for name, artifact in ((MAPPED, self.mapped), (RESPEC, self.respec)):
            assigned = artifact.get_spec(spec_id)
            if assigned is not None and not is_unset(assigned.value, self.schema.get_specification(spec_id)):
                out.append((name, assigned))
        return out

    def display(self, spec_id: str) -> str:
        return " / ".join(av.value.display() for _, av in self.values(spec_id)) or "unset"
