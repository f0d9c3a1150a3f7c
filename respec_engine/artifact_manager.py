# respec_engine/artifact_manager.py

import dataclasses
import logging
from dataclasses import dataclass, field

from respec_engine.artifacts import (
    ARTIFACT_NAMES,
    MAPPED,
    RESPEC,
    AssignedValue,
    SessionStore,
    utcnow,
)
from respec_engine.conflict_detector import ActiveSet, ConflictDetector, compute_active_set
from respec_engine.conflicts import Conflict, ResolutionOption, StructuredConflicts
from respec_engine.errors import ResolutionNotFoundError, SchemaIntegrityError, VerificationFailure
from respec_engine.field_values import coerce_field_value, is_unset
from respec_engine.schema_model import SchemaModel
from respec_engine.settings import MAX_CONFLICT_CYCLES

logger = logging.getLogger("respec_engine")


PROVENANCE_ARTIFACT = {
    "extraction": RESPEC,
    "respec": RESPEC,
    "direct": MAPPED,
    "form": MAPPED,
    "mapped": MAPPED,
}


@dataclass
class ResolutionResult:
    conflict_id: str
    option_id: str
    success: bool
    removed: list[tuple[str, str]] = field(default_factory=list)
    assigned: list[tuple[str, str]] = field(default_factory=list)
    remaining_conflicts: int = 0


class ArtifactManager:
    """
    Sole owner of one session's mapped/respec artifacts and conflict registry.

    Callers serialise sync() and apply_conflict_resolution() per session; the
    resolution protocol assumes nothing mutates the store between its snapshot
    and verification phases.
    """

    def __init__(
        self,
        schema: SchemaModel,
        detector: ConflictDetector | None = None,
        *,
        max_conflict_cycles: int | None = MAX_CONFLICT_CYCLES,
        store: SessionStore | None = None,
        clock=utcnow,
    ):
        self.schema = schema
        self.detector = detector or ConflictDetector(schema)
        self.max_conflict_cycles = max_conflict_cycles
        self.store = store or SessionStore()
        self._clock = clock

    # -----------------------
    # Sync
    # -----------------------

    def sync(self, extracted_fields: dict | None = None, provenance: str = "extraction") -> StructuredConflicts:
        """
        Merge field updates into the artifact matching their provenance, then
        re-detect and reconcile the conflict registry.

        extracted_fields: section -> field_name -> {value, priority, isAssumption}
        (a bare value is accepted in place of the dict). An empty value clears the field.

        If detection fails with SchemaIntegrityError the merged values are
        rolled back before the error propagates.
        """
        artifact_name = PROVENANCE_ARTIFACT.get(provenance)
        if artifact_name is None:
            raise ValueError(f"Unknown provenance: {provenance}")

        pre_images: dict = {}
        if extracted_fields:
            if not isinstance(extracted_fields, dict):
                raise ValueError("sync expects a mapping of section -> field -> update")
            pre_images = self._merge_fields(extracted_fields, artifact_name, provenance)

        try:
            detected = self._detect()
        except SchemaIntegrityError:
            self._restore(pre_images)
            self._redetect_after_rollback()
            raise

        self._reconcile(detected)
        self.store.last_synced = self._clock()
        return self.get_active_conflicts_for_agent()

    def _redetect_after_rollback(self) -> None:
        # the registry must describe the restored artifacts or be empty
        try:
            detected = self._detect()
        except SchemaIntegrityError:
            logger.warning("Detection still failing after rollback, conflict registry cleared")
            self.store.active_conflicts = {}
            return
        self._reconcile(detected)

    def _merge_fields(self, extracted_fields: dict, artifact_name: str, provenance: str) -> dict:
        """
        Returns the pre-image of every slot it touched, keyed by (artifact, spec id).
        """
        artifact = self.store.artifact(artifact_name)
        now = self._clock()
        pre_images: dict = {}

        for section, fields in extracted_fields.items():
            if not isinstance(fields, dict):
                logger.info(f"sync: skipping section {section}, expected an object of fields")
                continue
            for field_name, update in fields.items():
                if isinstance(update, dict) and "value" in update:
                    raw = update.get("value")
                    priority = int(update.get("priority", 1) or 1)
                    is_assumption = bool(update.get("isAssumption", update.get("is_assumption", False)))
                else:
                    raw, priority, is_assumption = update, 1, False

                spec = self.schema.find_specification(section, field_name)
                if spec is None:
                    self.store.unmapped.append({
                        "section": section,
                        "field_name": field_name,
                        "value": raw,
                        "provenance": provenance,
                        "received_at": now.isoformat(),
                    })
                    logger.info(f"sync: no specification for {section}.{field_name}, kept as unmapped")
                    continue

                pre_images.setdefault((artifact_name, spec.id), artifact.get_spec(spec.id))
                if is_unset(raw, spec):
                    if artifact.remove_spec(spec.id) is not None:
                        logger.debug(f"sync: cleared {spec.id} in {artifact_name}")
                    continue

                artifact.set(spec.section, spec.field_name, AssignedValue(
                    spec_id=spec.id,
                    value=coerce_field_value(raw, spec),
                    is_assumption=is_assumption,
                    priority=priority,
                    source=provenance,
                    updated_at=now,
                ))
                logger.debug(f"sync: {artifact_name}.{spec.section}.{spec.field_name} = {raw!r}")
        return pre_images

    def clear_field(self, section: str, field_name: str, artifact: str | None = None) -> StructuredConflicts:
        """
        Explicit external clear of one field, in one artifact or both.
        """
        spec = self.schema.find_specification(section, field_name)
        if spec is None:
            raise ValueError(f"Unknown field: {section}.{field_name}")
        for name in ([artifact] if artifact else ARTIFACT_NAMES):
            self.store.artifact(name).remove_spec(spec.id)
        return self.sync()

    def get_active_set(self) -> ActiveSet:
        return compute_active_set(self.schema, self.store.mapped, self.store.respec)

    def _detect(self) -> list[Conflict]:
        active = self.get_active_set()
        try:
            return self.detector.detect_conflicts(
                self.store.mapped, self.store.respec, active.requirements, active.domains
            )
        except SchemaIntegrityError as e:
            logger.info(f"Conflict detection aborted: {e}")
            raise

    def _reconcile(self, detected: list[Conflict]) -> None:
        now = self._clock()
        previous = self.store.active_conflicts
        registry: dict[str, Conflict] = {}
        detected_ids = set()

        for conflict in detected:
            detected_ids.add(conflict.id)
            if conflict.id in self.store.escalated_conflicts:
                continue
            existing = previous.get(conflict.id)
            if existing is not None:
                conflict.cycle_count = existing.cycle_count
                conflict.first_detected = existing.first_detected
            else:
                conflict.cycle_count = 0
                conflict.first_detected = now
                logger.info(f"New conflict {conflict.id}: {conflict.description}")
            conflict.last_updated = now
            registry[conflict.id] = conflict

        for cid in previous:
            if cid not in detected_ids:
                logger.info(f"Conflict {cid} no longer detected, dropped")
        for cid in list(self.store.escalated_conflicts):
            if cid not in detected_ids:
                logger.info(f"Escalated conflict {cid} no longer detected, released")
                del self.store.escalated_conflicts[cid]

        self.store.active_conflicts = registry

    # -----------------------
    # Resolution
    # -----------------------

    def apply_conflict_resolution(self, conflict_id: str, option_id: str) -> ResolutionResult:
        """
        Four phases: pre-validate, snapshot, remove, verify.

        Raises ResolutionNotFoundError when the conflict or option is unknown,
        VerificationFailure when the outcome still (or newly) conflicts. In
        both cases the artifacts are exactly as they were before the call.
        """
        # 1. pre-validation
        conflict = self.store.active_conflicts.get(conflict_id)
        if conflict is None:
            raise ResolutionNotFoundError(f"Conflict not found: {conflict_id}", conflict_id=conflict_id, option_id=option_id)
        option = conflict.option(option_id)
        if option is None:
            valid = ", ".join(o.id for o in conflict.options)
            raise ResolutionNotFoundError(
                f"Option {option_id} is not a resolution of {conflict_id} (valid: {valid})",
                conflict_id=conflict_id,
                option_id=option_id,
            )

        # 2. snapshot
        touched_specs = self._expand_to_specs(conflict.touched_nodes())
        pre_images = {
            (name, sid): self.store.artifact(name).get_spec(sid)
            for name in ARTIFACT_NAMES
            for sid in touched_specs
        }
        registry_before = set(self.store.active_conflicts)

        # 3. removal (+ assignments carried by the chosen option)
        try:
            removed, assigned = self._apply_option(conflict, option)
            # 4. verification
            detected = self._verify(conflict, touched_specs, registry_before)
        except VerificationFailure:
            self._restore(pre_images)
            self.increment_conflict_cycle(conflict_id)
            raise
        except Exception:
            self._restore(pre_images)
            raise

        now = self._clock()
        conflict.state = "resolved"
        conflict.resolved_at = now
        conflict.resolved_by = option_id
        conflict.last_updated = now
        self.store.resolved_conflicts.append(conflict)
        self._reconcile(detected)

        logger.info(f"Conflict {conflict_id} resolved with {option_id} ({option.label})")
        return ResolutionResult(
            conflict_id=conflict_id,
            option_id=option_id,
            success=True,
            removed=removed,
            assigned=assigned,
            remaining_conflicts=len(self.store.active_conflicts),
        )

    def _expand_to_specs(self, nodes) -> set[str]:
        specs: set[str] = set()
        for node in nodes:
            kind = self.schema.node_kind(node)
            if kind == "specification":
                specs.add(node)
            elif kind == "requirement":
                specs.update(s.id for s in self.schema.list_specifications(node))
            else:
                for req in self.schema.list_requirements(node):
                    specs.update(s.id for s in self.schema.list_specifications(req.id))
        return specs

    def _remove_node(self, node: str, scope: str | None) -> list[tuple[str, str]]:
        removed = []
        for sid in sorted(self._expand_to_specs([node])):
            for name in ([scope] if scope else ARTIFACT_NAMES):
                if self.store.artifact(name).remove_spec(sid) is not None:
                    removed.append((name, sid))
        return removed

    def _apply_option(self, conflict: Conflict, option: ResolutionOption):
        removed: list[tuple[str, str]] = []
        assigned: list[tuple[str, str]] = []

        for other in conflict.options:
            if other.id == option.id:
                continue
            for node in other.target_nodes:
                if node in option.target_nodes and other.artifact == option.artifact:
                    continue
                removed.extend(self._remove_node(node, other.artifact))

        for node in option.clears_nodes:
            removed.extend(self._remove_node(node, None))

        if option.assign_values:
            target = self.store.artifact(option.artifact or MAPPED)
            now = self._clock()
            for sid, raw in option.assign_values.items():
                spec = self.schema.get_specification(sid)
                target.set(spec.section, spec.field_name, AssignedValue(
                    spec_id=sid,
                    value=coerce_field_value(raw, spec),
                    is_assumption=False,
                    priority=1,
                    source="resolution",
                    updated_at=now,
                ))
                assigned.append((target.name, sid))

        logger.debug(f"apply {conflict.id}/{option.id}: removed={removed} assigned={assigned}")
        return removed, assigned

    def _verify(self, conflict: Conflict, touched_specs: set[str], registry_before: set[str]) -> list[Conflict]:
        detected = self._detect()

        scope = set(conflict.touched_nodes()) | touched_specs
        scope.update(self.schema.get_specification(sid).parent for sid in touched_specs)

        if any(c.id == conflict.id for c in detected):
            raise VerificationFailure(
                f"Conflict {conflict.id} is still present after resolution",
                conflict_id=conflict.id,
                remaining_ids=[conflict.id],
            )

        introduced = [
            c.id for c in detected
            if c.id not in registry_before
            and c.id not in self.store.escalated_conflicts
            and scope & set(c.affected_nodes)
        ]
        if introduced:
            raise VerificationFailure(
                f"Resolving {conflict.id} introduced new conflict(s): {', '.join(introduced)}",
                conflict_id=conflict.id,
                remaining_ids=introduced,
            )
        return detected

    def _restore(self, pre_images: dict) -> None:
        for (name, sid), pre in pre_images.items():
            artifact = self.store.artifact(name)
            artifact.remove_spec(sid)
            if pre is not None:
                spec = self.schema.get_specification(sid)
                artifact.set(spec.section, spec.field_name, pre)
        logger.info(f"Rolled back {len(pre_images)} value slot(s)")

    # -----------------------
    # Cycles & escalation
    # -----------------------

    def increment_conflict_cycle(self, conflict_id: str) -> int | None:
        conflict = self.store.active_conflicts.get(conflict_id)
        if conflict is None:
            logger.info(f"increment_conflict_cycle: {conflict_id} is not active")
            return None
        conflict.cycle_count += 1
        conflict.last_updated = self._clock()
        logger.debug(f"Conflict {conflict_id} cycle count -> {conflict.cycle_count}")

        if self.max_conflict_cycles and conflict.cycle_count >= self.max_conflict_cycles:
            self.escalate_conflict(conflict_id, f"Max resolution cycles reached ({self.max_conflict_cycles})")
        return conflict.cycle_count

    def escalate_conflict(self, conflict_id: str, reason: str) -> Conflict | None:
        """
        Take a conflict out of the agent's queue. It stays escalated (and
        out of the registry) for as long as its cause is still detected.
        """
        conflict = self.store.active_conflicts.pop(conflict_id, None)
        if conflict is None:
            return None
        conflict.state = "escalated"
        conflict.escalation_reason = reason
        conflict.last_updated = self._clock()
        self.store.escalated_conflicts[conflict_id] = conflict
        logger.warning(f"Conflict {conflict_id} escalated: {reason}")
        return conflict

    # -----------------------
    # Views
    # -----------------------

    def get_active_conflicts_for_agent(self) -> StructuredConflicts:
        ordered = sorted(
            self.store.active_conflicts.values(),
            key=lambda c: (c.priority, c.cycle_count, c.first_detected or self._clock(), c.id),
        )
        copies = tuple(dataclasses.replace(c) for c in ordered)
        return StructuredConflicts(conflicts=copies, current_conflict=1 if copies else 0)

    def has_active_conflict(self, conflict_id: str) -> bool:
        return conflict_id in self.store.active_conflicts

    def get_resolved_conflicts(self) -> list[Conflict]:
        return list(self.store.resolved_conflicts)

    def get_escalated_conflicts(self) -> list[Conflict]:
        return list(self.store.escalated_conflicts.values())

    def get_blocking_nodes(self) -> set[str]:
        nodes: set[str] = set()
        for conflict in self.store.active_conflicts.values():
            nodes.update(conflict.affected_nodes)
        return nodes

    def get_unmapped(self) -> list[dict]:
        return list(self.store.unmapped)

    def generate_form_updates(self) -> list[dict]:
        """
        Respec values the form has not picked up yet. Fields that disagree with
        the form are left out until their cross-artifact conflict is resolved.
        """
        updates = []
        for section, field_name, assigned in self.store.respec.items():
            mapped = self.store.mapped.get_spec(assigned.spec_id)
            if mapped is not None and not mapped.value.equivalent(assigned.value, self.detector.units):
                continue
            if mapped is not None and mapped.value.raw == assigned.value.raw:
                continue
            updates.append({
                "section": section,
                "field": field_name,
                "value": assigned.value.raw if not isinstance(assigned.value.raw, tuple) else list(assigned.value.raw),
                "is_assumption": assigned.is_assumption,
                "priority": assigned.priority,
            })
        return updates

    def get_state(self) -> dict:
        active = self.get_active_set()
        return {
            "mapped": self.store.mapped.to_dict(),
            "respec": self.store.respec.to_dict(),
            "active": {
                "specifications": sorted(active.specifications),
                "requirements": sorted(active.requirements),
                "domains": sorted(active.domains),
            },
            "conflicts": {
                "active": [c.to_dict() for c in self.get_active_conflicts_for_agent().conflicts],
                "resolved": [c.to_dict() for c in self.store.resolved_conflicts],
                "escalated": [c.to_dict() for c in self.store.escalated_conflicts.values()],
            },
            "blocking_nodes": sorted(self.get_blocking_nodes()),
            "system_blocked": bool(self.store.active_conflicts),
            "unmapped": self.get_unmapped(),
            "last_synced": self.store.last_synced.isoformat() if self.store.last_synced else None,
        }
