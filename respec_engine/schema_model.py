# respec_engine/schema_model.py

import logging
from pathlib import Path
from typing import Any, Literal

import commentjson
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from respec_engine.errors import SchemaIntegrityError

logger = logging.getLogger("respec_engine")


# -----------------------
# Catalog entities
# -----------------------

class ValueConstraint(BaseModel):
    model_config = ConfigDict(frozen=True)

    operator: Literal["min", "max", "exact", "range"]
    value: float | None = None
    min: float | None = None
    max: float | None = None
    unit: str | None = None

    @model_validator(mode="after")
    def _check_bounds(self):
        if self.operator == "range":
            if self.min is None or self.max is None:
                raise ValueError("range constraint needs both min and max")
            if self.min > self.max:
                raise ValueError(f"range constraint has min > max ({self.min} > {self.max})")
        elif self.value is None:
            raise ValueError(f"{self.operator} constraint needs a value")
        return self

    def describe(self) -> str:
        unit = self.unit or ""
        if self.operator == "range":
            return f"between {self.min:g}{unit} and {self.max:g}{unit}"
        words = {"min": "at least", "max": "at most", "exact": "exactly"}
        return f"{words[self.operator]} {self.value:g}{unit}"


class Dependency(BaseModel):
    model_config = ConfigDict(frozen=True)

    target: str
    kind: Literal["all", "any", "none"] = "all"
    rationale: str = ""


class Domain(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    requirements: frozenset[str] = frozenset()


class Requirement(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    id: str
    name: str
    # the catalog has been seen listing more than one owning domain
    parents: frozenset[str] = Field(default=frozenset(), alias="parent")
    dependencies: tuple[Dependency, ...] = ()
    specifications: frozenset[str] = frozenset()

    @field_validator("parents", mode="before")
    @classmethod
    def _parents_as_set(cls, v):
        if v is None:
            return frozenset()
        if isinstance(v, str):
            return frozenset([v])
        return frozenset(v)


class Specification(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    id: str
    name: str
    parent: str
    section: str
    field_name: str
    description: str = ""
    options: tuple[str, ...] = ()
    constraint: ValueConstraint | None = None
    exclusions: frozenset[str] = frozenset()
    dependencies: tuple[Dependency, ...] = ()
    default_value: Any = None
    suggested_value: Any = None


class ValueDomain(BaseModel):
    model_config = ConfigDict(frozen=True)

    options: tuple[str, ...] = ()
    constraint: ValueConstraint | None = None


# -----------------------
# Query surface
# -----------------------

class SchemaModel:
    """
    Read-only catalog of Domain -> Requirement -> Specification.

    Built once from a dict (or a JSON-with-comments file) and never written to
    afterwards. Every cross reference is checked at build time; an unknown id
    raises SchemaIntegrityError both there and on lookup.
    """

    def __init__(self, domains: list[Domain], requirements: list[Requirement], specifications: list[Specification]):
        self._domains: dict[str, Domain] = {}
        self._requirements: dict[str, Requirement] = {}
        self._specs: dict[str, Specification] = {}
        self._by_field: dict[tuple[str, str], str] = {}
        self._by_field_name: dict[str, list[str]] = {}
        self._excluded_by: dict[str, set[str]] = {}

        for node in [*domains, *requirements, *specifications]:
            if node.id in self._domains or node.id in self._requirements or node.id in self._specs:
                raise SchemaIntegrityError(f"Duplicate node id in schema: {node.id}")
            if isinstance(node, Domain):
                self._domains[node.id] = node
            elif isinstance(node, Requirement):
                self._requirements[node.id] = node
            else:
                self._specs[node.id] = node

        self._reconcile_ownership()
        self._validate_references()

        for spec in self._specs.values():
            key = (spec.section, spec.field_name)
            if key in self._by_field:
                raise SchemaIntegrityError(f"Field {spec.section}.{spec.field_name} mapped by more than one specification")
            self._by_field[key] = spec.id
            self._by_field_name.setdefault(spec.field_name, []).append(spec.id)
            for other in spec.exclusions:
                self._excluded_by.setdefault(other, set()).add(spec.id)

        logger.debug(
            f"SchemaModel loaded: {len(self._domains)} domains, "
            f"{len(self._requirements)} requirements, {len(self._specs)} specifications"
        )

    def _reconcile_ownership(self) -> None:
        # ownership can be declared on either side of each edge; both sides end up complete
        req_parents = {rid: set(r.parents) for rid, r in self._requirements.items()}
        req_specs = {rid: set(r.specifications) for rid, r in self._requirements.items()}
        dom_reqs = {did: set(d.requirements) for did, d in self._domains.items()}

        for did, rids in dom_reqs.items():
            for rid in rids:
                if rid not in req_parents:
                    raise SchemaIntegrityError(f"Domain {did} owns unknown requirement {rid}")
                req_parents[rid].add(did)
        for rid, dids in req_parents.items():
            for did in dids:
                if did not in dom_reqs:
                    raise SchemaIntegrityError(f"Requirement {rid} names unknown owning domain {did}")
                dom_reqs[did].add(rid)
        for sid, spec in self._specs.items():
            if spec.parent not in req_specs:
                raise SchemaIntegrityError(f"Specification {sid} names unknown requirement {spec.parent}")
            req_specs[spec.parent].add(sid)
        for rid, sids in req_specs.items():
            for sid in sids:
                spec = self._specs.get(sid)
                if spec is None:
                    raise SchemaIntegrityError(f"Requirement {rid} owns unknown specification {sid}")
                if spec.parent != rid:
                    raise SchemaIntegrityError(f"Specification {sid} is owned by {spec.parent}, not {rid}")

        self._domains = {
            did: d.model_copy(update={"requirements": frozenset(dom_reqs[did])}) for did, d in self._domains.items()
        }
        self._requirements = {
            rid: r.model_copy(update={"parents": frozenset(req_parents[rid]), "specifications": frozenset(req_specs[rid])})
            for rid, r in self._requirements.items()
        }

    def _validate_references(self) -> None:
        for spec in self._specs.values():
            for other in spec.exclusions:
                if other not in self._specs:
                    raise SchemaIntegrityError(f"Specification {spec.id} excludes unknown specification {other}")
            for dep in spec.dependencies:
                if not self.has_node(dep.target):
                    raise SchemaIntegrityError(f"Specification {spec.id} depends on unknown node {dep.target}")
        for req in self._requirements.values():
            for dep in req.dependencies:
                if not self.has_node(dep.target):
                    raise SchemaIntegrityError(f"Requirement {req.id} depends on unknown node {dep.target}")

    # !##############################################
    # Construction
    # !##############################################

    @classmethod
    def from_dict(cls, data: dict) -> "SchemaModel":
        if not isinstance(data, dict):
            raise SchemaIntegrityError("Schema catalog must be an object")
        try:
            domains = [Domain.model_validate(d) for d in data.get("domains", [])]
            requirements = [Requirement.model_validate(r) for r in data.get("requirements", [])]
            specifications = [Specification.model_validate(s) for s in data.get("specifications", [])]
        except ValidationError as e:
            raise SchemaIntegrityError(f"Invalid schema catalog: {e}") from e
        return cls(domains, requirements, specifications)

    # !##############################################
    # Queries
    # !##############################################

    def has_node(self, node_id: str) -> bool:
        return node_id in self._domains or node_id in self._requirements or node_id in self._specs

    def node_kind(self, node_id: str) -> str:
        if node_id in self._specs:
            return "specification"
        if node_id in self._requirements:
            return "requirement"
        if node_id in self._domains:
            return "domain"
        raise SchemaIntegrityError(f"Unknown schema node: {node_id}")

    def node_name(self, node_id: str) -> str:
        kind = self.node_kind(node_id)
        if kind == "specification":
            return self._specs[node_id].name
        if kind == "requirement":
            return self._requirements[node_id].name
        return self._domains[node_id].name

    def list_domains(self) -> list[Domain]:
        return sorted(self._domains.values(), key=lambda d: d.id)

    def list_requirements(self, domain_id: str) -> list[Requirement]:
        domain = self.get_domain(domain_id)
        return [self._requirements[rid] for rid in sorted(domain.requirements)]

    def list_specifications(self, requirement_id: str) -> list[Specification]:
        req = self.get_requirement(requirement_id)
        return [self._specs[sid] for sid in sorted(req.specifications)]

    def all_requirements(self) -> list[Requirement]:
        return sorted(self._requirements.values(), key=lambda r: r.id)

    def all_specifications(self) -> list[Specification]:
        return sorted(self._specs.values(), key=lambda s: s.id)

    def get_domain(self, domain_id: str) -> Domain:
        try:
            return self._domains[domain_id]
        except KeyError:
            raise SchemaIntegrityError(f"Unknown domain: {domain_id}") from None

    def get_requirement(self, requirement_id: str) -> Requirement:
        try:
            return self._requirements[requirement_id]
        except KeyError:
            raise SchemaIntegrityError(f"Unknown requirement: {requirement_id}") from None

    def get_specification(self, spec_id: str) -> Specification:
        try:
            return self._specs[spec_id]
        except KeyError:
            raise SchemaIntegrityError(f"Unknown specification: {spec_id}") from None

    def owners_of(self, requirement_id: str) -> frozenset[str]:
        return self.get_requirement(requirement_id).parents

    def get_exclusions(self, spec_id: str) -> frozenset[str]:
        """
        Exclusions are symmetric: a spec excludes what it lists and what lists it.
        """
        spec = self.get_specification(spec_id)
        return frozenset(spec.exclusions) | frozenset(self._excluded_by.get(spec_id, ()))

    def get_dependencies(self, node_id: str) -> tuple[Dependency, ...]:
        kind = self.node_kind(node_id)
        if kind == "specification":
            return self._specs[node_id].dependencies
        if kind == "requirement":
            return self._requirements[node_id].dependencies
        return ()

    def get_value_domain(self, spec_id: str) -> ValueDomain:
        spec = self.get_specification(spec_id)
        return ValueDomain(options=spec.options, constraint=spec.constraint)

    def find_specification(self, section: str | None, field_name: str) -> Specification | None:
        if section:
            sid = self._by_field.get((section, field_name))
            if sid:
                return self._specs[sid]
        candidates = self._by_field_name.get(field_name, [])
        if len(candidates) == 1:
            return self._specs[candidates[0]]
        return None


def load_schema_file(path: str | Path) -> SchemaModel:
    """
    Load the catalog from a JSON-with-comments file.
    """
    cfg_path = Path(path)
    if not cfg_path.exists():
        raise FileNotFoundError(f"Schema catalog file not found at '{cfg_path}'.")
    with cfg_path.open("r", encoding="utf-8") as f:
        data = commentjson.load(f)
    return SchemaModel.from_dict(data)
