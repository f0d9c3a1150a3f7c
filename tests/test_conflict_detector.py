import pytest

from respec_engine.artifact_manager import ArtifactManager
from respec_engine.artifacts import MAPPED, RESPEC
from respec_engine.conflict_detector import ConflictDetector
from respec_engine.conflicts import ConflictType
from respec_engine.errors import SchemaIntegrityError
from respec_engine.mutex_rules import build_mutex_rules
from respec_engine.schema_model import SchemaModel
from respec_engine.units import UnitRegistry


def detect(manager, requirements=None, domains=None):
    active = manager.get_active_set()
    return manager.detector.detect_conflicts(
        manager.store.mapped,
        manager.store.respec,
        active.requirements if requirements is None else requirements,
        active.domains if domains is None else domains,
    )


def by_id(conflicts):
    return {c.id: c for c in conflicts}


def test_active_set_follows_assignments(manager):
    manager.sync({"power": {"max_power_consumption": "<10W"}})
    active = manager.get_active_set()
    assert active.specifications == frozenset({"SPEC-POWER-MAX"})
    assert active.requirements == frozenset({"R-POWER"})
    # multi-owner requirement activates both domains
    assert active.domains == frozenset({"D-POWER", "D-COMPUTE"})


def test_default_value_does_not_activate(manager):
    manager.sync({"compute": {"processor_type": "Not Required"}})
    assert manager.get_active_set().specifications == frozenset()


def test_processor_vs_low_power_is_one_mutex_conflict(manager):
    manager.sync(
        {"compute": {"processor_type": "Intel Core i9"}, "power": {"max_power_consumption": "<10W"}},
        provenance="direct",
    )
    conflicts = detect(manager)
    assert len(conflicts) == 1
    conflict = conflicts[0]
    assert conflict.type == ConflictType.MUTEX
    assert conflict.id == "mutex:SPEC-POWER-MAX|SPEC-PROC-TYPE"
    assert conflict.rule_id == "processor-vs-low-power"
    assert [o.id for o in conflict.options] == ["option-a", "option-b"]
    assert conflict.options[0].outcome == "High performance processor with adequate power supply"
    assert conflict.options[1].outcome == "Battery-optimized configuration with lower performance"
    assert conflict.options[0].target_nodes == ("SPEC-PROC-TYPE",)
    assert conflict.options[1].target_nodes == ("SPEC-POWER-MAX",)


def test_mutex_needs_every_condition(manager):
    manager.sync(
        {"compute": {"processor_type": "ARM Cortex-A53"}, "power": {"max_power_consumption": "<10W"}},
        provenance="direct",
    )
    assert detect(manager) == []

    manager.sync({"compute": {"processor_type": "Intel Xeon"}, "power": {"max_power_consumption": "35-65W"}}, provenance="direct")
    assert detect(manager) == []


def test_mutex_condition_spans_both_artifacts(manager):
    manager.sync({"compute": {"processor_type": "Intel Core i7"}}, provenance="direct")
    manager.sync({"power": {"max_power_consumption": "10-20W"}})
    ids = {c.id for c in detect(manager)}
    assert "mutex:SPEC-POWER-MAX|SPEC-PROC-TYPE" in ids


def test_configured_mutex_rule(schema):
    rules = build_mutex_rules([
        {
            "id": "fan-vs-modem",
            "description": "A fan cannot share the enclosure with the 5G modem",
            "conditions": [
                {"field_name": "cooling_fan", "any_of": ["60mm"]},
                {"field_name": "cellular_modem", "any_of": ["5G"]},
            ],
            "options": [
                {"label": "Keep the fan", "outcome": "Modem removed"},
                {"label": "Keep the modem", "outcome": "Fan removed"},
            ],
        }
    ])
    manager = ArtifactManager(schema, ConflictDetector(schema, rules))
    manager.sync({"power": {"cooling_fan": "60mm"}, "connectivity": {"cellular_modem": "5G", "wifi_standard": "Wi-Fi 6"}})
    conflict = by_id(detect(manager))["mutex:SPEC-CELL|SPEC-COOL-FAN"]
    assert conflict.options[0].target_nodes == ("SPEC-COOL-FAN",)
    assert conflict.options[1].target_nodes == ("SPEC-CELL",)


def test_mutex_rule_options_must_split_conditions():
    with pytest.raises(ValueError):
        build_mutex_rules([
            {
                "id": "bad",
                "description": "overlapping keeps",
                "conditions": [
                    {"field_name": "a", "any_of": ["x"]},
                    {"field_name": "b", "any_of": ["y"]},
                ],
                "options": [
                    {"label": "one", "keeps": [0, 1]},
                    {"label": "two", "keeps": 1},
                ],
            }
        ])


def test_logical_exclusion(manager):
    manager.sync({"power": {"passive_cooling": "Yes", "cooling_fan": "40mm"}})
    conflicts = detect(manager)
    assert [c.id for c in conflicts] == ["logical:SPEC-COOL-FAN|SPEC-COOL-PASSIVE"]
    labels = [o.label for o in conflicts[0].options]
    assert labels == ["Keep Cooling Fan (40mm)", "Keep Passive Cooling (Yes)"]


def test_inactive_requirements_are_not_checked(manager):
    manager.sync({"power": {"passive_cooling": "Yes", "cooling_fan": "40mm"}})
    assert detect(manager, requirements=frozenset({"R-POWER"})) == []


def test_requirement_dependency(manager):
    manager.sync({"connectivity": {"cellular_modem": "LTE Cat-1"}})
    conflicts = by_id(detect(manager))
    conflict = conflicts["dependency:R-CELL|R-WIRELESS"]
    assert set(conflict.affected_nodes) == {"R-CELL", "R-WIRELESS"}
    assert "the modem shares the wireless front end" in conflict.description
    drop, add = conflict.options
    assert drop.label == "Drop Cellular"
    assert add.label == "Add Wireless"
    assert add.assign_values == {"SPEC-WIFI": "Wi-Fi 5"}

    manager.sync({"connectivity": {"wifi_standard": "Wi-Fi 6"}})
    assert "dependency:R-CELL|R-WIRELESS" not in by_id(detect(manager))


def _small_schema():
    return SchemaModel.from_dict({
        "domains": [{"id": "D-1", "name": "Board"}],
        "requirements": [
            {"id": "R-A", "name": "Audio", "parent": "D-1",
             "dependencies": [{"target": "R-B", "kind": "any"}, {"target": "R-C", "kind": "any"}]},
            {"id": "R-B", "name": "Speaker", "parent": "D-1"},
            {"id": "R-C", "name": "Headphone Jack", "parent": "D-1"},
            {"id": "R-D", "name": "Sealed Enclosure", "parent": "D-1",
             "dependencies": [{"target": "R-C", "kind": "none", "rationale": "IP67 rating"}]},
        ],
        "specifications": [
            {"id": "S-A", "name": "Codec", "parent": "R-A", "section": "board", "field_name": "codec"},
            {"id": "S-B", "name": "Speaker Size", "parent": "R-B", "section": "board", "field_name": "speaker"},
            {"id": "S-C", "name": "Jack Type", "parent": "R-C", "section": "board", "field_name": "jack",
             "suggested_value": "3.5mm"},
            {"id": "S-D", "name": "Ingress Rating", "parent": "R-D", "section": "board", "field_name": "ingress"},
        ],
    })


def test_any_dependency_is_one_group_conflict():
    manager = ArtifactManager(_small_schema())
    manager.sync({"board": {"codec": "WM8960"}})
    conflict = by_id(detect(manager))["dependency:R-A|R-B|R-C"]
    assert conflict.description.startswith("Audio requires Speaker or Headphone Jack")
    # R-B has nothing to suggest, so activation goes through R-C
    assert conflict.options[1].label == "Add Headphone Jack"
    assert conflict.options[1].assign_values == {"S-C": "3.5mm"}

    manager.sync({"board": {"speaker": "20mm"}})
    assert detect(manager) == []


def test_none_dependency_is_an_incompatibility():
    manager = ArtifactManager(_small_schema())
    manager.sync({"board": {"jack": "3.5mm", "ingress": "IP67"}})
    conflict = by_id(detect(manager))["dependency:R-C|R-D"]
    assert conflict.description == "Sealed Enclosure cannot be combined with Headphone Jack (IP67 rating)"
    assert [o.label for o in conflict.options] == ["Keep Sealed Enclosure", "Keep Headphone Jack"]


def test_constraint_with_compliant_alternatives(manager):
    manager.sync({"compute": {"memory_capacity": "4GB"}})
    conflict = by_id(detect(manager))["constraint:SPEC-MEM-SIZE"]
    assert conflict.type == ConflictType.CONSTRAINT
    assert "at least 8192MB" in conflict.description
    assert [o.assign_values for o in conflict.options] == [
        {"SPEC-MEM-SIZE": "8GB"},
        {"SPEC-MEM-SIZE": "16GB"},
        {"SPEC-MEM-SIZE": "32GB"},
    ]
    assert {o.artifact for o in conflict.options} == {RESPEC}


def test_constraint_satisfied_after_conversion(manager):
    manager.sync({"compute": {"memory_capacity": "8GB", "storage_capacity": "2048GB"}})
    assert detect(manager) == []


def test_constraint_without_options_offers_reset(manager):
    manager.sync({"compute": {"storage_capacity": "4TB"}})
    conflict = by_id(detect(manager))["constraint:SPEC-STORAGE"]
    assert len(conflict.options) == 1
    assert conflict.options[0].label == "Reset Storage Capacity"
    assert conflict.options[0].clears_nodes == ("SPEC-STORAGE",)


def test_constraint_options_keep_the_constrained_spec(manager):
    manager.sync({"compute": {"memory_capacity": "4GB", "storage_capacity": "4TB"}})
    found = by_id(detect(manager))
    for cid, sid in (("constraint:SPEC-MEM-SIZE", "SPEC-MEM-SIZE"), ("constraint:SPEC-STORAGE", "SPEC-STORAGE")):
        for option in found[cid].options:
            assert option.target_nodes == (sid,)
            assert option.to_dict()["target_nodes"] == [sid]


def _power_board_schema():
    return SchemaModel.from_dict({
        "domains": [{"id": "D-1", "name": "Board"}],
        "requirements": [{"id": "R-SUPPLY", "name": "Supply", "parent": "D-1"}],
        "specifications": [
            {"id": "S-VIN", "name": "Supply Voltage", "parent": "R-SUPPLY", "section": "board",
             "field_name": "supply_voltage", "options": ["3.3V", "5V"],
             "constraint": {"operator": "exact", "value": 3.3, "unit": "V"}},
            {"id": "S-CLOCK", "name": "Clock Speed", "parent": "R-SUPPLY", "section": "board",
             "field_name": "clock_speed", "options": ["800MHz", "1.5GHz", "2.4GHz"],
             "constraint": {"operator": "range", "min": 1, "max": 2, "unit": "GHz"}},
        ],
    })


def test_exact_constraint_violation():
    manager = ArtifactManager(_power_board_schema())
    manager.sync({"board": {"supply_voltage": "5V"}})
    conflict = by_id(detect(manager))["constraint:S-VIN"]
    assert conflict.description == "Supply Voltage is set to 5V, but it must be exactly 3.3V"
    assert [o.assign_values for o in conflict.options] == [{"S-VIN": "3.3V"}]


@pytest.mark.parametrize("value", ["3.3V", "3300mV", "3.3"])
def test_exact_constraint_satisfied(value):
    manager = ArtifactManager(_power_board_schema())
    manager.sync({"board": {"supply_voltage": value}})
    assert detect(manager) == []


def test_exact_constraint_rejects_a_range_around_the_value():
    manager = ArtifactManager(_power_board_schema())
    manager.sync({"board": {"supply_voltage": "3-3.6V"}})
    assert "constraint:S-VIN" in by_id(detect(manager))


def test_range_constraint_violation():
    manager = ArtifactManager(_power_board_schema())
    manager.sync({"board": {"clock_speed": "2.4GHz"}})
    conflict = by_id(detect(manager))["constraint:S-CLOCK"]
    assert conflict.description == "Clock Speed is set to 2.4GHz, but it must be between 1GHz and 2GHz"
    # 800MHz is below the range, so only 1.5GHz is offered
    assert [o.label for o in conflict.options] == ["Use 1.5GHz for Clock Speed"]


def test_range_reading_straddling_a_bound_violates():
    manager = ArtifactManager(_power_board_schema())
    manager.sync({"board": {"clock_speed": "1500-2500MHz"}})
    assert [c.id for c in detect(manager)] == ["constraint:S-CLOCK"]


@pytest.mark.parametrize("value", ["1200MHz", "1200-1800MHz", "2GHz"])
def test_range_constraint_satisfied_after_conversion(value):
    manager = ArtifactManager(_power_board_schema())
    manager.sync({"board": {"clock_speed": value}})
    assert detect(manager) == []


def test_constraint_unit_mismatch_is_fatal(manager):
    with pytest.raises(SchemaIntegrityError):
        manager.sync({"compute": {"memory_capacity": "16W"}})


def test_cross_artifact_disagreement(manager):
    manager.sync({"compute": {"processor_type": "Intel Core i5"}}, provenance="direct")
    manager.sync({"compute": {"processor_type": "Intel Core i7"}})
    conflicts = detect(manager)
    assert [c.id for c in conflicts] == ["cross-artifact:SPEC-PROC-TYPE"]
    keep_form, keep_chat = conflicts[0].options
    assert keep_form.artifact == MAPPED
    assert keep_chat.artifact == RESPEC
    assert keep_form.label == "Keep Intel Core i5 (form value)"
    assert keep_chat.label == "Keep Intel Core i7 (conversation value)"


def test_equivalent_values_do_not_disagree(manager):
    manager.sync({"peripherals": {"gpu_memory": "4GB"}}, provenance="direct")
    manager.sync({"peripherals": {"gpu_memory": "4096MB"}})
    assert detect(manager) == []


def test_detection_is_pure(manager):
    manager.sync(
        {
            "compute": {"processor_type": "Intel Core i9", "memory_capacity": "4GB"},
            "power": {"max_power_consumption": "<10W", "passive_cooling": "Yes", "cooling_fan": "60mm"},
        },
        provenance="direct",
    )
    manager.sync({"compute": {"processor_type": "Intel Xeon"}})
    before = (manager.store.mapped.to_dict(), manager.store.respec.to_dict())

    first = [c.id for c in detect(manager)]
    second = [c.id for c in detect(manager)]

    assert first == second
    assert len(first) == len(set(first))
    assert (manager.store.mapped.to_dict(), manager.store.respec.to_dict()) == before


def test_unit_tables_reach_constraints(catalog):
    catalog["specifications"][2]["constraint"] = {"operator": "max", "value": 1, "unit": "PB"}
    schema = SchemaModel.from_dict(catalog)
    detector = ConflictDetector(schema, units=UnitRegistry({"storage": {"PB": 1024.0 ** 5}}))
    manager = ArtifactManager(schema, detector)
    manager.sync({"compute": {"storage_capacity": "4TB"}})
    assert detect(manager) == []
