import json

import pytest

from respec_engine.artifact_manager import ArtifactManager
from respec_engine.schema_model import SchemaModel


CATALOG = {
    "domains": [
        {"id": "D-COMPUTE", "name": "Compute", "requirements": ["R-PROC", "R-MEM"]},
        {"id": "D-POWER", "name": "Power", "requirements": ["R-POWER", "R-THERMAL"]},
        {"id": "D-CONN", "name": "Connectivity", "requirements": ["R-WIRELESS", "R-CELL"]},
        {"id": "D-PERIPH", "name": "Peripherals"},
    ],
    "requirements": [
        {"id": "R-PROC", "name": "Processing", "parent": ["D-COMPUTE"]},
        {"id": "R-MEM", "name": "Memory", "parent": "D-COMPUTE"},
        # owned by two domains
        {"id": "R-POWER", "name": "Power Budget", "parent": ["D-POWER", "D-COMPUTE"]},
        {"id": "R-THERMAL", "name": "Thermal Management", "parent": ["D-POWER"]},
        {"id": "R-WIRELESS", "name": "Wireless", "parent": ["D-CONN"]},
        {
            "id": "R-CELL",
            "name": "Cellular",
            "parent": ["D-CONN"],
            "dependencies": [
                {"target": "R-WIRELESS", "kind": "all", "rationale": "the modem shares the wireless front end"}
            ],
        },
        {
            "id": "R-DISPLAY",
            "name": "Display",
            "parent": ["D-PERIPH"],
            "dependencies": [{"target": "R-GPU", "kind": "all"}],
        },
        {"id": "R-GPU", "name": "Graphics", "parent": ["D-PERIPH"]},
        {
            "id": "R-SENSORS",
            "name": "Sensors",
            "parent": ["D-PERIPH"],
            "dependencies": [{"target": "R-CAMERA", "kind": "all"}],
        },
        {"id": "R-CAMERA", "name": "Camera", "parent": ["D-PERIPH"]},
    ],
    "specifications": [
        {
            "id": "SPEC-PROC-TYPE",
            "name": "Processor Type",
            "parent": "R-PROC",
            "section": "compute",
            "field_name": "processor_type",
            "options": ["Intel Core i3", "Intel Core i5", "Intel Core i7", "Intel Core i9", "Intel Xeon", "ARM Cortex-A53"],
            "default_value": "Not Required",
        },
        {
            "id": "SPEC-MEM-SIZE",
            "name": "Memory Capacity",
            "parent": "R-MEM",
            "section": "compute",
            "field_name": "memory_capacity",
            "options": ["4GB", "8GB", "16GB", "32GB"],
            "constraint": {"operator": "min", "value": 8192, "unit": "MB"},
        },
        {
            "id": "SPEC-STORAGE",
            "name": "Storage Capacity",
            "parent": "R-MEM",
            "section": "compute",
            "field_name": "storage_capacity",
            "constraint": {"operator": "max", "value": 2, "unit": "TB"},
        },
        {
            "id": "SPEC-POWER-MAX",
            "name": "Max Power Consumption",
            "parent": "R-POWER",
            "section": "power",
            "field_name": "max_power_consumption",
            "options": ["<10W", "10-20W", "35-65W"],
        },
        {
            "id": "SPEC-COOL-PASSIVE",
            "name": "Passive Cooling",
            "parent": "R-THERMAL",
            "section": "power",
            "field_name": "passive_cooling",
            "options": ["Yes"],
            "exclusions": ["SPEC-COOL-FAN"],
        },
        {
            "id": "SPEC-COOL-FAN",
            "name": "Cooling Fan",
            "parent": "R-THERMAL",
            "section": "power",
            "field_name": "cooling_fan",
            "options": ["40mm", "60mm"],
        },
        {
            "id": "SPEC-WIFI",
            "name": "Wi-Fi Standard",
            "parent": "R-WIRELESS",
            "section": "connectivity",
            "field_name": "wifi_standard",
            "options": ["Wi-Fi 5", "Wi-Fi 6"],
            "suggested_value": "Wi-Fi 5",
        },
        {
            "id": "SPEC-CELL",
            "name": "Cellular Modem",
            "parent": "R-CELL",
            "section": "connectivity",
            "field_name": "cellular_modem",
            "options": ["LTE Cat-1", "5G"],
        },
        {
            "id": "SPEC-DISPLAY",
            "name": "Display Type",
            "parent": "R-DISPLAY",
            "section": "peripherals",
            "field_name": "display_type",
        },
        {
            "id": "SPEC-GPU",
            "name": "GPU Memory",
            "parent": "R-GPU",
            "section": "peripherals",
            "field_name": "gpu_memory",
            "constraint": {"operator": "min", "value": 2, "unit": "GB"},
            "suggested_value": "1GB",
        },
        {
            "id": "SPEC-SENSOR",
            "name": "Sensor Suite",
            "parent": "R-SENSORS",
            "section": "peripherals",
            "field_name": "sensor_suite",
        },
        {
            "id": "SPEC-CAMERA",
            "name": "Camera Resolution",
            "parent": "R-CAMERA",
            "section": "peripherals",
            "field_name": "camera_resolution",
        },
    ],
}


class FakeLlm:
    """
    Stands in for LlmClient/ChatLlmClient: returns canned replies in order,
    raising any reply that is an exception.
    """

    def __init__(self, *replies):
        self.replies = list(replies)
        self.prompts = []

    def invoke(self, prompt, **kwargs):
        self.prompts.append(prompt)
        reply = self.replies.pop(0) if len(self.replies) > 1 else self.replies[0]
        if isinstance(reply, Exception):
            raise reply
        if isinstance(reply, dict):
            return json.dumps(reply)
        return reply


@pytest.fixture
def catalog():
    return json.loads(json.dumps(CATALOG))


@pytest.fixture
def schema(catalog):
    return SchemaModel.from_dict(catalog)


@pytest.fixture
def manager(schema):
    return ArtifactManager(schema, max_conflict_cycles=3)


def field(value, is_assumption=False, priority=1):
    return {"value": value, "isAssumption": is_assumption, "priority": priority}
