"""
Shared fixtures: a two-step transfer log (reservoir -> plate1 -> plate2)
and a small seeding protocol template.
"""

import copy

import pytest


@pytest.fixture
def transfer_events():
    reservoir_to_plate = {
        "id": "evt-1",
        "event_type": "transfer",
        "timestamp": "2025-01-01T00:00:00Z",
        "run": "run/R1",
        "labware": [{"@id": "labware:res1"}, {"@id": "labware:plate1"}],
        "details": {
            "type": "transfer",
            "source": {
                "labware": {"@id": "labware:res1", "kind": "reservoir"},
                "wells": {"SRC1": {}},
            },
            "target": {
                "labware": {"@id": "labware:plate1", "kind": "plate"},
                "wells": {"A01": {"well": "A01", "source_well": "SRC1", "material_id": "material:a"}},
            },
            "volume": "10 uL",
            "material": {"id": "material:a", "stock_concentration": "10 mM"},
        },
    }
    plate_to_plate = {
        "id": "evt-2",
        "event_type": "transfer",
        "timestamp": "2025-01-01T00:05:00Z",
        "run": "run/R1",
        "labware": [{"@id": "labware:plate1"}, {"@id": "labware:plate2"}],
        "details": {
            "type": "transfer",
            "source": {
                "labware": {"@id": "labware:plate1", "kind": "plate"},
                "wells": {"A01": {}},
            },
            "target": {
                "labware": {"@id": "labware:plate2", "kind": "plate"},
                "wells": {"B01": {"well": "B01"}},
            },
            "mapping": [{"source_well": "A01", "target_well": "B01"}],
            "volume": "5 uL",
        },
    }
    return [reservoir_to_plate, plate_to_plate]


@pytest.fixture
def make_transfer():
    """Factory for single-pair transfers between two labware."""
    def _make(event_id, timestamp, source, source_well, target, target_well, volume,
              source_kind="plate", target_kind="plate", material=None):
        details = {
            "type": "transfer",
            "source": {"labware": {"@id": source, "kind": source_kind}, "wells": {source_well: {}}},
            "target": {"labware": {"@id": target, "kind": target_kind}, "wells": {target_well: {}}},
            "mapping": [{"source_well": source_well, "target_well": target_well}],
            "volume": volume,
        }
        if material is not None:
            details["material"] = copy.deepcopy(material)
        return {
            "id": event_id,
            "event_type": "transfer",
            "timestamp": timestamp,
            "labware": [{"@id": source}, {"@id": target}],
            "details": details,
        }
    return _make


@pytest.fixture
def seeding_template():
    return {
        "metadata": {
            "recordId": "protocol/SEED-CELLS",
            "title": "Seed cells",
            "family": "seeding",
            "version": "1.0.0",
        },
        "data": {
            "labwareRoles": {
                "cell_plate": {"kind": "plate"},
                "media_reservoir": {"kind": "reservoir", "default_labware_id": "reservoir/DEFAULT"},
            },
            "events": [
                {
                    "event_type": "transfer",
                    "label": "Seed media",
                    "details": {
                        "source_role": "media_reservoir",
                        "target_role": "cell_plate",
                        "volume": "${transfer_volume}",
                        "material": {"id": "material:media", "stock_concentration": "1 mM"},
                        "mapping": [
                            {"source_well": "A1", "target_well": "A01"},
                            {"source_well": "A1", "target_well": "A02"},
                        ],
                    },
                },
                {
                    "event_type": "incubate",
                    "label": "Incubate",
                    "details": {
                        "labware_role": "cell_plate",
                        "duration": "${incubation_time}",
                        "temperature": "37 C",
                    },
                },
            ],
        },
    }
