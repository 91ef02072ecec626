import copy
import math

import pytest

from plate_events.events import InvalidInput
from plate_events.replay import (
    ReplayOptions, estimate_moles_from_volume, replay_plate_events,
    resolve_depletion, resolve_mapping,
)


def _seeded_transfer(kind, volume="10 uL", event_id="evt-pull", source="labware:src",
                     timestamp="2025-01-01T00:00:00Z"):
    return {
        "id": event_id,
        "event_type": "transfer",
        "timestamp": timestamp,
        "labware": [{"@id": source}, {"@id": "labware:dst"}],
        "details": {
            "source": {
                "labware": {"@id": source, "kind": kind},
                "wells": {"A1": {"material": {"id": "material:a", "stock_concentration": "10 mM"},
                                 "volume": "100 uL"}},
            },
            "target": {"labware": {"@id": "labware:dst", "kind": "plate"}, "wells": {"B1": {}}},
            "mapping": [{"source_well": "A1", "target_well": "B1"}],
            "volume": volume,
        },
    }


def _wash(event_id, timestamp, labware, wells=None):
    details = {"labware": {"@id": labware}}
    if wells is not None:
        details["wells"] = wells
    return {
        "id": event_id,
        "event_type": "wash",
        "timestamp": timestamp,
        "labware": [{"@id": labware}],
        "details": details,
    }


# ── Transfers ─────────────────────────────────────────────────────────────────

def test_two_step_transfer_carries_material(transfer_events):
    result = replay_plate_events(transfer_events)

    a01 = result.state["labware:plate1"]["A01"]
    assert a01.total_volume_l > 0
    assert a01.components[0].material_id == "material:a"
    assert a01.components[0].moles > 0

    b01 = result.state["labware:plate2"]["B01"]
    assert b01.total_volume_l > 0
    assert b01.components[0].material_id == "material:a"
    assert b01.components[0].moles > 0


def test_two_step_transfer_quantities(transfer_events):
    result = replay_plate_events(transfer_events)
    a01 = result.state["labware:plate1"]["A01"]
    b01 = result.state["labware:plate2"]["B01"]
    # 10 uL of 10 mM seeded, half of it pulled on to plate2
    assert math.isclose(b01.total_volume_l, 5e-6)
    assert math.isclose(b01.components[0].moles, 5e-8)
    assert math.isclose(a01.total_volume_l, 5e-6)
    assert math.isclose(a01.components[0].moles, 5e-8)
    reservoir = result.state["labware:res1"]["SRC1"]
    assert math.isclose(reservoir.total_volume_l, 1e-5)


def test_transfer_edges(transfer_events):
    edges = replay_plate_events(transfer_events).edges
    assert [e.event_id for e in edges] == ["evt-1", "evt-2"]
    assert edges[0].source.key == "labware:res1:SRC1"
    assert edges[0].target.key == "labware:plate1:A01"
    assert edges[1].target.key == "labware:plate2:B01"
    assert all(e.material_id == "material:a" for e in edges)
    assert edges[1].to_dict()["from"] == {"labware_id": "labware:plate1", "well_id": "A01"}


def test_transfer_without_material_adds_volume_only(make_transfer):
    event = make_transfer("e1", "2025-01-01T00:00:00Z", "labware:a", "A1", "labware:b", "B1", "20 uL")
    result = replay_plate_events([event])
    well = result.state["labware:b"]["B1"]
    assert math.isclose(well.total_volume_l, 2e-5)
    assert well.components == []
    assert result.edges == []


def test_material_without_concentration_has_zero_moles(make_transfer):
    event = make_transfer("e1", "2025-01-01T00:00:00Z", "labware:a", "A1", "labware:b", "B1", "20 uL",
                          source_kind="reservoir", material={"id": "material:water"})
    well = replay_plate_events([event]).state["labware:b"]["B1"]
    assert well.components[0].material_id == "material:water"
    assert well.components[0].moles == 0.0
    assert math.isclose(well.components[0].volume_l, 2e-5)


def test_per_pair_volume_overrides_event_volume(make_transfer):
    event = make_transfer("e1", "2025-01-01T00:00:00Z", "labware:a", "A1", "labware:b", "B1", "20 uL")
    event["details"]["mapping"][0]["volume"] = "3 uL"
    well = replay_plate_events([event]).state["labware:b"]["B1"]
    assert math.isclose(well.total_volume_l, 3e-6)


def test_mapping_derived_from_target_wells():
    details = {
        "source": {"wells": {"A1": {"well": "C3"}}},
        "target": {"wells": {"A1": {"volume": "2 uL"}, "B2": {"source_well": "D4"}, "E5": {}}},
    }
    pairs = resolve_mapping(details)
    assert pairs == [
        {"source_well": "C3", "target_well": "A1", "volume": "2 uL"},
        {"source_well": "D4", "target_well": "B2", "volume": None},
        {"source_well": "E5", "target_well": "E5", "volume": None},
    ]


def test_repeated_transfer_merges_components_per_event(make_transfer):
    material = {"id": "material:a", "stock_concentration": "1 M"}
    first = make_transfer("e1", "2025-01-01T00:00:00Z", "labware:r", "A1", "labware:p", "A1", "1 uL",
                          source_kind="reservoir", material=material)
    second = make_transfer("e2", "2025-01-01T00:01:00Z", "labware:r", "A1", "labware:p", "A1", "1 uL",
                           source_kind="reservoir", material=material)
    well = replay_plate_events([first, second]).state["labware:p"]["A1"]
    assert math.isclose(well.total_volume_l, 2e-6)
    # One component per contributing event
    assert [c.source_event_id for c in well.components] == ["e1", "e2"]


# ── Depletion ─────────────────────────────────────────────────────────────────

def test_plate_source_depletes_by_default():
    result = replay_plate_events([_seeded_transfer("plate")])
    source = result.state["labware:src"]["A1"]
    assert math.isclose(source.total_volume_l, 9e-5)
    assert math.isclose(source.components[0].moles, 9e-7)
    target = result.state["labware:dst"]["B1"]
    assert math.isclose(target.components[0].moles, 1e-7)


def test_reservoir_source_does_not_deplete():
    result = replay_plate_events([_seeded_transfer("reservoir")])
    source = result.state["labware:src"]["A1"]
    assert math.isclose(source.total_volume_l, 1e-4)
    assert math.isclose(source.components[0].moles, 1e-6)


def test_depletion_override_per_labware():
    options = ReplayOptions(depletion_by_labware_id={"labware:src": True})
    source = replay_plate_events([_seeded_transfer("reservoir")], options).state["labware:src"]["A1"]
    assert math.isclose(source.total_volume_l, 9e-5)

    options = ReplayOptions(depletion_by_labware_id={"labware:src": False})
    source = replay_plate_events([_seeded_transfer("plate")], options).state["labware:src"]["A1"]
    assert math.isclose(source.total_volume_l, 1e-4)


def test_full_draw_clears_depleting_source():
    source = replay_plate_events([_seeded_transfer("plate", volume="150 uL")]).state["labware:src"]["A1"]
    assert source.total_volume_l == 0.0
    assert source.components == []


def test_resolve_depletion_table():
    assert resolve_depletion(None, "x", "plate") is True
    assert resolve_depletion(None, "x", "reservoir") is False
    assert resolve_depletion(None, "x", "Tube_Rack") is False
    assert resolve_depletion(None, "x", "trough") is True
    assert resolve_depletion(None, "x", None) is True
    options = ReplayOptions(depletion_by_labware_id={"x": False})
    assert resolve_depletion(options, "x", "plate") is False
    options = ReplayOptions(default_depletion={"plate": False}, unknown_kind_depletes=False)
    assert resolve_depletion(options, "x", "plate") is False
    assert resolve_depletion(options, "x", "trough") is False


def test_estimate_moles_from_volume():
    assert math.isclose(estimate_moles_from_volume(1e-5, {"stock_concentration": "10 mM"}), 1e-7)
    assert math.isclose(
        estimate_moles_from_volume(1e-3, {"stock_concentration": "1 mg/mL", "molar_mass": 1000}), 1e-9)
    assert estimate_moles_from_volume(1e-5, {"stock_concentration": "1 mg/mL"}) == 0.0
    assert estimate_moles_from_volume(1e-5, None) == 0.0


# ── Wash / harvest / sample operation ─────────────────────────────────────────

def test_wash_clears_components_and_volume(transfer_events):
    events = transfer_events + [_wash("evt-wash", "2025-01-01T00:10:00Z", "labware:plate2")]
    well = replay_plate_events(events).state["labware:plate2"]["B01"]
    assert well.components == []
    assert well.total_volume_l == 0.0


def test_wash_limited_to_named_wells(make_transfer):
    events = [
        make_transfer("e1", "2025-01-01T00:00:00Z", "labware:r", "A1", "labware:p", "A1", "5 uL",
                      source_kind="reservoir", material={"id": "m"}),
        make_transfer("e2", "2025-01-01T00:00:01Z", "labware:r", "A1", "labware:p", "A2", "5 uL",
                      source_kind="reservoir", material={"id": "m"}),
        _wash("w", "2025-01-01T00:00:02Z", "labware:p", wells=["A1"]),
    ]
    plate = replay_plate_events(events).state["labware:p"]
    assert plate["A1"].total_volume_l == 0.0
    assert math.isclose(plate["A2"].total_volume_l, 5e-6)


def test_wash_of_unknown_labware_is_noop():
    result = replay_plate_events([_wash("w", "2025-01-01T00:00:00Z", "labware:nothing")])
    assert result.state == {}


def test_harvest_creates_sample_edges_without_touching_wells(transfer_events):
    harvest = {
        "id": "evt-harvest",
        "event_type": "harvest",
        "timestamp": "2025-01-01T01:00:00Z",
        "labware": [{"@id": "labware:plate2"}],
        "details": {
            "inputs": {"labware": {"@id": "labware:plate2"}, "wells": ["B01", "B02"]},
            "outputs": [
                {"@id": "sample/S1", "label": "Lysate 1", "material": {"id": "material:lysate"}},
                {"@id": "sample/S2", "label": "Lysate 2", "material": {"id": "material:lysate"}},
            ],
        },
    }
    before = replay_plate_events(transfer_events)
    after = replay_plate_events(transfer_events + [harvest])
    assert after.state["labware:plate2"]["B01"].to_dict() == before.state["labware:plate2"]["B01"].to_dict()
    sample_edges = after.edges[len(before.edges):]
    assert [e.target.sample_id for e in sample_edges] == ["sample/S1", "sample/S2"]
    assert sample_edges[0].source.labware_id == "labware:plate2"
    assert sample_edges[0].source.well_id == "B01,B02"
    assert sample_edges[0].material_id == "material:lysate"
    assert sample_edges[0].moles is None


def test_sample_operation_from_prior_samples():
    pooling = {
        "id": "evt-pool",
        "event_type": "sample_operation",
        "timestamp": "2025-01-02T00:00:00Z",
        "labware": [],
        "details": {
            "inputs": {"samples": ["sample/S1", "sample/S2"]},
            "outputs": [{"@id": "sample/POOL", "label": "Pool", "material": {"id": "material:lysate"}}],
        },
    }
    edges = replay_plate_events([pooling]).edges
    assert len(edges) == 1
    assert edges[0].source.sample_id == "sample/S1,sample/S2"
    assert edges[0].source.key == "sample/S1,sample/S2"
    assert edges[0].target.key == "sample/POOL"


def test_harvest_without_outputs_is_skipped():
    harvest = {"id": "h", "event_type": "harvest", "timestamp": "2025-01-01T00:00:00Z",
               "details": {"inputs": {"labware": "labware:p", "wells": ["A1"]}}}
    assert replay_plate_events([harvest]).edges == []


# ── Ordering ──────────────────────────────────────────────────────────────────

def test_equal_timestamps_keep_list_order(make_transfer):
    fill = make_transfer("fill", "2025-01-01T00:00:00Z", "labware:r", "A1", "labware:p", "A1", "5 uL",
                         source_kind="reservoir", material={"id": "m"})
    wash = _wash("wash", "2025-01-01T00:00:00Z", "labware:p")

    fill_then_wash = replay_plate_events([fill, wash]).state["labware:p"]["A1"]
    assert fill_then_wash.total_volume_l == 0.0

    wash_then_fill = replay_plate_events([wash, fill]).state["labware:p"]["A1"]
    assert math.isclose(wash_then_fill.total_volume_l, 5e-6)


def test_equal_timestamps_keep_edge_order(make_transfer):
    events = [
        make_transfer(f"e{i}", "2025-01-01T00:00:00Z", "labware:r", "A1", "labware:p", f"A{i}", "1 uL",
                      source_kind="reservoir", material={"id": "m"})
        for i in range(1, 6)
    ]
    # Wells appear in the order their transfers were listed
    result = replay_plate_events(events)
    assert list(result.state["labware:p"]) == ["A1", "A2", "A3", "A4", "A5"]


def test_timestamps_sort_regardless_of_input_order(transfer_events):
    forward = replay_plate_events(transfer_events).to_dict()
    backward = replay_plate_events(list(reversed(transfer_events))).to_dict()
    assert forward == backward


def test_unparsable_timestamps_replay_first_in_list_order(make_transfer):
    fill = make_transfer("fill", "2025-01-01T00:00:00Z", "labware:r", "A1", "labware:p", "A1", "5 uL",
                         source_kind="reservoir", material={"id": "m"})
    wash = _wash("wash", "not a date", "labware:p")
    # The undated wash replays before the dated fill
    well = replay_plate_events([fill, wash]).state["labware:p"]["A1"]
    assert math.isclose(well.total_volume_l, 5e-6)


# ── Robustness ────────────────────────────────────────────────────────────────

def test_malformed_events_are_skipped(transfer_events):
    junk = [
        None,
        "transfer",
        {"id": "no-type", "timestamp": "2025-01-01T00:00:00Z"},
        {"id": "no-labware", "event_type": "transfer", "timestamp": "2025-01-01T00:00:00Z",
         "details": {"volume": "5 uL"}},
        {"id": "no-details", "event_type": "transfer", "timestamp": "2025-01-01T00:00:00Z"},
        {"id": "wash-no-labware", "event_type": "wash", "timestamp": "2025-01-01T00:00:00Z", "details": {}},
        {"id": "legacy", "event_type": "centrifuge", "timestamp": "2025-01-01T00:00:00Z", "details": {}},
    ]
    clean = replay_plate_events(transfer_events).to_dict()
    noisy = replay_plate_events(junk + transfer_events).to_dict()
    assert noisy == clean


def test_read_and_incubate_change_nothing(transfer_events):
    anchors = [
        {"id": "r", "event_type": "read", "timestamp": "2025-01-01T00:06:00Z",
         "labware": [{"@id": "labware:plate2"}], "details": {"labware": "labware:plate2"}},
        {"id": "i", "event_type": "incubate", "timestamp": "2025-01-01T00:07:00Z",
         "labware": [{"@id": "labware:plate2"}], "details": {"labware": "labware:plate2"}},
    ]
    assert replay_plate_events(transfer_events + anchors).to_dict() == replay_plate_events(transfer_events).to_dict()


def test_focus_labware_limits_replay(transfer_events):
    result = replay_plate_events(transfer_events, ReplayOptions(focus_labware_id="labware:res1"))
    assert "labware:plate2" not in result.state
    assert "labware:plate1" in result.state


def test_replay_is_repeatable_and_does_not_mutate_input(transfer_events):
    snapshot = copy.deepcopy(transfer_events)
    first = replay_plate_events(transfer_events)
    second = replay_plate_events(transfer_events)
    assert first.to_dict() == second.to_dict()
    assert transfer_events == snapshot
    # Fresh state trees per call
    first.state["labware:plate1"]["A01"].total_volume_l = 99.0
    assert second.state["labware:plate1"]["A01"].total_volume_l != 99.0


def test_empty_and_invalid_event_lists():
    assert replay_plate_events(None).to_dict() == {"state": {}, "edges": []}
    assert replay_plate_events([]).to_dict() == {"state": {}, "edges": []}
    with pytest.raises(InvalidInput):
        replay_plate_events({"id": "not-a-list"})
    with pytest.raises(InvalidInput):
        replay_plate_events("transfer")


def test_same_well_transfer_conserves_moles():
    fill = _seeded_transfer("reservoir", volume="100 uL")
    mix = {
        "id": "evt-mix",
        "event_type": "transfer",
        "timestamp": "2025-01-01T00:01:00Z",
        "labware": [{"@id": "labware:dst"}],
        "details": {
            "source": {"labware": {"@id": "labware:dst", "kind": "reservoir"}, "wells": {"B1": {}}},
            "target": {"labware": {"@id": "labware:dst", "kind": "reservoir"}, "wells": {"B1": {}}},
            "mapping": [{"source_well": "B1", "target_well": "B1"}],
            "volume": "50 uL",
        },
    }
    result = replay_plate_events([fill, mix])
    well = result.well("labware:dst", "B1")
    # 1e-6 mol in 100 uL, half of it added back by the non-depleting mix
    assert math.isclose(well.total_moles, 1.5e-6)
    assert math.isclose(well.total_volume_l, 1.5e-4)
    assert [e.event_id for e in result.edges] == ["evt-pull", "evt-mix"]


def test_transfer_without_valid_pairs_leaves_no_labware(make_transfer):
    event = make_transfer("e1", "2025-01-01T00:00:00Z", "labware:a", "A1", "labware:b", "B1", "5 uL")
    event["details"]["mapping"] = [{"source_well": "A1"}, {"target_well": "B1"}, "junk"]
    assert replay_plate_events([event]).state == {}
