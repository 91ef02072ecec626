from plate_events.lineage import build_lineage_graph
from plate_events.replay import LineageEdge, LineageNode, replay_plate_events


def _edge(event_id, source, target, material="m"):
    return LineageEdge(event_id=event_id, source=source, target=target, material_id=material, moles=1.0)


def test_nodes_deduplicated_edges_kept():
    a1 = LineageNode(labware_id="labware:p", well_id="A1")
    b1 = LineageNode(labware_id="labware:q", well_id="B1")
    edges = [_edge("e1", a1, b1), _edge("e2", a1, b1), _edge("e3", b1, a1)]
    graph = build_lineage_graph(edges)
    assert [n.key for n in graph.nodes] == ["labware:p:A1", "labware:q:B1"]
    assert [e.event_id for e in graph.edges] == ["e1", "e2", "e3"]


def test_first_seen_node_wins():
    first = LineageNode(sample_id="sample/S1", label="first")
    second = LineageNode(sample_id="sample/S1", label="second")
    well = LineageNode(labware_id="labware:p", well_id="A1")
    graph = build_lineage_graph([_edge("e1", well, first), _edge("e2", well, second)])
    assert len(graph.nodes) == 2
    assert graph.nodes[1] is first


def test_sample_key_beats_well_key():
    node = LineageNode(labware_id="labware:p", well_id="A1", sample_id="sample/S9")
    assert node.key == "sample/S9"
    assert LineageNode(labware_id="labware:p").key == "labware:p:"


def test_graph_from_replay(transfer_events):
    harvest = {
        "id": "evt-harvest",
        "event_type": "harvest",
        "timestamp": "2025-01-01T01:00:00Z",
        "details": {
            "inputs": {"labware": "labware:plate2", "wells": ["B01"]},
            "outputs": [{"@id": "sample/S1", "label": "Lysate", "material": {"id": "material:lysate"}}],
        },
    }
    graph = build_lineage_graph(replay_plate_events(transfer_events + [harvest]).edges)
    keys = [n.key for n in graph.nodes]
    assert keys == ["labware:res1:SRC1", "labware:plate1:A01", "labware:plate2:B01", "sample/S1"]
    d = graph.to_dict()
    assert d["nodes"][-1] == {"sample_id": "sample/S1", "label": "Lysate", "key": "sample/S1"}
    assert len(d["edges"]) == 3
    assert d["edges"][-1]["from"] == {"labware_id": "labware:plate2", "well_id": "B01"}


def test_empty_graph():
    graph = build_lineage_graph([])
    assert graph.nodes == [] and graph.edges == []
