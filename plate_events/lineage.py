"""
Layer 4: Lineage Graph
======================
Turns the replay edge list into nodes + edges. Nodes are keyed by sample id,
or "labware:well" for well nodes; the first node seen for a key wins. Edges
are kept as-is: two transfers between the same wells are two provenance
events.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from typing import Dict, Iterable, List

from plate_events.replay import LineageEdge, LineageNode


@dataclass
class LineageGraph:
    nodes: List[LineageNode] = field(default_factory=list)
    edges: List[LineageEdge] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "nodes": [dict(n.to_dict(), key=n.key) for n in self.nodes],
            "edges": [e.to_dict() for e in self.edges],
        }


def build_lineage_graph(edges: Iterable[LineageEdge]) -> LineageGraph:
    nodes: Dict[str, LineageNode] = {}
    edge_list: List[LineageEdge] = []
    for edge in edges:
        nodes.setdefault(edge.source.key, edge.source)
        nodes.setdefault(edge.target.key, edge.target)
        edge_list.append(edge)
    return LineageGraph(nodes=list(nodes.values()), edges=edge_list)
