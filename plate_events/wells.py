"""
Layer 1: Well State Model
=========================
In-memory contents of a single well: total volume plus the list of material
components that make it up, each remembering which event and source well it
came from.

Well states are owned by one replay pass. A plate is a plain dict of
well id -> WellState, created lazily as wells are first touched.
"""

from __future__ import annotations
from dataclasses import dataclass, field, replace
from typing import Dict, List
import math


@dataclass
class MaterialComponent:
    """One contribution of a single material to a well."""
    material_id: str
    moles: float = 0.0
    volume_l: float = 0.0
    source_event_id: str = ""
    source_labware: str = ""
    source_well: str = ""

    @property
    def merge_key(self) -> tuple:
        return (self.material_id, self.source_event_id, self.source_well)

    def to_dict(self) -> dict:
        return {
            "material_id": self.material_id,
            "moles": self.moles,
            "volume_l": self.volume_l,
            "source_event_id": self.source_event_id,
            "source_labware": self.source_labware,
            "source_well": self.source_well,
        }


@dataclass
class WellState:
    total_volume_l: float = 0.0
    components: List[MaterialComponent] = field(default_factory=list)

    @property
    def total_moles(self) -> float:
        return sum(c.moles for c in self.components)

    def material_ids(self) -> List[str]:
        seen: List[str] = []
        for c in self.components:
            if c.material_id not in seen:
                seen.append(c.material_id)
        return seen

    def to_dict(self) -> dict:
        return {
            "total_volume_l": self.total_volume_l,
            "components": [c.to_dict() for c in self.components],
        }


PlateState = Dict[str, WellState]


def ensure_well_state(plate: PlateState, well_id: str) -> WellState:
    well = plate.get(well_id)
    if well is None:
        well = plate[well_id] = WellState()
    return well


def add_component(well: WellState, component: MaterialComponent) -> MaterialComponent:
    """Merge into the component with the same (material, event, source well) or append a copy."""
    for existing in well.components:
        if existing.merge_key == component.merge_key:
            existing.moles += component.moles
            existing.volume_l += component.volume_l
            return existing
    added = replace(component)
    well.components.append(added)
    return added


def add_volume(well: WellState, delta_l: float):
    if not _finite(delta_l):
        return
    well.total_volume_l = max(0.0, well.total_volume_l + delta_l)


def subtract_volume(well: WellState, delta_l: float):
    if not _finite(delta_l):
        return
    well.total_volume_l = max(0.0, well.total_volume_l - delta_l)


def remove_all_components(well: WellState):
    well.components = []
    well.total_volume_l = 0.0


def clone_well_state(well: WellState) -> WellState:
    return WellState(
        total_volume_l=well.total_volume_l,
        components=[replace(c) for c in well.components],
    )


def _finite(value) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value)
