"""
Layer 2: Event Replay Engine
============================
Rebuilds per-labware well contents by applying Plate Events in order.

Each call to replay_plate_events() starts from an empty state tree:

  transfer          – move a fraction of every source component into the target
                      well; deplete the source unless its labware is an
                      inexhaustible reservoir / tube rack
  wash              – reset named wells (or every known well) to empty
  harvest           – lineage edge well(s) -> output sample, no volume change
  sample_operation  – lineage edge well(s)/sample(s) -> output sample
  read / incubate / other – timeline anchors only

Events missing the references a handler needs are skipped, never raised on.
Source wells that were never filled by an earlier event are seeded from the
material declared on the transfer itself (nominal stock concentration times
volume). That estimate assumes the source was never a transfer destination.
"""

from __future__ import annotations
from copy import deepcopy
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional
import logging

from plate_events.events import (
    EventType, event_details, event_touches_labware, labware_ref_id,
    labware_ref_kind, section, stable_sort_events,
)
from plate_events.units import normalize_concentration, normalize_volume
from plate_events.wells import (
    MaterialComponent, PlateState, WellState, add_component, add_volume,
    ensure_well_state, remove_all_components, subtract_volume,
)

logger = logging.getLogger(__name__)

# Whether pulling from a source of this kind reduces its recorded contents
DEFAULT_DEPLETION = {
    "plate": True,
    "reservoir": False,
    "tube_rack": False,
}
# Unknown kinds are assumed to be finite sources
UNKNOWN_KIND_DEPLETES = True


# ── Results ───────────────────────────────────────────────────────────────────

@dataclass
class LineageNode:
    labware_id: str = ""
    well_id: str = ""
    sample_id: str = ""
    label: str = ""

    @property
    def key(self) -> str:
        return self.sample_id or f"{self.labware_id}:{self.well_id}"

    def to_dict(self) -> dict:
        d = {}
        if self.labware_id or not self.sample_id:
            d["labware_id"] = self.labware_id
            d["well_id"] = self.well_id
        if self.sample_id:
            d["sample_id"] = self.sample_id
        if self.label:
            d["label"] = self.label
        return d


@dataclass
class LineageEdge:
    event_id: str
    source: LineageNode
    target: LineageNode
    material_id: str = ""
    moles: Optional[float] = None   # harvest / sample_operation edges carry no quantity

    def to_dict(self) -> dict:
        return {
            "event_id": self.event_id,
            "from": self.source.to_dict(),
            "to": self.target.to_dict(),
            "material_id": self.material_id,
            "moles": self.moles,
        }


ReplayState = Dict[str, PlateState]


@dataclass
class ReplayResult:
    state: ReplayState = field(default_factory=dict)
    edges: List[LineageEdge] = field(default_factory=list)

    def well(self, labware_id: str, well_id: str) -> Optional[WellState]:
        return self.state.get(labware_id, {}).get(well_id)

    def to_dict(self) -> dict:
        return {
            "state": state_to_dict(self.state),
            "edges": [e.to_dict() for e in self.edges],
        }


@dataclass
class ReplayOptions:
    focus_labware_id: Optional[str] = None
    depletion_by_labware_id: Dict[str, bool] = field(default_factory=dict)
    default_depletion: Dict[str, bool] = field(default_factory=lambda: dict(DEFAULT_DEPLETION))
    unknown_kind_depletes: bool = UNKNOWN_KIND_DEPLETES


def state_to_dict(state: ReplayState) -> dict:
    return {
        labware_id: {well_id: well.to_dict() for well_id, well in plate.items()}
        for labware_id, plate in state.items()
    }


# ── Replay ────────────────────────────────────────────────────────────────────

def replay_plate_events(events, options: Optional[ReplayOptions] = None) -> ReplayResult:
    """
    Apply events in stable timestamp order and return (state, lineage edges).
    The input events are never mutated.
    """
    options = options or ReplayOptions()
    result = ReplayResult()

    for event in stable_sort_events(events):
        if not isinstance(event, Mapping):
            continue
        event_type = EventType.parse(event.get("event_type"))
        if event_type is None:
            logger.debug("Skipping event %r: no event_type", event.get("id"))
            continue
        if options.focus_labware_id and not event_touches_labware(event, options.focus_labware_id):
            continue

        if event_type == EventType.TRANSFER:
            _apply_transfer(result, event, options)
        elif event_type == EventType.WASH:
            _apply_wash(result.state, event)
        elif event_type == EventType.HARVEST:
            _apply_harvest(result.edges, event)
        elif event_type == EventType.SAMPLE_OPERATION:
            _apply_sample_operation(result.edges, event)
        elif event_type in (EventType.READ, EventType.INCUBATE, EventType.OTHER):
            pass

    return result


def resolve_depletion(options: Optional[ReplayOptions], labware_id: Optional[str],
                      kind: Optional[str]) -> bool:
    """Explicit per-labware override, then the kind table, then the unknown-kind default."""
    options = options or ReplayOptions()
    if labware_id and labware_id in options.depletion_by_labware_id:
        return bool(options.depletion_by_labware_id[labware_id])
    normalized = (kind or "").lower()
    if normalized and normalized in options.default_depletion:
        return bool(options.default_depletion[normalized])
    return options.unknown_kind_depletes


def estimate_moles_from_volume(volume_l: float, material: Any) -> float:
    """stock_concentration (molar) × volume; 0 when the concentration can't be resolved."""
    if not isinstance(material, Mapping):
        return 0.0
    molar = normalize_concentration(material.get("stock_concentration"),
                                    molar_mass=material.get("molar_mass"), fallback=0.0)
    return molar * volume_l


def resolve_mapping(details: Mapping) -> List[dict]:
    """Explicit mapping list, else one pair per target well."""
    mapping = details.get("mapping")
    if isinstance(mapping, list) and mapping:
        return [dict(pair) for pair in mapping if isinstance(pair, Mapping)]
    source_wells = section(section(details, "source"), "wells")
    target_wells = section(section(details, "target"), "wells")
    pairs = []
    for target_well, config in target_wells.items():
        config = config if isinstance(config, Mapping) else {}
        source_config = section(source_wells, target_well)
        pairs.append({
            "source_well": source_config.get("well") or config.get("source_well") or target_well,
            "target_well": target_well,
            "volume": config.get("volume"),
        })
    return pairs


# ── Handlers ──────────────────────────────────────────────────────────────────

def _apply_transfer(result: ReplayResult, event: Mapping, options: ReplayOptions):
    details = event_details(event)
    source, target = section(details, "source"), section(details, "target")
    source_labware = labware_ref_id(source.get("labware"))
    target_labware = labware_ref_id(target.get("labware"))
    if not source_labware or not target_labware:
        logger.debug("Skipping transfer %r: missing source or target labware", event.get("id"))
        return

    event_id = str(event.get("id") or "")
    component_event_id = event_id or str(event.get("timestamp") or "")
    default_volume = normalize_volume(details.get("volume"), 0.0)
    depleting = resolve_depletion(options, source_labware, labware_ref_kind(source.get("labware")))
    target_wells = section(target, "wells")

    for pair in resolve_mapping(details):
        src_well_id = pair.get("source_well")
        dst_well_id = pair.get("target_well")
        if not src_well_id or not dst_well_id:
            continue
        volume_l = normalize_volume(pair.get("volume") or details.get("volume"), default_volume)

        src_well = ensure_well_state(result.state.setdefault(source_labware, {}), src_well_id)
        dst_well = ensure_well_state(result.state.setdefault(target_labware, {}), dst_well_id)
        _hydrate_source_well(src_well, details, source_labware, src_well_id,
                             volume_l, component_event_id)

        target_config = section(target_wells, dst_well_id)
        material = target_config.get("material") or details.get("material")
        material_id = (target_config.get("material_id")
                       or (material.get("id") if isinstance(material, Mapping) else None)
                       or details.get("material_id")
                       or pair.get("material_id")
                       or "")
        fraction = min(volume_l / src_well.total_volume_l, 1.0) if src_well.total_volume_l > 0 else 0.0

        if src_well.components:
            # source and target can be the same well
            for component in list(src_well.components):
                moved_moles = fraction * component.moles
                if component.volume_l and src_well.total_volume_l:
                    moved_volume = volume_l * component.volume_l / src_well.total_volume_l
                else:
                    moved_volume = volume_l
                moved_material = component.material_id or material_id
                add_component(dst_well, MaterialComponent(
                    material_id=moved_material,
                    moles=moved_moles,
                    volume_l=moved_volume,
                    source_event_id=component_event_id,
                    source_labware=source_labware,
                    source_well=src_well_id,
                ))
                result.edges.append(LineageEdge(
                    event_id=event_id,
                    source=LineageNode(labware_id=source_labware, well_id=src_well_id),
                    target=LineageNode(labware_id=target_labware, well_id=dst_well_id),
                    material_id=moved_material,
                    moles=moved_moles,
                ))
        elif material_id:
            add_component(dst_well, MaterialComponent(
                material_id=material_id,
                moles=estimate_moles_from_volume(volume_l, material),
                volume_l=volume_l,
                source_event_id=component_event_id,
                source_labware=source_labware,
                source_well=src_well_id,
            ))

        add_volume(dst_well, volume_l)
        if depleting and volume_l > 0:
            _deplete_source(src_well, volume_l, fraction)


def _deplete_source(well: WellState, volume_l: float, fraction: float):
    subtract_volume(well, volume_l)
    if fraction > 0 and well.components:
        for component in well.components:
            component.moles = max(0.0, component.moles - fraction * component.moles)
            component.volume_l = max(0.0, component.volume_l - fraction * component.volume_l)
        well.components = [c for c in well.components if c.moles > 0]
    if well.total_volume_l == 0:
        remove_all_components(well)


def _hydrate_source_well(well: WellState, details: Mapping, source_labware: str,
                         well_id: str, volume_l: float, event_id: str):
    """Seed a component-less source well from the material declared on the transfer."""
    if well.components:
        return
    config = section(section(section(details, "source"), "wells"), well_id)
    material = config.get("material") or details.get("material")
    material_id = (config.get("material_id")
                   or (material.get("id") if isinstance(material, Mapping) else None)
                   or details.get("material_id"))
    if not material_id:
        return
    seeded_volume = normalize_volume(config.get("volume"), volume_l)
    add_component(well, MaterialComponent(
        material_id=material_id,
        moles=estimate_moles_from_volume(seeded_volume, material),
        volume_l=seeded_volume,
        source_event_id=event_id,
        source_labware=source_labware,
        source_well=well_id,
    ))
    add_volume(well, seeded_volume)


def _apply_wash(state: ReplayState, event: Mapping):
    details = event_details(event)
    labware_id = labware_ref_id(details.get("labware"))
    if not labware_id:
        logger.debug("Skipping wash %r: no labware", event.get("id"))
        return
    plate = state.get(labware_id)
    if plate is None:
        return
    wells = details.get("wells")
    well_ids = list(wells) if isinstance(wells, list) and wells else list(plate.keys())
    for well_id in well_ids:
        well = plate.get(well_id)
        if well is not None:
            remove_all_components(well)


def _apply_harvest(edges: List[LineageEdge], event: Mapping):
    details = event_details(event)
    inputs = section(details, "inputs")
    outputs = _outputs(details)
    if not outputs:
        logger.debug("Skipping harvest %r: no outputs", event.get("id"))
        return
    source = LineageNode(
        labware_id=labware_ref_id(inputs.get("labware")) or "",
        well_id=_joined(inputs.get("wells")),
    )
    for out in outputs:
        edges.append(_sample_edge(event, deepcopy(source), out))


def _apply_sample_operation(edges: List[LineageEdge], event: Mapping):
    details = event_details(event)
    inputs = section(details, "inputs")
    outputs = _outputs(details)
    if not outputs:
        logger.debug("Skipping sample operation %r: no outputs", event.get("id"))
        return
    source = LineageNode(
        labware_id=labware_ref_id(inputs.get("labware")) or "",
        well_id=_joined(inputs.get("wells")),
        sample_id=_joined(inputs.get("samples")),
    )
    for out in outputs:
        edges.append(_sample_edge(event, deepcopy(source), out))


def _sample_edge(event: Mapping, source: LineageNode, output: Mapping) -> LineageEdge:
    material = section(output, "material")
    return LineageEdge(
        event_id=str(event.get("id") or ""),
        source=source,
        target=LineageNode(sample_id=str(output.get("@id") or ""), label=str(output.get("label") or "")),
        material_id=str(material.get("id") or ""),
    )


def _outputs(details: Mapping) -> List[Mapping]:
    outputs = details.get("outputs")
    if not isinstance(outputs, list):
        return []
    return [out for out in outputs if isinstance(out, Mapping)]


def _joined(values: Any) -> str:
    if not isinstance(values, list):
        return ""
    return ",".join(str(v) for v in values)
