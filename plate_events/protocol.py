"""
Layer 5: Protocol Instantiation
===============================
Expands a reusable protocol template into concrete Plate Events.

A template is {metadata, data: {events, labwareRoles}}. Its events refer to
labware by role name ("cell_plate", "media_reservoir") and may hold
${param} placeholders in any string field. A ProtocolBinding supplies:

  labware        – role -> concrete labware id
  parameters     – name -> value for ${name}
  run_id         – copied onto every event
  base_timestamp – event i is stamped base + i seconds

Unbound roles fall back to labwareRoles[role].default_labware_id, then to
"labware/<role>"; unknown parameters become "". The reverse direction,
promoting a recorded run back into a template, lives at the bottom.
"""

from __future__ import annotations
from copy import deepcopy
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Mapping, Optional
import logging
import re

from plate_events.events import EventType, InvalidInput, labware_ref_id, labware_ref_kind, section

logger = logging.getLogger(__name__)

PLACEHOLDER_RE = re.compile(r"\$\{([^}]+)\}")
DEFAULT_ROLE_KIND = "plate"
EVENT_SPACING = timedelta(seconds=1)


@dataclass
class ProtocolBinding:
    labware: Dict[str, str] = field(default_factory=dict)
    parameters: Dict[str, Any] = field(default_factory=dict)
    run_id: str = ""
    base_timestamp: Optional[Any] = None   # ISO string or datetime; now() when unset
    adapters: Dict[str, dict] = field(default_factory=dict)

    # Segment activity fields
    activity_id: str = ""
    label: str = ""
    started_at: str = ""
    ended_at: str = ""
    notes: str = ""

    @classmethod
    def from_dict(cls, d: Optional[Mapping]) -> "ProtocolBinding":
        d = d or {}
        return cls(
            labware=dict(d.get("labware") or {}),
            parameters=dict(d.get("parameters") or {}),
            run_id=d.get("run_id") or d.get("runId") or "",
            base_timestamp=d.get("base_timestamp") or d.get("timestamp"),
            adapters=dict(d.get("adapters") or {}),
            activity_id=d.get("activity_id") or "",
            label=d.get("label") or "",
            started_at=d.get("started_at") or "",
            ended_at=d.get("ended_at") or "",
            notes=d.get("notes") or "",
        )


@dataclass
class _Context:
    binding: ProtocolBinding
    labware_roles: Mapping
    base: datetime
    index: int = 0

    @property
    def timestamp(self) -> str:
        return format_timestamp(self.base + self.index * EVENT_SPACING)


# ── Public API ────────────────────────────────────────────────────────────────

def instantiate_protocol(template: Mapping, binding: Optional[ProtocolBinding] = None) -> List[dict]:
    binding = binding or ProtocolBinding()
    events, labware_roles = _template_sections(template)
    ctx = _Context(binding=binding, labware_roles=labware_roles,
                   base=_parse_base_timestamp(binding.base_timestamp))
    instantiated = []
    for index, event in enumerate(events):
        ctx.index = index
        instantiated.append(_instantiate_event(event if isinstance(event, Mapping) else {}, ctx))
    return instantiated


def build_protocol_segment_activity(template: Mapping,
                                    binding: Optional[ProtocolBinding] = None) -> dict:
    """Group the instantiated events into a protocol_segment activity that points back at the template."""
    binding = binding or ProtocolBinding()
    if not binding.base_timestamp:
        binding = _with_base(binding, datetime.now(timezone.utc))
    events = instantiate_protocol(template, binding)
    metadata = section(template, "metadata")
    protocol_ref = {
        "@id": metadata.get("recordId") or metadata.get("id") or metadata.get("@id") or "",
        "family": metadata.get("family") or "",
        "version": metadata.get("version") or "",
        "label": metadata.get("title") or metadata.get("label") or "",
    }
    base = _parse_base_timestamp(binding.base_timestamp)
    activity = {
        "id": binding.activity_id or protocol_ref["@id"] or f"segment-{int(base.timestamp() * 1000)}",
        "kind": "protocol_segment",
        "label": binding.label or protocol_ref["label"] or protocol_ref["@id"] or "Protocol segment",
        "protocol": protocol_ref,
        "plate_events": events,
    }
    if binding.labware:
        activity["labware_bindings"] = dict(binding.labware)
    if binding.parameters:
        activity["parameters"] = deepcopy(binding.parameters)
    if binding.started_at:
        activity["started_at"] = binding.started_at
    if binding.ended_at:
        activity["ended_at"] = binding.ended_at
    if binding.notes:
        activity["notes"] = binding.notes
    return activity


def resolve_expression(value: Any, parameters: Mapping) -> Any:
    if not isinstance(value, str):
        return value

    def _sub(match):
        resolved = parameters.get(match.group(1).strip())
        return "" if resolved is None else str(resolved)

    return PLACEHOLDER_RE.sub(_sub, value)


def resolve_deep(value: Any, parameters: Mapping) -> Any:
    """Copy of value with every string placeholder resolved."""
    if isinstance(value, Mapping):
        return {k: resolve_deep(v, parameters) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [resolve_deep(v, parameters) for v in value]
    return resolve_expression(value, parameters)


def resolve_labware_ref(role: str, labware_roles: Mapping, assignments: Mapping) -> dict:
    role_config = section(labware_roles, role) if role else {}
    bound = assignments.get(role) if role else None
    labware_id = bound or role_config.get("default_labware_id") or f"labware/{role}"
    return {
        "@id": labware_id,
        "kind": role_config.get("kind") or DEFAULT_ROLE_KIND,
        "label": labware_id,
    }


def dedupe_labware(refs) -> List[dict]:
    seen = set()
    result = []
    for ref in refs:
        ref_id = labware_ref_id(ref)
        if not ref_id or ref_id in seen:
            continue
        seen.add(ref_id)
        result.append(ref)
    return result


def format_timestamp(dt: datetime) -> str:
    return dt.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


# ── Per-type builders ─────────────────────────────────────────────────────────

def _instantiate_event(event: Mapping, ctx: _Context) -> dict:
    event_type = EventType.parse(event.get("event_type")) or EventType.OTHER
    if event_type == EventType.TRANSFER:
        return _instantiate_transfer(event, ctx)
    elif event_type == EventType.INCUBATE:
        return _instantiate_incubate(event, ctx)
    elif event_type == EventType.READ:
        return _instantiate_read(event, ctx)
    elif event_type == EventType.WASH:
        return _instantiate_wash(event, ctx)
    elif event_type in (EventType.HARVEST, EventType.SAMPLE_OPERATION):
        return _instantiate_sample_event(event, event_type, ctx)
    return _instantiate_other(event, ctx)


def _base_event(event: Mapping, event_type: EventType, ctx: _Context, labware: List[dict],
                details: dict) -> dict:
    label = event.get("label") or ""
    return {
        "id": event.get("id") or label or f"event-{ctx.timestamp}",
        "event_type": event_type.value,
        "timestamp": ctx.timestamp,
        "run": ctx.binding.run_id,
        "label": label,
        "labware": dedupe_labware(labware),
        "details": dict(details, type=event_type.value),
    }


def _ref(role: Any, ctx: _Context) -> dict:
    return resolve_labware_ref(role if isinstance(role, str) else "", ctx.labware_roles,
                               ctx.binding.labware)


def _param(value: Any, ctx: _Context) -> Any:
    return resolve_deep(value, ctx.binding.parameters)


def _notes(event: Mapping, details: Mapping, ctx: _Context) -> str:
    return _param(details.get("notes") or event.get("notes") or "", ctx)


def _instantiate_transfer(event: Mapping, ctx: _Context) -> dict:
    details = section(event, "details")
    source_ref = _ref(details.get("source_role"), ctx)
    target_ref = _ref(details.get("target_role"), ctx)

    source_wells: Dict[str, dict] = {}
    target_wells: Dict[str, dict] = {}
    mapping: List[dict] = []
    entries = details.get("mapping")
    for entry in entries if isinstance(entries, list) else []:
        if not isinstance(entry, Mapping):
            continue
        source_well = _param(entry.get("source_well") or "", ctx)
        target_well = _param(entry.get("target_well") or "", ctx)
        if not source_well or not target_well:
            continue
        source_wells[source_well] = {"label": source_well, "well": source_well}
        target_wells[target_well] = {"well": target_well, "source_well": source_well}
        pair = {"source_well": source_well, "target_well": target_well}
        if entry.get("volume"):
            pair["volume"] = _param(entry.get("volume"), ctx)
            target_wells[target_well]["volume"] = pair["volume"]
        mapping.append(pair)

    return _base_event(event, EventType.TRANSFER, ctx, [source_ref, target_ref], {
        "source": {"labware": source_ref, "wells": source_wells},
        "target": {"labware": target_ref, "wells": target_wells},
        "mapping": mapping,
        "volume": _param(details.get("volume") or "", ctx),
        "material": _param(details.get("material"), ctx),
        "pipetting_hint": _param(details.get("pipetting_hint"), ctx),
        "notes": _notes(event, details, ctx),
        "adapter_hints": _adapter_hints(event, ctx),
    })


def _instantiate_incubate(event: Mapping, ctx: _Context) -> dict:
    details = section(event, "details")
    ref = _ref(details.get("labware_role"), ctx)
    return _base_event(event, EventType.INCUBATE, ctx, [ref], {
        "labware": ref,
        "wells": _param(details.get("wells") or [], ctx),
        "duration": _param(details.get("duration") or "", ctx),
        "temperature": _param(details.get("temperature") or "", ctx),
        "atmosphere": _param(details.get("atmosphere") or "", ctx),
        "notes": _notes(event, details, ctx),
    })


def _instantiate_read(event: Mapping, ctx: _Context) -> dict:
    details = section(event, "details")
    ref = _ref(details.get("labware_role"), ctx)
    return _base_event(event, EventType.READ, ctx, [ref], {
        "labware": ref,
        "instrument": _param(details.get("instrument") or "", ctx),
        "mode": _param(details.get("mode") or "", ctx),
        "channels": _param(details.get("channels") or [], ctx),
        "result_files": _param(details.get("result_files") or [], ctx),
        "notes": _notes(event, details, ctx),
        "adapter_hints": _adapter_hints(event, ctx),
    })


def _instantiate_wash(event: Mapping, ctx: _Context) -> dict:
    details = section(event, "details")
    ref = _ref(details.get("labware_role"), ctx)
    cycles = details.get("cycles")
    return _base_event(event, EventType.WASH, ctx, [ref], {
        "labware": ref,
        "wells": _param(details.get("wells") or [], ctx),
        "buffer": _param(details.get("buffer"), ctx),
        "cycles": _param("" if cycles is None else cycles, ctx),
        "volume_per_cycle": _param(details.get("volume_per_cycle") or "", ctx),
        "notes": _notes(event, details, ctx),
    })


def _instantiate_sample_event(event: Mapping, event_type: EventType, ctx: _Context) -> dict:
    details = section(event, "details")
    inputs = section(details, "inputs")
    role = inputs.get("labware_role") or details.get("labware_role")
    ref = _ref(role, ctx) if role else None
    return _base_event(event, event_type, ctx, [ref] if ref else [], {
        "inputs": {
            "labware": ref,
            "wells": _param(inputs.get("wells") or [], ctx),
            "samples": _param(inputs.get("samples") or [], ctx),
        },
        "outputs": _param(details.get("outputs") or [], ctx),
        "notes": _notes(event, details, ctx),
    })


def _instantiate_other(event: Mapping, ctx: _Context) -> dict:
    details = section(event, "details")
    role = details.get("labware_role")
    ref = _ref(role, ctx) if role else None
    label = event.get("label") or ""
    return _base_event(event, EventType.OTHER, ctx, [ref] if ref else [], {
        "name": _param(details.get("name") or label or "custom", ctx),
        "description": _param(details.get("description") or event.get("notes") or "", ctx),
        "labware": ref,
        "metadata": _param(details.get("metadata") or {}, ctx),
        "adapter_hints": _adapter_hints(event, ctx),
    })


def _adapter_hints(event: Mapping, ctx: _Context) -> dict:
    hints = {}
    for name, config in ctx.binding.adapters.items():
        if not isinstance(config, Mapping):
            continue
        hints[name] = {
            "protocol_event_id": event.get("id") or "",
            "phase": event.get("phase") or "",
            "metadata": deepcopy(config.get("metadata")),
        }
    return hints


# ── Template / binding checks ─────────────────────────────────────────────────

def _template_sections(template: Any):
    if not isinstance(template, Mapping):
        raise InvalidInput("Protocol template must be a mapping")
    data = template.get("data")
    events = data.get("events") if isinstance(data, Mapping) else None
    if not isinstance(events, list):
        raise InvalidInput("Protocol template has no data.events list")
    return events, section(data, "labwareRoles")


def _parse_base_timestamp(value: Any) -> datetime:
    if value is None or value == "":
        return datetime.now(timezone.utc)
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, str):
        text = value.strip()
        if text.endswith(("Z", "z")):
            text = text[:-1] + "+00:00"
        try:
            dt = datetime.fromisoformat(text)
        except ValueError:
            raise InvalidInput(f"Unparsable base timestamp: {value!r}")
    else:
        raise InvalidInput(f"Unsupported base timestamp: {value!r}")
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def _with_base(binding: ProtocolBinding, base: datetime) -> ProtocolBinding:
    copy = deepcopy(binding)
    copy.base_timestamp = base
    return copy


# ── Run -> protocol promotion ─────────────────────────────────────────────────

def mapping_from_target(target: Any) -> List[dict]:
    wells = section(target, "wells")
    return [{"source_well": well, "target_well": well} for well in wells]


def resolve_role(labware_ref: Any, labware_map: Mapping, fallback_role: str = "") -> str:
    labware_id = labware_ref_id(labware_ref)
    for role, bound_id in labware_map.items():
        if bound_id == labware_id:
            return role
    return fallback_role or ""


def promote_events(events, labware_map: Optional[Mapping] = None,
                   volume_param: Optional[str] = None) -> List[dict]:
    """
    Strip concrete labware / timestamps from recorded events so they can be
    reused as template events. Transfer volumes become ${volume_param} when
    a parameter name is given.
    """
    labware_map = labware_map or {}
    promoted = []
    for event in events or []:
        if not isinstance(event, Mapping) or not event.get("event_type"):
            continue
        details = section(event, "details")
        if event.get("event_type") != EventType.TRANSFER.value:
            kept = {k: deepcopy(v) for k, v in details.items() if k != "timestamp"}
            labware_id = labware_ref_id(details.get("labware"))
            if labware_id:
                role = resolve_role(labware_id, labware_map)
                if role:
                    kept.pop("labware", None)
                    kept["labware_role"] = role
            promoted.append({
                "event_type": event["event_type"],
                "label": event.get("label") or event["event_type"],
                "notes": event.get("notes") or "",
                "details": kept,
            })
            continue
        source, target = section(details, "source"), section(details, "target")
        mapping = details.get("mapping")
        if not isinstance(mapping, list) or not mapping:
            mapping = mapping_from_target(target)
        promoted.append({
            "event_type": EventType.TRANSFER.value,
            "label": event.get("label") or "Transfer",
            "notes": event.get("notes") or "",
            "details": {
                "type": EventType.TRANSFER.value,
                "source_role": resolve_role(source.get("labware"), labware_map,
                                            details.get("source_role")) or "source_role",
                "target_role": resolve_role(target.get("labware"), labware_map,
                                            details.get("target_role")) or "target_role",
                "mapping": deepcopy(mapping),
                "mapping_spec": deepcopy(details.get("mapping_spec")),
                "volume": f"${{{volume_param}}}" if volume_param else details.get("volume") or "",
                "material": deepcopy(details.get("material")),
            },
        })
    return promoted


def build_protocol_template(events, labware_map: Optional[Mapping] = None, *,
                            volume_param: Optional[str] = None, family: str = "",
                            version: str = "0.1.0", title: str = "Promoted protocol") -> dict:
    labware_map = labware_map or {}
    kinds = _kinds_by_labware_id(events)
    labware_roles = {
        role: {"default_labware_id": labware_id, "kind": kinds.get(labware_id, DEFAULT_ROLE_KIND)}
        for role, labware_id in labware_map.items()
    }
    promoted = promote_events(events, labware_map, volume_param)
    logger.debug("Promoted %d events into template %r", len(promoted), title)
    return {
        "metadata": {
            "recordType": "protocol",
            "title": title,
            "family": family,
            "version": version,
        },
        "data": {
            "labwareRoles": labware_roles,
            "parametersSchema": {volume_param: {"type": "string"}} if volume_param else {},
            "events": promoted,
        },
    }


def _kinds_by_labware_id(events) -> Dict[str, str]:
    kinds = {}
    for event in events or []:
        if not isinstance(event, Mapping):
            continue
        refs = list(event.get("labware") or [])
        details = section(event, "details")
        refs += [section(details, "source").get("labware"), section(details, "target").get("labware"),
                 details.get("labware")]
        for ref in refs:
            ref_id, kind = labware_ref_id(ref), labware_ref_kind(ref)
            if ref_id and kind:
                kinds.setdefault(ref_id, kind)
    return kinds
