"""
Export adapters
===============
Converts Plate Events into shapes other tools consume:

  to_liquid_handler_commands – one command dict per event (transfer / incubate /
                               read / wash / custom) for robot drivers
  to_readable_steps          – "Step N: ..." lines for a printed protocol
  normalize_plate_events     – wraps legacy log entries (no event_type/details)
                               as "other" Plate Events before replay/export
"""

from __future__ import annotations
from copy import deepcopy
from typing import Any, Dict, List, Mapping, Optional, Set
import logging

from plate_events.events import EventType, ensure_event_list, labware_ref_id, section

logger = logging.getLogger(__name__)


class LegacyShapeDiagnostics:
    """Collects legacy-shape warnings, logging each key once per instance."""

    def __init__(self, log: Optional[logging.Logger] = None):
        self._log = log or logger
        self._warned: Set[str] = set()
        self.messages: List[str] = []

    def warn_once(self, key: str, message: str):
        if key in self._warned:
            return
        self._warned.add(key)
        self.messages.append(message)
        self._log.warning(message)


# ── Commands ──────────────────────────────────────────────────────────────────

def to_liquid_handler_commands(events) -> List[dict]:
    commands = []
    for event in events or []:
        if not isinstance(event, Mapping):
            continue
        event_type = EventType.parse(event.get("event_type"))
        if event_type == EventType.TRANSFER:
            commands.append(_transfer_command(event))
        elif event_type == EventType.INCUBATE:
            commands.append(_incubate_command(event))
        elif event_type == EventType.READ:
            commands.append(_read_command(event))
        elif event_type == EventType.WASH:
            commands.append(_wash_command(event))
        else:
            commands.append(_custom_command(event))
    return commands


def _labware_name(ref: Any) -> str:
    if isinstance(ref, Mapping):
        return ref.get("@id") or ref.get("label") or ""
    return ref if isinstance(ref, str) else ""


def _wells_or_all(details: Mapping):
    wells = details.get("wells")
    return list(wells) if isinstance(wells, list) and wells else "all"


def _transfer_command(event: Mapping) -> dict:
    details = section(event, "details")
    source, target = section(details, "source"), section(details, "target")
    return {
        "command": "transfer",
        "volume": details.get("volume") or "",
        "from_plate": _labware_name(source.get("labware")),
        "from_wells": list(section(source, "wells")),
        "to_plate": _labware_name(target.get("labware")),
        "to_wells": list(section(target, "wells")),
        "material": section(details, "material").get("label") or "",
        "pipetting": deepcopy(details.get("pipetting_hint")),
    }


def _incubate_command(event: Mapping) -> dict:
    details = section(event, "details")
    return {
        "command": "incubate",
        "labware": _labware_name(details.get("labware")),
        "wells": _wells_or_all(details),
        "duration": details.get("duration") or "",
        "temperature": details.get("temperature") or "",
        "atmosphere": details.get("atmosphere") or "",
    }


def _read_command(event: Mapping) -> dict:
    details = section(event, "details")
    return {
        "command": "read",
        "labware": _labware_name(details.get("labware")),
        "instrument": details.get("instrument") or "",
        "mode": details.get("mode") or "",
        "channels": deepcopy(details.get("channels") or []),
        "result_files": deepcopy(details.get("result_files") or []),
    }


def _wash_command(event: Mapping) -> dict:
    details = section(event, "details")
    return {
        "command": "wash",
        "labware": _labware_name(details.get("labware")),
        "wells": _wells_or_all(details),
        "buffer": section(details, "buffer").get("label") or "",
        "cycles": details.get("cycles") or 1,
        "volume_per_cycle": details.get("volume_per_cycle") or "",
    }


def _custom_command(event: Mapping) -> dict:
    return {
        "command": event.get("event_type") or "custom",
        "labware": deepcopy(event.get("labware") or []),
        "details": deepcopy(event.get("details") or {}),
    }


# ── Readable steps ────────────────────────────────────────────────────────────

def to_readable_steps(events) -> List[str]:
    steps = []
    for index, event in enumerate(e for e in (events or []) if isinstance(e, Mapping)):
        prefix = f"Step {index + 1}:"
        details = section(event, "details")
        event_type = EventType.parse(event.get("event_type"))
        if event_type == EventType.TRANSFER:
            source, target = section(details, "source"), section(details, "target")
            n_wells = len(section(target, "wells")) or len(details.get("mapping") or [])
            line = (f"{prefix} Transfer {details.get('volume') or ''} from "
                    f"{_display_name(source.get('labware'), 'source')} to "
                    f"{_display_name(target.get('labware'), 'target')} ({n_wells} wells).")
            steps.append(" ".join(line.split()))
        elif event_type == EventType.INCUBATE:
            temperature = details.get("temperature")
            suffix = f" at {temperature}" if temperature else ""
            steps.append(f"{prefix} Incubate {details.get('duration') or 'unspecified duration'}{suffix}.")
        elif event_type == EventType.READ:
            steps.append(f"{prefix} Run {details.get('mode') or 'read'} on "
                         f"{details.get('instrument') or 'reader'}.")
        elif event_type == EventType.WASH:
            wells = details.get("wells")
            scope = f"{len(wells)} wells" if isinstance(wells, list) and wells else "all wells"
            buffer = section(details, "buffer").get("label") or "wash buffer"
            steps.append(f"{prefix} Wash {scope} with {buffer}.")
        elif event_type in (EventType.HARVEST, EventType.SAMPLE_OPERATION):
            outputs = details.get("outputs") or []
            verb = "Harvest" if event_type == EventType.HARVEST else "Sample operation producing"
            steps.append(f"{prefix} {verb} {len(outputs)} sample(s).")
        else:
            steps.append(f"{prefix} {details.get('name') or 'Custom event'}: "
                         f"{details.get('description') or 'no description'}.")
    return steps


def _display_name(ref: Any, fallback: str) -> str:
    if isinstance(ref, Mapping):
        return ref.get("label") or ref.get("@id") or fallback
    return ref if isinstance(ref, str) and ref else fallback


# ── Legacy normalization ──────────────────────────────────────────────────────

def normalize_plate_events(events, record_metadata: Optional[Mapping] = None,
                           diagnostics: Optional[LegacyShapeDiagnostics] = None) -> List[dict]:
    """Pass Plate Events through; wrap legacy entries as "other" events referencing the record's plate."""
    metadata = record_metadata or {}
    normalized = []
    for index, event in enumerate(ensure_event_list(events)):
        if not isinstance(event, Mapping):
            continue
        if event.get("event_type") and isinstance(event.get("details"), Mapping):
            normalized.append(event)
            continue
        if diagnostics is not None:
            record = metadata.get("recordId") or metadata.get("id") or "record"
            diagnostics.warn_once(
                f"{record}:legacy-event",
                f"Record {record} carries legacy events without event_type/details; wrapping as 'other'",
            )
        normalized.append(_wrap_legacy_event(event, index, metadata))
    return normalized


def _wrap_legacy_event(event: Mapping, index: int, metadata: Mapping) -> dict:
    wells = list(event.get("wells")) if isinstance(event.get("wells"), list) else []
    timestamp = event.get("timestamp") or ""
    labware = event.get("labware")
    if not isinstance(labware, list) or not labware:
        labware = [_primary_labware_ref(metadata)]
    return {
        "id": event.get("id") or event.get("timestamp") or f"legacy-{index + 1}",
        "event_type": EventType.OTHER.value,
        "timestamp": timestamp,
        "run": metadata.get("runId") or "",
        "labware": deepcopy(labware),
        "details": {
            "type": EventType.OTHER.value,
            "name": event.get("kind") or "custom",
            "description": section(event, "payload").get("notes") or "",
            "metadata": {"wells": wells},
        },
    }


def _primary_labware_ref(metadata: Mapping) -> Dict[str, str]:
    record_id = metadata.get("recordId") or metadata.get("id") or "plate"
    return {
        "@id": f"plate/{record_id}",
        "kind": "plate",
        "label": metadata.get("title") or record_id,
    }


def labware_ids_in_commands(commands) -> List[str]:
    """Distinct labware ids touched by a command list, in first-seen order."""
    seen: List[str] = []
    for command in commands:
        for key in ("from_plate", "to_plate", "labware"):
            value = command.get(key)
            refs = value if isinstance(value, list) else [value]
            for ref in refs:
                ref_id = labware_ref_id(ref)
                if ref_id and ref_id not in seen:
                    seen.append(ref_id)
    return seen
