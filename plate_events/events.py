"""
Plate Event helpers
===================
Plate Events are JSON-shaped dicts produced upstream (editors, protocol
instantiation). This module holds the pieces every layer needs to read them:

  EventType          – closed set of event kinds; unknown kinds read as OTHER
  labware_ref_id     – "@id" of a labware reference (dict or bare string)
  parse_timestamp    – ISO-8601 -> epoch seconds, None when unparsable
  stable_sort_events – (timestamp, original index) ordering
"""

from __future__ import annotations
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Iterable, List, Mapping, Optional, Sequence


class InvalidInput(ValueError):
    """Caller broke the contract (wrong container types, no template events, bad base timestamp)."""


class EventType(str, Enum):
    TRANSFER         = "transfer"
    WASH             = "wash"
    HARVEST          = "harvest"
    SAMPLE_OPERATION = "sample_operation"
    READ             = "read"
    INCUBATE         = "incubate"
    OTHER            = "other"

    @classmethod
    def parse(cls, value: Any) -> Optional["EventType"]:
        """None when the event carries no type at all; legacy strings map to OTHER."""
        if not value or not isinstance(value, str):
            return None
        try:
            return cls(value)
        except ValueError:
            return cls.OTHER


def labware_ref_id(ref: Any) -> Optional[str]:
    if isinstance(ref, Mapping):
        ref_id = ref.get("@id")
        return ref_id if isinstance(ref_id, str) and ref_id else None
    if isinstance(ref, str) and ref:
        return ref
    return None


def labware_ref_kind(ref: Any) -> Optional[str]:
    if isinstance(ref, Mapping):
        kind = ref.get("kind")
        return kind if isinstance(kind, str) else None
    return None


def event_details(event: Mapping) -> Mapping:
    details = event.get("details")
    return details if isinstance(details, Mapping) else {}


def section(mapping: Any, key: str) -> Mapping:
    """Nested mapping at key, or an empty one."""
    if not isinstance(mapping, Mapping):
        return {}
    value = mapping.get(key)
    return value if isinstance(value, Mapping) else {}


def listed_labware_ids(event: Mapping) -> List[str]:
    refs = event.get("labware")
    if not isinstance(refs, (list, tuple)):
        return []
    return [ref_id for ref_id in (labware_ref_id(r) for r in refs) if ref_id]


def event_touches_labware(event: Mapping, labware_id: str) -> bool:
    """True if the event lists the labware or names it as transfer/wash/sample input labware."""
    if not labware_id:
        return True
    if labware_id in listed_labware_ids(event):
        return True
    details = event_details(event)
    candidates = (
        section(details, "target").get("labware"),
        section(details, "source").get("labware"),
        details.get("labware"),
        section(details, "inputs").get("labware"),
    )
    return any(labware_ref_id(ref) == labware_id for ref in candidates)


# ── Timestamps ────────────────────────────────────────────────────────────────

def parse_timestamp(value: Any) -> Optional[float]:
    """Epoch seconds for an ISO-8601 string or datetime; naive values are read as UTC."""
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, str) and value.strip():
        text = value.strip()
        if text.endswith(("Z", "z")):
            text = text[:-1] + "+00:00"
        try:
            dt = datetime.fromisoformat(text)
        except ValueError:
            return None
    else:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.timestamp()


def ensure_event_list(events: Any) -> List[Any]:
    if events is None:
        return []
    if isinstance(events, (str, bytes, Mapping)) or not isinstance(events, Iterable):
        raise InvalidInput(f"Expected a list of plate events, got {type(events).__name__}")
    return list(events)


def stable_sort_events(events: Sequence[Any]) -> List[Any]:
    """Sort by timestamp ascending; ties and unparsable timestamps (keyed as 0) keep list order."""
    keyed = []
    for index, event in enumerate(ensure_event_list(events)):
        ts = parse_timestamp(event.get("timestamp")) if isinstance(event, Mapping) else None
        keyed.append((ts if ts is not None else 0.0, index, event))
    keyed.sort(key=lambda entry: (entry[0], entry[1]))
    return [event for _, _, event in keyed]
