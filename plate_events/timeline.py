"""
Layer 3: Time-Travel Queries
============================
"What did the plate look like at time T?" is answered by replaying only the
events stamped at or before T. Events whose timestamp can't be parsed are
always included, and a missing cutoff means "everything".
"""

from __future__ import annotations
from typing import List, Mapping, Optional

from plate_events.events import listed_labware_ids, parse_timestamp, stable_sort_events
from plate_events.replay import ReplayOptions, ReplayState, replay_plate_events
from plate_events.wells import WellState


def events_until(events, timestamp=None) -> List[dict]:
    """Stably sorted events with timestamp <= cutoff."""
    ordered = stable_sort_events(events)
    cutoff = parse_timestamp(timestamp)
    if cutoff is None:
        return ordered
    kept = []
    for event in ordered:
        ts = parse_timestamp(event.get("timestamp")) if isinstance(event, Mapping) else None
        if ts is None or ts <= cutoff:
            kept.append(event)
    return kept


def plate_state_at_time(events, timestamp=None,
                        options: Optional[ReplayOptions] = None) -> ReplayState:
    return replay_plate_events(events_until(events, timestamp), options).state


def well_composition_at_time(events, timestamp, labware_id: str, well_id: str,
                             options: Optional[ReplayOptions] = None) -> Optional[WellState]:
    if not labware_id or not well_id:
        return None
    state = plate_state_at_time(events, timestamp, options)
    return state.get(labware_id, {}).get(well_id)


def event_timeline_for_labware(events, labware_id: str) -> List[dict]:
    if not labware_id:
        return []
    return [
        event for event in stable_sort_events(events)
        if isinstance(event, Mapping) and labware_id in listed_labware_ids(event)
    ]
