"""
Labware Layout
==============
Well geometry for the labware kinds that show up in Plate Events, so replay
state can be rendered as a plate grid.

Well ids are row letter + 1-based column ("A1", "B01", "P24"). Grids are
row-major numpy arrays (rows × cols) of well volumes in µL; wells that were
never touched read as 0.
"""

from __future__ import annotations
from typing import Dict, Optional, Tuple
import re

import numpy as np

from plate_events.wells import PlateState

# ── Labware catalogue ─────────────────────────────────────────────────────────
# kind: replay depletion kind (plate / reservoir / tube_rack)
LABWARE_TYPES = {
    "96well_plate":   {"label": "96-Well Plate",    "kind": "plate",     "cols": 12, "rows": 8,  "color": "#4a9eff"},
    "384well_plate":  {"label": "384-Well Plate",   "kind": "plate",     "cols": 24, "rows": 16, "color": "#7b68ee"},
    "24well_plate":   {"label": "24-Well Plate",    "kind": "plate",     "cols": 6,  "rows": 4,  "color": "#5f9ea0"},
    "reservoir_12":   {"label": "12-Col Reservoir", "kind": "reservoir", "cols": 12, "rows": 1,  "color": "#ffa07a"},
    "reservoir_1":    {"label": "Single Reservoir", "kind": "reservoir", "cols": 1,  "rows": 1,  "color": "#ff6347"},
    "tube_rack_15ml": {"label": "Tube Rack 15mL",   "kind": "tube_rack", "cols": 6,  "rows": 4,  "color": "#dda0dd"},
    "tube_rack_50ml": {"label": "Tube Rack 50mL",   "kind": "tube_rack", "cols": 4,  "rows": 2,  "color": "#da70d6"},
}

# Grid used when a replay kind is given instead of a concrete labware type
DEFAULT_TYPE_FOR_KIND = {
    "plate": "96well_plate",
    "reservoir": "reservoir_12",
    "tube_rack": "tube_rack_15ml",
}

_WELL_RE = re.compile(r"^([A-Za-z]{1,2})0*(\d+)$")


def labware_dimensions(kind_or_type: Optional[str]) -> Tuple[int, int]:
    """(rows, cols) for a labware type or replay kind; unknown values read as a 96-well plate."""
    key = (kind_or_type or "").lower()
    key = DEFAULT_TYPE_FOR_KIND.get(key, key)
    entry = LABWARE_TYPES.get(key, LABWARE_TYPES["96well_plate"])
    return entry["rows"], entry["cols"]


def parse_well_id(well_id: str) -> Optional[Tuple[int, int]]:
    """
    0-indexed (row, col) for "A1" / "B01" / "AA3" style ids, None otherwise.
    Row letters continue past Z as AA, AB, ... like 1536-well plates.
    """
    if not isinstance(well_id, str):
        return None
    match = _WELL_RE.match(well_id.strip())
    if not match:
        return None
    letters, column = match.group(1).upper(), int(match.group(2))
    if column < 1:
        return None
    row = 0
    for ch in letters:
        row = row * 26 + (ord(ch) - ord("A") + 1)
    return row - 1, column - 1


def well_id_for(row: int, col: int, pad: int = 2) -> str:
    letters = ""
    n = row + 1
    while n:
        n, rem = divmod(n - 1, 26)
        letters = chr(ord("A") + rem) + letters
    return f"{letters}{col + 1:0{pad}d}"


def volume_grid(plate: PlateState, kind_or_type: Optional[str] = None,
                rows: Optional[int] = None, cols: Optional[int] = None) -> np.ndarray:
    """Well volumes (µL) laid out rows × cols. Wells outside the grid or with odd ids are ignored."""
    default_rows, default_cols = labware_dimensions(kind_or_type)
    rows = rows or default_rows
    cols = cols or default_cols
    grid = np.zeros((rows, cols))
    for well_id, well in (plate or {}).items():
        pos = parse_well_id(well_id)
        if pos is None:
            continue
        r, c = pos
        if r < rows and c < cols:
            grid[r, c] = well.total_volume_l * 1e6
    return grid


def grid_summary(grid: np.ndarray) -> Dict[str, float]:
    filled = grid[grid > 0]
    return {
        "n_filled": int(filled.size),
        "total_ul": round(float(grid.sum()), 6),
        "max_ul": round(float(grid.max()), 6) if grid.size else 0.0,
        "mean_filled_ul": round(float(filled.mean()), 6) if filled.size else 0.0,
    }
