"""
Layer 0: Unit Normalizer
========================
Parses human-authored quantities into SI values.

  Volume         -> liters  (l, ml, ul / µl / μl and spelled-out forms)
  Concentration  -> molar   (M, mM, uM / µM / μM, nM and spelled-out forms)

Mass concentration (mg/mL) only converts to molar when a molar mass (g/mol)
is supplied. Anything else parses to None; the normalize_* wrappers return a
caller-supplied fallback instead so arithmetic never sees None.
"""

from __future__ import annotations
from typing import Any, Mapping, Optional, Tuple
import logging
import math
import re

logger = logging.getLogger(__name__)

VOLUME_FACTORS = {
    "l": 1.0,
    "liter": 1.0,
    "liters": 1.0,
    "ml": 1e-3,
    "milliliter": 1e-3,
    "milliliters": 1e-3,
    "ul": 1e-6,
    "µl": 1e-6,
    "μl": 1e-6,
    "microliter": 1e-6,
    "microliters": 1e-6,
}

CONCENTRATION_FACTORS = {
    "m": 1.0,
    "molar": 1.0,
    "mm": 1e-3,
    "millimolar": 1e-3,
    "um": 1e-6,
    "µm": 1e-6,
    "μm": 1e-6,
    "micromolar": 1e-6,
    "nm": 1e-9,
    "nanomolar": 1e-9,
}

MASS_CONCENTRATION_UNITS = {"mg/ml", "mgml", "mg per ml"}

_QUANTITY_RE = re.compile(r"^([-+]?(?:\d+\.?\d*|\.\d+)(?:[eE][-+]?\d+)?)\s*(\S.*)$")


def parse_quantity(value: Any) -> Optional[Tuple[float, str]]:
    """Split a quantity into (number, unit).

    Accepts "10 uL", "10uL" or {"value": 10, "unit": "uL"}. Returns None for
    anything without a finite number and a unit.
    """
    if isinstance(value, Mapping):
        raw, unit = value.get("value"), value.get("unit")
        if isinstance(raw, bool) or not isinstance(unit, str) or not unit.strip():
            return None
        try:
            number = float(raw)
        except (TypeError, ValueError):
            return None
        if not math.isfinite(number):
            return None
        return number, unit.strip()
    if not isinstance(value, str):
        return None
    match = _QUANTITY_RE.match(value.strip())
    if not match:
        return None
    number = float(match.group(1))
    if not math.isfinite(number):
        return None
    return number, match.group(2).strip()


def parse_volume_to_liters(value: Any) -> Optional[float]:
    parsed = parse_quantity(value)
    if parsed is None:
        return None
    number, unit = parsed
    factor = VOLUME_FACTORS.get(unit.lower())
    if factor is None:
        return None
    return number * factor


def parse_concentration_to_molar(value: Any, molar_mass: Optional[float] = None) -> Optional[float]:
    """Concentration in mol/L, or None when the unit is unknown.

    mg/mL needs molar_mass in g/mol: molar = (mg_per_mL / 1000) / molar_mass.
    """
    parsed = parse_quantity(value)
    if parsed is None:
        return None
    number, unit = parsed
    unit = unit.lower()
    if unit in CONCENTRATION_FACTORS:
        return number * CONCENTRATION_FACTORS[unit]
    if unit in MASS_CONCENTRATION_UNITS:
        mass = _coerce_positive(molar_mass)
        if mass is None:
            logger.debug("Cannot convert %r to molar without a molar mass", value)
            return None
        return (number / 1000.0) / mass
    return None


def normalize_volume(value: Any, fallback: float = 0.0) -> float:
    liters = parse_volume_to_liters(value)
    return fallback if liters is None else liters


def normalize_concentration(value: Any, molar_mass: Optional[float] = None,
                            fallback: float = 0.0) -> float:
    molar = parse_concentration_to_molar(value, molar_mass=molar_mass)
    return fallback if molar is None else molar


def _coerce_positive(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(number) or number <= 0:
        return None
    return number
