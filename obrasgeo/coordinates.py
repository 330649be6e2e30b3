"""Repair and validation of raw point coordinates.

Source exports deliver point coordinates in three shapes:

- ``[lat, lng]`` (the common case for these datasets),
- ``[lng, lat]`` (already GeoJSON order),
- ``[a, b, c, d]`` where the integer and fractional parts of latitude and
  longitude were split into separate slots, e.g. ``[3, 424204, -76, 491289]``.

:func:`normalize` always answers in GeoJSON ``(lng, lat)`` order or ``None``.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Any, Mapping, Optional, Tuple

__all__ = [
    "LAT_BAND",
    "LNG_BAND",
    "CALI_CENTER_LAT_LNG",
    "CALI_CENTER_LNG_LAT",
    "CALI_BOUNDS",
    "DEFAULT_ZOOM",
    "CoordinateCheck",
    "normalize",
    "validate_coordinates",
    "is_within_cali",
    "coordinate_report",
]

logger = logging.getLogger(__name__)

LAT_BAND: Tuple[float, float] = (3.0, 4.0)
LNG_BAND: Tuple[float, float] = (-77.0, -76.0)

CALI_CENTER_LAT_LNG: Tuple[float, float] = (3.4516, -76.5320)
CALI_CENTER_LNG_LAT: Tuple[float, float] = (-76.5320, 3.4516)
CALI_BOUNDS = {"north": 3.65, "south": 3.25, "east": -76.35, "west": -76.65}
DEFAULT_ZOOM = 11


def _in_band(value: float, band: Tuple[float, float]) -> bool:
    lo, hi = band
    return lo <= value <= hi


def _as_number(value: Any) -> Optional[float]:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    out = float(value)
    if not math.isfinite(out):
        return None
    return out


def _normalize_pair(a: Any, b: Any) -> Optional[Tuple[float, float]]:
    first = _as_number(a)
    second = _as_number(b)
    if first is None or second is None:
        return None
    if _in_band(first, LAT_BAND) and _in_band(second, LNG_BAND):
        return (second, first)
    if _in_band(second, LAT_BAND) and _in_band(first, LNG_BAND):
        return (first, second)
    # Out of region: assume (lat, lng) like the rest of the export.
    return (second, first)


def _join_split_decimal(whole: Any, fraction: Any) -> Optional[float]:
    try:
        value = float(f"{whole}.{fraction}")
    except (TypeError, ValueError):
        return None
    if not math.isfinite(value):
        return None
    return value


def normalize(raw: Any) -> Optional[Tuple[float, float]]:
    """Return ``(lng, lat)`` for a raw coordinate array, or ``None``.

    >>> normalize([3.41, -76.52])
    (-76.52, 3.41)
    >>> normalize([3, 424204, -76, 491289])
    (-76.491289, 3.424204)
    """
    if not isinstance(raw, (list, tuple)) or not raw:
        _log_failure(raw)
        return None

    if len(raw) == 2:
        out = _normalize_pair(raw[0], raw[1])
    elif len(raw) == 4:
        lat = _join_split_decimal(raw[0], raw[1])
        lng = _join_split_decimal(raw[2], raw[3])
        out = None if lat is None or lng is None else _normalize_pair(lat, lng)
    else:
        out = None

    if out is None:
        _log_failure(raw)
    return out


def _log_failure(raw: Any) -> None:
    if isinstance(raw, (list, tuple)):
        shape = f"len={len(raw)}"
    else:
        shape = type(raw).__name__
    logger.debug("coordinates.normalize_failed shape=%s raw=%r", shape, raw)


@dataclass(frozen=True, slots=True)
class CoordinateCheck:
    is_valid: bool
    corrected: Optional[Tuple[float, float]]
    was_fixed: bool
    original_format: str


def validate_coordinates(raw: Any) -> CoordinateCheck:
    """Diagnose a raw coordinate: which layout it used and whether it was repaired."""
    corrected = normalize(raw)
    fmt = "unknown"
    if isinstance(raw, (list, tuple)):
        if len(raw) == 4:
            fmt = "split-decimal"
        elif len(raw) == 2:
            a, b = _as_number(raw[0]), _as_number(raw[1])
            if a is not None and b is not None:
                if _in_band(a, LAT_BAND) and _in_band(b, LNG_BAND):
                    fmt = "[lat,lng]"
                elif _in_band(b, LAT_BAND) and _in_band(a, LNG_BAND):
                    fmt = "[lng,lat]"
    was_fixed = corrected is not None and (
        not isinstance(raw, (list, tuple)) or tuple(raw) != corrected
    )
    return CoordinateCheck(
        is_valid=corrected is not None,
        corrected=corrected,
        was_fixed=was_fixed,
        original_format=fmt,
    )


def is_within_cali(lng: float, lat: float) -> bool:
    return (
        CALI_BOUNDS["west"] <= lng <= CALI_BOUNDS["east"]
        and CALI_BOUNDS["south"] <= lat <= CALI_BOUNDS["north"]
    )


def coordinate_report(collection: Mapping[str, Any]) -> dict:
    """Count point features that were fixed or could not be normalized."""
    features = collection.get("features") if isinstance(collection, Mapping) else None
    if not isinstance(features, list):
        features = []
    report = {"total": len(features), "points": 0, "fixed": 0, "failed": 0}
    for feature in features:
        geom = feature.get("geometry") if isinstance(feature, Mapping) else None
        if not isinstance(geom, Mapping) or geom.get("type") != "Point":
            continue
        report["points"] += 1
        check = validate_coordinates(geom.get("coordinates"))
        if not check.is_valid:
            report["failed"] += 1
        elif check.was_fixed:
            report["fixed"] += 1
    return report
