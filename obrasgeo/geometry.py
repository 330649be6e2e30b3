"""Geometry helpers for raw GeoJSON geometries.

Shapely is optional: when it is installed the helpers delegate to it, otherwise
they fall back to pure-Python computations over the coordinate arrays.
"""

from __future__ import annotations

from typing import Any, Iterable, List, Mapping, Optional, Tuple

try:
    from shapely.geometry import shape as shapely_shape

    SHAPELY = True
except Exception:  # pragma: no cover - optional dependency
    shapely_shape = None  # type: ignore
    SHAPELY = False


__all__ = [
    "SHAPELY",
    "geometry_type",
    "to_shape",
    "iter_positions",
    "bounds",
    "centroid_lnglat",
]


def geometry_type(geometry: Any) -> Optional[str]:
    if isinstance(geometry, Mapping):
        kind = geometry.get("type")
        return kind if isinstance(kind, str) else None
    return None


def to_shape(geometry: Any):
    """Build a Shapely geometry from a GeoJSON mapping; ``None`` when impossible."""
    if not SHAPELY or not isinstance(geometry, Mapping):
        return None
    try:
        return shapely_shape(geometry)
    except Exception:  # pragma: no cover - shapely failure path
        return None


def _is_position(value: Any) -> bool:
    return (
        isinstance(value, (list, tuple))
        and len(value) >= 2
        and all(
            isinstance(v, (int, float)) and not isinstance(v, bool) for v in value[:2]
        )
    )


def iter_positions(coords: Any) -> Iterable[Tuple[float, float]]:
    """Yield every ``(x, y)`` position of a nested GeoJSON coordinate array."""
    if _is_position(coords):
        yield (float(coords[0]), float(coords[1]))
        return
    if isinstance(coords, (list, tuple)):
        for part in coords:
            yield from iter_positions(part)


def bounds(geometry: Any) -> Optional[Tuple[float, float, float, float]]:
    """``(minx, miny, maxx, maxy)`` of a geometry's positions."""
    if not isinstance(geometry, Mapping):
        return None
    pts = list(iter_positions(geometry.get("coordinates")))
    if not pts:
        return None
    xs = [p[0] for p in pts]
    ys = [p[1] for p in pts]
    return (min(xs), min(ys), max(xs), max(ys))


def _ring_centroid(ring: List[Tuple[float, float]]) -> Optional[Tuple[float, float]]:
    area = 0.0
    cx = 0.0
    cy = 0.0
    for (x1, y1), (x2, y2) in zip(ring, ring[1:] + ring[:1]):
        cross = x1 * y2 - x2 * y1
        area += cross
        cx += (x1 + x2) * cross
        cy += (y1 + y2) * cross
    area *= 0.5
    if area == 0:
        return None
    return (cx / (6 * area), cy / (6 * area))


def centroid_lnglat(geometry: Any) -> Optional[Tuple[float, float]]:
    """Return a representative ``(lng, lat)`` for line and polygon geometries.

    Points are not handled here; their coordinates go through
    :func:`obrasgeo.coordinates.normalize` instead.
    """
    kind = geometry_type(geometry)
    if kind is None or kind == "Point":
        return None

    shp = to_shape(geometry)
    if shp is not None and not shp.is_empty:
        try:
            cent = shp.centroid
            return (float(cent.x), float(cent.y))
        except Exception:  # pragma: no cover - shapely failure path
            pass

    coords = geometry.get("coordinates")
    if kind == "Polygon" and isinstance(coords, list) and coords:
        outer = list(iter_positions(coords[0]))
        if outer:
            cent = _ring_centroid(outer)
            if cent is not None:
                return cent

    pts = list(iter_positions(coords))
    if not pts:
        return None
    return (sum(p[0] for p in pts) / len(pts), sum(p[1] for p in pts) / len(pts))
