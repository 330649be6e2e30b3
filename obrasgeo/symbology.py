"""Per-feature render styles for map layers.

:func:`resolve_style` is the single entry point used by the rendering layer. It
dispatches once on the layer's :class:`SymbologyMode` to one resolver per mode.
All functions here are pure: the same feature, layer and context always give
the same :class:`Style`.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

import numpy as np

from .entities import ProjectUnit
from .geometry import geometry_type

__all__ = [
    "SymbologyMode",
    "DEFAULT_CATEGORY_COLORS",
    "DEFAULT_RANGE_COLORS",
    "DEFAULT_ICONS",
    "METRIC_CONFIG",
    "NEUTRAL_COLOR",
    "NEUTRAL_COLOR_DARK",
    "RangeBand",
    "Style",
    "LayerDescriptor",
    "MetricSample",
    "feature_value",
    "feature_name",
    "category_colors_for",
    "generate_ranges",
    "hex_to_rgb",
    "choropleth_color",
    "synthetic_metric",
    "metrics_by_area",
    "resolve_style",
    "style_layer",
]


class SymbologyMode(str, Enum):
    SOLID = "solid"
    CATEGORIES = "categories"
    RANGES = "ranges"
    ICONS = "icons"
    CHOROPLETH = "choropleth"

    @classmethod
    def _missing_(cls, value):
        if isinstance(value, str):
            lowered = value.strip().lower()
            if lowered == "fixed":
                return cls.SOLID
            for member in cls:
                if member.value == lowered:
                    return member
        return None


DEFAULT_CATEGORY_COLORS: Tuple[str, ...] = (
    "#3B82F6", "#10B981", "#F59E0B", "#EF4444", "#8B5CF6",
    "#06B6D4", "#84CC16", "#F97316", "#EC4899", "#6366F1",
)

DEFAULT_RANGE_COLORS: Tuple[str, ...] = (
    "#FEF3C7", "#FDE68A", "#FCD34D", "#F59E0B", "#D97706",
)

DEFAULT_ICONS: Dict[str, str] = {
    "Educación": "🏫",
    "Salud": "🏥",
    "Deporte": "⚽",
    "Cultura": "🎭",
    "Parque": "🌳",
    "Seguridad": "🚓",
    "default": "📍",
}

METRIC_CONFIG: Dict[str, Dict[str, str]] = {
    "presupuesto": {
        "name": "Inversión Pública Per Cápita",
        "color": "#059669",
        "description": "Recursos ejecutados por habitante (COP)",
    },
    "proyectos": {
        "name": "Densidad de Proyectos",
        "color": "#DC2626",
        "description": "Proyectos activos por cada 1000 habitantes",
    },
    "actividades": {
        "name": "Cobertura Social",
        "color": "#7C3AED",
        "description": "Programas y actividades comunitarias",
    },
}

NEUTRAL_COLOR = "#F3F4F6"
NEUTRAL_COLOR_DARK = "#374151"


@dataclass(frozen=True, slots=True)
class RangeBand:
    min: float
    max: float
    color: str
    label: str = ""

    def contains(self, value: float) -> bool:
        return self.min <= value <= self.max


@dataclass(frozen=True, slots=True)
class Style:
    stroke_color: str
    fill_color: str
    weight: float
    opacity: float
    fill_opacity: float
    radius: Optional[float] = None
    dash_array: Optional[str] = None
    icon: Optional[str] = None

    def to_leaflet(self) -> dict:
        """Path options in the shape the map renderer expects."""
        out = {
            "color": self.stroke_color,
            "fillColor": self.fill_color,
            "weight": self.weight,
            "opacity": self.opacity,
            "fillOpacity": self.fill_opacity,
            "dashArray": self.dash_array,
        }
        if self.radius is not None:
            out["radius"] = self.radius
        return out


_DASH_ARRAYS = {"dashed": "10, 10", "dotted": "2, 8", "dashdot": "10, 5, 2, 5"}


@dataclass
class LayerDescriptor:
    id: str
    name: str
    visible: bool = True
    color: str = "#3B82F6"
    opacity: float = 0.7
    mode: SymbologyMode = SymbologyMode.SOLID
    attribute: Optional[str] = None
    data: Any = field(default=None, repr=False)

    stroke_color: Optional[str] = None
    stroke_width: Optional[float] = None
    line_style: str = "solid"
    point_size: float = 8

    category_colors: Dict[str, str] = field(default_factory=dict)
    ranges: Sequence[RangeBand] = ()
    icon_map: Dict[str, str] = field(default_factory=dict)
    default_icon: str = DEFAULT_ICONS["default"]

    metric: Optional[str] = None
    name_key: str = "nombre"
    neutral_color: str = NEUTRAL_COLOR

    def __post_init__(self):
        self.mode = SymbologyMode(self.mode)

    def features(self) -> List[Any]:
        """Features held by ``data``: a ProjectUnit list or a FeatureCollection."""
        data = self.data
        if data is None:
            return []
        if isinstance(data, Mapping):
            feats = data.get("features")
            return list(feats) if isinstance(feats, list) else []
        return list(data)

    def attribute_values(self) -> List[Any]:
        if not self.attribute:
            return []
        return [feature_value(f, self.attribute) for f in self.features()]


@dataclass(slots=True)
class MetricSample:
    location: str
    value: float
    count: int = 0
    percentage: float = 0.0


# ------------------------------------------------------------------
# Feature access
# ------------------------------------------------------------------


def feature_value(feature: Any, attribute: Optional[str]) -> Any:
    if not attribute:
        return None
    if isinstance(feature, ProjectUnit):
        if hasattr(feature, attribute):
            value = getattr(feature, attribute)
            return value.value if isinstance(value, Enum) else value
        return feature.meta.get(attribute)
    if isinstance(feature, Mapping):
        props = feature.get("properties")
        if isinstance(props, Mapping):
            return props.get(attribute)
        return feature.get(attribute)
    return getattr(feature, attribute, None)


def feature_name(feature: Any, name_key: str = "nombre", index: int = 0) -> str:
    if isinstance(feature, ProjectUnit):
        return feature.name
    props = feature.get("properties") if isinstance(feature, Mapping) else None
    if isinstance(props, Mapping):
        for key in (name_key, "nombre"):
            value = props.get(key)
            if value:
                return str(value)
    return f"Área {index + 1}"


def _feature_geometry_type(feature: Any) -> Optional[str]:
    if isinstance(feature, ProjectUnit):
        return feature.geometry_type
    if isinstance(feature, Mapping):
        return geometry_type(feature.get("geometry"))
    return None


def _as_float(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        out = float(value)
    except (TypeError, ValueError):
        return None
    return out if math.isfinite(out) else None


# ------------------------------------------------------------------
# Palettes, ranges and colors
# ------------------------------------------------------------------


def category_colors_for(
    values: Iterable[Any], palette: Sequence[str] = DEFAULT_CATEGORY_COLORS
) -> Dict[str, str]:
    """Assign palette colors to distinct values in first-seen order."""
    colors: Dict[str, str] = {}
    for value in values:
        if value is None:
            continue
        key = str(value)
        if key not in colors:
            colors[key] = palette[len(colors) % len(palette)]
    return colors


def generate_ranges(
    values: Iterable[Any],
    n: int = 5,
    colors: Sequence[str] = DEFAULT_RANGE_COLORS,
) -> List[RangeBand]:
    """Equal-width bands spanning the numeric values."""
    nums = np.array([v for v in (_as_float(x) for x in values) if v is not None])
    if nums.size == 0 or n < 1:
        return []
    edges = np.linspace(nums.min(), nums.max(), n + 1)
    bands = []
    for i in range(n):
        lo, hi = float(edges[i]), float(edges[i + 1])
        bands.append(RangeBand(lo, hi, colors[i % len(colors)], f"{lo:.1f} - {hi:.1f}"))
    return bands


def hex_to_rgb(color: str) -> Tuple[int, int, int]:
    text = color.lstrip("#")
    if len(text) == 3:
        text = "".join(ch * 2 for ch in text)
    return (int(text[0:2], 16), int(text[2:4], 16), int(text[4:6], 16))


def choropleth_color(
    value: float,
    max_value: float,
    base_color: str,
    neutral_color: str = NEUTRAL_COLOR,
) -> str:
    """Shade ``base_color`` by ``value / max_value`` as an ``rgba()`` string."""
    if not max_value or max_value <= 0:
        return neutral_color
    intensity = float(np.clip((value or 0) / max_value, 0.0, 1.0))
    if intensity <= 0:
        return neutral_color
    r, g, b = hex_to_rgb(base_color)
    alpha = round(0.2 + intensity * 0.8, 3)
    if intensity > 0.8:
        r, g, b = min(r + 20, 255), max(g - 10, 0), max(b - 10, 0)
    return f"rgba({r}, {g}, {b}, {alpha:g})"


# ------------------------------------------------------------------
# Synthetic area metrics
# ------------------------------------------------------------------


def _js_round(x: float) -> int:
    return math.floor(x + 0.5)


def _lcg(seed: int, multiplier: int, increment: int) -> float:
    return ((seed * multiplier + increment) % 233280) / 233280


def _area_factors(name: str) -> Tuple[float, float]:
    """(urbanity, vulnerability) from keywords in an area name."""
    lowered = name.lower()
    if "centro" in lowered:
        return 1.3, 0.8
    if any(word in lowered for word in ("popular", "alto", "bajo")):
        return 0.7, 1.4
    if "norte" in lowered or "sur" in lowered:
        return 0.9, 1.1
    return 1.0, 1.0


def synthetic_metric(name: str, index: int, metric: str = "presupuesto") -> MetricSample:
    """Deterministic placeholder metric for an area without real measurements."""
    seed = len(name) + index
    r1 = _lcg(seed, 9301, 49297)
    r2 = _lcg(seed, 9307, 49299)
    r3 = _lcg(seed, 9311, 49301)
    urbanity, vulnerability = _area_factors(name)

    value: float = 0
    count = 0
    if metric == "presupuesto":
        if r1 > 0.05:
            base = vulnerability * 180000 + urbanity * 120000
            special = 500000 if r3 > 0.85 else 0
            value = _js_round(base + r2 * 400000 + special)
    elif metric == "proyectos":
        if r1 > 0.15:
            base = vulnerability * 2.5 + urbanity * 1.5
            mega = 5 if r3 > 0.9 else 0
            value = _js_round((base + r2 * 3 + mega) * 10) / 10
    elif metric == "actividades":
        if r1 > 0.08:
            base = vulnerability * 12 + urbanity * 8
            special = 10 if r3 > 0.8 else 0
            count = _js_round(base + r2 * 15 + special)
            value = count
    return MetricSample(location=name, value=_js_round(value), count=count)


def metrics_by_area(
    features: Iterable[Any], metric: str = "presupuesto", name_key: str = "nombre"
) -> List[MetricSample]:
    """Synthetic metric per area, sorted by value with percentage of the max."""
    samples = [
        synthetic_metric(feature_name(f, name_key, i), i, metric)
        for i, f in enumerate(features)
    ]
    top = max([s.value for s in samples] + [1])
    for sample in samples:
        sample.percentage = sample.value / top * 100
    samples.sort(key=lambda s: s.value, reverse=True)
    return samples


# ------------------------------------------------------------------
# Style resolution
# ------------------------------------------------------------------


def _base_style(layer: LayerDescriptor) -> Style:
    return Style(
        stroke_color=layer.stroke_color or layer.color,
        fill_color=layer.color,
        weight=layer.stroke_width or 2,
        opacity=layer.opacity,
        fill_opacity=layer.opacity,
    )


def _solid(feature, layer, base, all_values, index, max_value) -> Style:
    return base


def _categories(feature, layer, base, all_values, index, max_value) -> Style:
    key = feature_value(feature, layer.attribute)
    if key is None:
        return base
    key = str(key)
    color = layer.category_colors.get(key)
    if color is None and all_values is not None:
        palette = (
            all_values
            if isinstance(all_values, Mapping)
            else category_colors_for(all_values)
        )
        color = palette.get(key)
    if color is None:
        return base
    return replace(base, stroke_color=color, fill_color=color)


def _ranges(feature, layer, base, all_values, index, max_value) -> Style:
    value = _as_float(feature_value(feature, layer.attribute))
    if value is None:
        return base
    for band in layer.ranges:
        if band.contains(value):
            return replace(base, stroke_color=band.color, fill_color=band.color)
    return base


def _icons(feature, layer, base, all_values, index, max_value) -> Style:
    value = feature_value(feature, layer.attribute)
    icon = layer.icon_map.get(str(value)) if value is not None else None
    return replace(base, icon=icon or layer.default_icon)


def _choropleth(feature, layer, base, all_values, index, max_value) -> Style:
    value = _as_float(feature_value(feature, layer.attribute))
    if value is None:
        name = feature_name(feature, layer.name_key, index)
        value = synthetic_metric(name, index, layer.metric or "presupuesto").value
    if max_value is None:
        if all_values is not None and not isinstance(all_values, Mapping):
            nums = [v for v in (_as_float(x) for x in all_values) if v is not None]
            max_value = max(nums) if nums else 0
        else:
            max_value = value
    base_color = METRIC_CONFIG.get(layer.metric or "", {}).get("color", layer.color)
    fill = choropleth_color(value, max_value, base_color, layer.neutral_color)
    return replace(base, fill_color=fill, fill_opacity=0.8)


_RESOLVERS = {
    SymbologyMode.SOLID: _solid,
    SymbologyMode.CATEGORIES: _categories,
    SymbologyMode.RANGES: _ranges,
    SymbologyMode.ICONS: _icons,
    SymbologyMode.CHOROPLETH: _choropleth,
}


def _adjust_for_geometry(style: Style, layer: LayerDescriptor, kind: Optional[str]) -> Style:
    if kind in ("LineString", "MultiLineString"):
        return replace(
            style,
            weight=layer.stroke_width or 4,
            fill_opacity=0,
            dash_array=_DASH_ARRAYS.get(layer.line_style),
        )
    if kind in ("Point", "MultiPoint"):
        return replace(style, opacity=1, radius=layer.point_size)
    return style


def resolve_style(
    feature: Any,
    layer: LayerDescriptor,
    all_values: Sequence[Any] | Mapping[str, str] | None = None,
    *,
    index: int = 0,
    max_value: Optional[float] = None,
) -> Style:
    """Compute the style for one feature of ``layer``.

    ``all_values`` is the layer-wide context for the attribute: the values of
    every feature (categories, choropleth max) or a precomputed value->color
    mapping (categories). ``index`` is the feature's position in the layer,
    used by the synthetic choropleth metric.
    """
    base = _base_style(layer)
    resolver = _RESOLVERS[layer.mode]
    style = resolver(feature, layer, base, all_values, index, max_value)
    return _adjust_for_geometry(style, layer, _feature_geometry_type(feature))


def style_layer(layer: LayerDescriptor) -> List[Style]:
    """Styles for every feature of ``layer``, sharing one layer-wide context."""
    features = layer.features()
    context: Any = None
    max_value = None
    if layer.mode is SymbologyMode.CATEGORIES:
        context = category_colors_for(layer.attribute_values())
    elif layer.mode is SymbologyMode.CHOROPLETH:
        values = []
        for i, f in enumerate(features):
            v = _as_float(feature_value(f, layer.attribute))
            if v is None:
                v = synthetic_metric(
                    feature_name(f, layer.name_key, i), i, layer.metric or "presupuesto"
                ).value
            values.append(v)
        max_value = max(values) if values else 0
    return [
        resolve_style(f, layer, context, index=i, max_value=max_value)
        for i, f in enumerate(features)
    ]
