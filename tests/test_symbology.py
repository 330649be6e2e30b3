import pytest

from obrasgeo.entities import ProjectUnit
from obrasgeo.symbology import (
    DEFAULT_CATEGORY_COLORS,
    DEFAULT_ICONS,
    NEUTRAL_COLOR,
    LayerDescriptor,
    RangeBand,
    SymbologyMode,
    category_colors_for,
    choropleth_color,
    generate_ranges,
    hex_to_rgb,
    metrics_by_area,
    resolve_style,
    style_layer,
    synthetic_metric,
)


def _feature(props=None, geometry=None):
    return {
        "type": "Feature",
        "geometry": geometry or {"type": "Polygon", "coordinates": [[[0, 0], [1, 0], [1, 1], [0, 0]]]},
        "properties": props or {},
    }


def test_mode_accepts_legacy_and_mixed_case_names():
    assert SymbologyMode("fixed") is SymbologyMode.SOLID
    assert SymbologyMode("Choropleth") is SymbologyMode.CHOROPLETH
    with pytest.raises(ValueError):
        SymbologyMode("heatmap")


def test_solid_ignores_the_feature():
    layer = LayerDescriptor(id="l", name="Comunas", color="#112233", opacity=0.5)

    style = resolve_style(_feature({"x": 1}), layer)

    assert style.fill_color == "#112233"
    assert style.stroke_color == "#112233"
    assert style.fill_opacity == 0.5


def test_categories_use_first_seen_palette_order():
    layer = LayerDescriptor(id="l", name="n", mode="categories", attribute="tipo")
    values = ["b", "a", "b", None, "c"]

    colors = [resolve_style(_feature({"tipo": v}), layer, values).fill_color for v in ("a", "b", "c")]

    assert colors == [
        DEFAULT_CATEGORY_COLORS[1],
        DEFAULT_CATEGORY_COLORS[0],
        DEFAULT_CATEGORY_COLORS[2],
    ]
    assert category_colors_for(values) == {
        "b": DEFAULT_CATEGORY_COLORS[0],
        "a": DEFAULT_CATEGORY_COLORS[1],
        "c": DEFAULT_CATEGORY_COLORS[2],
    }


def test_categories_prefer_explicit_colors_and_read_units():
    layer = LayerDescriptor(
        id="l",
        name="n",
        mode=SymbologyMode.CATEGORIES,
        attribute="status",
        category_colors={"Completado": "#00FF00"},
    )
    unit = ProjectUnit(id="1", name="u", source="equipamientos", status="Completado")

    assert resolve_style(unit, layer).fill_color == "#00FF00"


def test_ranges_bucket_values_and_fall_back_to_layer_color():
    layer = LayerDescriptor(
        id="l",
        name="n",
        color="#999999",
        mode="ranges",
        attribute="valor",
        ranges=[RangeBand(0, 10, "#000001"), RangeBand(10, 20, "#000002")],
    )

    assert resolve_style(_feature({"valor": 5}), layer).fill_color == "#000001"
    assert resolve_style(_feature({"valor": "15"}), layer).fill_color == "#000002"
    assert resolve_style(_feature({"valor": 50}), layer).fill_color == "#999999"
    assert resolve_style(_feature({"valor": "n/a"}), layer).fill_color == "#999999"


def test_generate_ranges_spans_values():
    bands = generate_ranges([0, 2, "10", None, "x"], n=5)

    assert len(bands) == 5
    assert bands[0].min == 0
    assert bands[-1].max == 10
    assert bands[1].label == "2.0 - 4.0"
    assert generate_ranges([]) == []


def test_icons_lookup_with_default():
    layer = LayerDescriptor(
        id="l",
        name="n",
        mode="icons",
        attribute="clase",
        icon_map={"Salud": DEFAULT_ICONS["Salud"]},
    )

    assert resolve_style(_feature({"clase": "Salud"}), layer).icon == DEFAULT_ICONS["Salud"]
    assert resolve_style(_feature({"clase": "Otro"}), layer).icon == DEFAULT_ICONS["default"]


def test_choropleth_color_gradient_and_boost():
    assert hex_to_rgb("#059669") == (5, 150, 105)
    assert choropleth_color(50, 100, "#059669") == "rgba(5, 150, 105, 0.6)"
    assert choropleth_color(100, 100, "#059669") == "rgba(25, 140, 95, 1)"
    assert choropleth_color(300, 100, "#059669") == "rgba(25, 140, 95, 1)"
    assert choropleth_color(100, 100, "#FF0505") == "rgba(255, 0, 0, 1)"


@pytest.mark.parametrize(
    "value, max_value", [(0, 100), (5, 0), (0, 0), (-5, 100), (5, -10), (None, 100)]
)
def test_choropleth_zero_maps_to_neutral(value, max_value):
    assert choropleth_color(value, max_value, "#059669") == NEUTRAL_COLOR
    assert choropleth_color(value, max_value, "#059669", "#374151") == "#374151"


def test_synthetic_metric_is_reproducible():
    first = synthetic_metric("Comuna 1", 0, "presupuesto")
    second = synthetic_metric("Comuna 1", 0, "presupuesto")

    assert first == second
    assert first.value == 512200
    assert synthetic_metric("Comuna 1", 1, "presupuesto") != first


@pytest.mark.parametrize("metric", ["presupuesto", "proyectos", "actividades"])
def test_synthetic_metric_values_are_non_negative_integers(metric):
    for i, name in enumerate(["Centro", "Alto Nápoles", "Comuna 22", "Sur"]):
        sample = synthetic_metric(name, i, metric)
        assert sample.value >= 0
        assert sample.value == int(sample.value)


def test_metrics_by_area_sorted_with_percentages():
    features = [_feature({"nombre": n}) for n in ("Comuna 1", "Centro", "Barrio Alto")]

    samples = metrics_by_area(features, "presupuesto")

    values = [s.value for s in samples]
    assert values == sorted(values, reverse=True)
    assert samples[0].percentage == pytest.approx(100.0)


def test_choropleth_style_is_deterministic():
    layer = LayerDescriptor(id="l", name="n", mode="choropleth", metric="proyectos")
    feature = _feature({"nombre": "Comuna 3"})

    styles = {resolve_style(feature, layer, index=2, max_value=20) for _ in range(5)}

    assert len(styles) == 1
    assert styles.pop().fill_opacity == 0.8


def test_choropleth_zero_value_is_neutral_for_every_metric():
    for metric in ("presupuesto", "proyectos", "actividades"):
        layer = LayerDescriptor(
            id="l", name="n", mode="choropleth", metric=metric, attribute="valor"
        )
        style = resolve_style(_feature({"valor": 0}), layer, max_value=10)
        assert style.fill_color == NEUTRAL_COLOR


def test_choropleth_max_from_all_values():
    layer = LayerDescriptor(
        id="l", name="n", mode="choropleth", attribute="valor", color="#059669"
    )

    style = resolve_style(_feature({"valor": 50}), layer, [10, 50, 100])

    assert style.fill_color == "rgba(5, 150, 105, 0.6)"


def test_geometry_specific_adjustments():
    layer = LayerDescriptor(id="l", name="n", line_style="dashed")
    line = _feature(geometry={"type": "LineString", "coordinates": [[0, 0], [1, 1]]})
    point = _feature(geometry={"type": "Point", "coordinates": [-76.5, 3.4]})

    line_style = resolve_style(line, layer)
    point_style = resolve_style(point, layer)

    assert line_style.weight == 4
    assert line_style.fill_opacity == 0
    assert line_style.dash_array == "10, 10"
    assert point_style.radius == 8
    assert point_style.opacity == 1
    assert point_style.to_leaflet()["radius"] == 8


def test_style_layer_shares_one_context():
    collection = {
        "type": "FeatureCollection",
        "features": [_feature({"tipo": t}) for t in ("x", "y", "x")],
    }
    layer = LayerDescriptor(
        id="l", name="n", mode="categories", attribute="tipo", data=collection
    )

    styles = style_layer(layer)

    assert [s.fill_color for s in styles] == [
        DEFAULT_CATEGORY_COLORS[0],
        DEFAULT_CATEGORY_COLORS[1],
        DEFAULT_CATEGORY_COLORS[0],
    ]


def test_style_layer_choropleth_uses_visible_max():
    names = ("Comuna 1", "Centro", "Sur")
    collection = {"features": [_feature({"nombre": n}) for n in names]}
    layer = LayerDescriptor(id="l", name="n", mode="choropleth", data=collection)
    values = [synthetic_metric(n, i).value for i, n in enumerate(names)]

    fills = [s.fill_color for s in style_layer(layer)]

    assert fills[values.index(max(values))].endswith(", 1)")
