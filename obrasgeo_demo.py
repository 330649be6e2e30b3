import asyncio
import logging

from obrasgeo import FilterSet, LayerDescriptor, ProjectUnitsService, apply_all
from obrasgeo.filters import select_child, select_parent
from obrasgeo.symbology import style_layer

logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s %(message)s")

# Reads OBRASGEO_CONFIG / OBRASGEO_BASE_URL; without a base URL files are read from cwd
service = ProjectUnitsService.from_env()
snapshot = asyncio.run(service.load_units())

print(f"Loaded {len(snapshot.resources)} resources and {len(snapshot.units)} project units")
for key, error in snapshot.errors.items():
    print("  failed:", key, "->", error)
print("Stats:", service.geodata_stats(snapshot))

units = snapshot.units
print(f"\n{len(units.located())} units have a point location. By status:")
for status, count in units.value_counts(lambda u: u.status.value):
    print(f"- {status}: {count}")

# Cascading geographic selection
comunas = service.hierarchy_from_boundaries(snapshot, "comunas")
filters = FilterSet()
if comunas.parents:
    first = comunas.parents[0]
    filters = select_parent(filters, "comunas", first)
    children = comunas.children_of([first])
    if children:
        filters = select_child(filters, "barrios", children[0], comunas)
print("\nFilters:", filters.to_dict())
selected = apply_all(units, filters)
print(f"{len(selected)} units match. First few:")
for unit in selected.head(5):
    print(f"- {unit:brief}")

# Choropleth styles for the comunas layer
comunas_layer = service.layer(snapshot, "comunas")
if comunas_layer is not None:
    layer = LayerDescriptor(
        id="comunas",
        name="Comunas",
        mode="choropleth",
        metric="presupuesto",
        data=comunas_layer.collection,
        name_key="comuna",
    )
    for style in style_layer(layer)[:3]:
        print(style.to_leaflet())
