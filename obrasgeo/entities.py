"""Domain entities (ProjectUnit) and collection helpers."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional

from .geometry import centroid_lnglat, geometry_type, to_shape

__all__ = [
    "UnitStatus",
    "SOURCE_EQUIPAMIENTOS",
    "SOURCE_INFRAESTRUCTURA",
    "ProjectUnit",
    "UnitList",
]

SOURCE_EQUIPAMIENTOS = "equipamientos"
SOURCE_INFRAESTRUCTURA = "infraestructura"


class UnitStatus(str, Enum):
    EN_EJECUCION = "En Ejecución"
    PLANIFICACION = "Planificación"
    COMPLETADO = "Completado"
    SUSPENDIDO = "Suspendido"
    EN_EVALUACION = "En Evaluación"

    def __str__(self) -> str:
        return self.value


@dataclass(slots=True)
class ProjectUnit:
    id: str
    name: str
    source: str
    bpin: str = "0"
    status: UnitStatus = UnitStatus.PLANIFICACION

    comuna: Optional[str] = None
    barrio: Optional[str] = None
    corregimiento: Optional[str] = None
    vereda: Optional[str] = None

    budget: float = 0
    executed: float = 0
    paid: float = 0
    beneficiaries: int = 0
    financial_execution: float = 0

    start_date: str = "2024-01-01"
    end_date: str = "2024-12-31"
    responsible: str = "No especificado"
    progress: float = 0.0

    intervention_type: str = "Sin especificar"
    work_class: str = "Sin especificar"
    work_subclass: Optional[str] = None
    description: Optional[str] = None
    address: Optional[str] = None
    funding_source: Optional[str] = None
    funding_code: Optional[str] = None

    lat: Optional[float] = None
    lng: Optional[float] = None

    geometry: Any = field(default=None, repr=False)
    meta: dict[str, Any] = field(default_factory=dict, repr=False, compare=False)

    def __post_init__(self):
        if not isinstance(self.status, UnitStatus):
            self.status = UnitStatus(self.status)
        self.progress = min(max(float(self.progress), 0.0), 100.0)

    def __hash__(self):
        return hash((self.source, self.id))

    def __format__(self, spec: str) -> str:
        if spec == "brief":
            return f"{self.name} ({self.status.value}, {self.progress:.0f}%)"
        return f"ProjectUnit<{self.source}:{self.id}>"

    @property
    def geometry_type(self) -> Optional[str]:
        return geometry_type(self.geometry)

    @property
    def has_location(self) -> bool:
        return self.lat is not None and self.lng is not None

    @property
    def coords(self) -> tuple[float, float] | None:
        """``(lng, lat)`` for located points, else the geometry's centroid."""
        if self.has_location:
            return (self.lng, self.lat)
        return centroid_lnglat(self.geometry)

    def to_dict(self, *, include_meta: bool = False, include_geometry: bool = False) -> dict:
        out = {
            "id": self.id,
            "bpin": self.bpin,
            "name": self.name,
            "status": self.status.value,
            "comuna": self.comuna,
            "barrio": self.barrio,
            "corregimiento": self.corregimiento,
            "vereda": self.vereda,
            "budget": self.budget,
            "executed": self.executed,
            "paid": self.paid,
            "beneficiaries": self.beneficiaries,
            "financial_execution": self.financial_execution,
            "start_date": self.start_date,
            "end_date": self.end_date,
            "responsible": self.responsible,
            "progress": self.progress,
            "intervention_type": self.intervention_type,
            "work_class": self.work_class,
            "work_subclass": self.work_subclass,
            "description": self.description,
            "address": self.address,
            "funding_source": self.funding_source,
            "funding_code": self.funding_code,
            "lat": self.lat,
            "lng": self.lng,
            "source": self.source,
        }
        if include_meta and isinstance(self.meta, dict):
            for k, v in self.meta.items():
                if k not in out:
                    out[k] = v
        if include_geometry:
            out["geometry_type"] = self.geometry_type
            out["geometry"] = self.geometry
        return out


class UnitList(list):
    def to_dicts(
        self, *, include_meta: bool = False, include_geometry: bool = False
    ) -> list[dict]:
        return [
            unit.to_dict(include_meta=include_meta, include_geometry=include_geometry)
            for unit in self
        ]

    def to_df(
        self,
        columns: list[str] | None = None,
        *,
        include_meta: bool = False,
    ):
        import pandas as pd

        df = pd.DataFrame(self.to_dicts(include_meta=include_meta))
        if columns is not None:
            cols = [c for c in columns if c in df.columns]
            df = df[cols]
        return df

    def to_gdf(self, *, crs: str = "EPSG:4326"):
        try:
            import geopandas as gpd  # type: ignore[import-untyped]
        except Exception as exc:
            raise ImportError(
                "geopandas is required for .to_gdf(); install geopandas to use this feature"
            ) from exc
        df = self.to_df()
        shapes = []
        for unit in self:
            if unit.has_location:
                shapes.append(
                    to_shape({"type": "Point", "coordinates": [unit.lng, unit.lat]})
                )
            elif unit.geometry_type == "Point":
                # unrepaired raw point coordinates are not drawable
                shapes.append(None)
            else:
                shapes.append(to_shape(unit.geometry))
        return gpd.GeoDataFrame(df, geometry=shapes, crs=crs)

    def located(self) -> "UnitList":
        return UnitList(u for u in self if u.has_location)

    def by_source(self, source: str) -> "UnitList":
        return UnitList(u for u in self if u.source == source)

    def unique(self, attr):
        if callable(attr):
            getter = attr
        else:
            getter = lambda o: getattr(o, attr, None)
        values = [getter(obj) for obj in self]
        return sorted(set(v for v in values if v is not None))

    def value_counts(
        self, attr, *, dropna: bool = True, sort: bool = True, descending: bool = True
    ):
        if callable(attr):
            getter = attr
        else:
            getter = lambda o: getattr(o, attr, None)

        counts: Dict[Any, int] = {}
        for obj in self:
            v = getter(obj)
            if v is None and dropna:
                continue
            counts[v] = counts.get(v, 0) + 1

        if sort:
            items = list(counts.items())
            items.sort(key=lambda kv: (-(kv[1]) if descending else kv[1], str(kv[0])))
            return items
        return counts

    def head(self, n=5):
        return UnitList(self[:n])
