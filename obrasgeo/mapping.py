"""Convert raw GeoJSON features into :class:`~obrasgeo.entities.ProjectUnit`.

The two project-unit exports (``equipamientos`` and ``infraestructura_vial``)
describe the same entity with different property names. Every attribute is
resolved through an ordered list of candidate keys (:data:`FIELD_RULES`) and
falls back to a documented default, so mapping never raises.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Any, Dict, Iterable, Mapping, Optional, Sequence, Tuple

from .coordinates import normalize
from .entities import (
    SOURCE_EQUIPAMIENTOS,
    SOURCE_INFRAESTRUCTURA,
    ProjectUnit,
    UnitList,
    UnitStatus,
)

__all__ = [
    "STATUS_RULES",
    "FieldRule",
    "FIELD_RULES",
    "first_present",
    "to_number",
    "map_status",
    "split_comuna_corregimiento",
    "split_barrio_vereda",
    "source_for_resource",
    "to_project_unit",
    "map_collection",
]

logger = logging.getLogger(__name__)


# First match wins.
STATUS_RULES: Tuple[Tuple[Tuple[str, ...], UnitStatus], ...] = (
    (("ejecución", "ejecucion"), UnitStatus.EN_EJECUCION),
    (("completado", "terminado", "finalizado"), UnitStatus.COMPLETADO),
    (("suspendido", "pausado"), UnitStatus.SUSPENDIDO),
    (("evaluación", "evaluacion", "revisión"), UnitStatus.EN_EVALUACION),
    (("planificación", "planificacion", "planeación"), UnitStatus.PLANIFICACION),
)


def map_status(raw: Any) -> UnitStatus:
    """Map a free-form status string onto :class:`UnitStatus`.

    A missing value means the unit has not started (``PLANIFICACION``); a value
    that is present but unrecognized is treated as ``EN_EJECUCION``.
    """
    if raw is None:
        return UnitStatus.PLANIFICACION
    text = str(raw).lower().strip()
    if not text:
        return UnitStatus.PLANIFICACION
    for needles, status in STATUS_RULES:
        if any(n in text for n in needles):
            return status
    return UnitStatus.EN_EJECUCION


def _clean_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, float) and math.isnan(value):
        return None
    text = str(value).strip()
    return text or None


def split_comuna_corregimiento(value: Any) -> Dict[str, str]:
    text = _clean_str(value)
    if text is None:
        return {}
    lowered = text.lower()
    if lowered.startswith("comuna"):
        return {"comuna": text}
    # "Corregimiento X" and bare rural names both land here
    return {"corregimiento": text}


def split_barrio_vereda(value: Any) -> Dict[str, str]:
    text = _clean_str(value)
    if text is None:
        return {}
    if text.lower() == "vereda":
        return {"vereda": text}
    return {"barrio": text}


def to_number(value: Any, default: float = 0) -> float:
    """Coerce numbers and numeric strings; anything else yields ``default``."""
    if value is None or isinstance(value, bool):
        return default
    if isinstance(value, (int, float)):
        num = float(value)
    elif isinstance(value, str):
        text = value.strip().replace(",", "")
        if not text:
            return default
        try:
            num = float(text)
        except ValueError:
            return default
    else:
        return default
    if not math.isfinite(num):
        return default
    if num.is_integer() and not isinstance(value, float):
        return int(num)
    return num


def _present(value: Any) -> bool:
    if value is None:
        return False
    if isinstance(value, str):
        return bool(value.strip())
    if isinstance(value, float) and math.isnan(value):
        return False
    return True


def first_present(
    props: Mapping[str, Any], candidates: Sequence[str], default: Any = None
) -> Any:
    """Return the first present, non-empty value among ``candidates``."""
    for key in candidates:
        value = props.get(key)
        if _present(value):
            return value
    return default


@dataclass(frozen=True, slots=True)
class FieldRule:
    candidates: Tuple[str, ...]
    default: Any = None

    def resolve(self, props: Mapping[str, Any]) -> Any:
        return first_present(props, self.candidates, self.default)


FIELD_RULES: Dict[str, FieldRule] = {
    "id": FieldRule(("identificador", "id_via", "id")),
    "bpin": FieldRule(("bpin",), "0"),
    "name": FieldRule(("nickname", "nombre_unidad_proyecto", "seccion_via")),
    "status": FieldRule(("estado_unidad_proyecto", "estado")),
    "comuna_corregimiento": FieldRule(("comuna_corregimiento",)),
    "barrio_vereda": FieldRule(("barrio_vereda",)),
    "budget": FieldRule(("ppto_base", "presupuesto_base"), 0),
    "executed": FieldRule(("pagos_realizados",), 0),
    "paid": FieldRule(("pagos_realizados",), 0),
    "beneficiaries": FieldRule(("usuarios_beneficiarios",), 0),
    "financial_execution": FieldRule(("ejecucion_financiera_obra",), 0),
    "progress": FieldRule(("avance_físico_obra", "avance_fisico_obra"), 0),
    "start_date": FieldRule(
        ("fecha_inicio_real", "fecha_inicio_planeado", "fecha_inicio"), "2024-01-01"
    ),
    "end_date": FieldRule(
        ("fecha_fin_real", "fecha_fin_planeado", "fecha_fin"), "2024-12-31"
    ),
    "responsible": FieldRule(("nombre_centro_gestor",), "No especificado"),
    "intervention_type": FieldRule(("tipo_intervencion",), "Sin especificar"),
    "work_class": FieldRule(("clase_obra",), "Sin especificar"),
    "work_subclass": FieldRule(("subclase_obra",)),
    "description": FieldRule(("descripcion_intervencion", "nickname_detalle")),
    "address": FieldRule(("direccion",)),
    "funding_source": FieldRule(("fuente_financiamiento",)),
    "funding_code": FieldRule(("cod_fuente_financiamiento",)),
}


def source_for_resource(name: str) -> str:
    return SOURCE_EQUIPAMIENTOS if "equipamientos" in name else SOURCE_INFRAESTRUCTURA


def _resolve(props: Mapping[str, Any], attr: str) -> Any:
    return FIELD_RULES[attr].resolve(props)


def _as_text(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    return str(value).strip()


def to_project_unit(feature: Any, source: str, index: int = 0) -> ProjectUnit:
    """Build a ProjectUnit from one raw feature. Never raises."""
    if not isinstance(feature, Mapping):
        feature = {}
    props = feature.get("properties")
    if not isinstance(props, Mapping):
        props = {}
    geometry = feature.get("geometry")

    unit_id = _as_text(_resolve(props, "id")) or f"{source}-{index}"
    name = _as_text(_resolve(props, "name")) or f"Unidad {unit_id}"

    location: Dict[str, str] = {}
    location.update(split_comuna_corregimiento(_resolve(props, "comuna_corregimiento")))
    location.update(split_barrio_vereda(_resolve(props, "barrio_vereda")))

    lat = lng = None
    if isinstance(geometry, Mapping) and geometry.get("type") == "Point":
        fixed = normalize(geometry.get("coordinates"))
        if fixed is not None:
            lng, lat = fixed
        else:
            logger.debug(
                "mapping.point_without_location source=%s id=%s", source, unit_id
            )

    return ProjectUnit(
        id=unit_id,
        name=name,
        source=source,
        bpin=_as_text(_resolve(props, "bpin")) or "0",
        status=map_status(_resolve(props, "status")),
        comuna=location.get("comuna"),
        barrio=location.get("barrio"),
        corregimiento=location.get("corregimiento"),
        vereda=location.get("vereda"),
        budget=to_number(_resolve(props, "budget")),
        executed=to_number(_resolve(props, "executed")),
        paid=to_number(_resolve(props, "paid")),
        beneficiaries=int(to_number(_resolve(props, "beneficiaries"))),
        financial_execution=to_number(_resolve(props, "financial_execution")),
        start_date=_as_text(_resolve(props, "start_date")),
        end_date=_as_text(_resolve(props, "end_date")),
        responsible=_as_text(_resolve(props, "responsible")),
        progress=to_number(_resolve(props, "progress")) * 100,
        intervention_type=_as_text(_resolve(props, "intervention_type")),
        work_class=_as_text(_resolve(props, "work_class")),
        work_subclass=_as_text(_resolve(props, "work_subclass")),
        description=_as_text(_resolve(props, "description")),
        address=_as_text(_resolve(props, "address")),
        funding_source=_as_text(_resolve(props, "funding_source")),
        funding_code=_as_text(_resolve(props, "funding_code")),
        lat=lat,
        lng=lng,
        geometry=geometry,
        meta=dict(props),
    )


def map_collection(collection: Mapping[str, Any], source: str) -> UnitList:
    features: Iterable[Any] = collection.get("features") or []
    units = UnitList(
        to_project_unit(feature, source, index) for index, feature in enumerate(features)
    )
    located = sum(1 for u in units if u.has_location)
    logger.info(
        "mapping.collection_mapped source=%s units=%d located=%d",
        source,
        len(units),
        located,
    )
    return units
