"""Filter predicates and cascading geographic selection over ProjectUnits."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, fields, replace
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from .entities import ProjectUnit, UnitList

__all__ = [
    "FilterSet",
    "DIMENSION_ATTRIBUTES",
    "SEARCH_ATTRIBUTES",
    "CASCADES",
    "ALL_PARENTS",
    "Hierarchy",
    "search_text",
    "matches",
    "apply_all",
    "available_children",
    "select_parent",
    "deselect_parent",
    "select_child",
    "deselect_child",
    "clear_dimension",
]

logger = logging.getLogger(__name__)

DIMENSION_ATTRIBUTES: Dict[str, str] = {
    "centro_gestor": "responsible",
    "comunas": "comuna",
    "barrios": "barrio",
    "corregimientos": "corregimiento",
    "veredas": "vereda",
    "fuentes_financiamiento": "funding_source",
}

SEARCH_ATTRIBUTES: Tuple[str, ...] = (
    "name",
    "bpin",
    "responsible",
    "comuna",
    "barrio",
    "corregimiento",
    "vereda",
    "intervention_type",
    "work_class",
    "description",
    "address",
)

# parent dimension -> child dimension
CASCADES: Dict[str, str] = {"comunas": "barrios", "corregimientos": "veredas"}

# Selecting the city itself makes every child reachable.
ALL_PARENTS = "Santiago de Cali"


def _norm(value: Any) -> str:
    return str(value).strip().casefold()


@dataclass(frozen=True)
class FilterSet:
    search: str = ""
    estado: Optional[str] = None
    centro_gestor: Tuple[str, ...] = ()
    comunas: Tuple[str, ...] = ()
    barrios: Tuple[str, ...] = ()
    corregimientos: Tuple[str, ...] = ()
    veredas: Tuple[str, ...] = ()
    fuentes_financiamiento: Tuple[str, ...] = ()

    def __post_init__(self):
        if not isinstance(self.search, str):
            object.__setattr__(self, "search", "" if self.search is None else str(self.search))
        for name in DIMENSION_ATTRIBUTES:
            value = getattr(self, name)
            if value is None:
                value = ()
            elif isinstance(value, str):
                value = (value,)
            object.__setattr__(self, name, tuple(dict.fromkeys(value)))

    @property
    def estado_active(self) -> bool:
        return bool(self.estado) and _norm(self.estado) not in ("all", "todos")

    def active_dimensions(self) -> List[str]:
        active = [name for name in DIMENSION_ATTRIBUTES if getattr(self, name)]
        if self.estado_active:
            active.insert(0, "estado")
        if self.search.strip():
            active.insert(0, "search")
        return active

    def is_empty(self) -> bool:
        return not self.active_dimensions()

    def replace(self, **changes: Any) -> "FilterSet":
        return replace(self, **changes)

    def to_dict(self) -> dict:
        return {f.name: getattr(self, f.name) for f in fields(self)}


def search_text(unit: ProjectUnit) -> str:
    parts = []
    for attr in SEARCH_ATTRIBUTES:
        value = getattr(unit, attr, None)
        if value is not None and str(value).strip():
            parts.append(str(value))
    return " | ".join(parts).lower()


def matches(unit: ProjectUnit, filters: FilterSet) -> bool:
    term = filters.search.strip().lower()
    if term and term not in search_text(unit):
        return False

    if filters.estado_active and _norm(unit.status.value) != _norm(filters.estado):
        return False

    for dimension, attr in DIMENSION_ATTRIBUTES.items():
        selected = getattr(filters, dimension)
        if not selected:
            continue
        value = getattr(unit, attr, None)
        if value is None or not str(value).strip():
            return False
        if _norm(value) not in {_norm(s) for s in selected}:
            return False
    return True


def apply_all(units: Iterable[ProjectUnit], filters: FilterSet) -> UnitList:
    if filters.is_empty():
        return UnitList(units)
    return UnitList(u for u in units if matches(u, filters))


# ------------------------------------------------------------------
# Cascading selection
# ------------------------------------------------------------------


@dataclass
class Hierarchy:
    """Registered parent -> children relation for one cascade (e.g. comuna -> barrio)."""

    children: Dict[str, List[str]] = field(default_factory=dict)

    @classmethod
    def from_pairs(cls, pairs: Iterable[Tuple[Any, Any]]) -> "Hierarchy":
        children: Dict[str, List[str]] = {}
        for parent, child in pairs:
            if not parent or not child:
                continue
            bucket = children.setdefault(str(parent), [])
            if str(child) not in bucket:
                bucket.append(str(child))
        for bucket in children.values():
            bucket.sort()
        return cls(children=dict(sorted(children.items())))

    @classmethod
    def from_features(
        cls, collection: Mapping[str, Any], parent_key: str, child_key: str
    ) -> "Hierarchy":
        """Build from a boundary layer whose features carry both names."""
        pairs = []
        for feature in collection.get("features") or []:
            props = feature.get("properties") if isinstance(feature, Mapping) else None
            if isinstance(props, Mapping):
                pairs.append((props.get(parent_key), props.get(child_key)))
        return cls.from_pairs(pairs)

    @property
    def parents(self) -> List[str]:
        return list(self.children)

    def parents_of(self, child: str) -> List[str]:
        key = _norm(child)
        return [p for p, kids in self.children.items() if key in {_norm(k) for k in kids}]

    def children_of(self, parents: Sequence[str]) -> List[str]:
        """Union of the registered children of ``parents``, sorted."""
        if any(_norm(p) == _norm(ALL_PARENTS) for p in parents):
            wanted = list(self.children)
        else:
            lookup = {_norm(p): p for p in self.children}
            wanted = [lookup[_norm(p)] for p in parents if _norm(p) in lookup]
        out = set()
        for parent in wanted:
            out.update(self.children[parent])
        return sorted(out)


def _child_dimension(parent_dim: str) -> str:
    try:
        return CASCADES[parent_dim]
    except KeyError:
        raise ValueError(f"{parent_dim!r} is not a cascading parent dimension") from None


def _parent_dimension(child_dim: str) -> str:
    for parent, child in CASCADES.items():
        if child == child_dim:
            return parent
    raise ValueError(f"{child_dim!r} is not a cascading child dimension")


def available_children(
    filters: FilterSet, parent_dim: str, hierarchy: Hierarchy
) -> List[str]:
    """Child values selectable under the current parent selection."""
    _child_dimension(parent_dim)
    parents = getattr(filters, parent_dim)
    if not parents:
        return sorted({c for kids in hierarchy.children.values() for c in kids})
    return hierarchy.children_of(parents)


def select_parent(filters: FilterSet, parent_dim: str, value: str) -> FilterSet:
    _child_dimension(parent_dim)
    current = getattr(filters, parent_dim)
    if value in current:
        return filters
    return filters.replace(**{parent_dim: current + (value,)})


def deselect_parent(
    filters: FilterSet, parent_dim: str, value: str, hierarchy: Hierarchy
) -> FilterSet:
    """Remove a parent and prune children no remaining parent can reach."""
    child_dim = _child_dimension(parent_dim)
    remaining = tuple(p for p in getattr(filters, parent_dim) if _norm(p) != _norm(value))
    if not remaining:
        return filters.replace(**{parent_dim: (), child_dim: ()})
    allowed = {_norm(c) for c in hierarchy.children_of(remaining)}
    kept = tuple(c for c in getattr(filters, child_dim) if _norm(c) in allowed)
    dropped = len(getattr(filters, child_dim)) - len(kept)
    if dropped:
        logger.debug(
            "filters.children_pruned parent=%s dimension=%s dropped=%d",
            value,
            child_dim,
            dropped,
        )
    return filters.replace(**{parent_dim: remaining, child_dim: kept})


def select_child(
    filters: FilterSet, child_dim: str, value: str, hierarchy: Hierarchy
) -> FilterSet:
    """Add a child when a selected parent reaches it or no parent filter is active.

    An invalid selection leaves ``filters`` unchanged.
    """
    parent_dim = _parent_dimension(child_dim)
    current = getattr(filters, child_dim)
    if value in current:
        return filters
    parents = getattr(filters, parent_dim)
    if parents:
        reachable = {_norm(c) for c in hierarchy.children_of(parents)}
        if _norm(value) not in reachable:
            logger.debug(
                "filters.child_rejected dimension=%s value=%s parents=%s",
                child_dim,
                value,
                list(parents),
            )
            return filters
    return filters.replace(**{child_dim: current + (value,)})


def deselect_child(filters: FilterSet, child_dim: str, value: str) -> FilterSet:
    _parent_dimension(child_dim)
    current = getattr(filters, child_dim)
    return filters.replace(
        **{child_dim: tuple(c for c in current if _norm(c) != _norm(value))}
    )


def clear_dimension(filters: FilterSet, dimension: str) -> FilterSet:
    """Reset one dimension; clearing a parent also clears its child dimension."""
    if dimension == "search":
        return filters.replace(search="")
    if dimension == "estado":
        return filters.replace(estado=None)
    if dimension not in DIMENSION_ATTRIBUTES:
        raise ValueError(f"Unknown filter dimension {dimension!r}")
    changes: Dict[str, Any] = {dimension: ()}
    if dimension in CASCADES:
        changes[CASCADES[dimension]] = ()
    return filters.replace(**changes)
