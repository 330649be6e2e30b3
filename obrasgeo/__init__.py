# obrasgeo/__init__.py
from importlib.metadata import PackageNotFoundError, version
import sys
import warnings

_MINIMUM_PYTHON = (3, 11)
_REQUIRED_DEPENDENCIES = {
    "pandas": "2.1",
    "numpy": "1.26",
    "httpx": "0.25",
    "pyyaml": "6.0",
}

_OPTIONAL_DEPENDENCIES = {
    "shapely": "2.0",
    "geopandas": "0.14",
}

if sys.version_info < _MINIMUM_PYTHON:
    raise RuntimeError(f"Python >= {'.'.join(map(str, _MINIMUM_PYTHON))} is required.")


def _gte(installed: str, required: str) -> bool:
    from packaging import version as pv

    return pv.parse(installed) >= pv.parse(required)


def _check(deps: dict) -> list[str]:
    issues: list[str] = []
    for pkg, minv in deps.items():
        try:
            v = version(pkg)
        except PackageNotFoundError:
            issues.append(f"{pkg}>={minv} (not installed)")
            continue
        if not _gte(v, minv):
            issues.append(f"{pkg}>={minv} (found {v})")
    return issues


_required_issues = _check(_REQUIRED_DEPENDENCIES)
if _required_issues:
    raise ImportError(
        "obrasgeo requires the following dependencies: " + ", ".join(_required_issues)
    ) from None

_optional_issues = _check(_OPTIONAL_DEPENDENCIES)
if _optional_issues:
    warnings.warn(
        "Optional geospatial dependencies are missing or out of date: "
        + ", ".join(_optional_issues)
        + ". GeoDataFrame export and exact centroids may be unavailable.",
        RuntimeWarning,
        stacklevel=2,
    )


try:
    __version__ = version("obrasgeo")
except PackageNotFoundError:
    __version__ = "0.0.0"

from .cache import AggregateSnapshot, GeodataCache
from .config import Settings, load_settings
from .coordinates import normalize
from .entities import ProjectUnit, UnitList, UnitStatus
from .errors import ConfigError, FetchError, FetchTimeout, GeodataError, SchemaError
from .filters import FilterSet, Hierarchy, apply_all, matches
from .mapping import map_collection, map_status, to_project_unit
from .service import ProjectUnitsService
from .symbology import LayerDescriptor, SymbologyMode, resolve_style

__all__ = [
    "AggregateSnapshot",
    "ConfigError",
    "FetchError",
    "FetchTimeout",
    "FilterSet",
    "GeodataCache",
    "GeodataError",
    "Hierarchy",
    "LayerDescriptor",
    "ProjectUnit",
    "ProjectUnitsService",
    "SchemaError",
    "Settings",
    "SymbologyMode",
    "UnitList",
    "UnitStatus",
    "apply_all",
    "load_settings",
    "map_collection",
    "map_status",
    "matches",
    "normalize",
    "resolve_style",
    "to_project_unit",
    "__version__",
]
