"""
config.py

Settings loader for obrasgeo.

- YAML/TOML settings files, detected by suffix (YAML first, then TOML, otherwise)
- Logical resource names -> resource keys (paths) fetched by the cache
- Per-resource timeouts and load priorities
- Environment overrides: OBRASGEO_CONFIG, OBRASGEO_BASE_URL, OBRASGEO_TIMEOUT_S
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from .errors import ConfigError

__all__ = [
    "DEFAULT_TIMEOUT_S",
    "Settings",
    "load_settings",
    "settings_from_env",
]

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_S = 30.0

_DEFAULT_CATEGORIES: Dict[str, List[str]] = {
    "cartografia_base": ["barrios", "comunas", "corregimientos", "veredas"],
    "unidades_proyecto": ["equipamientos", "infraestructura_vial"],
    "centros_gravedad": ["centros_gravedad_unificado"],
}

_DEFAULT_PATHS: Dict[str, str] = {
    "barrios": "geodata/barrios.geojson",
    "comunas": "geodata/comunas.geojson",
    "corregimientos": "geodata/corregimientos.geojson",
    "veredas": "geodata/veredas.geojson",
    "equipamientos": "data/unidades_proyecto/equipamientos.geojson",
    "infraestructura_vial": "data/unidades_proyecto/infraestructura_vial.geojson",
    "centros_gravedad_unificado": "geodata/centros_gravedad_unificado.geojson",
}

_DEFAULT_PRIORITIES: Dict[str, int] = {
    "equipamientos": 1,
    "infraestructura_vial": 2,
    "comunas": 3,
    "barrios": 4,
    "centros_gravedad_unificado": 5,
    "corregimientos": 6,
    "veredas": 7,
}

_DEFAULT_SOURCES: Dict[str, str] = {
    "equipamientos": "equipamientos",
    "infraestructura_vial": "infraestructura",
}


# ------------------------------
# Loading utilities (YAML/TOML)
# ------------------------------


def _load_yaml(text: str) -> dict:
    import yaml

    data = yaml.safe_load(text) or {}
    if not isinstance(data, dict):
        raise ConfigError("YAML root must be a mapping (dict).")
    return data


def _load_toml(text: str) -> dict:
    import tomllib

    data = tomllib.loads(text)
    if not isinstance(data, dict):
        raise ConfigError("TOML root must be a mapping (dict).")
    return data


def _detect_and_load(path: Path) -> dict:
    suffix = path.suffix.lower()
    text = path.read_text(encoding="utf-8")
    if suffix in (".yaml", ".yml"):
        return _load_yaml(text)
    if suffix == ".toml":
        return _load_toml(text)
    # Last resort: try YAML first, then TOML
    try:
        return _load_yaml(text)
    except Exception:
        return _load_toml(text)


def _mapping(raw: Dict[str, Any], key: str) -> Dict[str, Any]:
    value = raw.get(key, {})
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ConfigError(f"[{key}] must be a mapping.")
    return value


def _positive_float(value: Any, label: str) -> float:
    try:
        out = float(value)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"{label} must be a number, got {value!r}") from e
    if out <= 0:
        raise ConfigError(f"{label} must be positive, got {value!r}")
    return out


# ------------------------------
# Data model
# ------------------------------


@dataclass
class Settings:
    base_url: str = ""
    timeout_s: float = DEFAULT_TIMEOUT_S
    timeouts: Dict[str, float] = field(default_factory=dict)
    resource_paths: Dict[str, str] = field(default_factory=lambda: dict(_DEFAULT_PATHS))
    aliases: Dict[str, str] = field(
        default_factory=lambda: {"infraestructura": "infraestructura_vial"}
    )
    categories: Dict[str, List[str]] = field(
        default_factory=lambda: {k: list(v) for k, v in _DEFAULT_CATEGORIES.items()}
    )
    load_priorities: Dict[str, int] = field(
        default_factory=lambda: dict(_DEFAULT_PRIORITIES)
    )
    sources: Dict[str, str] = field(default_factory=lambda: dict(_DEFAULT_SOURCES))
    max_entries: Optional[int] = None
    max_age_s: Optional[float] = None
    options: Dict[str, Any] = field(default_factory=dict)

    @staticmethod
    def from_dict(d: Dict[str, Any]) -> "Settings":
        if not isinstance(d, dict):
            raise ConfigError("Settings must be a mapping at the top level.")

        base = Settings()
        cache_raw = _mapping(d, "cache")
        timeouts = {
            str(k): _positive_float(v, f"timeouts.{k}")
            for k, v in _mapping(d, "timeouts").items()
        }
        categories: Dict[str, List[str]] = dict(base.categories)
        for name, files in _mapping(d, "categories").items():
            if not isinstance(files, list):
                raise ConfigError(f"[categories.{name}] must be a list of names.")
            categories[str(name)] = [str(f) for f in files]

        priorities = dict(base.load_priorities)
        for name, prio in _mapping(d, "load_priorities").items():
            try:
                priorities[str(name)] = int(prio)
            except (TypeError, ValueError) as e:
                raise ConfigError(f"load_priorities.{name} must be an integer") from e

        max_entries = cache_raw.get("max_entries")
        max_age_s = cache_raw.get("max_age_s")
        settings = Settings(
            base_url=str(d.get("base_url", base.base_url) or ""),
            timeout_s=_positive_float(d.get("timeout_s", base.timeout_s), "timeout_s"),
            timeouts=timeouts,
            resource_paths={
                **base.resource_paths,
                **{str(k): str(v) for k, v in _mapping(d, "resources").items()},
            },
            aliases={
                **base.aliases,
                **{str(k): str(v) for k, v in _mapping(d, "aliases").items()},
            },
            categories=categories,
            load_priorities=priorities,
            sources={
                **base.sources,
                **{str(k): str(v) for k, v in _mapping(d, "sources").items()},
            },
            max_entries=int(max_entries) if max_entries is not None else None,
            max_age_s=(
                _positive_float(max_age_s, "cache.max_age_s")
                if max_age_s is not None
                else None
            ),
            options=_mapping(d, "options"),
        )
        return settings

    # ---------- Core APIs ----------
    def canonical_name(self, name: str) -> str:
        return self.aliases.get(name, name)

    def resolve_path(self, name: str) -> str:
        """Resource key (path relative to the fetcher root) for a logical name."""
        actual = self.canonical_name(name)
        return self.resource_paths.get(actual, f"geodata/{actual}.geojson")

    def timeout_for(self, name: str) -> float:
        return self.timeouts.get(self.canonical_name(name), self.timeout_s)

    def source_for(self, name: str) -> Optional[str]:
        return self.sources.get(self.canonical_name(name))

    def files_for(
        self,
        categories: Sequence[str] | None = None,
        specific: Sequence[str] | None = None,
        *,
        priority_first: bool = True,
    ) -> List[str]:
        if specific:
            names = [self.canonical_name(n) for n in specific]
        else:
            chosen = categories or ("cartografia_base", "unidades_proyecto")
            names = []
            for cat in chosen:
                if cat not in self.categories:
                    logger.warning("config.unknown_category category=%s", cat)
                    continue
                names.extend(self.categories[cat])
        seen: set[str] = set()
        ordered = [n for n in names if not (n in seen or seen.add(n))]
        if priority_first:
            ordered.sort(key=lambda n: self.load_priorities.get(n, 999))
        return ordered


def load_settings(path: str | Path) -> Settings:
    p = Path(path)
    if not p.exists():
        raise FileNotFoundError(p)
    raw = _detect_and_load(p)
    settings = Settings.from_dict(raw)
    logger.info("config.loaded path=%s base_url=%s", p, settings.base_url or "-")
    return settings


def settings_from_env(environ: Optional[Dict[str, str]] = None) -> Settings:
    """Build settings from ``OBRASGEO_CONFIG`` plus scalar env overrides."""
    env = os.environ if environ is None else environ
    cfg_path = env.get("OBRASGEO_CONFIG", "").strip()
    settings = load_settings(cfg_path) if cfg_path else Settings()

    base_url = env.get("OBRASGEO_BASE_URL", "").strip()
    if base_url:
        settings = replace(settings, base_url=base_url)
    timeout = env.get("OBRASGEO_TIMEOUT_S", "").strip()
    if timeout:
        settings = replace(
            settings, timeout_s=_positive_float(timeout, "OBRASGEO_TIMEOUT_S")
        )
    return settings
