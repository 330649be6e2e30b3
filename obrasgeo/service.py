"""
service.py

Composition root: one ProjectUnitsService owns the Settings, the fetcher and
the shared GeodataCache, and exposes the load/subscribe surface used by every
consumer. Logical resource names ("equipamientos", "barrios", ...) are
resolved to resource keys through Settings before they reach the cache.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, Mapping, Optional, Sequence

from .cache import AggregateSnapshot, CacheStats, GeodataCache, ParsedResource
from .config import Settings, settings_from_env
from .fetchers import FileFetcher, Fetcher, HttpFetcher
from .filters import Hierarchy

__all__ = ["ProjectUnitsService", "geodata_stats", "format_memory"]

logger = logging.getLogger(__name__)

# Boundary layers and the property names that link parent and child areas.
HIERARCHY_SOURCES: Dict[str, tuple] = {
    "comunas": ("barrios", "comuna", "barrio"),
    "corregimientos": ("veredas", "corregimie", "vereda"),
}

# Rough in-memory footprint per feature, in KB.
_KB_PER_FEATURE = 1.0


def format_memory(features: int) -> str:
    kb = features * _KB_PER_FEATURE
    if kb < 1024:
        return f"{kb:.0f} KB"
    return f"{kb / 1024:.1f} MB"


def geodata_stats(collections: Mapping[str, Mapping[str, Any]]) -> Dict[str, Any]:
    """Per-layer feature counts plus a memory estimate for loaded collections."""
    by_layer = {
        name: len(coll.get("features") or []) for name, coll in collections.items()
    }
    total = sum(by_layer.values())
    return {
        "layers": len(by_layer),
        "totalFeatures": total,
        "byLayer": by_layer,
        "memoryEstimate": format_memory(total),
    }


class ProjectUnitsService:
    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        fetcher: Optional[Fetcher] = None,
        root: Optional[str] = None,
    ):
        self.settings = settings or settings_from_env()
        if fetcher is None:
            if self.settings.base_url:
                fetcher = HttpFetcher(self.settings.base_url)
            else:
                fetcher = FileFetcher(root or ".")
        self.fetcher = fetcher

        # resource key -> source tag, for the resources that hold project units
        self._key_sources = {
            self.settings.resolve_path(name): tag
            for name, tag in self.settings.sources.items()
        }
        self.cache = GeodataCache(
            fetcher, self.settings, source_for=self._key_sources.get
        )
        logger.debug(
            "service.created fetcher=%s unit_keys=%s",
            type(fetcher).__name__,
            sorted(self._key_sources),
        )

    @classmethod
    def from_env(cls, **kwargs: Any) -> "ProjectUnitsService":
        return cls(settings_from_env(), **kwargs)

    # ---------- Loading ----------
    def key_for(self, name: str) -> str:
        return self.settings.resolve_path(name)

    async def load_units(
        self,
        categories: Sequence[str] | None = None,
        specific: Sequence[str] | None = None,
    ) -> AggregateSnapshot:
        """Load the named resources (default: base cartography + project units)."""
        names = self.settings.files_for(categories, specific)
        keys = [self.key_for(n) for n in names]
        timeouts = {self.key_for(n): self.settings.timeout_for(n) for n in names}
        logger.info("service.load_units names=%s", names)
        return await self.cache.load_all(keys, timeouts=timeouts)

    async def load_layer(self, name: str) -> ParsedResource:
        """Load a single logical resource; errors propagate to the caller."""
        return await self.cache.load(
            self.key_for(name), timeout_s=self.settings.timeout_for(name)
        )

    def layer(self, snapshot: AggregateSnapshot, name: str) -> Optional[ParsedResource]:
        return snapshot.resources.get(self.key_for(name))

    # ---------- Pub/sub + management ----------
    def subscribe(
        self, listener: Callable[[AggregateSnapshot], Any]
    ) -> Callable[[], None]:
        return self.cache.subscribe(listener)

    def clear(self, name: Optional[str] = None) -> None:
        self.cache.clear_cache(self.key_for(name) if name is not None else None)

    def stats(self) -> CacheStats:
        return self.cache.get_cache_stats()

    def configure_cache(
        self, max_entries: Optional[int] = None, max_age_s: Optional[float] = None
    ) -> None:
        self.cache.configure_cache(max_entries=max_entries, max_age_s=max_age_s)

    def geodata_stats(self, snapshot: Optional[AggregateSnapshot] = None) -> Dict[str, Any]:
        snapshot = snapshot or self.cache.snapshot
        if snapshot is None:
            return geodata_stats({})
        return geodata_stats(snapshot.collections)

    # ---------- Hierarchies for the filter engine ----------
    def hierarchy_from_boundaries(
        self, snapshot: AggregateSnapshot, parent_dim: str
    ) -> Hierarchy:
        """Parent -> children relation read from a loaded boundary layer."""
        try:
            layer_name, parent_key, child_key = HIERARCHY_SOURCES[parent_dim]
        except KeyError:
            raise ValueError(f"No boundary layer for dimension {parent_dim!r}") from None
        resource = self.layer(snapshot, layer_name)
        if resource is None:
            logger.warning(
                "service.hierarchy_missing dimension=%s layer=%s", parent_dim, layer_name
            )
            return Hierarchy()
        return Hierarchy.from_features(resource.collection, parent_key, child_key)

    def hierarchies(self, snapshot: AggregateSnapshot) -> Dict[str, Hierarchy]:
        return {dim: self.hierarchy_from_boundaries(snapshot, dim) for dim in HIERARCHY_SOURCES}
