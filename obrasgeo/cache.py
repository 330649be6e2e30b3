"""
Deduplicating cache for geodata resources.

One :class:`GeodataCache` is created by the composition root and shared by
every consumer. Per resource key it runs the state machine::

    NOT_REQUESTED -> PENDING -> READY
                             -> FAILED -> (next load) PENDING ...

While a key is PENDING every caller receives the same future, so at most one
fetch per key is ever in flight. All transitions happen synchronously between
awaits on a single event loop, so no locking is needed.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

from .config import DEFAULT_TIMEOUT_S, Settings
from .entities import UnitList
from .errors import FetchError, FetchTimeout, GeodataError, SchemaError
from .fetchers import Fetcher
from .mapping import map_collection, source_for_resource

__all__ = [
    "EntryState",
    "CacheEntry",
    "ParsedResource",
    "AggregateSnapshot",
    "CacheStats",
    "GeodataCache",
    "parse_collection",
    "default_source_for_key",
]

logger = logging.getLogger(__name__)

Listener = Callable[["AggregateSnapshot"], Any]
Mapper = Callable[[Mapping[str, Any], str], UnitList]


class EntryState(Enum):
    NOT_REQUESTED = "not_requested"
    PENDING = "pending"
    READY = "ready"
    FAILED = "failed"


@dataclass(frozen=True, eq=False)
class ParsedResource:
    key: str
    collection: dict
    units: UnitList
    source: Optional[str] = None

    @property
    def feature_count(self) -> int:
        return len(self.collection.get("features", ()))


@dataclass
class CacheEntry:
    key: str
    state: EntryState = EntryState.NOT_REQUESTED
    future: Optional[asyncio.Future] = field(default=None, repr=False)
    task: Optional[asyncio.Task] = field(default=None, repr=False)
    value: Optional[ParsedResource] = field(default=None, repr=False)
    error: Optional[BaseException] = None
    loaded_at: Optional[float] = None


@dataclass(frozen=True)
class CacheStats:
    cached_keys: Tuple[str, ...]
    pending_keys: Tuple[str, ...]
    last_error: Optional[str]


@dataclass(frozen=True, eq=False)
class AggregateSnapshot:
    resources: Dict[str, ParsedResource]
    errors: Dict[str, str]
    units: UnitList
    stats: Dict[str, Any]

    @property
    def collections(self) -> Dict[str, dict]:
        return {key: res.collection for key, res in self.resources.items()}

    @property
    def ok(self) -> bool:
        return not self.errors


def default_source_for_key(key: str) -> Optional[str]:
    """Project-unit exports map to entities; cartography layers do not."""
    if "equipamientos" in key or "infraestructura" in key:
        return source_for_resource(key)
    return None


def parse_collection(payload: Any, key: str) -> dict:
    """Decode and validate a fetched document as a feature collection."""
    if isinstance(payload, (bytes, bytearray, memoryview)):
        payload = bytes(payload)
        if payload.startswith(b"\xef\xbb\xbf"):
            payload = payload[3:]
    if isinstance(payload, (bytes, str)):
        try:
            payload = json.loads(payload)
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise SchemaError(f"{key}: document is not valid JSON ({e})", key=key) from e

    if not isinstance(payload, dict):
        raise SchemaError(f"{key}: document root is not an object", key=key)
    kind = payload.get("type")
    if kind is not None and kind != "FeatureCollection":
        raise SchemaError(f"{key}: not a FeatureCollection (found {kind!r})", key=key)
    if not isinstance(payload.get("features"), list):
        raise SchemaError(f"{key}: 'features' is not an array", key=key)
    return payload


def _consume_exception(fut: asyncio.Future) -> None:
    # Mark failures as retrieved; callers that dropped interest must not
    # trigger "exception was never retrieved" noise.
    if not fut.cancelled():
        fut.exception()


class GeodataCache:
    def __init__(
        self,
        fetcher: Fetcher,
        settings: Optional[Settings] = None,
        *,
        mapper: Mapper = map_collection,
        source_for: Callable[[str], Optional[str]] = default_source_for_key,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._fetch = fetcher
        self._settings = settings or Settings()
        self._mapper = mapper
        self._source_for = source_for
        self._clock = clock

        self._entries: "OrderedDict[str, CacheEntry]" = OrderedDict()
        self._aggregates: Dict[Tuple[str, ...], asyncio.Future] = {}
        # Running fetches by key; survives clear_cache until the fetch settles.
        self._inflight: Dict[str, CacheEntry] = {}
        self._listeners: List[Listener] = []
        self._snapshot: Optional[AggregateSnapshot] = None
        self._last_error: Optional[str] = None

        self.max_entries: Optional[int] = self._settings.max_entries
        self.max_age_s: Optional[float] = self._settings.max_age_s

    # ------------------------------------------------------------------
    # Single resource
    # ------------------------------------------------------------------
    def state_of(self, key: str) -> EntryState:
        entry = self._entries.get(key)
        if entry is None or self._expired(entry):
            return EntryState.NOT_REQUESTED
        return entry.state

    def get(self, key: str) -> Optional[ParsedResource]:
        """Return the READY value for ``key`` without triggering a fetch."""
        entry = self._entries.get(key)
        if entry is None or entry.state is not EntryState.READY or self._expired(entry):
            return None
        return entry.value

    def load(self, key: str, *, timeout_s: Optional[float] = None) -> asyncio.Future:
        """Return a future resolving to the :class:`ParsedResource` for ``key``.

        Must be called from a running event loop.
        """
        loop = asyncio.get_running_loop()
        entry = self._entries.get(key)

        if entry is not None and entry.state is EntryState.READY:
            if self._expired(entry):
                logger.info("cache.expired key=%s", key)
                del self._entries[key]
            else:
                self._entries.move_to_end(key)
                logger.debug("cache.hit key=%s", key)
                done = loop.create_future()
                done.set_result(entry.value)
                return done

        if entry is not None and entry.state is EntryState.PENDING:
            logger.debug("cache.join_pending key=%s", key)
            return entry.future

        running = self._inflight.get(key)
        if running is not None:
            # cleared while its fetch is still running
            logger.debug("cache.join_inflight key=%s", key)
            return running.future

        fut = loop.create_future()
        fut.add_done_callback(_consume_exception)
        entry = CacheEntry(key=key, state=EntryState.PENDING, future=fut)
        self._entries[key] = entry
        timeout = timeout_s if timeout_s is not None else self._settings.timeout_s
        logger.info("cache.fetch_start key=%s timeout_s=%s", key, timeout)
        self._inflight[key] = entry
        entry.task = loop.create_task(self._run(entry, timeout or DEFAULT_TIMEOUT_S))
        return fut

    async def _run(self, entry: CacheEntry, timeout: float) -> None:
        try:
            await self._fetch_and_store(entry, timeout)
        finally:
            # Released before any waiter resumes, so the next load starts fresh.
            if self._inflight.get(entry.key) is entry:
                del self._inflight[entry.key]

    async def _fetch_and_store(self, entry: CacheEntry, timeout: float) -> None:
        key = entry.key
        started = time.perf_counter()
        try:
            raw = await asyncio.wait_for(self._fetch(key), timeout)
            collection = parse_collection(raw, key)
            source = self._source_for(key)
            units = self._mapper(collection, source) if source else UnitList()
            value = ParsedResource(key=key, collection=collection, units=units, source=source)
        except asyncio.CancelledError:
            self._fail(entry, FetchError(f"Load of {key} was cancelled", key=key))
            raise
        except GeodataError as e:
            self._fail(entry, e)
            return
        except TimeoutError as e:
            err = FetchTimeout(f"Timed out after {timeout:g}s loading {key}", key=key)
            err.__cause__ = e
            self._fail(entry, err)
            return
        except Exception as e:
            err = FetchError(f"Failed loading {key}: {e}", key=key)
            err.__cause__ = e
            self._fail(entry, err)
            return

        if self._entries.get(key) is entry:
            entry.state = EntryState.READY
            entry.value = value
            entry.loaded_at = self._clock()
            self._evict()
        logger.info(
            "cache.ready key=%s features=%d units=%d elapsed_s=%.3f",
            key,
            value.feature_count,
            len(value.units),
            time.perf_counter() - started,
        )
        if not entry.future.done():
            entry.future.set_result(value)

    def _fail(self, entry: CacheEntry, error: GeodataError) -> None:
        logger.warning("cache.fetch_failed key=%s error=%s", entry.key, error)
        self._last_error = f"{entry.key}: {error}"
        if self._entries.get(entry.key) is entry:
            entry.state = EntryState.FAILED
            entry.error = error
        if not entry.future.done():
            entry.future.set_exception(error)

    # ------------------------------------------------------------------
    # Aggregate load + fan-out
    # ------------------------------------------------------------------
    async def load_all(
        self, keys: Sequence[str], *, timeouts: Optional[Mapping[str, float]] = None
    ) -> AggregateSnapshot:
        """Load ``keys`` one after another and publish the aggregate.

        Never raises for per-key failures: they are reported in
        :attr:`AggregateSnapshot.errors`. Concurrent calls with the same key
        list share one aggregate run.
        """
        ident = tuple(keys)
        pending = self._aggregates.get(ident)
        if pending is None:
            pending = asyncio.ensure_future(self._load_sequential(ident, timeouts or {}))
            self._aggregates[ident] = pending
            pending.add_done_callback(lambda _f: self._aggregates.pop(ident, None))
        return await asyncio.shield(pending)

    async def _load_sequential(
        self, keys: Tuple[str, ...], timeouts: Mapping[str, float]
    ) -> AggregateSnapshot:
        started = time.perf_counter()
        resources: Dict[str, ParsedResource] = {}
        errors: Dict[str, str] = {}
        for key in keys:
            try:
                resources[key] = await self.load(key, timeout_s=timeouts.get(key))
            except Exception as e:
                errors[key] = str(e)

        units = UnitList()
        for res in resources.values():
            units.extend(res.units)
        stats = {
            "requested": len(keys),
            "loaded": len(resources),
            "features": sum(r.feature_count for r in resources.values()),
            "units": len(units),
            "elapsed_s": time.perf_counter() - started,
        }
        logger.info(
            "cache.load_all_done loaded=%d/%d features=%d elapsed_s=%.3f",
            stats["loaded"],
            stats["requested"],
            stats["features"],
            stats["elapsed_s"],
        )
        if errors:
            logger.warning("cache.load_all_failures keys=%s", sorted(errors))

        snapshot = AggregateSnapshot(
            resources=resources, errors=errors, units=units, stats=stats
        )
        self._snapshot = snapshot
        self._publish(snapshot)
        return snapshot

    @property
    def snapshot(self) -> Optional[AggregateSnapshot]:
        return self._snapshot

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register ``listener``; it is called at once if a snapshot exists."""
        self._listeners.append(listener)
        if self._snapshot is not None:
            self._notify(listener, self._snapshot)

        def unsubscribe() -> None:
            try:
                self._listeners.remove(listener)
            except ValueError:
                pass

        return unsubscribe

    def _publish(self, snapshot: AggregateSnapshot) -> None:
        for listener in list(self._listeners):
            self._notify(listener, snapshot)

    @staticmethod
    def _notify(listener: Listener, snapshot: AggregateSnapshot) -> None:
        try:
            listener(snapshot)
        except Exception:
            logger.exception("cache.listener_failed listener=%r", listener)

    # ------------------------------------------------------------------
    # Management surface
    # ------------------------------------------------------------------
    def clear_cache(self, key: Optional[str] = None) -> None:
        """Drop one key, or reset all entries, listeners and the snapshot.

        In-flight loads still resolve for their current waiters but do not
        repopulate the cache; a load issued before they settle joins them
        rather than starting a second fetch.
        """
        if key is not None:
            self._entries.pop(key, None)
            logger.info("cache.cleared key=%s", key)
            return
        self._entries.clear()
        self._listeners.clear()
        self._snapshot = None
        self._last_error = None
        logger.info("cache.cleared key=*")

    def get_cache_stats(self) -> CacheStats:
        cached = tuple(
            k
            for k, e in self._entries.items()
            if e.state is EntryState.READY and not self._expired(e)
        )
        pending = tuple(
            k for k, e in self._entries.items() if e.state is EntryState.PENDING
        )
        return CacheStats(cached_keys=cached, pending_keys=pending, last_error=self._last_error)

    def configure_cache(
        self, max_entries: Optional[int] = None, max_age_s: Optional[float] = None
    ) -> None:
        """Bound the number of READY entries and/or their age. ``None`` disables."""
        if max_entries is not None and max_entries < 1:
            raise ValueError("max_entries must be >= 1")
        if max_age_s is not None and max_age_s <= 0:
            raise ValueError("max_age_s must be positive")
        self.max_entries = max_entries
        self.max_age_s = max_age_s
        self._evict()

    def _expired(self, entry: CacheEntry) -> bool:
        if self.max_age_s is None or entry.state is not EntryState.READY:
            return False
        return (self._clock() - (entry.loaded_at or 0.0)) > self.max_age_s

    def _evict(self) -> None:
        for key in [k for k, e in self._entries.items() if self._expired(e)]:
            del self._entries[key]
            logger.debug("cache.evicted key=%s reason=age", key)
        if self.max_entries is None:
            return
        ready = [k for k, e in self._entries.items() if e.state is EntryState.READY]
        while len(ready) > self.max_entries:
            oldest = ready.pop(0)
            del self._entries[oldest]
            logger.debug("cache.evicted key=%s reason=size", oldest)
