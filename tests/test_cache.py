import asyncio
import json
import logging

import pytest

from obrasgeo.cache import EntryState, GeodataCache, parse_collection
from obrasgeo.errors import FetchError, FetchTimeout, SchemaError


def _collection_bytes(n=2, geometry=None):
    features = [
        {
            "type": "Feature",
            "geometry": geometry or {"type": "Point", "coordinates": [3.41, -76.52]},
            "properties": {"identificador": f"U-{i}", "nickname": f"Unidad {i}"},
        }
        for i in range(n)
    ]
    return json.dumps({"type": "FeatureCollection", "features": features}).encode()


class FakeFetcher:
    """Serves queued responses per key; an Exception in the queue is raised."""

    def __init__(self, responses, delay=0.0):
        self.responses = {
            k: list(v) if isinstance(v, list) else [v] for k, v in responses.items()
        }
        self.delay = delay
        self.calls = []

    async def __call__(self, key):
        self.calls.append(key)
        await asyncio.sleep(self.delay)
        queue = self.responses.get(key)
        if not queue:
            raise FetchError(f"no such resource {key}", key=key)
        value = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(value, Exception):
            raise value
        return value


def test_concurrent_loads_share_one_fetch():
    fetcher = FakeFetcher({"x.json": _collection_bytes()}, delay=0.01)

    async def scenario():
        cache = GeodataCache(fetcher)
        futures = [cache.load("x.json") for _ in range(5)]
        assert cache.state_of("x.json") is EntryState.PENDING
        assert cache.get_cache_stats().pending_keys == ("x.json",)
        results = await asyncio.gather(*futures)
        again = await cache.load("x.json")
        return cache, results, again

    cache, results, again = asyncio.run(scenario())

    assert fetcher.calls == ["x.json"]
    assert all(r is results[0] for r in results)
    assert again is results[0]
    assert results[0].feature_count == 2
    assert cache.state_of("x.json") is EntryState.READY
    assert cache.get_cache_stats().cached_keys == ("x.json",)


def test_project_unit_keys_are_mapped_to_units():
    key = "data/unidades_proyecto/equipamientos.geojson"
    fetcher = FakeFetcher({key: _collection_bytes(3)})

    async def scenario():
        return await GeodataCache(fetcher).load(key)

    resource = asyncio.run(scenario())

    assert resource.source == "equipamientos"
    assert [u.id for u in resource.units] == ["U-0", "U-1", "U-2"]
    assert all(u.has_location for u in resource.units)


def test_failure_reaches_every_waiter_and_next_load_retries():
    fetcher = FakeFetcher(
        {"x.json": [FetchError("boom", key="x.json"), _collection_bytes()]},
        delay=0.01,
    )

    async def scenario():
        cache = GeodataCache(fetcher)
        outcomes = await asyncio.gather(
            cache.load("x.json"), cache.load("x.json"), return_exceptions=True
        )
        state_after_failure = cache.state_of("x.json")
        stats = cache.get_cache_stats()
        retried = await cache.load("x.json")
        return outcomes, state_after_failure, stats, retried

    outcomes, state, stats, retried = asyncio.run(scenario())

    assert isinstance(outcomes[0], FetchError)
    assert outcomes[0] is outcomes[1]
    assert state is EntryState.FAILED
    assert stats.last_error.startswith("x.json:")
    assert retried.feature_count == 2
    assert fetcher.calls == ["x.json", "x.json"]


def test_timeout_rejects_with_fetch_timeout():
    fetcher = FakeFetcher({"slow.json": _collection_bytes()}, delay=1.0)

    async def scenario():
        cache = GeodataCache(fetcher)
        with pytest.raises(FetchTimeout):
            await cache.load("slow.json", timeout_s=0.01)
        return cache

    cache = asyncio.run(scenario())

    assert cache.state_of("slow.json") is EntryState.FAILED


def test_unexpected_fetcher_error_is_wrapped():
    fetcher = FakeFetcher({"x.json": RuntimeError("socket closed")})

    async def scenario():
        with pytest.raises(FetchError) as excinfo:
            await GeodataCache(fetcher).load("x.json")
        return excinfo.value

    err = asyncio.run(scenario())

    assert err.key == "x.json"
    assert isinstance(err.__cause__, RuntimeError)


@pytest.mark.parametrize(
    "payload",
    [
        b"not json",
        b"[]",
        b'{"type": "Feature", "features": []}',
        b'{"type": "FeatureCollection"}',
        b'{"features": {"a": 1}}',
    ],
)
def test_parse_collection_rejects_non_collections(payload):
    with pytest.raises(SchemaError):
        parse_collection(payload, "bad.json")


def test_parse_collection_accepts_bom_and_untyped_root():
    parsed = parse_collection(b'\xef\xbb\xbf{"features": []}', "ok.json")
    assert parsed == {"features": []}


def test_schema_error_marks_entry_failed():
    fetcher = FakeFetcher({"bad.json": b'{"type": "FeatureCollection"}'})

    async def scenario():
        cache = GeodataCache(fetcher)
        with pytest.raises(SchemaError):
            await cache.load("bad.json")
        return cache

    cache = asyncio.run(scenario())

    assert cache.state_of("bad.json") is EntryState.FAILED


def test_load_all_collects_partial_results_and_publishes(caplog):
    fetcher = FakeFetcher(
        {
            "a.json": _collection_bytes(1),
            "data/equipamientos.geojson": _collection_bytes(2),
        }
    )
    received = []

    async def scenario():
        cache = GeodataCache(fetcher)
        cache.subscribe(received.append)
        snap = await cache.load_all(["a.json", "missing.json", "data/equipamientos.geojson"])
        return cache, snap

    with caplog.at_level(logging.INFO, logger="obrasgeo.cache"):
        cache, snap = asyncio.run(scenario())

    assert sorted(snap.resources) == ["a.json", "data/equipamientos.geojson"]
    assert list(snap.errors) == ["missing.json"]
    assert not snap.ok
    assert len(snap.units) == 2
    assert snap.stats["requested"] == 3
    assert snap.stats["loaded"] == 2
    assert snap.stats["features"] == 3
    assert received == [snap]
    assert cache.snapshot is snap
    assert fetcher.calls == ["a.json", "missing.json", "data/equipamientos.geojson"]
    assert any("cache.load_all_done" in rec.getMessage() for rec in caplog.records)


def test_concurrent_load_all_calls_share_one_aggregate():
    fetcher = FakeFetcher({"a.json": _collection_bytes(), "b.json": _collection_bytes()}, delay=0.01)

    async def scenario():
        cache = GeodataCache(fetcher)
        return await asyncio.gather(
            cache.load_all(["a.json", "b.json"]), cache.load_all(["a.json", "b.json"])
        )

    first, second = asyncio.run(scenario())

    assert first is second
    assert fetcher.calls == ["a.json", "b.json"]


def test_late_subscriber_is_notified_immediately_and_can_unsubscribe():
    fetcher = FakeFetcher({"a.json": _collection_bytes()})
    late = []

    async def scenario():
        cache = GeodataCache(fetcher)
        snap = await cache.load_all(["a.json"])
        unsubscribe = cache.subscribe(late.append)
        assert late == [snap]
        unsubscribe()
        unsubscribe()
        await cache.load_all(["a.json"])
        return snap

    snap = asyncio.run(scenario())

    assert late == [snap]


def test_failing_listener_is_logged_and_others_still_run(caplog):
    fetcher = FakeFetcher({"a.json": _collection_bytes()})
    seen = []

    def broken(_snapshot):
        raise RuntimeError("listener bug")

    async def scenario():
        cache = GeodataCache(fetcher)
        cache.subscribe(broken)
        cache.subscribe(seen.append)
        await cache.load_all(["a.json"])

    with caplog.at_level(logging.ERROR, logger="obrasgeo.cache"):
        asyncio.run(scenario())

    assert len(seen) == 1
    assert any("cache.listener_failed" in rec.getMessage() for rec in caplog.records)


def test_clear_cache_resets_state_and_listeners():
    fetcher = FakeFetcher({"a.json": _collection_bytes()})
    seen = []

    async def scenario():
        cache = GeodataCache(fetcher)
        cache.subscribe(seen.append)
        await cache.load_all(["a.json"])
        cache.clear_cache()
        assert cache.snapshot is None
        assert cache.get_cache_stats().cached_keys == ()
        assert cache.state_of("a.json") is EntryState.NOT_REQUESTED
        await cache.load_all(["a.json"])

    asyncio.run(scenario())

    assert len(seen) == 1
    assert fetcher.calls == ["a.json", "a.json"]


def test_clear_during_pending_load_does_not_repopulate():
    fetcher = FakeFetcher({"a.json": _collection_bytes()}, delay=0.01)

    async def scenario():
        cache = GeodataCache(fetcher)
        fut = cache.load("a.json")
        cache.clear_cache("a.json")
        cache.clear_cache()
        joined = cache.load("a.json")
        value = await fut
        return cache, value, await joined

    cache, value, joined = asyncio.run(scenario())

    assert value.feature_count == 2
    assert joined is value
    assert fetcher.calls == ["a.json"]
    assert cache.state_of("a.json") is EntryState.NOT_REQUESTED


def test_load_after_settled_cleared_fetch_starts_fresh():
    fetcher = FakeFetcher({"a.json": _collection_bytes()}, delay=0.01)

    async def scenario():
        cache = GeodataCache(fetcher)
        fut = cache.load("a.json")
        cache.clear_cache()
        await fut
        await cache.load("a.json")
        return cache

    cache = asyncio.run(scenario())

    assert fetcher.calls == ["a.json", "a.json"]
    assert cache.state_of("a.json") is EntryState.READY


def test_pending_entry_keeps_its_fetch_task():
    fetcher = FakeFetcher({"a.json": _collection_bytes()}, delay=0.01)

    async def scenario():
        cache = GeodataCache(fetcher)
        cache.load("a.json")
        entry = cache._entries["a.json"]
        assert isinstance(entry.task, asyncio.Task)
        await entry.future
        await asyncio.sleep(0)
        return entry

    entry = asyncio.run(scenario())

    assert entry.task.done()


def test_get_returns_ready_value_without_fetching():
    fetcher = FakeFetcher({"a.json": _collection_bytes()})

    async def scenario():
        cache = GeodataCache(fetcher)
        assert cache.get("a.json") is None
        value = await cache.load("a.json")
        return cache, value

    cache, value = asyncio.run(scenario())

    assert cache.get("a.json") is value
    assert cache.get("other.json") is None
    assert fetcher.calls == ["a.json"]


def test_max_age_expires_ready_entries():
    now = [0.0]
    fetcher = FakeFetcher({"a.json": _collection_bytes()})

    async def scenario():
        cache = GeodataCache(fetcher, clock=lambda: now[0])
        cache.configure_cache(max_age_s=10)
        await cache.load("a.json")
        now[0] = 5.0
        await cache.load("a.json")
        now[0] = 20.0
        assert cache.state_of("a.json") is EntryState.NOT_REQUESTED
        await cache.load("a.json")

    asyncio.run(scenario())

    assert fetcher.calls == ["a.json", "a.json"]


def test_max_entries_evicts_least_recently_used():
    fetcher = FakeFetcher(
        {k: _collection_bytes(1) for k in ("a.json", "b.json", "c.json")}
    )

    async def scenario():
        cache = GeodataCache(fetcher)
        cache.configure_cache(max_entries=2)
        await cache.load("a.json")
        await cache.load("b.json")
        await cache.load("a.json")
        await cache.load("c.json")
        return cache.get_cache_stats()

    stats = asyncio.run(scenario())

    assert stats.cached_keys == ("a.json", "c.json")


@pytest.mark.parametrize("kwargs", [{"max_entries": 0}, {"max_age_s": 0}, {"max_age_s": -1}])
def test_configure_cache_rejects_invalid_bounds(kwargs):
    cache = GeodataCache(FakeFetcher({}))
    with pytest.raises(ValueError):
        cache.configure_cache(**kwargs)
