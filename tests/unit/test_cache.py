"""
Tests for the persistent cache, request deduplication and the cached fetcher.
"""
import asyncio
import sqlite3
from datetime import date

from drive_analytics.fetch.cache import (
    SECONDS_PER_DAY,
    CachedFetcher,
    PersistentCache,
    RequestDeduplicator,
    get_connection,
    make_cache_key,
)
from drive_analytics.fetch.paginator import PaginatedFetcher
from drive_analytics.utils.config import CacheSettings, FetchSettings
from drive_analytics.utils.exceptions import RemoteApiError


class FakeClock:
    def __init__(self, now=1_700_000_000.0):
        self.now = now

    def __call__(self):
        return self.now


def stored_keys(path):
    with sqlite3.connect(str(path)) as conn:
        return sorted(row[0] for row in conn.execute("SELECT key FROM cache_entries"))


class TestPersistentCache:
    """Tests for the write-behind cache."""

    def test_memory_only(self):
        cache = PersistentCache(None).open()

        cache.set("a", {"x": 1})
        assert not cache.durable
        assert cache.get("a") == {"x": 1}
        assert "a" in cache and len(cache) == 1

        cache.delete("a")
        assert cache.get("a", "missing") == "missing"
        cache.close()

    def test_round_trip_through_disk(self, tmp_path):
        path = tmp_path / "cache.sqlite3"
        cache = PersistentCache(path).open()
        cache.set("logs::101", {"samples": [1, 2]})
        cache.close()

        reopened = PersistentCache(path).open()
        assert reopened.durable
        assert reopened.get("logs::101") == {"samples": [1, 2]}
        reopened.close()

    def test_expired_entries_purged_on_open(self, tmp_path):
        path = tmp_path / "cache.sqlite3"
        clock = FakeClock()
        cache = PersistentCache(path, expiry_days=7, clock=clock).open()
        cache.set("old", 1)
        clock.now += 3 * SECONDS_PER_DAY
        cache.set("recent", 2)
        cache.close()

        clock.now += 5 * SECONDS_PER_DAY
        reopened = PersistentCache(path, expiry_days=7, clock=clock).open()

        assert "old" not in reopened
        assert reopened.get("recent") == 2
        assert reopened.age("recent") == 5 * SECONDS_PER_DAY
        assert stored_keys(path) == ["recent"]
        reopened.close()

    def test_writes_are_batched_inside_a_loop(self, tmp_path):
        """Writes made within the batching window land in one flush."""
        path = tmp_path / "cache.sqlite3"

        async def scenario():
            cache = PersistentCache(path, flush_interval_s=0.05).open()
            cache.set("a", 1)
            cache.set("b", 2)
            before = stored_keys(path)
            await asyncio.sleep(0.2)
            after = stored_keys(path)
            cache.close()
            return before, after

        before, after = asyncio.run(scenario())
        assert before == []
        assert after == ["a", "b"]

    def test_delete_persists(self, tmp_path):
        path = tmp_path / "cache.sqlite3"
        cache = PersistentCache(path).open()
        cache.set("a", 1)
        cache.set("b", 2)
        cache.delete("a")
        cache.close()

        assert stored_keys(path) == ["b"]

    def test_failed_flush_is_retried(self, tmp_path):
        """A batch that fails to write stays queued; newer values win."""
        path = tmp_path / "cache.sqlite3"
        cache = PersistentCache(path).open()
        conn = sqlite3.connect(str(path))
        conn.execute("DROP TABLE cache_entries")
        conn.commit()
        conn.close()

        cache.set("a", 1)
        cache.set("b", 2)
        cache.set("a", 3)
        assert cache.flush() == 0

        get_connection(path).close()
        assert cache.flush() == 2
        assert stored_keys(path) == ["a", "b"]
        cache.close()

        reopened = PersistentCache(path).open()
        assert reopened.get("a") == 3
        reopened.close()

    def test_clear(self, tmp_path):
        path = tmp_path / "cache.sqlite3"
        cache = PersistentCache(path).open()
        cache.set("a", 1)
        cache.set("b", 2)
        cache.clear()
        cache.close()

        assert len(cache) == 0
        assert stored_keys(path) == []

    def test_unavailable_store_degrades_to_memory(self, tmp_path):
        """A path under a regular file cannot be created; the cache still works."""
        blocker = tmp_path / "not_a_dir"
        blocker.write_text("x")
        cache = PersistentCache(blocker / "cache.sqlite3").open()

        cache.set("a", 1)
        assert not cache.durable
        assert cache.get("a") == 1
        cache.close()

    def test_from_settings(self, tmp_path):
        settings = CacheSettings(enabled=False, path=str(tmp_path / "c.sqlite3"), expiry_days=2)
        cache = PersistentCache.from_settings(settings)

        assert cache.path is None
        assert cache.expiry_days == 2


class TestRequestDeduplicator:
    """Tests for in-flight sharing."""

    def test_concurrent_callers_share_one_call(self):
        calls = []

        async def load():
            calls.append(1)
            await asyncio.sleep(0.01)
            return {"rows": 3}

        async def scenario():
            dedup = RequestDeduplicator()
            results = await asyncio.gather(dedup.run("k", load), dedup.run("k", load))
            return dedup, results

        dedup, (a, b) = asyncio.run(scenario())
        assert calls == [1]
        assert a is b
        assert "k" not in dedup

    def test_released_after_completion(self):
        calls = []

        async def load():
            calls.append(1)
            return len(calls)

        async def scenario():
            dedup = RequestDeduplicator()
            return await dedup.run("k", load), await dedup.run("k", load)

        assert asyncio.run(scenario()) == (1, 2)


class TestMakeCacheKey:
    """Tests for canonical request keys."""

    def test_equivalent_filters_share_a_key(self):
        first = make_cache_key("operatorSamples", {"networks": ["5G", "4G"], "from": None})
        second = make_cache_key("operatorSamples", {"from": "", "networks": ("4G", "5G")})

        assert first == second == 'operatorSamples::{"networks": "4G,5G"}'

    def test_dates_and_order(self):
        key = make_cache_key("boxData", {"to": date(2024, 5, 2), "from": date(2024, 5, 1)})
        assert key == 'boxData::{"from": "2024-05-01", "to": "2024-05-02"}'

    def test_no_filters(self):
        assert make_cache_key("boxData") == "boxData"
        assert make_cache_key("boxData", {"a": None}) == "boxData"


class TestCachedFetcher:
    """Tests for the cache-aware fetch front."""

    def build(self, source, cache=None):
        fetcher = PaginatedFetcher(source, FetchSettings(page_size=10, page_delay_s=0))
        return CachedFetcher(fetcher, cache if cache is not None else PersistentCache(None).open())

    def test_second_fetch_served_from_cache(self, fake_source, records):
        source = fake_source(pages={1: {'data': records(3), 'total_count': 3}})
        cached = self.build(source)

        first = asyncio.run(cached.fetch([102, 101]))
        second = asyncio.run(cached.fetch("101,102"))

        assert len(source.calls) == 1
        assert [s.id for s in second.samples] == [s.id for s in first.samples]
        assert second.fetch_key == "101,102"
        assert "network_log::101,102" in cached.cache

    def test_cache_survives_restart(self, tmp_path, fake_source, records):
        path = tmp_path / "cache.sqlite3"
        source = fake_source(pages={1: {'data': records(2), 'total_count': 2}})
        cache = PersistentCache(path).open()
        asyncio.run(self.build(source, cache).fetch([101]))
        cache.close()

        again = self.build(source, PersistentCache(path).open())
        result = asyncio.run(again.fetch([101]))

        assert len(source.calls) == 1
        assert len(result.samples) == 2
        assert result.samples[0].provider == "Airtel"

    def test_partial_results_not_cached(self, fake_source, records):
        source = fake_source(pages={
            1: {'data': records(10), 'total_count': 30},
            2: RemoteApiError("HTTP 500", status=500),
        })
        cached = self.build(source)

        result = asyncio.run(cached.fetch([101]))

        assert result.partial
        assert "network_log::101" not in cached.cache

    def test_force_bypasses_cache(self, fake_source, records):
        source = fake_source(pages={1: {'data': records(1), 'total_count': 1}})
        cached = self.build(source)

        asyncio.run(cached.fetch([101]))
        asyncio.run(cached.fetch([101], force=True))

        assert len(source.calls) == 2

    def test_corrupt_entry_is_refetched(self, fake_source, records):
        source = fake_source(pages={1: {'data': records(1), 'total_count': 1}})
        cached = self.build(source)
        cached.cache.set("network_log::101", {"samples": [{"lat": "bad"}]})

        result = asyncio.run(cached.fetch([101]))

        assert len(source.calls) == 1
        assert len(result.samples) == 1

    def test_returning_to_a_superseded_key(self, fake_source, records):
        """A -> B -> A through the cache: the last request gets data and is stored."""
        source = fake_source(
            pages=lambda ids, page, limit: {'data': records(1), 'total_count': 1}, delay=0.05,
        )
        cached = self.build(source)

        async def scenario():
            first = asyncio.ensure_future(cached.fetch([1]))
            await asyncio.sleep(0.01)
            second = asyncio.ensure_future(cached.fetch([2]))
            await asyncio.sleep(0)
            third = await cached.fetch([1])
            return await first, await second, third

        first, second, third = asyncio.run(scenario())

        assert first is None
        assert second is None
        assert third.fetch_key == "1"
        assert "network_log::1" in cached.cache
        assert "network_log::2" not in cached.cache

    def test_invalidate(self, fake_source, records):
        source = fake_source(pages={1: {'data': records(1), 'total_count': 1}})
        cached = self.build(source)
        asyncio.run(cached.fetch([101]))

        cached.invalidate([101])
        asyncio.run(cached.fetch([101]))

        assert len(source.calls) == 2
