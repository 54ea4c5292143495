"""
Unit tests for the EPG cache.
"""
import asyncio

import pytest

from epg_cache import EPG_CACHE_TTL_SECONDS, EpgCache, cache_key, get_epg_cache

ORIGIN = "http://tv.example.com"


@pytest.fixture
def cache(clock):
    """Create a fresh cache instance for each test."""
    return EpgCache(clock=clock)


def sample_payload(title: str = "NOVA") -> dict:
    return {"epg_listings": [{"title": title, "start": 1704139200, "end": 1704142800}]}


class TestEpgCache:
    def test_cache_key_format(self):
        assert cache_key(ORIGIN, "42") == "http://tv.example.com:42"

    def test_get_missing_returns_none(self, cache):
        assert cache.get(ORIGIN, "42") is None

    def test_round_trip_before_expiry(self, cache, clock):
        payload = sample_payload()
        cache.set(ORIGIN, "42", payload)
        clock.advance(EPG_CACHE_TTL_SECONDS - 1)

        assert cache.get(ORIGIN, "42") == payload

    def test_miss_after_expiry(self, cache, clock):
        cache.set(ORIGIN, "42", sample_payload())
        clock.advance(EPG_CACHE_TTL_SECONDS + 1)

        assert cache.get(ORIGIN, "42") is None
        assert len(cache) == 0

    def test_keyed_by_origin_and_stream(self, cache):
        cache.set(ORIGIN, "42", sample_payload("A"))
        cache.set("http://other.example.com", "42", sample_payload("B"))
        cache.set(ORIGIN, "43", sample_payload("C"))

        assert cache.get(ORIGIN, "42")["epg_listings"][0]["title"] == "A"
        assert cache.get("http://other.example.com", "42")["epg_listings"][0]["title"] == "B"
        assert cache.get(ORIGIN, "43")["epg_listings"][0]["title"] == "C"

    def test_set_overwrites_and_restarts_window(self, cache, clock):
        cache.set(ORIGIN, "42", sample_payload("old"))
        clock.advance(EPG_CACHE_TTL_SECONDS - 10)
        cache.set(ORIGIN, "42", sample_payload("new"))
        clock.advance(20)

        assert cache.get(ORIGIN, "42")["epg_listings"][0]["title"] == "new"

    def test_sweep_removes_expired(self, cache, clock):
        cache.set(ORIGIN, "1", sample_payload())
        clock.advance(EPG_CACHE_TTL_SECONDS / 2)
        cache.set(ORIGIN, "2", sample_payload())
        clock.advance(EPG_CACHE_TTL_SECONDS / 2)

        assert cache.sweep() == 1
        assert cache.get(ORIGIN, "2") is not None

    def test_clear(self, cache):
        cache.set(ORIGIN, "1", sample_payload())
        cache.clear()
        assert len(cache) == 0


class TestEpgCacheStats:
    def test_stats_snapshot(self, cache, clock):
        cache.set(ORIGIN, "42", sample_payload())
        cache.set(ORIGIN, "43", {"epg_listings": []})

        stats = cache.stats()

        assert stats["epgCacheSize"] == 2
        assert stats["epgCacheTTL"] == "360 minutes"
        entry = next(e for e in stats["entries"] if e["key"] == "http://tv.example.com:42")
        assert entry["listingsCount"] == 1
        assert entry["cachedAt"].endswith("Z")
        assert entry["expiresAt"] > entry["cachedAt"]

    def test_stats_empty(self, cache):
        assert cache.stats() == {"epgCacheSize": 0, "epgCacheTTL": "360 minutes", "entries": []}


class TestEpgCacheSweeper:
    @pytest.mark.asyncio
    async def test_background_sweep_runs(self, clock):
        cache = EpgCache(sweep_interval=0.01, clock=clock)
        cache.set(ORIGIN, "42", sample_payload())
        clock.advance(EPG_CACHE_TTL_SECONDS + 1)

        await cache.start()
        try:
            for _ in range(50):
                if len(cache) == 0:
                    break
                await asyncio.sleep(0.01)
        finally:
            await cache.stop()

        assert len(cache) == 0

    def test_singleton(self):
        assert get_epg_cache() is get_epg_cache()
