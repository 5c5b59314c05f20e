"""Tests for the rate-limited upstream cache."""

import asyncio

import pytest
from unittest.mock import AsyncMock

from coinpulse.cache.rate_limited import (
    RateLimitedCache,
    CacheEntry,
    CacheClosedError,
    QueueFullError,
)
from coinpulse.core.config import CacheSettings
from coinpulse.providers.base import RateLimitError, UpstreamError


class FakeClock:
    """Manually advanced clock for entry timestamps."""

    def __init__(self, now: float = 10_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class StatusError(Exception):
    """Error carrying a plain ``status`` attribute instead of ``status_code``."""

    def __init__(self, status: int):
        super().__init__(f"status {status}")
        self.status = status


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def cache(clock):
    return RateLimitedCache(cache_duration=300, request_delay=0, clock=clock)


class TestInit:
    """Tests for construction and settings."""

    def test_defaults(self):
        cache = RateLimitedCache()
        assert cache.cache_duration == 300
        assert cache.request_delay == 1.0
        assert cache.coalesce_in_flight is False
        assert cache.max_entries is None
        assert cache.max_queue_size is None

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"cache_duration": -1},
            {"request_delay": -0.5},
            {"max_entries": 0},
            {"max_queue_size": 0},
        ],
    )
    def test_invalid_arguments(self, kwargs):
        with pytest.raises(ValueError):
            RateLimitedCache(**kwargs)

    def test_from_settings(self):
        settings = CacheSettings(
            cache_duration_seconds=60,
            request_delay_seconds=0.25,
            coalesce_in_flight=True,
            max_entries=50,
            max_queue_size=10,
        )
        cache = RateLimitedCache.from_settings(settings)
        assert cache.cache_duration == 60
        assert cache.request_delay == 0.25
        assert cache.coalesce_in_flight is True
        assert cache.max_entries == 50
        assert cache.max_queue_size == 10


class TestFastPath:
    """Fresh entries are served without touching the queue."""

    @pytest.mark.asyncio
    async def test_fresh_entry_skips_fetcher(self, cache, clock):
        cache.prime("btc", {"price": 100}, timestamp=clock.now - 10)
        fetcher = AsyncMock(return_value={"price": 200})

        result = await cache.get_cached_data("btc", fetcher)

        assert result == {"price": 100}
        fetcher.assert_not_awaited()
        assert cache.queue_size == 0
        assert cache.get_stats().hits == 1

    @pytest.mark.asyncio
    async def test_fresh_hit_does_not_wait_behind_queue(self, clock):
        cache = RateLimitedCache(cache_duration=300, request_delay=5.0, clock=clock)
        cache.prime("fresh", "cached")
        release = asyncio.Event()

        async def blocked():
            await release.wait()
            return "slow"

        pending = asyncio.create_task(cache.get_cached_data("cold", blocked))
        await asyncio.sleep(0.01)
        assert cache.is_processing

        result = await asyncio.wait_for(cache.get_cached_data("fresh", AsyncMock()), 0.1)
        assert result == "cached"

        release.set()
        assert await pending == "slow"

    @pytest.mark.asyncio
    async def test_entry_expires_at_cache_duration(self, cache, clock):
        cache.prime("btc", {"price": 100})
        clock.advance(300)
        fetcher = AsyncMock(return_value={"price": 101})

        assert await cache.get_cached_data("btc", fetcher) == {"price": 101}
        fetcher.assert_awaited_once()


class TestFetchAndStore:
    """Misses go through the queue and fill the cache."""

    @pytest.mark.asyncio
    async def test_cold_miss_then_hit(self, cache, clock):
        fetch_ok = AsyncMock(return_value={"price": 100})

        assert await cache.get_cached_data("btc", fetch_ok) == {"price": 100}
        entry = cache.peek("btc")
        assert entry == CacheEntry({"price": 100}, clock.now)

        clock.advance(4 * 60)
        assert await cache.get_cached_data("btc", fetch_ok) == {"price": 100}
        assert fetch_ok.await_count == 1

    @pytest.mark.asyncio
    async def test_stale_entry_is_refreshed(self, cache, clock):
        cache.prime("btc", {"price": 100}, timestamp=clock.now - 6 * 60)
        fetcher = AsyncMock(return_value={"price": 105})

        assert await cache.get_cached_data("btc", fetcher) == {"price": 105}
        assert cache.peek("btc").data == {"price": 105}
        assert cache.peek("btc").timestamp == clock.now

    @pytest.mark.asyncio
    async def test_fifo_order_with_request_delay(self):
        delay = 0.05
        cache = RateLimitedCache(cache_duration=300, request_delay=delay)
        loop = asyncio.get_running_loop()
        calls: list[tuple[str, float]] = []

        def make_fetcher(key):
            async def fetch():
                calls.append((key, loop.time()))
                return key.upper()
            return fetch

        keys = ["a", "b", "c", "d"]
        results = await asyncio.gather(
            *(cache.get_cached_data(key, make_fetcher(key)) for key in keys)
        )

        assert results == ["A", "B", "C", "D"]
        assert [key for key, _ in calls] == keys
        for (_, earlier), (_, later) in zip(calls, calls[1:]):
            assert later - earlier >= delay * 0.9

    @pytest.mark.asyncio
    async def test_delay_applies_after_worker_goes_idle(self):
        delay = 0.05
        cache = RateLimitedCache(cache_duration=300, request_delay=delay)
        loop = asyncio.get_running_loop()
        started: list[float] = []

        async def fetch():
            started.append(loop.time())
            return len(started)

        await cache.get_cached_data("a", fetch)
        await cache.get_cached_data("b", fetch)

        assert started[1] - started[0] >= delay * 0.9

    @pytest.mark.asyncio
    async def test_duplicate_keys_are_not_coalesced_by_default(self, cache):
        fetcher = AsyncMock(return_value=1)

        await asyncio.gather(*(cache.get_cached_data("btc", fetcher) for _ in range(3)))

        assert fetcher.await_count == 3


class TestFallback:
    """Upstream failures fall back to the last good value."""

    @pytest.mark.asyncio
    async def test_rate_limit_serves_stale_and_extends_window(self, cache, clock):
        cache.prime("btc", {"price": 100}, timestamp=clock.now - 6 * 60)
        throttled = AsyncMock(side_effect=RateLimitError("slow down", provider="coingecko"))

        result = await cache.get_cached_data("btc", throttled)

        assert result == {"price": 100}
        assert cache.peek("btc").timestamp == clock.now
        assert cache.get_stats().rate_limit_fallbacks == 1

        # Freshness window restarted: next call is a fast-path hit
        clock.advance(60)
        follow_up = AsyncMock(return_value={"price": 999})
        assert await cache.get_cached_data("btc", follow_up) == {"price": 100}
        follow_up.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_rate_limit_detected_from_status_attribute(self, cache, clock):
        cache.prime("btc", {"price": 100}, timestamp=clock.now - 6 * 60)

        result = await cache.get_cached_data("btc", AsyncMock(side_effect=StatusError(429)))

        assert result == {"price": 100}
        assert cache.peek("btc").timestamp == clock.now

    @pytest.mark.asyncio
    async def test_generic_failure_serves_stale_without_refresh(self, cache, clock):
        stale_at = clock.now - 6 * 60
        cache.prime("btc", {"price": 100}, timestamp=stale_at)
        failing = AsyncMock(side_effect=UpstreamError("bad gateway", status_code=500))

        result = await cache.get_cached_data("btc", failing)

        assert result == {"price": 100}
        assert cache.peek("btc").timestamp == stale_at
        assert cache.get_stats().stale_fallbacks == 1

        # Still stale, so the next call goes upstream again
        recovered = AsyncMock(return_value={"price": 110})
        assert await cache.get_cached_data("btc", recovered) == {"price": 110}
        recovered.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_network_error_without_status_serves_stale(self, cache, clock):
        cache.prime("btc", {"price": 100}, timestamp=clock.now - 6 * 60)

        result = await cache.get_cached_data("btc", AsyncMock(side_effect=ConnectionError("reset")))

        assert result == {"price": 100}

    @pytest.mark.asyncio
    async def test_cold_failure_propagates_original_error(self, cache):
        error = UpstreamError("server error", status_code=500)

        with pytest.raises(UpstreamError) as exc_info:
            await cache.get_cached_data("btc", AsyncMock(side_effect=error))

        assert exc_info.value is error
        assert cache.peek("btc") is None
        assert cache.get_stats().cold_failures == 1

    @pytest.mark.asyncio
    async def test_cold_rate_limit_propagates(self, cache):
        with pytest.raises(RateLimitError):
            await cache.get_cached_data("btc", AsyncMock(side_effect=RateLimitError("slow down")))

    @pytest.mark.asyncio
    async def test_failure_does_not_stop_worker(self, cache):
        failing = AsyncMock(side_effect=UpstreamError("down", status_code=503))
        ok = AsyncMock(return_value="eth")

        results = await asyncio.gather(
            cache.get_cached_data("btc", failing),
            cache.get_cached_data("eth", ok),
            return_exceptions=True,
        )

        assert isinstance(results[0], UpstreamError)
        assert results[1] == "eth"
        assert cache.is_processing is False


class TestWorker:
    """Single-worker guarantees."""

    @pytest.mark.asyncio
    async def test_process_queue_is_idempotent(self):
        cache = RateLimitedCache(cache_duration=300, request_delay=0.01)
        active = 0
        max_active = 0
        calls: list[str] = []

        def make_fetcher(key):
            async def fetch():
                nonlocal active, max_active
                active += 1
                max_active = max(max_active, active)
                calls.append(key)
                await asyncio.sleep(0.02)
                active -= 1
                return key
            return fetch

        tasks = [
            asyncio.create_task(cache.get_cached_data(key, make_fetcher(key)))
            for key in ["a", "b", "c"]
        ]
        await asyncio.sleep(0.005)
        assert cache.is_processing

        # Re-entering while the worker runs must not start a second drain
        await asyncio.wait_for(cache._process_queue(), 0.01)

        assert await asyncio.gather(*tasks) == ["a", "b", "c"]
        assert calls == ["a", "b", "c"]
        assert max_active == 1
        assert cache.is_processing is False

    @pytest.mark.asyncio
    async def test_cancelled_caller_still_fills_cache(self, cache):
        release = asyncio.Event()

        async def fetch():
            await release.wait()
            return {"price": 100}

        caller = asyncio.create_task(cache.get_cached_data("btc", fetch))
        await asyncio.sleep(0.01)
        caller.cancel()
        with pytest.raises(asyncio.CancelledError):
            await caller

        release.set()
        for _ in range(50):
            if cache.peek("btc") is not None:
                break
            await asyncio.sleep(0.01)

        assert cache.peek("btc").data == {"price": 100}

    @pytest.mark.asyncio
    async def test_timeout_stops_waiting_only(self, cache):
        release = asyncio.Event()

        async def fetch():
            await release.wait()
            return "late"

        with pytest.raises(asyncio.TimeoutError):
            await cache.get_cached_data("slow", fetch, timeout=0.01)

        release.set()
        for _ in range(50):
            if cache.peek("slow") is not None:
                break
            await asyncio.sleep(0.01)

        assert cache.peek("slow").data == "late"

    @pytest.mark.asyncio
    async def test_fetcher_cancellation_does_not_stop_worker(self, cache):
        async def cancelled_fetch():
            inner = asyncio.get_running_loop().create_future()
            inner.cancel()
            return await inner

        first = asyncio.create_task(cache.get_cached_data("a", cancelled_fetch))
        second = asyncio.create_task(cache.get_cached_data("b", AsyncMock(return_value="b")))

        with pytest.raises(UpstreamError):
            await first
        assert await asyncio.wait_for(second, 1.0) == "b"
        assert cache.queue_size == 0
        assert cache.is_processing is False
        assert cache.get_stats().cold_failures == 1

    @pytest.mark.asyncio
    async def test_fetcher_cancellation_serves_stale(self, cache, clock):
        cache.prime("a", "old")
        clock.advance(301)

        async def cancelled_fetch():
            inner = asyncio.get_running_loop().create_future()
            inner.cancel()
            return await inner

        assert await cache.get_cached_data("a", cancelled_fetch) == "old"
        assert cache.get_stats().stale_fallbacks == 1


class TestExtensions:
    """Coalescing, eviction and queue bounds."""

    @pytest.mark.asyncio
    async def test_coalesce_in_flight(self, clock):
        cache = RateLimitedCache(request_delay=0, coalesce_in_flight=True, clock=clock)

        async def slow():
            await asyncio.sleep(0.01)
            return {"price": 100}

        fetcher = AsyncMock(side_effect=slow)
        results = await asyncio.gather(*(cache.get_cached_data("btc", fetcher) for _ in range(3)))

        assert results == [{"price": 100}] * 3
        assert fetcher.await_count == 1
        assert cache.get_stats().coalesced == 2

    @pytest.mark.asyncio
    async def test_coalesced_callers_share_cold_failure(self):
        cache = RateLimitedCache(request_delay=0, coalesce_in_flight=True)
        error = UpstreamError("down", status_code=500)

        results = await asyncio.gather(
            cache.get_cached_data("btc", AsyncMock(side_effect=error)),
            cache.get_cached_data("btc", AsyncMock(return_value="unused")),
            return_exceptions=True,
        )

        assert results == [error, error]

    @pytest.mark.asyncio
    async def test_lru_eviction(self, clock):
        cache = RateLimitedCache(request_delay=0, max_entries=2, clock=clock)
        cache.prime("a", 1)
        cache.prime("b", 2)

        # Touch "a" so "b" becomes least recently used
        assert await cache.get_cached_data("a", AsyncMock()) == 1
        await cache.get_cached_data("c", AsyncMock(return_value=3))

        assert cache.peek("b") is None
        assert cache.peek("a").data == 1
        assert cache.peek("c").data == 3
        assert cache.get_stats().evictions == 1

    @pytest.mark.asyncio
    async def test_queue_full_rejects_cold_miss(self, clock):
        cache = RateLimitedCache(request_delay=0, max_queue_size=1, clock=clock)
        release = asyncio.Event()

        async def blocked():
            await release.wait()
            return "first"

        first = asyncio.create_task(cache.get_cached_data("a", blocked))
        await asyncio.sleep(0.01)
        second = asyncio.create_task(cache.get_cached_data("b", AsyncMock(return_value="second")))
        await asyncio.sleep(0)
        assert cache.queue_size == 1

        with pytest.raises(QueueFullError):
            await cache.get_cached_data("c", AsyncMock(return_value="third"))

        # A stale entry is served instead of rejecting
        cache.prime("d", "old", timestamp=clock.now - 600)
        assert await cache.get_cached_data("d", AsyncMock(return_value="new")) == "old"
        assert cache.get_stats().rejected == 2

        release.set()
        assert await first == "first"
        assert await second == "second"


class TestCloseAndStats:
    """Shutdown and statistics."""

    @pytest.mark.asyncio
    async def test_close_fails_pending_and_blocks_new_misses(self):
        cache = RateLimitedCache(request_delay=0)
        release = asyncio.Event()

        async def blocked():
            await release.wait()
            return "never"

        running = asyncio.create_task(cache.get_cached_data("a", blocked))
        queued = asyncio.create_task(cache.get_cached_data("b", AsyncMock(return_value="b")))
        await asyncio.sleep(0.01)

        await cache.close()

        with pytest.raises(CacheClosedError):
            await running
        with pytest.raises(CacheClosedError):
            await queued
        with pytest.raises(CacheClosedError):
            await cache.get_cached_data("c", AsyncMock())

    @pytest.mark.asyncio
    async def test_close_keeps_serving_fresh_entries(self, cache):
        cache.prime("btc", 1)
        await cache.close()
        assert await cache.get_cached_data("btc", AsyncMock()) == 1

    @pytest.mark.asyncio
    async def test_stats_snapshot(self, cache, clock):
        cache.prime("btc", 1, timestamp=clock.now - 600)
        await cache.get_cached_data("btc", AsyncMock(side_effect=UpstreamError("down")))
        await cache.get_cached_data("btc", AsyncMock(return_value=2))
        await cache.get_cached_data("btc", AsyncMock())

        stats = cache.get_stats()
        assert stats.hits == 1
        assert stats.misses == 2
        assert stats.upstream_calls == 2
        assert stats.upstream_failures == 1
        assert stats.stale_fallbacks == 1
        assert stats.cache_size == 1
        assert stats.queue_size == 0

        data = stats.to_dict()
        assert data["hit_rate_percent"] == pytest.approx(33.33)
        assert set(data) >= {"hits", "misses", "rate_limit_fallbacks", "avg_queue_wait_ms"}
