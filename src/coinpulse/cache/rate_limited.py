"""
Rate-limited upstream cache.

Funnels every outbound call to a rate-limited upstream through one FIFO queue
drained by a single worker, with a fixed delay between calls. Results are
cached for a freshness window; when the upstream fails, the last good value
for the key is served instead of the error.
"""

from __future__ import annotations

import asyncio
import dataclasses
import time
from collections import OrderedDict, deque
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Awaitable, Callable, TypeVar

import structlog

from coinpulse.providers.base import UpstreamError, extract_status_code

if TYPE_CHECKING:
    from coinpulse.core.config import CacheSettings


logger = structlog.get_logger()

T = TypeVar("T")

DEFAULT_CACHE_DURATION = 300.0  # 5 minutes
DEFAULT_REQUEST_DELAY = 1.0


class CacheError(Exception):
    """Base exception for cache errors."""


class QueueFullError(CacheError):
    """Raised when a cold miss arrives while the request queue is at capacity."""

    def __init__(self, key: str, max_queue_size: int):
        super().__init__(f"Request queue full ({max_queue_size} pending), cannot fetch '{key}'")
        self.key = key
        self.max_queue_size = max_queue_size


class CacheClosedError(CacheError):
    """Raised when a fetch is requested from, or pending in, a closed cache."""


@dataclass(frozen=True)
class CacheEntry:
    """Last good upstream value for a key."""

    data: Any
    timestamp: float


@dataclass
class QueueTask:
    """A pending upstream fetch."""

    key: str
    fetcher: Callable[[], Awaitable[Any]]
    future: asyncio.Future
    enqueued_at: float


@dataclass
class CacheStats:
    """Cache and queue statistics."""

    hits: int = 0
    misses: int = 0
    upstream_calls: int = 0
    upstream_failures: int = 0
    rate_limit_fallbacks: int = 0
    stale_fallbacks: int = 0
    cold_failures: int = 0
    coalesced: int = 0
    evictions: int = 0
    rejected: int = 0
    queue_size: int = 0
    cache_size: int = 0
    avg_queue_wait_ms: float = 0.0

    @property
    def hit_rate(self) -> float:
        """Fast-path hit rate as percentage."""
        total = self.hits + self.misses
        if total == 0:
            return 0.0
        return (self.hits / total) * 100

    def to_dict(self) -> dict[str, Any]:
        return {
            "hits": self.hits,
            "misses": self.misses,
            "hit_rate_percent": round(self.hit_rate, 2),
            "upstream_calls": self.upstream_calls,
            "upstream_failures": self.upstream_failures,
            "rate_limit_fallbacks": self.rate_limit_fallbacks,
            "stale_fallbacks": self.stale_fallbacks,
            "cold_failures": self.cold_failures,
            "coalesced": self.coalesced,
            "evictions": self.evictions,
            "rejected": self.rejected,
            "queue_size": self.queue_size,
            "cache_size": self.cache_size,
            "avg_queue_wait_ms": round(self.avg_queue_wait_ms, 2),
        }


class RateLimitedCache:
    """
    Time-windowed cache in front of a rate-limited upstream.

    Features:
    - Fresh entries are returned without queueing or suspending
    - Misses run one at a time, in arrival order, spaced by request_delay
    - Upstream failures fall back to the last good value for the key;
      a 429 also restarts that value's freshness window
    - Only a miss with nothing cached surfaces the upstream error

    Optional bounds (off by default): coalescing of concurrent misses for the
    same key, LRU eviction past max_entries, and rejection of cold misses
    past max_queue_size.

    Example:
        cache = RateLimitedCache(cache_duration=300, request_delay=1.0)

        prices = await cache.get_cached_data(
            "prices_bitcoin",
            lambda: client.simple_price(["bitcoin"]),
        )
    """

    def __init__(
        self,
        cache_duration: float = DEFAULT_CACHE_DURATION,
        request_delay: float = DEFAULT_REQUEST_DELAY,
        *,
        coalesce_in_flight: bool = False,
        max_entries: int | None = None,
        max_queue_size: int | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize the cache.

        Args:
            cache_duration: Freshness window in seconds
            request_delay: Minimum spacing between upstream calls in seconds
            coalesce_in_flight: Let concurrent misses for one key share a fetch
            max_entries: Evict least recently used entries beyond this count
            max_queue_size: Reject cold misses beyond this many pending fetches
            clock: Time source for entry timestamps
        """
        if cache_duration < 0:
            raise ValueError("cache_duration must be non-negative")
        if request_delay < 0:
            raise ValueError("request_delay must be non-negative")
        if max_entries is not None and max_entries <= 0:
            raise ValueError("max_entries must be positive")
        if max_queue_size is not None and max_queue_size <= 0:
            raise ValueError("max_queue_size must be positive")

        self.cache_duration = cache_duration
        self.request_delay = request_delay
        self.coalesce_in_flight = coalesce_in_flight
        self.max_entries = max_entries
        self.max_queue_size = max_queue_size
        self._clock = clock

        self._entries: OrderedDict[str, CacheEntry] = OrderedDict()
        self._queue: deque[QueueTask] = deque()
        self._in_flight: dict[str, asyncio.Future] = {}

        self._processing = False
        self._worker: asyncio.Task | None = None
        self._last_call_finished: float | None = None
        self._closed = False

        self._stats = CacheStats()
        self._total_wait_ms = 0.0
        self._completed = 0

    @classmethod
    def from_settings(cls, settings: CacheSettings) -> "RateLimitedCache":
        """Build a cache from CacheSettings."""
        return cls(
            cache_duration=settings.cache_duration_seconds,
            request_delay=settings.request_delay_seconds,
            coalesce_in_flight=settings.coalesce_in_flight,
            max_entries=settings.max_entries,
            max_queue_size=settings.max_queue_size,
        )

    @property
    def queue_size(self) -> int:
        """Number of fetches waiting to run."""
        return len(self._queue)

    @property
    def cache_size(self) -> int:
        return len(self._entries)

    @property
    def is_processing(self) -> bool:
        """True while the worker is draining the queue."""
        return self._processing

    def is_fresh(self, entry: CacheEntry) -> bool:
        """Check if an entry is inside the freshness window."""
        return self._clock() - entry.timestamp < self.cache_duration

    def peek(self, key: str) -> CacheEntry | None:
        """Return the entry for a key without affecting stats or LRU order."""
        return self._entries.get(key)

    def prime(self, key: str, data: Any, timestamp: float | None = None) -> CacheEntry:
        """
        Store a value without calling the upstream.

        Args:
            key: Cache key
            data: Value to store
            timestamp: Entry time on the cache clock (defaults to now)

        Returns:
            The stored entry
        """
        entry = CacheEntry(data, self._clock() if timestamp is None else timestamp)
        self._put(key, entry)
        return entry

    async def get_cached_data(
        self,
        key: str,
        fetcher: Callable[[], Awaitable[T]],
        *,
        timeout: float | None = None,
    ) -> T:
        """
        Get the value for a key, fetching from the upstream if needed.

        Args:
            key: Cache key identifying the logical request
            fetcher: Zero-argument coroutine function performing one upstream call
            timeout: Maximum time to wait for a queued fetch; the fetch itself
                still runs and fills the cache if the wait times out

        Returns:
            Fresh data, newly fetched data, or stale data if the upstream failed

        Raises:
            Exception: Whatever the fetcher raised, when nothing is cached for the key
            QueueFullError: Cold miss while the queue is at max_queue_size
            CacheClosedError: Miss after close()
        """
        entry = self._entries.get(key)
        if entry is not None and self.is_fresh(entry):
            self._entries.move_to_end(key)
            self._stats.hits += 1
            logger.debug("Cache hit", key=key)
            return entry.data

        self._stats.misses += 1

        future = self._in_flight.get(key) if self.coalesce_in_flight else None
        if future is not None:
            self._stats.coalesced += 1
            logger.debug("Joining in-flight fetch", key=key)
        else:
            if self._closed:
                raise CacheClosedError(f"Cache is closed, cannot fetch '{key}'")

            if self.max_queue_size is not None and len(self._queue) >= self.max_queue_size:
                self._stats.rejected += 1
                if entry is not None:
                    self._stats.stale_fallbacks += 1
                    logger.warning(
                        "Request queue full, serving stale data",
                        key=key,
                        queue_size=len(self._queue),
                    )
                    return entry.data
                logger.warning("Request queue full", key=key, queue_size=len(self._queue))
                raise QueueFullError(key, self.max_queue_size)

            future = self._enqueue(key, fetcher)

        # Shielded so a cancelled or timed-out caller leaves the fetch running
        waiter = asyncio.shield(future)
        if timeout is None:
            return await waiter
        return await asyncio.wait_for(waiter, timeout)

    def get_stats(self) -> CacheStats:
        """Get a snapshot of cache statistics."""
        return dataclasses.replace(
            self._stats,
            queue_size=len(self._queue),
            cache_size=len(self._entries),
            avg_queue_wait_ms=(self._total_wait_ms / self._completed) if self._completed else 0.0,
        )

    async def close(self) -> None:
        """Stop the worker and fail every pending fetch with CacheClosedError."""
        self._closed = True

        worker = self._worker
        if worker is not None and not worker.done():
            worker.cancel()
            try:
                await worker
            except asyncio.CancelledError:
                pass

        pending = len(self._queue)
        while self._queue:
            task = self._queue.popleft()
            self._reject(task.future, CacheClosedError(f"Cache closed before fetching '{task.key}'"))

        self._in_flight.clear()
        self._processing = False
        logger.info("Cache closed", dropped=pending, cache_size=len(self._entries))

    def _enqueue(self, key: str, fetcher: Callable[[], Awaitable[Any]]) -> asyncio.Future:
        loop = asyncio.get_running_loop()
        future = loop.create_future()

        self._queue.append(
            QueueTask(key=key, fetcher=fetcher, future=future, enqueued_at=loop.time())
        )
        if self.coalesce_in_flight:
            self._in_flight[key] = future

        logger.debug("Queued upstream fetch", key=key, queue_size=len(self._queue))
        self._ensure_worker()
        return future

    def _ensure_worker(self) -> None:
        """Start the worker unless one is already scheduled or running."""
        if self._processing or (self._worker is not None and not self._worker.done()):
            return
        self._worker = asyncio.create_task(self._process_queue())

    async def _process_queue(self) -> None:
        """Drain the queue one task at a time. No-op if already running."""
        if self._processing:
            return

        self._processing = True
        loop = asyncio.get_running_loop()
        try:
            while self._queue:
                await self._wait_for_slot(loop)
                if not self._queue:
                    break
                task = self._queue.popleft()
                await self._run_task(task, loop)
        finally:
            self._processing = False

    async def _wait_for_slot(self, loop: asyncio.AbstractEventLoop) -> None:
        """Sleep out whatever is left of request_delay since the last upstream call."""
        if self._last_call_finished is None or self.request_delay <= 0:
            return
        remaining = self.request_delay - (loop.time() - self._last_call_finished)
        if remaining > 0:
            await asyncio.sleep(remaining)

    async def _run_task(self, task: QueueTask, loop: asyncio.AbstractEventLoop) -> None:
        self._total_wait_ms += (loop.time() - task.enqueued_at) * 1000
        self._completed += 1
        self._stats.upstream_calls += 1

        try:
            data = await task.fetcher()
        except asyncio.CancelledError as e:
            if self._closed or _worker_cancelling():
                self._reject(task.future, CacheClosedError(f"Fetch for '{task.key}' cancelled"))
                raise
            # Cancelled inside the fetcher, not the worker: an ordinary failure
            error = UpstreamError(f"Fetch for '{task.key}' was cancelled")
            error.__cause__ = e
            self._stats.upstream_failures += 1
            self._handle_failure(task, error)
        except Exception as e:
            self._stats.upstream_failures += 1
            self._handle_failure(task, e)
        else:
            self._put(task.key, CacheEntry(data, self._clock()))
            self._resolve(task.future, data)
            logger.debug("Fetched from upstream", key=task.key)
        finally:
            self._last_call_finished = loop.time()
            if self._in_flight.get(task.key) is task.future:
                del self._in_flight[task.key]

    def _handle_failure(self, task: QueueTask, error: Exception) -> None:
        """Serve the last good value for the key, or pass the error on."""
        status_code = extract_status_code(error)
        cached = self._entries.get(task.key)

        if cached is None:
            self._stats.cold_failures += 1
            logger.error(
                "Upstream fetch failed with nothing cached",
                key=task.key,
                status_code=status_code,
                error_type=type(error).__name__,
                error=str(error),
            )
            self._reject(task.future, error)
            return

        if status_code == 429:
            self._put(task.key, CacheEntry(cached.data, self._clock()))
            self._stats.rate_limit_fallbacks += 1
            logger.warning("Rate limited, extending cache time for existing data", key=task.key)
        else:
            self._stats.stale_fallbacks += 1
            logger.warning(
                "Returning cached data due to upstream failure",
                key=task.key,
                status_code=status_code,
                error_type=type(error).__name__,
                error=str(error),
            )

        self._resolve(task.future, cached.data)

    def _put(self, key: str, entry: CacheEntry) -> None:
        self._entries[key] = entry
        self._entries.move_to_end(key)

        if self.max_entries is not None:
            while len(self._entries) > self.max_entries:
                evicted, _ = self._entries.popitem(last=False)
                self._stats.evictions += 1
                logger.debug("Evicted cache entry", key=evicted)

    @staticmethod
    def _resolve(future: asyncio.Future, value: Any) -> None:
        if not future.done():
            future.set_result(value)

    @staticmethod
    def _reject(future: asyncio.Future, error: BaseException) -> None:
        if not future.done():
            future.set_exception(error)


def _worker_cancelling() -> bool:
    """True if the current task has a pending cancel request (Python 3.11+)."""
    current = asyncio.current_task()
    cancelling = getattr(current, "cancelling", None)
    return bool(cancelling and cancelling())
