"""
Rate-limited upstream cache.

Serialises upstream calls through a FIFO queue and serves stale data when
the upstream fails or throttles.
"""

from coinpulse.cache.rate_limited import (
    RateLimitedCache,
    CacheEntry,
    CacheStats,
    QueueTask,
    CacheError,
    QueueFullError,
    CacheClosedError,
)

__all__ = [
    "RateLimitedCache",
    "CacheEntry",
    "CacheStats",
    "QueueTask",
    "CacheError",
    "QueueFullError",
    "CacheClosedError",
]
