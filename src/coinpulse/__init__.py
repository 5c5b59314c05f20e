"""
coinpulse - Crypto market data behind a rate-limited cache

Serves CoinGecko prices, market rows, price history and CryptoCompare news
through a single throttled request queue with stale-data fallback.
"""

__version__ = "1.0.0"
__author__ = "coinpulse Team"

from coinpulse.cache.rate_limited import RateLimitedCache, CacheEntry, CacheStats
from coinpulse.services.crypto import CryptoDataService

__all__ = [
    "RateLimitedCache",
    "CacheEntry",
    "CacheStats",
    "CryptoDataService",
]
