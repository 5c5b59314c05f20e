"""Upstream market-data API clients."""

from coinpulse.providers.base import (
    BaseUpstreamClient,
    UpstreamError,
    RateLimitError,
    extract_status_code,
    is_rate_limit_error,
)
from coinpulse.providers.coingecko import CoinGeckoClient
from coinpulse.providers.cryptocompare import CryptoCompareClient

__all__ = [
    "BaseUpstreamClient",
    "UpstreamError",
    "RateLimitError",
    "extract_status_code",
    "is_rate_limit_error",
    "CoinGeckoClient",
    "CryptoCompareClient",
]
