"""Core configuration and data models."""

from coinpulse.core.config import Settings, get_settings, reload_settings
from coinpulse.core.models import (
    CoinPricesRequest,
    NewsArticle,
    PriceHistory,
    PricePoint,
)

__all__ = [
    "Settings",
    "get_settings",
    "reload_settings",
    "CoinPricesRequest",
    "NewsArticle",
    "PriceHistory",
    "PricePoint",
]
