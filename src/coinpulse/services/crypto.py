"""
Crypto market-data service.

Every upstream call goes through one RateLimitedCache. Each method derives a
cache key from its parameters and hands the cache a closure that performs the
actual request and shapes the response.
"""

from __future__ import annotations

from typing import Any

import structlog

from coinpulse.cache.rate_limited import RateLimitedCache
from coinpulse.core.config import Settings
from coinpulse.core.models import NewsArticle, PriceHistory, PricePoint
from coinpulse.providers.base import UpstreamError
from coinpulse.providers.coingecko import CoinGeckoClient
from coinpulse.providers.cryptocompare import CryptoCompareClient

logger = structlog.get_logger()

SEARCH_RESULT_LIMIT = 10


def _with_coin_id(coin: dict[str, Any]) -> dict[str, Any]:
    return {**coin, "coinId": coin.get("id")}


def _require_positive(name: str, value: int) -> None:
    if value < 1:
        raise ValueError(f"{name} must be at least 1, got {value}")


def _require_text(name: str, value: str) -> str:
    value = (value or "").strip()
    if not value:
        raise ValueError(f"{name} must not be empty")
    return value


class CryptoDataService:
    """
    Cached access to CoinGecko market data and CryptoCompare news.

    Example:
        service = CryptoDataService.from_settings(get_settings())
        top = await service.get_top_coins(limit=20)
        await service.close()
    """

    def __init__(
        self,
        cache: RateLimitedCache,
        coingecko: CoinGeckoClient,
        cryptocompare: CryptoCompareClient,
    ):
        self.cache = cache
        self.coingecko = coingecko
        self.cryptocompare = cryptocompare

    @classmethod
    def from_settings(cls, settings: Settings) -> "CryptoDataService":
        """Build the service, its cache and its clients from settings."""
        upstream = settings.upstream
        api_key = upstream.coingecko_api_key.get_secret_value() if upstream.coingecko_api_key else None

        return cls(
            cache=RateLimitedCache.from_settings(settings.cache),
            coingecko=CoinGeckoClient(
                api_key=api_key,
                base_url=upstream.coingecko_base_url,
                timeout=upstream.timeout_seconds,
            ),
            cryptocompare=CryptoCompareClient(
                news_url=upstream.cryptocompare_news_url,
                timeout=upstream.timeout_seconds,
            ),
        )

    async def get_coin_prices(self, coin_ids: list[str]) -> dict[str, Any]:
        """USD price, 24h change and market cap keyed by coin id."""
        if not coin_ids:
            raise ValueError("coin_ids must not be empty")
        key = f"prices_{','.join(coin_ids)}"

        return await self.cache.get_cached_data(key, lambda: self.coingecko.simple_price(coin_ids))

    async def get_top_coins(self, limit: int = 10, page: int = 1) -> list[dict[str, Any]]:
        """Coins by market cap, one page at a time."""
        _require_positive("limit", limit)
        _require_positive("page", page)

        async def fetch() -> list[dict[str, Any]]:
            rows = await self.coingecko.coins_markets(per_page=limit, page=page)
            return [_with_coin_id(row) for row in rows]

        return await self.cache.get_cached_data(f"top_coins_{limit}_page_{page}", fetch)

    async def search_coins(self, query: str) -> list[dict[str, Any]]:
        """Up to ten coins matching a name or symbol."""
        query = _require_text("query", query)

        async def fetch() -> list[dict[str, Any]]:
            payload = await self.coingecko.search(query)
            coins = payload.get("coins") or []
            return [_with_coin_id(coin) for coin in coins[:SEARCH_RESULT_LIMIT]]

        return await self.cache.get_cached_data(f"search_{query}", fetch)

    async def get_coin_details(self, coin_id: str) -> dict[str, Any]:
        coin_id = _require_text("coin_id", coin_id)

        async def fetch() -> dict[str, Any]:
            return _with_coin_id(await self.coingecko.coin(coin_id))

        return await self.cache.get_cached_data(f"details_{coin_id}", fetch)

    async def get_coin_market_data(self, coin_id: str) -> dict[str, Any] | None:
        """Market row for one coin, or None if CoinGecko does not list it."""
        coin_id = _require_text("coin_id", coin_id)

        async def fetch() -> dict[str, Any] | None:
            rows = await self.coingecko.coin_market(coin_id)
            return _with_coin_id(rows[0]) if rows else None

        return await self.cache.get_cached_data(f"market_data_{coin_id}", fetch)

    async def get_coin_price_history(self, coin_id: str, days: int = 7) -> dict[str, Any]:
        """
        USD price series for the last ``days`` days.

        Returns:
            ``{"prices": [{"timestamp": ms, "price": float, "date": iso}, ...]}``
        """
        coin_id = _require_text("coin_id", coin_id)
        _require_positive("days", days)

        async def fetch() -> dict[str, Any]:
            chart = await self.coingecko.market_chart(coin_id, days=days)
            try:
                history = PriceHistory(
                    prices=[PricePoint.from_pair(ts, price) for ts, price in chart.get("prices") or []]
                )
            except (TypeError, ValueError) as e:
                raise UpstreamError(
                    f"coingecko returned a malformed price history for '{coin_id}'",
                    provider="coingecko",
                ) from e
            return history.model_dump(by_alias=True)

        return await self.cache.get_cached_data(f"history_{coin_id}_{days}", fetch)

    async def get_news(self, limit: int = 10) -> list[dict[str, Any]]:
        """
        Latest crypto news.

        News is best-effort: with nothing cached, an upstream failure yields
        an empty list rather than an error.
        """
        _require_positive("limit", limit)

        async def fetch() -> list[dict[str, Any]]:
            articles = await self.cryptocompare.latest_news()
            try:
                return [_to_article(article) for article in articles[:limit]]
            except (TypeError, ValueError) as e:
                raise UpstreamError(
                    "cryptocompare returned a malformed news article",
                    provider="cryptocompare",
                ) from e

        try:
            return await self.cache.get_cached_data(f"crypto_news_{limit}", fetch)
        except UpstreamError as e:
            logger.error("Failed to fetch crypto news", limit=limit, error=str(e))
            return []

    def get_cache_stats(self) -> dict[str, Any]:
        return self.cache.get_stats().to_dict()

    async def close(self) -> None:
        """Close the cache and both upstream clients."""
        await self.cache.close()
        await self.coingecko.close()
        await self.cryptocompare.close()


def _to_article(article: dict[str, Any]) -> dict[str, Any]:
    """Map a CryptoCompare article to the NewsArticle shape."""
    categories = article.get("categories") or ""
    return NewsArticle(
        id=str(article.get("id", "")),
        title=article.get("title") or "",
        body=article.get("body") or "",
        url=article.get("url") or "",
        image_url=article.get("imageurl") or "",
        source=article.get("source") or "",
        published_at=int(article.get("published_on") or 0) * 1000,
        categories=[c for c in categories.split("|") if c],
    ).model_dump(by_alias=True)
