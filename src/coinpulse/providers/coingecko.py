"""
CoinGecko API client.

Each method performs exactly one upstream call and returns the decoded JSON.
Caching and throttling are the caller's concern.
"""

from __future__ import annotations

from typing import Any

import httpx

from coinpulse.providers.base import BaseUpstreamClient


COINGECKO_API_URL = "https://api.coingecko.com/api/v3"


class CoinGeckoClient(BaseUpstreamClient):
    """Client for the public CoinGecko v3 API."""

    provider = "coingecko"

    def __init__(
        self,
        api_key: str | None = None,
        base_url: str = COINGECKO_API_URL,
        timeout: float = 10.0,
        http_client: httpx.AsyncClient | None = None,
    ):
        headers = {"Content-Type": "application/json"}
        if api_key:
            headers["x-cg-demo-api-key"] = api_key
        super().__init__(base_url, timeout=timeout, headers=headers, http_client=http_client)

    async def simple_price(self, coin_ids: list[str]) -> dict[str, Any]:
        """USD price, 24h change and market cap for the given coins."""
        return await self._get_json(
            "/simple/price",
            {
                "ids": ",".join(coin_ids),
                "vs_currencies": "usd",
                "include_24hr_change": "true",
                "include_market_cap": "true",
            },
        )

    async def coins_markets(self, per_page: int = 10, page: int = 1) -> list[dict[str, Any]]:
        """Coins ordered by market cap, with sparkline data."""
        return await self._get_json(
            "/coins/markets",
            {
                "vs_currency": "usd",
                "order": "market_cap_desc",
                "per_page": per_page,
                "page": page,
                "price_change_percentage": "1h,24h,7d",
                "sparkline": "true",
            },
        )

    async def coin_market(self, coin_id: str) -> list[dict[str, Any]]:
        """Market row for a single coin (a list of zero or one rows)."""
        return await self._get_json(
            "/coins/markets",
            {
                "vs_currency": "usd",
                "ids": coin_id,
                "price_change_percentage": "1h,24h,7d,30d",
            },
        )

    async def search(self, query: str) -> dict[str, Any]:
        return await self._get_json("/search", {"query": query})

    async def coin(self, coin_id: str) -> dict[str, Any]:
        """Full coin document including tickers."""
        return await self._get_json(
            f"/coins/{coin_id}",
            {
                "localization": "false",
                "tickers": "true",
                "community_data": "false",
                "developer_data": "false",
            },
        )

    async def market_chart(self, coin_id: str, days: int = 7) -> dict[str, Any]:
        """Price series as ``{"prices": [[ms, price], ...], ...}``."""
        return await self._get_json(
            f"/coins/{coin_id}/market_chart",
            {"vs_currency": "usd", "days": days},
        )
