"""CryptoCompare news client."""

from __future__ import annotations

from typing import Any

import httpx

from coinpulse.providers.base import BaseUpstreamClient, UpstreamError


CRYPTOCOMPARE_NEWS_URL = "https://min-api.cryptocompare.com/data/v2/news/"


class CryptoCompareClient(BaseUpstreamClient):
    """Client for the CryptoCompare news feed."""

    provider = "cryptocompare"

    def __init__(
        self,
        news_url: str = CRYPTOCOMPARE_NEWS_URL,
        timeout: float = 10.0,
        http_client: httpx.AsyncClient | None = None,
    ):
        super().__init__(news_url, timeout=timeout, http_client=http_client)
        self.news_url = news_url

    async def latest_news(self) -> list[dict[str, Any]]:
        """Latest English articles, newest first."""
        payload = await self._get_json(self.news_url, {"lang": "EN", "sortOrder": "latest"})

        articles = payload.get("Data") if isinstance(payload, dict) else None
        if not isinstance(articles, list):
            # CryptoCompare reports errors with HTTP 200 and a message body
            raise UpstreamError(
                f"cryptocompare returned no articles: {payload.get('Message') if isinstance(payload, dict) else payload!r}",
                provider=self.provider,
            )
        return articles
