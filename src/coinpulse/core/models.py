"""
Core data models for coinpulse.

Request and response payloads with fixed shapes. Coin market rows, search
results and coin details are passed through from the upstream as dicts.
"""

from __future__ import annotations

from datetime import datetime, timezone

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    """Base model serialised with camelCase keys, as the frontend expects."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class CoinPricesRequest(CamelModel):
    """Body of POST /crypto/prices."""

    coin_ids: list[str] = Field(..., min_length=1)

    @field_validator("coin_ids")
    @classmethod
    def strip_ids(cls, v: list[str]) -> list[str]:
        ids = [coin_id.strip() for coin_id in v if coin_id and coin_id.strip()]
        if not ids:
            raise ValueError("coinIds must contain at least one non-empty id")
        return ids


class PricePoint(CamelModel):
    """A single point of a price series."""

    timestamp: int  # epoch milliseconds
    price: float
    date: str

    @classmethod
    def from_pair(cls, timestamp_ms: float, price: float) -> "PricePoint":
        """Build from a CoinGecko ``[ms, price]`` pair."""
        return cls(timestamp=int(timestamp_ms), price=price, date=iso_from_millis(timestamp_ms))


class PriceHistory(CamelModel):
    """Price series for a coin."""

    prices: list[PricePoint] = Field(default_factory=list)


class NewsArticle(CamelModel):
    """A news article from CryptoCompare."""

    id: str
    title: str
    body: str
    url: str
    image_url: str = ""
    source: str = ""
    published_at: int  # epoch milliseconds
    categories: list[str] = Field(default_factory=list)


def iso_from_millis(timestamp_ms: float) -> str:
    """Format epoch milliseconds as ``YYYY-MM-DDTHH:MM:SS.mmmZ``."""
    moment = datetime.fromtimestamp(timestamp_ms / 1000, tz=timezone.utc)
    return moment.isoformat(timespec="milliseconds").replace("+00:00", "Z")
