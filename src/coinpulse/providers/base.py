"""
Base upstream client for market-data APIs.

All upstream clients inherit from BaseUpstreamClient and raise UpstreamError
(or RateLimitError) for failed calls.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

import httpx
import structlog

logger = structlog.get_logger()


class UpstreamError(Exception):
    """Base exception for upstream API errors."""

    def __init__(
        self,
        message: str,
        provider: str | None = None,
        status_code: int | None = None,
    ):
        super().__init__(message)
        self.provider = provider
        self.status_code = status_code


class RateLimitError(UpstreamError):
    """Raised when the upstream answers 429 Too Many Requests."""

    def __init__(
        self,
        message: str,
        provider: str | None = None,
        retry_after: float | None = None,
    ):
        super().__init__(message, provider, status_code=429)
        self.retry_after = retry_after


def extract_status_code(error: Any) -> int | None:
    """
    Find an HTTP-like status code on an error object.

    Looks at ``status_code``, ``status``, ``response.status_code`` and, for
    mapping-shaped errors, the ``"status"`` key.

    Returns:
        The status code, or None if the error carries none
    """
    if isinstance(error, Mapping):
        status = error.get("status", error.get("status_code"))
        return status if isinstance(status, int) else None

    for attr in ("status_code", "status"):
        status = getattr(error, attr, None)
        if isinstance(status, int):
            return status

    response = getattr(error, "response", None)
    status = getattr(response, "status_code", None)
    if isinstance(status, int):
        return status

    # Errors given as exception args, e.g. Exception({"status": 429})
    args = getattr(error, "args", ())
    if len(args) == 1 and isinstance(args[0], Mapping):
        return extract_status_code(args[0])

    return None


def is_rate_limit_error(error: Any) -> bool:
    """Check if an error signals upstream throttling."""
    return extract_status_code(error) == 429


def _parse_retry_after(value: str | None) -> float | None:
    if not value:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        # HTTP-date form is not used by the market-data APIs
        return None


class BaseUpstreamClient:
    """
    Thin JSON-over-HTTP client.

    Owns an httpx.AsyncClient unless one is injected, in which case the
    caller is responsible for closing it.
    """

    provider: str = "upstream"

    def __init__(
        self,
        base_url: str,
        timeout: float = 10.0,
        headers: dict[str, str] | None = None,
        http_client: httpx.AsyncClient | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.headers = headers or {}
        self._http_client = http_client
        self._owns_client = http_client is None

    def _get_http_client(self) -> httpx.AsyncClient:
        """Get or create the HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=self.timeout)
        return self._http_client

    async def _get_json(self, path: str, params: dict[str, Any] | None = None) -> Any:
        """
        Perform a GET request and decode the JSON body.

        Args:
            path: Path relative to base_url, or an absolute URL
            params: Query parameters

        Returns:
            Decoded JSON payload

        Raises:
            RateLimitError: Upstream answered 429
            UpstreamError: Any other HTTP or transport failure
        """
        url = path if path.startswith(("http://", "https://")) else f"{self.base_url}/{path.lstrip('/')}"
        client = self._get_http_client()

        try:
            response = await client.get(url, params=params, headers=self.headers)
        except httpx.HTTPError as e:
            logger.warning(
                "Upstream request failed",
                provider=self.provider,
                url=url,
                error_type=type(e).__name__,
                error=str(e),
            )
            raise UpstreamError(
                f"{self.provider} request failed: {e}",
                provider=self.provider,
            ) from e

        if response.status_code == 429:
            retry_after = _parse_retry_after(response.headers.get("retry-after"))
            logger.warning(
                "Upstream rate limited",
                provider=self.provider,
                url=url,
                retry_after=retry_after,
            )
            raise RateLimitError(
                f"{self.provider} rate limit exceeded",
                provider=self.provider,
                retry_after=retry_after,
            )

        if response.status_code >= 400:
            message = _error_message(response)
            logger.warning(
                "Upstream API error",
                provider=self.provider,
                url=url,
                status_code=response.status_code,
                error=message,
            )
            raise UpstreamError(
                f"{self.provider} API error {response.status_code}: {message}",
                provider=self.provider,
                status_code=response.status_code,
            )

        try:
            return response.json()
        except ValueError as e:
            raise UpstreamError(
                f"{self.provider} returned invalid JSON",
                provider=self.provider,
                status_code=response.status_code,
            ) from e

    async def close(self) -> None:
        """Close the HTTP client if this instance created it."""
        if self._http_client is not None and self._owns_client:
            await self._http_client.aclose()
            self._http_client = None

    async def __aenter__(self) -> "BaseUpstreamClient":
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()


def _error_message(response: httpx.Response) -> str:
    """Pull a readable message out of an error body."""
    try:
        body = response.json()
    except ValueError:
        return response.text[:200] or response.reason_phrase

    # CoinGecko: {"status": {"error_code": 429, "error_message": "..."}}
    if isinstance(body, Mapping):
        status = body.get("status")
        if isinstance(status, Mapping) and status.get("error_message"):
            return str(status["error_message"])
        for field in ("error", "message", "Message"):
            if body.get(field):
                return str(body[field])

    return response.reason_phrase or "unknown error"
