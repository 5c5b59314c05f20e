"""
FastAPI server for coinpulse.

Exposes the cached crypto market-data endpoints. Upstream failures with
nothing cached surface as 502/503 responses; everything else is served from
fresh or stale cache.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

import structlog
from fastapi import APIRouter, Depends, FastAPI, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from coinpulse import __version__
from coinpulse.cache.rate_limited import CacheClosedError, QueueFullError
from coinpulse.core.config import get_settings
from coinpulse.core.models import CoinPricesRequest, NewsArticle, PriceHistory
from coinpulse.providers.base import RateLimitError, UpstreamError
from coinpulse.services.crypto import CryptoDataService
from coinpulse.utils.logging import setup_logging

logger = structlog.get_logger()

router = APIRouter()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan handler."""
    setup_logging()
    settings = get_settings()

    service = CryptoDataService.from_settings(settings)
    app.state.crypto_service = service
    logger.info(
        "Starting coinpulse API server",
        cache_duration=settings.cache.cache_duration_seconds,
        request_delay=settings.cache.request_delay_seconds,
        coingecko_key=settings.upstream.has_coingecko_key,
    )

    try:
        yield
    finally:
        await service.close()
        logger.info("Shutting down coinpulse API server")


def get_crypto_service(request: Request) -> CryptoDataService:
    """Dependency returning the service built in the lifespan."""
    return request.app.state.crypto_service


def _error_response(http_status: int, detail: str, **extra: Any) -> JSONResponse:
    return JSONResponse(status_code=http_status, content={"detail": detail, **extra})


async def rate_limit_error_handler(request: Request, exc: RateLimitError) -> JSONResponse:
    response = _error_response(503, str(exc), status_code=exc.status_code)
    if exc.retry_after is not None:
        response.headers["Retry-After"] = str(int(exc.retry_after))
    return response


async def upstream_error_handler(request: Request, exc: UpstreamError) -> JSONResponse:
    return _error_response(502, str(exc), status_code=exc.status_code)


async def unavailable_error_handler(request: Request, exc: Exception) -> JSONResponse:
    return _error_response(503, str(exc))


async def value_error_handler(request: Request, exc: ValueError) -> JSONResponse:
    return _error_response(422, str(exc))


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title="coinpulse API",
        description="Crypto market data served through a rate-limited, stale-tolerant cache",
        version=__version__,
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.server.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(RateLimitError, rate_limit_error_handler)
    app.add_exception_handler(UpstreamError, upstream_error_handler)
    app.add_exception_handler(QueueFullError, unavailable_error_handler)
    app.add_exception_handler(CacheClosedError, unavailable_error_handler)
    app.add_exception_handler(ValueError, value_error_handler)

    app.include_router(router)
    return app


@router.get("/")
async def root() -> dict[str, str]:
    """API information endpoint."""
    return {
        "name": "coinpulse API",
        "version": __version__,
        "description": "Cached crypto market data",
    }


@router.get("/health")
async def health_check(
    service: CryptoDataService = Depends(get_crypto_service),
) -> dict[str, Any]:
    """Health check endpoint."""
    return {"status": "healthy", "cache": service.get_cache_stats()}


@router.get("/cache/stats")
async def cache_stats(
    service: CryptoDataService = Depends(get_crypto_service),
) -> dict[str, Any]:
    return service.get_cache_stats()


@router.post("/crypto/prices")
async def get_coin_prices(
    body: CoinPricesRequest,
    service: CryptoDataService = Depends(get_crypto_service),
) -> dict[str, Any]:
    """Prices for the requested coin ids."""
    return await service.get_coin_prices(body.coin_ids)


@router.get("/crypto/top")
async def get_top_coins(
    limit: int = Query(10, ge=1, le=250),
    page: int = Query(1, ge=1),
    service: CryptoDataService = Depends(get_crypto_service),
) -> list[dict[str, Any]]:
    return await service.get_top_coins(limit, page)


@router.get("/crypto/search")
async def search_coins(
    q: str = Query(..., min_length=1),
    service: CryptoDataService = Depends(get_crypto_service),
) -> list[dict[str, Any]]:
    return await service.search_coins(q)


@router.get("/crypto/news/latest", response_model=list[NewsArticle])
async def get_news(
    limit: int = Query(10, ge=1, le=50),
    service: CryptoDataService = Depends(get_crypto_service),
) -> list[dict[str, Any]]:
    return await service.get_news(limit)


@router.get("/crypto/{coin_id}/history", response_model=PriceHistory)
async def get_coin_price_history(
    coin_id: str,
    days: int = Query(7, ge=1, le=365),
    service: CryptoDataService = Depends(get_crypto_service),
) -> dict[str, Any]:
    return await service.get_coin_price_history(coin_id, days)


@router.get("/crypto/{coin_id}/market")
async def get_coin_market_data(
    coin_id: str,
    service: CryptoDataService = Depends(get_crypto_service),
) -> dict[str, Any] | None:
    """Market row for a coin, or null if CoinGecko does not list it."""
    return await service.get_coin_market_data(coin_id)


@router.get("/crypto/{coin_id}")
async def get_coin_details(
    coin_id: str,
    service: CryptoDataService = Depends(get_crypto_service),
) -> dict[str, Any]:
    return await service.get_coin_details(coin_id)


app = create_app()


def run_server(
    host: str = "0.0.0.0",
    port: int = 8000,
    reload: bool = False,
) -> None:
    """Run the API server."""
    import uvicorn
    uvicorn.run(
        "coinpulse.api.server:app",
        host=host,
        port=port,
        reload=reload,
    )


if __name__ == "__main__":
    run_server()
