"""Application services."""

from coinpulse.services.crypto import CryptoDataService

__all__ = ["CryptoDataService"]
