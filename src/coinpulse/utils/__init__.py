"""Utility modules for coinpulse."""

from coinpulse.utils.logging import setup_logging

__all__ = [
    "setup_logging",
]
