"""Tests for utility modules."""

import pytest
import structlog

from coinpulse.utils.logging import setup_logging


@pytest.fixture(autouse=True)
def reset_structlog():
    yield
    structlog.reset_defaults()


class TestLogging:
    """Tests for structured logging setup."""

    def test_json_output(self, capsys):
        setup_logging(level="INFO", json_format=True)

        structlog.get_logger("test").info("Fetched from upstream", key="prices_bitcoin")

        err = capsys.readouterr().err
        assert '"event": "Fetched from upstream"' in err
        assert '"key": "prices_bitcoin"' in err
        assert '"level": "info"' in err

    def test_level_filters_debug(self, capsys):
        setup_logging(level="WARNING", json_format=True)

        structlog.get_logger().debug("Cache hit", key="search_btc")

        assert "Cache hit" not in capsys.readouterr().err

    def test_console_output(self, capsys):
        setup_logging(level="debug", json_format=False)

        structlog.get_logger().debug("Queued upstream fetch", key="details_bitcoin")

        err = capsys.readouterr().err
        assert "Queued upstream fetch" in err
        assert "key=details_bitcoin" in err
