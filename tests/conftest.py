"""
Pytest configuration and shared fixtures.
"""

from datetime import date, timedelta
from typing import Optional

import pytest

from trendwatch.database.connection import Database
from trendwatch.data.provider import (
    PricePoint,
    ProviderError,
    ProviderErrorKind,
    QuoteProvider,
)


class FakeProvider(QuoteProvider):
    """In-memory provider recording every call."""

    def __init__(
        self,
        bulk: Optional[dict[str, float]] = None,
        quotes: Optional[dict[str, float]] = None,
        averages: Optional[dict[str, float]] = None,
        history: Optional[dict[str, list[PricePoint]]] = None,
        failures: Optional[dict[tuple[str, str], Exception]] = None,
    ):
        self.bulk = bulk or {}
        self.quotes = quotes or {}
        self.averages = averages or {}
        self.history = history or {}
        self.failures = failures or {}
        self.calls: list[tuple[str, object]] = []

    def _fail(self, operation: str, key: str) -> None:
        error = self.failures.get((operation, key))
        if error is not None:
            raise error

    def fetch_quote(self, symbol: str) -> float:
        self.calls.append(("quote", symbol))
        self._fail("quote", symbol)
        if symbol not in self.quotes:
            raise ProviderError(ProviderErrorKind.NOT_FOUND, f"No quote for {symbol}")
        return self.quotes[symbol]

    def fetch_quotes_bulk(self, symbols: list[str]) -> dict[str, float]:
        self.calls.append(("bulk", list(symbols)))
        for symbol in symbols:
            self._fail("bulk", symbol)
        return {s: self.bulk[s] for s in symbols if s in self.bulk}

    def fetch_trend_average(self, symbol: str) -> float:
        self.calls.append(("average", symbol))
        self._fail("average", symbol)
        if symbol not in self.averages:
            raise ProviderError(ProviderErrorKind.NOT_FOUND, f"No SMA for {symbol}")
        return self.averages[symbol]

    def fetch_history(self, symbol: str, years: int = 5) -> list[PricePoint]:
        self.calls.append(("history", symbol))
        self._fail("history", symbol)
        return list(self.history.get(symbol, []))


@pytest.fixture
def db():
    """Create in-memory database with schema."""
    db = Database(":memory:")
    db.initialize()
    yield db
    db.close()


@pytest.fixture
def fake_provider():
    """Provider with nothing configured."""
    return FakeProvider()


@pytest.fixture
def sleeps():
    """Records pauses requested by the scheduler instead of sleeping."""
    return []


@pytest.fixture
def record_sleep(sleeps):
    """Sleep function appending the requested seconds."""
    return sleeps.append


@pytest.fixture
def sample_discord_webhook_url():
    """Sample Discord webhook URL for testing."""
    return "https://discord.com/api/webhooks/123456789/abcdefghijklmnop"


@pytest.fixture
def recent_dates():
    """Five consecutive recent dates, oldest first."""
    today = date.today()
    return [today - timedelta(days=offset) for offset in range(5, 0, -1)]


@pytest.fixture
def sample_global_quote():
    """Sample Alpha Vantage GLOBAL_QUOTE response."""
    return {
        "Global Quote": {
            "01. symbol": "AAPL",
            "05. price": "175.5000",
            "08. previous close": "173.2500",
        }
    }


@pytest.fixture
def sample_bulk_quotes():
    """Sample Alpha Vantage REALTIME_BULK_QUOTES response."""
    return {
        "endpoint": "Realtime Bulk Quotes",
        "message": "",
        "data": [
            {"symbol": "AAPL", "price": "175.50"},
            {"symbol": "MSFT", "price": "410.10"},
        ],
    }


@pytest.fixture
def sample_sma():
    """Sample Alpha Vantage SMA response."""
    return {
        "Meta Data": {"1: Symbol": "AAPL", "2: Indicator": "Simple Moving Average (SMA)"},
        "Technical Analysis: SMA": {
            "2024-05-29": {"SMA": "180.1000"},
            "2024-05-31": {"SMA": "181.2500"},
            "2024-05-30": {"SMA": "180.7000"},
        },
    }
