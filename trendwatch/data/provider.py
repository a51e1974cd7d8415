"""
Quote provider interface and error taxonomy.

Every provider operation fails fast with a ProviderError; retry and pacing
are the caller's concern (see trendwatch.data.scheduler).
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import date, datetime, timezone
from enum import Enum
from typing import Optional

from trendwatch.config import DataSourceConfig

# Largest symbol list a single bulk quote call accepts
MAX_BULK_SYMBOLS = 100


class ProviderErrorKind(str, Enum):
    """Uniform classification of provider failures."""

    RATE_LIMITED = "rate_limited"
    NOT_FOUND = "not_found"
    MALFORMED = "malformed"
    TRANSPORT = "transport"


class ProviderError(Exception):
    """Raised when a provider call cannot produce a normalized result."""

    def __init__(self, kind: ProviderErrorKind, detail: str):
        super().__init__(f"{kind.value}: {detail}")
        self.kind = kind
        self.detail = detail


@dataclass
class PricePoint:
    """One daily close."""

    date: date
    close: float


def history_cutoff(years: int, today: Optional[date] = None) -> date:
    """First date of a trailing window of whole years."""
    today = today or datetime.now(timezone.utc).date()
    try:
        return today.replace(year=today.year - years)
    except ValueError:
        # Feb 29 in a non-leap target year
        return today.replace(year=today.year - years, day=28)


class QuoteProvider(ABC):
    """Abstract base class for market data providers."""

    @abstractmethod
    def fetch_quote(self, symbol: str) -> float:
        """
        Fetch the current price of one symbol.

        Raises:
            ProviderError: If no price can be obtained
        """
        pass

    @abstractmethod
    def fetch_quotes_bulk(self, symbols: list[str]) -> dict[str, float]:
        """
        Fetch current prices for up to MAX_BULK_SYMBOLS symbols.

        Symbols missing from the provider response are missing from the
        result; that is not an error.
        """
        pass

    @abstractmethod
    def fetch_trend_average(self, symbol: str) -> float:
        """Fetch the most recent 200-period simple moving average."""
        pass

    @abstractmethod
    def fetch_history(self, symbol: str, years: int = 5) -> list[PricePoint]:
        """Fetch daily closes for the trailing window, oldest first."""
        pass


def check_bulk_size(symbols: list[str]) -> None:
    """Reject symbol lists larger than one bulk call accepts."""
    if len(symbols) > MAX_BULK_SYMBOLS:
        raise ValueError(
            f"Cannot fetch more than {MAX_BULK_SYMBOLS} symbols at once. "
            f"Received {len(symbols)} symbols."
        )


class ProviderFactory:
    """Factory for creating provider instances."""

    @staticmethod
    def create(config: DataSourceConfig) -> QuoteProvider:
        """
        Create a provider from configuration.

        Args:
            config: Data source configuration

        Returns:
            Appropriate QuoteProvider instance

        Raises:
            ValueError: If provider name is unknown
        """
        if config.provider == "alpha_vantage":
            from .alpha_vantage import AlphaVantageProvider

            return AlphaVantageProvider(
                api_key=config.api_key or "",
                base_url=config.base_url,
                timeout=config.timeout_seconds,
            )

        elif config.provider == "yahoo_finance":
            from .yahoo import YahooFinanceProvider

            return YahooFinanceProvider()

        else:
            raise ValueError(f"Unknown data provider: {config.provider}")
