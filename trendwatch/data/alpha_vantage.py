"""
Alpha Vantage quote provider.
"""

import json
import logging
from datetime import date
from typing import Any

import requests

from .provider import (
    PricePoint,
    ProviderError,
    ProviderErrorKind,
    QuoteProvider,
    check_bulk_size,
    history_cutoff,
)
from trendwatch.database.models import normalize_symbol

logger = logging.getLogger(__name__)


def _parse_float(value: Any, what: str) -> float:
    """Parse a numeric string from the API, raising MALFORMED on failure."""
    try:
        return float(value)
    except (TypeError, ValueError):
        raise ProviderError(
            ProviderErrorKind.MALFORMED, f"Invalid {what}: {value!r}"
        ) from None


class AlphaVantageProvider(QuoteProvider):
    """Fetches quotes, SMA200 and daily closes from Alpha Vantage."""

    def __init__(
        self,
        api_key: str,
        base_url: str = "https://www.alphavantage.co/query",
        timeout: float = 30.0,
    ):
        """
        Initialize the provider.

        Args:
            api_key: Alpha Vantage API key
            base_url: Query endpoint
            timeout: Per-request timeout in seconds
        """
        self.api_key = api_key
        self.base_url = base_url
        self.timeout = timeout

    def fetch_quote(self, symbol: str) -> float:
        """Fetch current price using GLOBAL_QUOTE."""
        symbol = normalize_symbol(symbol)
        data = self._query({"function": "GLOBAL_QUOTE", "symbol": symbol}, symbol)

        quote = data.get("Global Quote")
        if not quote or "05. price" not in quote:
            raise ProviderError(
                ProviderErrorKind.NOT_FOUND,
                f"No quote data available for symbol {symbol}",
            )

        return _parse_float(quote["05. price"], f"price for {symbol}")

    def fetch_quotes_bulk(self, symbols: list[str]) -> dict[str, float]:
        """Fetch up to 100 prices with REALTIME_BULK_QUOTES."""
        if not symbols:
            return {}
        check_bulk_size(symbols)

        normalized = [normalize_symbol(s) for s in symbols]
        label = f"bulk[{len(normalized)}]"
        data = self._query(
            {"function": "REALTIME_BULK_QUOTES", "symbol": ",".join(normalized)},
            label,
        )

        quotes = data.get("data")
        if not isinstance(quotes, list):
            raise ProviderError(
                ProviderErrorKind.MALFORMED, "Invalid bulk quotes response format"
            )

        results: dict[str, float] = {}
        for quote in quotes:
            if not isinstance(quote, dict):
                logger.warning(f"Skipping invalid quote entry: {quote!r}")
                continue
            symbol = quote.get("symbol")
            price = quote.get("price")
            if not symbol or not isinstance(price, str):
                logger.warning(f"Skipping invalid quote entry: {quote!r}")
                continue
            try:
                results[normalize_symbol(symbol)] = float(price)
            except ValueError:
                logger.warning(f"Invalid price format for {symbol}: {price}")

        logger.info(
            f"Bulk fetched {len(results)} quotes out of {len(normalized)} requested symbols"
        )
        return results

    def fetch_trend_average(self, symbol: str) -> float:
        """Fetch the latest daily SMA200 value."""
        symbol = normalize_symbol(symbol)
        data = self._query(
            {
                "function": "SMA",
                "symbol": symbol,
                "interval": "daily",
                "time_period": "200",
                "series_type": "close",
            },
            symbol,
        )

        analysis = data.get("Technical Analysis: SMA")
        if not isinstance(analysis, dict) or not analysis:
            raise ProviderError(
                ProviderErrorKind.NOT_FOUND,
                f"No SMA data available for symbol {symbol}",
            )

        most_recent = max(analysis.keys())
        entry = analysis[most_recent]
        if not isinstance(entry, dict):
            raise ProviderError(
                ProviderErrorKind.MALFORMED, f"Invalid SMA entry for {symbol}"
            )
        return _parse_float(entry.get("SMA"), f"SMA value for {symbol}")

    def fetch_history(self, symbol: str, years: int = 5) -> list[PricePoint]:
        """Fetch daily closes with TIME_SERIES_DAILY (full output)."""
        symbol = normalize_symbol(symbol)
        data = self._query(
            {"function": "TIME_SERIES_DAILY", "symbol": symbol, "outputsize": "full"},
            symbol,
        )

        series = data.get("Time Series (Daily)")
        if not isinstance(series, dict):
            raise ProviderError(
                ProviderErrorKind.NOT_FOUND,
                f"No historical data available for symbol {symbol}",
            )

        cutoff = history_cutoff(years)
        points = []
        for day, values in series.items():
            try:
                point_date = date.fromisoformat(day)
            except ValueError:
                raise ProviderError(
                    ProviderErrorKind.MALFORMED, f"Invalid date {day!r} for {symbol}"
                ) from None
            if point_date < cutoff:
                continue
            if not isinstance(values, dict):
                raise ProviderError(
                    ProviderErrorKind.MALFORMED, f"Invalid entry for {symbol} on {day}"
                )
            close = _parse_float(values.get("4. close"), f"close for {symbol} on {day}")
            points.append(PricePoint(date=point_date, close=close))

        if not points:
            raise ProviderError(
                ProviderErrorKind.NOT_FOUND,
                f"No data found in the last {years} years for symbol {symbol}",
            )

        points.sort(key=lambda p: p.date)
        return points

    def _query(self, params: dict[str, str], label: str) -> dict[str, Any]:
        """Run one API call and translate failures into ProviderError."""
        try:
            response = requests.get(
                self.base_url,
                params={**params, "apikey": self.api_key},
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            raise ProviderError(
                ProviderErrorKind.TRANSPORT, f"Request failed for {label}: {e}"
            ) from e

        if response.status_code == 429:
            raise ProviderError(
                ProviderErrorKind.RATE_LIMITED, f"HTTP 429 for {label}"
            )
        if not response.ok:
            raise ProviderError(
                ProviderErrorKind.TRANSPORT,
                f"Alpha Vantage API {response.status_code}: {response.reason}",
            )

        text = response.text.strip()
        if not text.startswith(("{", "[")):
            raise ProviderError(
                ProviderErrorKind.MALFORMED,
                f"Expected JSON response but got plain text. Response: {text[:200]}",
            )
        try:
            data = json.loads(text)
        except ValueError as e:
            raise ProviderError(
                ProviderErrorKind.MALFORMED,
                f"Failed to parse JSON response for {label}: {e}",
            ) from e

        if not isinstance(data, dict):
            raise ProviderError(
                ProviderErrorKind.MALFORMED, f"Unexpected response shape for {label}"
            )
        if data.get("Error Message"):
            raise ProviderError(
                ProviderErrorKind.NOT_FOUND,
                f"Alpha Vantage error: {data['Error Message']}",
            )
        # "Note" and "Information" carry call-budget notices
        notice = data.get("Note") or data.get("Information")
        if notice:
            raise ProviderError(
                ProviderErrorKind.RATE_LIMITED, f"Alpha Vantage rate limit: {notice}"
            )

        return data
