"""
Yahoo Finance quote provider.
"""

import logging

import pandas as pd
import yfinance as yf

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

TREND_WINDOW = 200


def _translate(e: Exception, label: str) -> ProviderError:
    """Map a yfinance/network exception to the provider taxonomy."""
    text = str(e)
    if "Too Many Requests" in text or "rate limit" in text.lower():
        return ProviderError(ProviderErrorKind.RATE_LIMITED, f"{label}: {text}")
    return ProviderError(ProviderErrorKind.TRANSPORT, f"{label}: {text}")


class YahooFinanceProvider(QuoteProvider):
    """Fetches quotes and daily closes from Yahoo Finance."""

    def fetch_quote(self, symbol: str) -> float:
        """
        Fetch current price.

        Uses regularMarketPrice and falls back to previousClose when the
        market is closed.
        """
        symbol = normalize_symbol(symbol)
        try:
            info = yf.Ticker(symbol).info
        except Exception as e:
            raise _translate(e, f"quote {symbol}") from e

        if not info:
            raise ProviderError(
                ProviderErrorKind.NOT_FOUND,
                f"Invalid symbol or no data available: {symbol}",
            )

        price = info.get("regularMarketPrice")
        if price is None:
            price = info.get("previousClose")
        if price is None:
            raise ProviderError(
                ProviderErrorKind.NOT_FOUND,
                f"Invalid symbol or no data available: {symbol}",
            )

        try:
            return float(price)
        except (TypeError, ValueError):
            raise ProviderError(
                ProviderErrorKind.MALFORMED, f"Invalid price for {symbol}: {price!r}"
            ) from None

    def fetch_quotes_bulk(self, symbols: list[str]) -> dict[str, float]:
        """Fetch last closes for several symbols in one download."""
        if not symbols:
            return {}
        check_bulk_size(symbols)

        normalized = [normalize_symbol(s) for s in symbols]
        try:
            frame = yf.download(
                normalized, period="5d", progress=False, auto_adjust=False
            )
        except Exception as e:
            raise _translate(e, f"bulk[{len(normalized)}]") from e

        if frame is None or frame.empty or "Close" not in frame:
            return {}

        closes = frame["Close"]
        if isinstance(closes, pd.Series):
            closes = closes.to_frame(name=normalized[0])

        results: dict[str, float] = {}
        for column in closes.columns:
            series = closes[column].dropna()
            if series.empty:
                continue
            results[normalize_symbol(str(column))] = float(series.iloc[-1])

        logger.info(
            f"Bulk fetched {len(results)} quotes out of {len(normalized)} requested symbols"
        )
        return results

    def fetch_trend_average(self, symbol: str) -> float:
        """Compute the latest 200-day simple moving average of closes."""
        symbol = normalize_symbol(symbol)
        closes = self._closes(symbol, period="2y")

        average = closes.rolling(window=TREND_WINDOW).mean().dropna()
        if average.empty:
            raise ProviderError(
                ProviderErrorKind.NOT_FOUND,
                f"Not enough history for a {TREND_WINDOW}-day average: {symbol}",
            )
        return float(average.iloc[-1])

    def fetch_history(self, symbol: str, years: int = 5) -> list[PricePoint]:
        """Fetch daily closes for the trailing window, oldest first."""
        symbol = normalize_symbol(symbol)
        closes = self._closes(symbol, period=f"{years}y")

        cutoff = history_cutoff(years)
        points = [
            PricePoint(date=pd.Timestamp(index).date(), close=float(value))
            for index, value in closes.items()
        ]
        points = [p for p in points if p.date >= cutoff]
        if not points:
            raise ProviderError(
                ProviderErrorKind.NOT_FOUND,
                f"No data found in the last {years} years for symbol {symbol}",
            )

        points.sort(key=lambda p: p.date)
        return points

    def _closes(self, symbol: str, period: str) -> pd.Series:
        """Close column of Ticker.history with NaNs dropped."""
        try:
            hist = yf.Ticker(symbol).history(period=period)
        except Exception as e:
            raise _translate(e, f"history {symbol}") from e

        if hist is None or hist.empty:
            raise ProviderError(
                ProviderErrorKind.NOT_FOUND,
                f"No historical data available: {symbol}",
            )
        if "Close" not in hist:
            raise ProviderError(
                ProviderErrorKind.MALFORMED, f"History without Close column: {symbol}"
            )

        try:
            return pd.to_numeric(hist["Close"], errors="raise").dropna()
        except (TypeError, ValueError) as e:
            raise ProviderError(
                ProviderErrorKind.MALFORMED, f"Unparseable closes for {symbol}: {e}"
            ) from e
