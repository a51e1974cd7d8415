"""
Rate-limited fetch scheduling.

Market data providers enforce per-second and per-minute call budgets. The
scheduler trades throughput for staying inside that budget: bulk quotes go
out in fixed-size batches, then every instrument is handled sequentially in
small chunks with explicit sleeps between calls, instruments and chunks.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Iterator, Optional, TypeVar

from trendwatch.config import PacingConfig
from .aggregator import AggregatedInstrument
from .provider import PricePoint, QuoteProvider

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class BulkQuoteResult:
    """Prices gathered from all successful bulk batches."""

    prices: dict[str, float] = field(default_factory=dict)
    errors: list[str] = field(default_factory=list)
    batch_sizes: list[int] = field(default_factory=list)


@dataclass
class QuoteResult:
    """Price and trend average of one instrument, or why they are missing."""

    instrument: AggregatedInstrument
    current_price: Optional[float] = None
    trend_average: Optional[float] = None
    from_bulk: bool = False
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


def _chunks(items: list, size: int) -> Iterator[list]:
    for start in range(0, len(items), size):
        yield items[start:start + size]


class FetchScheduler:
    """Paces provider calls for an ingestion run."""

    def __init__(
        self,
        provider: QuoteProvider,
        pacing: Optional[PacingConfig] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """
        Initialize scheduler.

        Args:
            provider: Quote provider to call
            pacing: Batch sizes and delays
            sleep: Sleep function taking seconds
        """
        self.provider = provider
        self.pacing = pacing or PacingConfig()
        self.sleep = sleep

    def _pause(self, delay_ms: int) -> None:
        if delay_ms > 0:
            self.sleep(delay_ms / 1000)

    def fetch_bulk_quotes(self, symbols: list[str]) -> BulkQuoteResult:
        """
        Fetch prices in bulk batches.

        A failed batch is recorded and the remaining batches still run.
        """
        result = BulkQuoteResult()
        batch_size = self.pacing.bulk_batch_size
        batches = list(_chunks(symbols, batch_size))

        for number, batch in enumerate(batches, start=1):
            logger.info(
                f"Fetching bulk quotes for batch {number}/{len(batches)} "
                f"({len(batch)} symbols)"
            )
            result.batch_sizes.append(len(batch))
            try:
                quotes = self.provider.fetch_quotes_bulk(batch)
                result.prices.update(quotes)
            except Exception as e:
                message = f"Bulk quote fetch failed (batch {number}): {e}"
                logger.error(message)
                result.errors.append(message)

            if number < len(batches):
                self._pause(self.pacing.bulk_delay_ms)

        logger.info(f"Total bulk quotes fetched: {len(result.prices)}/{len(symbols)}")
        return result

    def iter_quotes(
        self,
        instruments: list[AggregatedInstrument],
        bulk_prices: dict[str, float],
    ) -> Iterator[QuoteResult]:
        """
        Yield price and trend average per instrument, chunk by chunk.

        Each result is yielded before the next instrument is fetched, so the
        caller's processing of an instrument happens inside the pacing
        sequence.
        """
        chunk_size = self.pacing.chunk_size
        chunks = list(_chunks(instruments, chunk_size))

        for number, chunk in enumerate(chunks, start=1):
            logger.info(f"Processing chunk {number}/{len(chunks)}")

            for position, instrument in enumerate(chunk):
                yield self._fetch_instrument(instrument, bulk_prices)

                if position < len(chunk) - 1:
                    self._pause(self.pacing.instrument_delay_ms)

            if number < len(chunks):
                logger.debug(f"Waiting {self.pacing.chunk_delay_ms}ms before next chunk")
                self._pause(self.pacing.chunk_delay_ms)

    def fetch_history(self, symbol: str, years: int = 5) -> list[PricePoint]:
        """Fetch daily closes, paced like every other per-instrument call."""
        self._pause(self.pacing.call_delay_ms)
        return self.provider.fetch_history(symbol, years=years)

    def paced(self, func: Callable[..., T], *args) -> T:
        """Run an extra outbound request, such as a logo lookup, and pause after it."""
        try:
            return func(*args)
        finally:
            self._pause(self.pacing.call_delay_ms)

    def _fetch_instrument(
        self, instrument: AggregatedInstrument, bulk_prices: dict[str, float]
    ) -> QuoteResult:
        symbol = instrument.symbol
        result = QuoteResult(instrument=instrument)

        try:
            if symbol in bulk_prices:
                result.current_price = bulk_prices[symbol]
                result.from_bulk = True
                logger.debug(f"Using bulk-fetched quote for {symbol}: {result.current_price}")
            else:
                logger.info(f"Bulk quote not available for {symbol}, fetching individually")
                result.current_price = self.provider.fetch_quote(symbol)
                self._pause(self.pacing.call_delay_ms)

            result.trend_average = self.provider.fetch_trend_average(symbol)
            self._pause(self.pacing.call_delay_ms)
        except Exception as e:
            result.error = str(e)
            logger.error(f"Fetch failed for {symbol}: {e}")
            # A failed call still counts against the budget
            self._pause(self.pacing.call_delay_ms)

        return result
