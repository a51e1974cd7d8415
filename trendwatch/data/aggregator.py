"""
Collapse subscriptions into one record per instrument.
"""

import logging
from dataclasses import dataclass, field

from trendwatch.database.models import (
    Priority,
    SubscriptionRow,
    instrument_uid,
    normalize_symbol,
    parse_priority,
)

logger = logging.getLogger(__name__)


@dataclass
class Subscriber:
    """One subscriber of an aggregated instrument."""

    user_id: str
    target_price: float
    priority: Priority = Priority.NONE


@dataclass
class AggregatedInstrument:
    """A unique symbol with everyone interested in it."""

    symbol: str
    uid: str
    subscribers: list[Subscriber] = field(default_factory=list)


def aggregate_subscriptions(
    rows: list[SubscriptionRow],
) -> dict[str, AggregatedInstrument]:
    """
    Group subscription rows by symbol.

    Args:
        rows: Subscription rows, possibly repeating symbols

    Returns:
        Mapping of symbol to aggregated instrument, in order of first
        occurrence. Rows with an empty symbol are dropped.
    """
    instruments: dict[str, AggregatedInstrument] = {}

    for row in rows:
        symbol = normalize_symbol(row.symbol or "")
        if not symbol:
            logger.warning(f"Skipping subscription of user {row.user_id} without symbol")
            continue

        priority = parse_priority(row.priority)
        if priority is None:
            logger.warning(
                f"Unknown priority {row.priority!r} for user {row.user_id} on {symbol}, "
                f"using {Priority.NONE.value}"
            )
            priority = Priority.NONE

        if symbol not in instruments:
            instruments[symbol] = AggregatedInstrument(
                symbol=symbol, uid=instrument_uid(symbol)
            )
        instruments[symbol].subscribers.append(
            Subscriber(
                user_id=row.user_id,
                target_price=row.target_price,
                priority=priority,
            )
        )

    return instruments
