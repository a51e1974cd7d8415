"""
Derived metrics.
"""


class MetricComputationError(ArithmeticError):
    """Raised when a metric's divisor is zero or negative."""

    pass


def _relative_delta(value: float, base: float, name: str) -> float:
    if base <= 0:
        raise MetricComputationError(f"division by zero: {name} is {base}")
    return (value - base) / base


def delta_to_trend(current_price: float, trend_average: float) -> float:
    """Fractional distance of the price from its 200-day average."""
    return _relative_delta(current_price, trend_average, "trend average")


def delta_to_quote(current_price: float, target_price: float) -> float:
    """Fractional distance of the price from a subscriber's target."""
    return _relative_delta(current_price, target_price, "target price")
