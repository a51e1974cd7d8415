"""
Alert message formatting.
"""

import math
from typing import Any, Optional

from .types import AlertContext, AlertRule

MISSING = "\u2014"

_PERCENT_FIELDS = ("delta_to_quote", "delta_to_trend")
_NUMBER_FIELDS = (
    "current_price",
    "target_price",
    "trend_average",
    "latest_close",
    "two_days_ago_close",
)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and math.isfinite(value)


def fmt_pct(value: Optional[float]) -> str:
    """Format a fraction as a signed percentage, e.g. 0.0312 -> '+3.12%'."""
    if not _is_number(value):
        return MISSING
    pct = value * 100
    sign = "+" if pct > 0 else ""
    return f"{sign}{pct:.2f}%"


def fmt_num(value: Optional[float], digits: int = 2) -> str:
    """Format a price with fixed decimals."""
    if not _is_number(value):
        return MISSING
    return f"{value:.{digits}f}"


def render_message(rule: AlertRule, context: AlertContext) -> str:
    """Fill the rule's template with formatted context values."""
    values = {"symbol": context.symbol or "This stock"}
    for name in _PERCENT_FIELDS:
        values[name] = fmt_pct(getattr(context, name))
    for name in _NUMBER_FIELDS:
        values[name] = fmt_num(getattr(context, name))
    return rule.template.format(**values)
