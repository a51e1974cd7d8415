"""
Alert rule definitions.

Rules are immutable and defined in code. A rule's kind is either a crossing
of a metric threshold or a drawdown over a window of closes; the engine
matches on the kind, never on the rule key.
"""

from dataclasses import asdict, dataclass, field
from datetime import date
from enum import Enum
from typing import Any, Optional, Union


class Metric(str, Enum):
    """Metrics a crossing rule can watch."""

    DELTA_TO_QUOTE = "delta_to_quote"
    DELTA_TO_TREND = "delta_to_trend"


@dataclass(frozen=True)
class CrossingRule:
    """Fires when the metric moves from above to at-or-below the threshold."""

    metric: Metric
    threshold: float


@dataclass(frozen=True)
class DrawdownRule:
    """Fires when the latest close is down drop_fraction from window start."""

    window_size: int = 3
    drop_fraction: float = 0.10


RuleKind = Union[CrossingRule, DrawdownRule]


@dataclass(frozen=True)
class AlertRule:
    """An alert rule with its cooldown in trading days."""

    key: str
    cooldown_days: int
    kind: RuleKind
    description: str
    template: str


@dataclass
class Observation:
    """Metric values of one trading day, as seen by one subscriber."""

    date: date
    delta_to_quote: Optional[float] = None
    delta_to_trend: Optional[float] = None

    def value(self, metric: Metric) -> Optional[float]:
        return getattr(self, metric.value)


@dataclass
class AlertContext:
    """Values available to message templates and stored with the alert."""

    symbol: str
    current_price: Optional[float] = None
    target_price: Optional[float] = None
    trend_average: Optional[float] = None
    delta_to_quote: Optional[float] = None
    delta_to_trend: Optional[float] = None
    latest_close: Optional[float] = None
    two_days_ago_close: Optional[float] = None
    priority: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {k: v for k, v in asdict(self).items() if v is not None}


@dataclass
class CandidateAlert:
    """A triggered rule, before cooldown is applied."""

    rule: AlertRule
    instrument_uid: str
    symbol: str
    user_id: str
    message: str
    actual_value: Optional[float] = None
    threshold_value: Optional[float] = None
    context: dict[str, Any] = field(default_factory=dict)

    @property
    def rule_key(self) -> str:
        return self.rule.key


_TARGET_GAP = "(Price {current_price}, target {target_price}, gap {delta_to_quote})."
_TREND_GAP = "(Gap {delta_to_trend}; price {current_price}, 200-day avg {trend_average})."

# Evaluation order is the order of this table
ALERT_RULES: tuple[AlertRule, ...] = (
    AlertRule(
        key="price-near-target-10",
        cooldown_days=10,
        kind=CrossingRule(Metric.DELTA_TO_QUOTE, 0.10),
        description="Stock crossed below +10% vs target price",
        template="{symbol} is now within 10% of your target price. " + _TARGET_GAP,
    ),
    AlertRule(
        key="price-near-target-5",
        cooldown_days=10,
        kind=CrossingRule(Metric.DELTA_TO_QUOTE, 0.05),
        description="Stock crossed below +5% vs target price",
        template="{symbol} is now within 5% of your target price. " + _TARGET_GAP,
    ),
    AlertRule(
        key="price-at-target",
        cooldown_days=5,
        kind=CrossingRule(Metric.DELTA_TO_QUOTE, 0.0),
        description="Stock crossed below target price",
        template=(
            "{symbol} has reached your target price. "
            "(Price {current_price}, target {target_price})."
        ),
    ),
    AlertRule(
        key="price-below-target-10",
        cooldown_days=5,
        kind=CrossingRule(Metric.DELTA_TO_QUOTE, -0.10),
        description="Stock crossed below -10% vs target price",
        template=(
            "{symbol} is trading at least 10% below your target price. " + _TARGET_GAP
        ),
    ),
    AlertRule(
        key="below-trend",
        cooldown_days=10,
        kind=CrossingRule(Metric.DELTA_TO_TREND, 0.0),
        description="Stock crossed below its 200-day average",
        template=(
            "{symbol} just crossed below its 200-day average. "
            "(Price {current_price}, 200-day avg {trend_average}, gap {delta_to_trend})."
        ),
    ),
    AlertRule(
        key="below-trend-5",
        cooldown_days=10,
        kind=CrossingRule(Metric.DELTA_TO_TREND, -0.05),
        description="Stock crossed below -5% vs its 200-day average",
        template="{symbol} is about 5% under its 200-day average. " + _TREND_GAP,
    ),
    AlertRule(
        key="below-trend-10",
        cooldown_days=10,
        kind=CrossingRule(Metric.DELTA_TO_TREND, -0.10),
        description="Stock crossed below -10% vs its 200-day average",
        template="{symbol} is roughly 10% under its 200-day average. " + _TREND_GAP,
    ),
    AlertRule(
        key="sharp-drawdown",
        cooldown_days=5,
        kind=DrawdownRule(window_size=3, drop_fraction=0.10),
        description="Stock dropped 10% or more in 2 trading days",
        template=(
            "{symbol} fell ~10% in two trading days. "
            "({two_days_ago_close} -> {latest_close})."
        ),
    ),
)


def get_alert_rule(key: str) -> Optional[AlertRule]:
    """Look up a rule by key."""
    for rule in ALERT_RULES:
        if rule.key == key:
            return rule
    return None
