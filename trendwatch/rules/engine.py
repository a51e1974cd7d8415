"""
Rule evaluation engine.
"""

from dataclasses import replace
from typing import Optional, Sequence

from trendwatch.database.models import ChartPoint
from .messages import render_message
from .types import (
    ALERT_RULES,
    AlertContext,
    AlertRule,
    CandidateAlert,
    CrossingRule,
    DrawdownRule,
    Observation,
)

# Re-export for convenience
__all__ = ["RuleEngine", "CandidateAlert", "crossing_triggered", "drawdown_window"]


def crossing_triggered(kind: CrossingRule, observations: Sequence[Observation]) -> bool:
    """
    Detect a downward crossing between the two most recent observations.

    Args:
        kind: Crossing rule parameters
        observations: Observations in ascending date order

    Returns:
        True iff previous > threshold and current <= threshold
    """
    if len(observations) < 2:
        return False

    previous = observations[-2].value(kind.metric)
    current = observations[-1].value(kind.metric)
    if previous is None or current is None:
        return False

    return previous > kind.threshold and current <= kind.threshold


def drawdown_window(
    kind: DrawdownRule, closes: Sequence[ChartPoint]
) -> Optional[tuple[ChartPoint, ChartPoint]]:
    """
    Detect a sharp drop across the most recent closes.

    Args:
        kind: Drawdown rule parameters
        closes: Recent closes in any order

    Returns:
        (latest, window start) when the rule fires, otherwise None
    """
    if len(closes) < kind.window_size:
        return None

    ordered = sorted(closes, key=lambda p: p.date, reverse=True)
    latest = ordered[0]
    start = ordered[kind.window_size - 1]
    if start.close <= 0:
        return None

    if latest.close <= start.close * (1 - kind.drop_fraction):
        return latest, start
    return None


class RuleEngine:
    """Evaluates the alert rule table for one instrument and subscriber."""

    def __init__(self, rules: Sequence[AlertRule] = ALERT_RULES):
        self.rules = tuple(rules)

    def evaluate(
        self,
        instrument_uid: str,
        user_id: str,
        observations: Sequence[Observation],
        closes: Sequence[ChartPoint],
        context: AlertContext,
    ) -> list[CandidateAlert]:
        """
        Evaluate every rule in table order.

        Args:
            instrument_uid: Instrument identifier
            user_id: Subscriber identity
            observations: Recent observations, ascending by date
            closes: Recent closes
            context: Current values for messages

        Returns:
            Candidate alerts in rule table order
        """
        candidates = []
        for rule in self.rules:
            candidate = self.evaluate_rule(
                rule, instrument_uid, user_id, observations, closes, context
            )
            if candidate is not None:
                candidates.append(candidate)
        return candidates

    def evaluate_rule(
        self,
        rule: AlertRule,
        instrument_uid: str,
        user_id: str,
        observations: Sequence[Observation],
        closes: Sequence[ChartPoint],
        context: AlertContext,
    ) -> Optional[CandidateAlert]:
        """Evaluate a single rule, returning a candidate when it fires."""
        kind = rule.kind

        if isinstance(kind, CrossingRule):
            if not crossing_triggered(kind, observations):
                return None
            actual = observations[-1].value(kind.metric)
            threshold = kind.threshold
            rule_context = context

        elif isinstance(kind, DrawdownRule):
            window = drawdown_window(kind, closes)
            if window is None:
                return None
            latest, start = window
            actual = (latest.close - start.close) / start.close
            threshold = -kind.drop_fraction
            rule_context = replace(
                context, latest_close=latest.close, two_days_ago_close=start.close
            )

        else:
            raise TypeError(f"Unknown rule kind: {type(kind).__name__}")

        details = rule_context.to_dict()
        details["rule_description"] = rule.description

        return CandidateAlert(
            rule=rule,
            instrument_uid=instrument_uid,
            symbol=context.symbol,
            user_id=user_id,
            message=render_message(rule, rule_context),
            actual_value=actual,
            threshold_value=threshold,
            context=details,
        )
