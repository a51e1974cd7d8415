"""
Trading-day based alert suppression.
"""

from trendwatch.database.repository import AlertEventRepository, HistoryRepository
from .types import AlertRule


class CooldownTracker:
    """
    Suppresses a rule for an (instrument, subscriber) until enough trading
    days have passed since its last alert.

    Trading days are the instrument's history points, so market closures do
    not shorten the cooldown.
    """

    def __init__(self, alert_repo: AlertEventRepository, history_repo: HistoryRepository):
        self.alert_repo = alert_repo
        self.history_repo = history_repo

    def trading_days_since_last_alert(
        self, instrument_uid: str, user_id: str, rule_key: str
    ):
        """Trading days after the last alert's date, or None without one."""
        last = self.alert_repo.find_last(instrument_uid, user_id, rule_key)
        if last is None:
            return None
        return self.history_repo.count_after(instrument_uid, last.created_at.date())

    def is_suppressed(self, instrument_uid: str, user_id: str, rule: AlertRule) -> bool:
        """Check whether a new alert of this rule must be dropped."""
        elapsed = self.trading_days_since_last_alert(instrument_uid, user_id, rule.key)
        if elapsed is None:
            return False
        return elapsed < rule.cooldown_days
