"""
Discord webhook notifier.
"""

import time
from typing import Any, Optional

import requests

from trendwatch.database.models import AlertEvent, Priority
from .base import Notifier, NotificationResult

MAX_RETRY_AFTER_SECONDS = 30.0


class DiscordNotifier(Notifier):
    """Posts alert events as embeds to a Discord webhook."""

    channel = "discord"

    # Embed colors by subscription priority
    COLOR_DEFAULT = 0x95A5A6  # Grey
    COLOR_LOW = 0x3498DB  # Blue
    COLOR_MEDIUM = 0xFFA500  # Orange
    COLOR_HIGH = 0xFF0000  # Red

    PRIORITY_COLORS = {
        Priority.LOW: COLOR_LOW,
        Priority.MEDIUM: COLOR_MEDIUM,
        Priority.HIGH: COLOR_HIGH,
    }

    def __init__(
        self,
        webhook_url: str,
        mention_on_high_priority: bool = True,
        include_chart_link: bool = True,
        timeout: float = 10,
    ):
        """
        Initialize Discord notifier.

        Args:
            webhook_url: Discord webhook URL
            mention_on_high_priority: Whether to @here for high priority subscriptions
            include_chart_link: Whether to link the TradingView chart
            timeout: Request timeout in seconds
        """
        self.webhook_url = webhook_url
        self.mention_on_high_priority = mention_on_high_priority
        self.include_chart_link = include_chart_link
        self.timeout = timeout

    def send(self, event: AlertEvent) -> NotificationResult:
        """Post the alert to the webhook."""
        try:
            response = self._post(self.build_payload(event))
        except requests.exceptions.ConnectionError as e:
            return self._result(event, error=f"Connection error: {e}")
        except requests.exceptions.RequestException as e:
            return self._result(event, error=str(e))

        if not response.ok:
            return self._result(event, error=f"HTTP {response.status_code}: {response.text}")
        return self._result(event)

    def _post(self, payload: dict[str, Any]) -> requests.Response:
        """Post once, retrying a single time after a 429."""
        response = requests.post(self.webhook_url, json=payload, timeout=self.timeout)

        if response.status_code == 429:
            retry_after = min(
                float(response.headers.get("Retry-After", "1")), MAX_RETRY_AFTER_SECONDS
            )
            time.sleep(retry_after)
            response = requests.post(self.webhook_url, json=payload, timeout=self.timeout)

        return response

    def build_payload(self, event: AlertEvent) -> dict[str, Any]:
        """Webhook body for one alert."""
        priority = self._priority(event)
        payload: dict[str, Any] = {"embeds": [self._embed(event, priority)]}
        if self.mention_on_high_priority and priority == Priority.HIGH:
            payload["content"] = "@here"
        return payload

    def _embed(self, event: AlertEvent, priority: Priority) -> dict[str, Any]:
        context = event.context
        fields = []

        def add(name: str, value: Optional[str]) -> None:
            if value is not None:
                fields.append({"name": name, "value": value, "inline": True})

        add("Current Price", _money(context.get("current_price")))
        add("Target", _money(context.get("target_price")))
        add("Gap to Target", _percent(context.get("delta_to_quote")))
        add("200-day Avg", _money(context.get("trend_average")))
        add("Rule", event.rule_key.replace("-", " ").title())
        if self.include_chart_link:
            add("Chart", f"[TradingView](https://www.tradingview.com/symbols/{event.symbol})")

        embed: dict[str, Any] = {
            "title": f"{event.symbol} Alert",
            "description": event.message,
            "color": self.PRIORITY_COLORS.get(priority, self.COLOR_DEFAULT),
            "fields": fields,
            "timestamp": event.created_at.isoformat(),
        }
        if context.get("rule_description"):
            embed["footer"] = {"text": context["rule_description"]}
        return embed

    @staticmethod
    def _priority(event: AlertEvent) -> Priority:
        try:
            return Priority(event.context.get("priority", Priority.NONE.value))
        except ValueError:
            return Priority.NONE


def _money(value: Optional[float]) -> Optional[str]:
    return None if value is None else f"${value:.2f}"


def _percent(value: Optional[float]) -> Optional[str]:
    return None if value is None else f"{value * 100:+.2f}%"
