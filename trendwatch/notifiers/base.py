"""
Notification channels for persisted alerts.

Delivery is best effort: a failing channel is reported in its result and
never affects the stored alert or the other channels.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

from trendwatch.config import NotificationsConfig
from trendwatch.database.models import AlertEvent

logger = logging.getLogger(__name__)


@dataclass
class NotificationResult:
    """Outcome of delivering one alert on one channel."""

    success: bool
    channel: str
    error: Optional[str] = None
    alert_id: Optional[int] = None


class Notifier(ABC):
    """A delivery channel for alert events."""

    channel = "unknown"

    @abstractmethod
    def send(self, event: AlertEvent) -> NotificationResult:
        """
        Deliver a single persisted alert.

        Args:
            event: Alert to send

        Returns:
            NotificationResult indicating success or failure
        """
        pass

    def _result(self, event: AlertEvent, error: Optional[str] = None) -> NotificationResult:
        return NotificationResult(
            success=error is None,
            channel=self.channel,
            error=error,
            alert_id=event.id,
        )


def deliver(notifiers: list[Notifier], event: AlertEvent) -> list[NotificationResult]:
    """Send an alert on every channel, reporting failures instead of raising."""
    results = []
    for notifier in notifiers:
        try:
            result = notifier.send(event)
        except Exception as e:
            result = notifier._result(event, error=str(e) or type(e).__name__)

        if not result.success:
            logger.warning(
                f"Notification via {result.channel} failed for alert {event.id}: "
                f"{result.error}"
            )
        results.append(result)
    return results


class NotifierFactory:
    """Builds the configured notification channels."""

    @staticmethod
    def from_config(config: NotificationsConfig) -> list[Notifier]:
        """
        Create a notifier for every channel that is configured.

        Args:
            config: Notifications section of the app config

        Returns:
            Notifiers, empty when no channel is configured
        """
        notifiers: list[Notifier] = []

        discord = config.discord
        if discord.webhook_url:
            from .discord import DiscordNotifier

            notifiers.append(
                DiscordNotifier(
                    webhook_url=discord.webhook_url,
                    mention_on_high_priority=discord.mention_on_high_priority,
                    include_chart_link=discord.include_chart_link,
                )
            )

        return notifiers
