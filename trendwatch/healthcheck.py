"""
Health report - sends the last ingestion run's status to Discord.
"""

import os
from datetime import datetime, timezone
from typing import Any, Optional

import requests

from trendwatch.database.connection import Database
from trendwatch.database.models import IngestionRun, RunStatus
from trendwatch.database.repository import (
    IngestionRunRepository,
    InstrumentRepository,
    SubscriptionRepository,
)

COLOR_OK = 0x2ECC71
COLOR_RUNNING = 0xFFA500
COLOR_FAILED = 0xFF0000


def _describe_run(run: Optional[IngestionRun]) -> tuple[str, int]:
    if run is None:
        return "No ingestion run recorded yet.", COLOR_RUNNING
    if run.status == RunStatus.SUCCESS:
        return "Last ingestion run succeeded.", COLOR_OK
    if run.status == RunStatus.RUNNING:
        return "Last ingestion run has not finished.", COLOR_RUNNING
    return f"Last ingestion run failed: {run.error or 'unknown error'}", COLOR_FAILED


def build_health_payload(db: Database) -> dict[str, Any]:
    """Build the Discord embed describing pipeline health."""
    run = IngestionRunRepository(db).get_last()
    instruments = InstrumentRepository(db).list_all()
    subscriptions = SubscriptionRepository(db).list_subscriptions()

    description, color = _describe_run(run)
    fields = [
        {"name": "Instruments", "value": str(len(instruments)), "inline": True},
        {"name": "Subscriptions", "value": str(len(subscriptions)), "inline": True},
    ]
    if run is not None:
        finished = run.finished_at.strftime("%Y-%m-%d %H:%M UTC") if run.finished_at else "-"
        fields.extend([
            {"name": "Run", "value": f"#{run.id} ({run.trigger.value})", "inline": True},
            {"name": "Finished", "value": finished, "inline": True},
            {"name": "Processed", "value": str(run.processed), "inline": True},
            {"name": "Alerts", "value": str(run.alerts_triggered), "inline": True},
        ])

    return {
        "embeds": [{
            "title": "Trendwatch Health Check",
            "description": description,
            "color": color,
            "fields": fields,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }]
    }


def run_healthcheck(db: Database, webhook_url: Optional[str] = None) -> Optional[int]:
    """Run health check and send status to Discord.

    Args:
        db: Database instance (already initialized)
        webhook_url: Discord webhook, defaults to DISCORD_WEBHOOK_URL

    Returns:
        HTTP status code of the webhook call, or None if no webhook is set
    """
    webhook_url = webhook_url or os.getenv("DISCORD_WEBHOOK_URL")
    if not webhook_url:
        print("DISCORD_WEBHOOK_URL not set")
        return None

    payload = build_health_payload(db)
    response = requests.post(webhook_url, json=payload, timeout=10)

    now = datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S")
    print(f"{now} - Health check sent (status: {response.status_code})")
    return response.status_code
