"""
CLI commands for trendwatch.
"""

import argparse
import json
from typing import Any, Optional

from dotenv import load_dotenv

load_dotenv()

from trendwatch.database.connection import Database
from trendwatch.database.models import (
    AlertEvent,
    Instrument,
    Priority,
    Subscription,
    SubscriptionRow,
    normalize_symbol,
)
from trendwatch.database.repository import (
    AlertEventRepository,
    IngestionRunRepository,
    InstrumentRepository,
    SubscriptionRepository,
)
from trendwatch.healthcheck import run_healthcheck


def add_subscription(
    db: Database,
    user_id: str,
    symbol: str,
    target_price: float,
    priority: Priority = Priority.NONE,
) -> Subscription:
    """Subscribe a user to a symbol, creating the instrument if needed."""
    if not normalize_symbol(symbol):
        raise ValueError("Symbol cannot be empty")
    if target_price <= 0:
        raise ValueError("Target price must be positive")

    instrument = InstrumentRepository(db).upsert(Instrument(symbol=symbol))
    return SubscriptionRepository(db).upsert(
        Subscription(
            user_id=user_id,
            instrument_uid=instrument.uid,
            target_price=target_price,
            priority=Priority(priority),
        )
    )


def remove_subscription(db: Database, user_id: str, symbol: str) -> bool:
    """Remove a user's subscription. Returns False if there was none."""
    instrument = InstrumentRepository(db).get_by_symbol(symbol)
    if instrument is None:
        return False

    repo = SubscriptionRepository(db)
    if repo.get(user_id, instrument.uid) is None:
        return False
    repo.delete(user_id, instrument.uid)
    return True


def list_subscriptions(db: Database, user_id: Optional[str] = None) -> list[SubscriptionRow]:
    """List subscriptions, optionally for one user."""
    rows = SubscriptionRepository(db).list_subscriptions()
    if user_id:
        rows = [row for row in rows if row.user_id == user_id]
    return rows


def last_run(db: Database) -> Optional[dict[str, Any]]:
    """Most recent ingestion run as a dict, or None."""
    run = IngestionRunRepository(db).get_last()
    if run is None:
        return None
    return {
        "id": run.id,
        "trigger": run.trigger.value,
        "status": run.status.value,
        "started_at": run.started_at.isoformat() if run.started_at else None,
        "finished_at": run.finished_at.isoformat() if run.finished_at else None,
        "processed": run.processed,
        "updated": run.updated,
        "history_upserts": run.history_upserts,
        "chart_upserts": run.chart_upserts,
        "alerts_triggered": run.alerts_triggered,
        "error": run.error,
    }


def recent_alerts(db: Database, user_id: str, limit: int = 20) -> list[AlertEvent]:
    """Most recent alerts of a user."""
    return AlertEventRepository(db).get_user_history(user_id, limit=limit)


def main():
    """CLI entry point."""
    parser = argparse.ArgumentParser(description="Trendwatch CLI")
    parser.add_argument("--db", default="data/trendwatch.db", help="Database path")

    subparsers = parser.add_subparsers(dest="command", help="Command")

    # Watch commands
    watch_parser = subparsers.add_parser("watch", help="Subscription management")
    watch_subparsers = watch_parser.add_subparsers(dest="action")

    add_parser = watch_subparsers.add_parser("add", help="Subscribe to a symbol")
    add_parser.add_argument("--user", required=True, help="User ID")
    add_parser.add_argument("--symbol", required=True, help="Ticker symbol")
    add_parser.add_argument("--target", type=float, required=True, help="Target price")
    add_parser.add_argument(
        "--priority",
        default=Priority.NONE.value,
        choices=[p.value for p in Priority],
    )

    remove_parser = watch_subparsers.add_parser("remove", help="Unsubscribe")
    remove_parser.add_argument("--user", required=True, help="User ID")
    remove_parser.add_argument("--symbol", required=True, help="Ticker symbol")

    list_parser = watch_subparsers.add_parser("list", help="List subscriptions")
    list_parser.add_argument("--user", help="User ID")

    # Run commands
    runs_parser = subparsers.add_parser("runs", help="Ingestion runs")
    runs_subparsers = runs_parser.add_subparsers(dest="action")
    runs_subparsers.add_parser("last", help="Show the last run")
    health_parser = runs_subparsers.add_parser("health", help="Send health report")
    health_parser.add_argument("--webhook", help="Discord webhook URL")

    # Alert commands
    alerts_parser = subparsers.add_parser("alerts", help="Alert history")
    alerts_subparsers = alerts_parser.add_subparsers(dest="action")
    alerts_list_parser = alerts_subparsers.add_parser("list", help="List recent alerts")
    alerts_list_parser.add_argument("--user", required=True, help="User ID")
    alerts_list_parser.add_argument("--limit", type=int, default=20)

    # DB commands
    db_parser = subparsers.add_parser("db", help="Database management")
    db_subparsers = db_parser.add_subparsers(dest="action")
    db_subparsers.add_parser("status", help="Check schema status")
    db_subparsers.add_parser("migrate", help="Apply schema")

    args = parser.parse_args()

    # Initialize database
    db = Database(args.db)
    db.initialize()

    # Handle commands
    if args.command == "watch":
        if args.action == "add":
            subscription = add_subscription(
                db, args.user, args.symbol, args.target, Priority(args.priority)
            )
            print(f"Subscribed {args.user} to {normalize_symbol(args.symbol)} "
                  f"(target {subscription.target_price}, ID: {subscription.id})")
        elif args.action == "remove":
            if remove_subscription(db, args.user, args.symbol):
                print(f"Removed {normalize_symbol(args.symbol)} for {args.user}")
            else:
                print(f"No subscription to {normalize_symbol(args.symbol)} for {args.user}")
        elif args.action == "list":
            rows = list_subscriptions(db, user_id=args.user)
            for row in rows:
                print(f"{row.user_id}: {row.symbol} target {row.target_price} "
                      f"({row.priority.value})")

    elif args.command == "runs":
        if args.action == "last":
            print(json.dumps({"last_run": last_run(db)}, indent=2))
        elif args.action == "health":
            run_healthcheck(db, webhook_url=args.webhook)

    elif args.command == "alerts":
        if args.action == "list":
            for event in recent_alerts(db, args.user, limit=args.limit):
                print(f"{event.created_at:%Y-%m-%d} [{event.rule_key}] {event.message}")

    elif args.command == "db":
        if args.action == "status":
            print("Database initialized")
        elif args.action == "migrate":
            db.initialize()
            print("Migrations applied")

    db.close()


if __name__ == "__main__":
    main()
