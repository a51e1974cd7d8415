"""
Repository classes for CRUD operations.

All writes of pipeline-owned tables are upserts keyed by natural keys with
last-write-wins semantics, so re-running a refresh never duplicates rows.
"""

import json
import logging
from datetime import date, datetime, timezone
from typing import Iterable, Optional

from .connection import Database
from .models import (
    AlertEvent,
    AlertStatus,
    ChartPoint,
    HistoryPoint,
    IngestionRun,
    Instrument,
    MetricSnapshot,
    Priority,
    RunStatus,
    RunSummary,
    RunTrigger,
    Subscription,
    SubscriptionRow,
    normalize_symbol,
    parse_priority,
)

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _read_priority(value, user_id: str, symbol: str) -> Priority:
    priority = parse_priority(value)
    if priority is None:
        logger.warning(
            f"Unknown priority {value!r} on subscription of user {user_id} to {symbol}, "
            f"using {Priority.NONE.value}"
        )
        return Priority.NONE
    return priority


def _parse_datetime(value) -> Optional[datetime]:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


class InstrumentRepository:
    """CRUD operations for instruments."""

    def __init__(self, db: Database):
        self.db = db

    def upsert(self, instrument: Instrument) -> Instrument:
        """Create the instrument if its symbol is not tracked yet."""
        cursor = self.db.connection.cursor()
        cursor.execute(
            """
            INSERT INTO instruments (uid, symbol, logo_url)
            VALUES (?, ?, ?)
            ON CONFLICT(symbol) DO NOTHING
            """,
            (instrument.uid, instrument.symbol, instrument.logo_url),
        )
        self.db.connection.commit()
        return self.get_by_symbol(instrument.symbol)

    def get_by_symbol(self, symbol: str) -> Optional[Instrument]:
        """Get instrument by symbol."""
        cursor = self.db.connection.cursor()
        cursor.execute(
            "SELECT * FROM instruments WHERE symbol = ?", (normalize_symbol(symbol),)
        )
        row = cursor.fetchone()
        if row is None:
            return None
        return self._row_to_instrument(row)

    def get_by_uid(self, uid: str) -> Optional[Instrument]:
        """Get instrument by identifier."""
        cursor = self.db.connection.cursor()
        cursor.execute("SELECT * FROM instruments WHERE uid = ?", (uid,))
        row = cursor.fetchone()
        if row is None:
            return None
        return self._row_to_instrument(row)

    def list_all(self) -> list[Instrument]:
        """List all instruments."""
        cursor = self.db.connection.cursor()
        cursor.execute("SELECT * FROM instruments ORDER BY symbol")
        return [self._row_to_instrument(row) for row in cursor.fetchall()]

    def update_logo(self, uid: str, logo_url: str) -> None:
        """Store the logo URL of an instrument."""
        cursor = self.db.connection.cursor()
        cursor.execute(
            "UPDATE instruments SET logo_url = ? WHERE uid = ?", (logo_url, uid)
        )
        self.db.connection.commit()

    def _row_to_instrument(self, row) -> Instrument:
        """Convert database row to Instrument."""
        return Instrument(
            uid=row["uid"],
            symbol=row["symbol"],
            logo_url=row["logo_url"],
            created_at=_parse_datetime(row["created_at"]),
        )


class SubscriptionRepository:
    """Subscriptions. Read-only to the pipeline apart from the delta column."""

    def __init__(self, db: Database):
        self.db = db

    def upsert(self, subscription: Subscription) -> Subscription:
        """Create a subscription or update its target price and priority."""
        cursor = self.db.connection.cursor()
        cursor.execute(
            """
            INSERT INTO subscriptions (user_id, instrument_uid, target_price, priority)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(user_id, instrument_uid) DO UPDATE SET
                target_price = excluded.target_price,
                priority = excluded.priority
            """,
            (
                subscription.user_id,
                subscription.instrument_uid,
                subscription.target_price,
                Priority(subscription.priority).value,
            ),
        )
        self.db.connection.commit()
        return self.get(subscription.user_id, subscription.instrument_uid)

    def get(self, user_id: str, instrument_uid: str) -> Optional[Subscription]:
        """Get a user's subscription to an instrument."""
        cursor = self.db.connection.cursor()
        cursor.execute(
            """
            SELECT * FROM subscriptions
            WHERE user_id = ? AND instrument_uid = ?
            """,
            (user_id, instrument_uid),
        )
        row = cursor.fetchone()
        if row is None:
            return None
        return self._row_to_subscription(row)

    def get_user_subscriptions(self, user_id: str) -> list[Subscription]:
        """Get all subscriptions of a user."""
        cursor = self.db.connection.cursor()
        cursor.execute(
            "SELECT * FROM subscriptions WHERE user_id = ? ORDER BY id",
            (user_id,),
        )
        return [self._row_to_subscription(row) for row in cursor.fetchall()]

    def list_subscriptions(self) -> list[SubscriptionRow]:
        """List every (user, symbol, target price) row in creation order."""
        cursor = self.db.connection.cursor()
        cursor.execute(
            """
            SELECT s.user_id, i.symbol, s.target_price, s.priority
            FROM subscriptions s
            JOIN instruments i ON i.uid = s.instrument_uid
            ORDER BY s.id
            """
        )
        return [
            SubscriptionRow(
                user_id=row["user_id"],
                symbol=row["symbol"],
                target_price=row["target_price"],
                priority=_read_priority(row["priority"], row["user_id"], row["symbol"]),
            )
            for row in cursor.fetchall()
        ]

    def update_delta(self, user_id: str, instrument_uid: str, delta: float) -> bool:
        """Store the subscriber's latest delta-to-quote."""
        cursor = self.db.connection.cursor()
        cursor.execute(
            """
            UPDATE subscriptions
            SET delta_to_quote = ?
            WHERE user_id = ? AND instrument_uid = ?
            """,
            (delta, user_id, instrument_uid),
        )
        self.db.connection.commit()
        return cursor.rowcount > 0

    def delete(self, user_id: str, instrument_uid: str) -> None:
        """Remove a subscription."""
        cursor = self.db.connection.cursor()
        cursor.execute(
            "DELETE FROM subscriptions WHERE user_id = ? AND instrument_uid = ?",
            (user_id, instrument_uid),
        )
        self.db.connection.commit()

    def _row_to_subscription(self, row) -> Subscription:
        """Convert database row to Subscription."""
        return Subscription(
            id=row["id"],
            user_id=row["user_id"],
            instrument_uid=row["instrument_uid"],
            target_price=row["target_price"],
            priority=_read_priority(
                row["priority"], row["user_id"], row["instrument_uid"]
            ),
            delta_to_quote=row["delta_to_quote"],
            created_at=_parse_datetime(row["created_at"]),
        )


class SnapshotRepository:
    """Latest metric snapshot per instrument."""

    def __init__(self, db: Database):
        self.db = db

    def upsert(self, snapshot: MetricSnapshot) -> None:
        """Overwrite the instrument's snapshot."""
        cursor = self.db.connection.cursor()
        cursor.execute(
            """
            INSERT INTO metric_snapshots
            (instrument_uid, current_price, trend_average, delta_to_trend, fetched_at)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(instrument_uid) DO UPDATE SET
                current_price = excluded.current_price,
                trend_average = excluded.trend_average,
                delta_to_trend = excluded.delta_to_trend,
                fetched_at = excluded.fetched_at
            """,
            (
                snapshot.instrument_uid,
                snapshot.current_price,
                snapshot.trend_average,
                snapshot.delta_to_trend,
                snapshot.fetched_at.isoformat(),
            ),
        )
        self.db.connection.commit()

    def get(self, instrument_uid: str) -> Optional[MetricSnapshot]:
        """Get the instrument's snapshot."""
        cursor = self.db.connection.cursor()
        cursor.execute(
            "SELECT * FROM metric_snapshots WHERE instrument_uid = ?",
            (instrument_uid,),
        )
        row = cursor.fetchone()
        if row is None:
            return None
        return MetricSnapshot(
            instrument_uid=row["instrument_uid"],
            current_price=row["current_price"],
            trend_average=row["trend_average"],
            delta_to_trend=row["delta_to_trend"],
            fetched_at=_parse_datetime(row["fetched_at"]),
        )


class HistoryRepository:
    """Daily history points; also the trading-day calendar for cooldowns."""

    def __init__(self, db: Database):
        self.db = db

    def upsert(self, point: HistoryPoint) -> None:
        """Insert or replace the point for (instrument, date)."""
        cursor = self.db.connection.cursor()
        cursor.execute(
            """
            INSERT INTO history_points
            (instrument_uid, date, current_price, trend_average, delta_to_trend)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(instrument_uid, date) DO UPDATE SET
                current_price = excluded.current_price,
                trend_average = excluded.trend_average,
                delta_to_trend = excluded.delta_to_trend
            """,
            (
                point.instrument_uid,
                point.date.isoformat(),
                point.current_price,
                point.trend_average,
                point.delta_to_trend,
            ),
        )
        self.db.connection.commit()

    def get_recent(self, instrument_uid: str, limit: int = 2) -> list[HistoryPoint]:
        """Most recent points, returned in ascending date order."""
        cursor = self.db.connection.cursor()
        cursor.execute(
            """
            SELECT * FROM history_points
            WHERE instrument_uid = ?
            ORDER BY date DESC
            LIMIT ?
            """,
            (instrument_uid, limit),
        )
        points = [self._row_to_point(row) for row in cursor.fetchall()]
        points.reverse()
        return points

    def count_after(self, instrument_uid: str, after: date) -> int:
        """Count points dated strictly after the given date."""
        cursor = self.db.connection.cursor()
        cursor.execute(
            """
            SELECT COUNT(*) FROM history_points
            WHERE instrument_uid = ? AND date > ?
            """,
            (instrument_uid, after.isoformat()),
        )
        return cursor.fetchone()[0]

    def count(self, instrument_uid: str) -> int:
        """Count all points of an instrument."""
        cursor = self.db.connection.cursor()
        cursor.execute(
            "SELECT COUNT(*) FROM history_points WHERE instrument_uid = ?",
            (instrument_uid,),
        )
        return cursor.fetchone()[0]

    def _row_to_point(self, row) -> HistoryPoint:
        """Convert database row to HistoryPoint."""
        return HistoryPoint(
            instrument_uid=row["instrument_uid"],
            date=date.fromisoformat(row["date"]),
            current_price=row["current_price"],
            trend_average=row["trend_average"],
            delta_to_trend=row["delta_to_trend"],
        )


class ChartRepository:
    """Multi-year daily closes."""

    def __init__(self, db: Database):
        self.db = db

    def upsert_many(self, points: Iterable[ChartPoint], batch_size: int = 1000) -> int:
        """
        Upsert closes in batches, one commit per batch.

        Returns:
            Number of rows written
        """
        rows = [(p.instrument_uid, p.date.isoformat(), p.close) for p in points]
        cursor = self.db.connection.cursor()
        for start in range(0, len(rows), batch_size):
            cursor.executemany(
                """
                INSERT INTO chart_points (instrument_uid, date, close)
                VALUES (?, ?, ?)
                ON CONFLICT(instrument_uid, date) DO UPDATE SET
                    close = excluded.close
                """,
                rows[start:start + batch_size],
            )
            self.db.connection.commit()
        return len(rows)

    def get_recent(self, instrument_uid: str, limit: int = 3) -> list[ChartPoint]:
        """Most recent closes, newest first."""
        cursor = self.db.connection.cursor()
        cursor.execute(
            """
            SELECT * FROM chart_points
            WHERE instrument_uid = ?
            ORDER BY date DESC
            LIMIT ?
            """,
            (instrument_uid, limit),
        )
        return [
            ChartPoint(
                instrument_uid=row["instrument_uid"],
                date=date.fromisoformat(row["date"]),
                close=row["close"],
            )
            for row in cursor.fetchall()
        ]

    def count(self, instrument_uid: str) -> int:
        """Count all closes of an instrument."""
        cursor = self.db.connection.cursor()
        cursor.execute(
            "SELECT COUNT(*) FROM chart_points WHERE instrument_uid = ?",
            (instrument_uid,),
        )
        return cursor.fetchone()[0]


class AlertEventRepository:
    """CRUD operations for alert events."""

    def __init__(self, db: Database):
        self.db = db

    def create(self, event: AlertEvent) -> AlertEvent:
        """Insert a new alert event."""
        cursor = self.db.connection.cursor()
        cursor.execute(
            """
            INSERT INTO alert_events
            (rule_key, instrument_uid, symbol, user_id, status, message,
             actual_value, threshold_value, context, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                event.rule_key,
                event.instrument_uid,
                event.symbol,
                event.user_id,
                AlertStatus(event.status).value,
                event.message,
                event.actual_value,
                event.threshold_value,
                json.dumps(event.context),
                event.created_at.isoformat(),
            ),
        )
        self.db.connection.commit()
        event.id = cursor.lastrowid
        return event

    def get_by_id(self, alert_id: int) -> Optional[AlertEvent]:
        """Get alert by ID."""
        cursor = self.db.connection.cursor()
        cursor.execute("SELECT * FROM alert_events WHERE id = ?", (alert_id,))
        row = cursor.fetchone()
        if row is None:
            return None
        return self._row_to_event(row)

    def find_last(
        self, instrument_uid: str, user_id: str, rule_key: str
    ) -> Optional[AlertEvent]:
        """Most recent alert for the exact (instrument, user, rule) tuple."""
        cursor = self.db.connection.cursor()
        cursor.execute(
            """
            SELECT * FROM alert_events
            WHERE instrument_uid = ?
              AND user_id = ?
              AND rule_key = ?
            ORDER BY created_at DESC, id DESC
            LIMIT 1
            """,
            (instrument_uid, user_id, rule_key),
        )
        row = cursor.fetchone()
        if row is None:
            return None
        return self._row_to_event(row)

    def get_user_history(
        self, user_id: str, limit: int = 50, status: Optional[AlertStatus] = None
    ) -> list[AlertEvent]:
        """Get alert history for a user, newest first."""
        cursor = self.db.connection.cursor()
        if status is None:
            cursor.execute(
                """
                SELECT * FROM alert_events
                WHERE user_id = ?
                ORDER BY created_at DESC, id DESC
                LIMIT ?
                """,
                (user_id, limit),
            )
        else:
            cursor.execute(
                """
                SELECT * FROM alert_events
                WHERE user_id = ? AND status = ?
                ORDER BY created_at DESC, id DESC
                LIMIT ?
                """,
                (user_id, AlertStatus(status).value, limit),
            )
        return [self._row_to_event(row) for row in cursor.fetchall()]

    def _row_to_event(self, row) -> AlertEvent:
        """Convert database row to AlertEvent."""
        return AlertEvent(
            id=row["id"],
            rule_key=row["rule_key"],
            instrument_uid=row["instrument_uid"],
            symbol=row["symbol"],
            user_id=row["user_id"],
            status=AlertStatus(row["status"]),
            message=row["message"],
            actual_value=row["actual_value"],
            threshold_value=row["threshold_value"],
            context=json.loads(row["context"]),
            created_at=_parse_datetime(row["created_at"]),
        )


class IngestionRunRepository:
    """Run records. Owned by the ingestion pipeline."""

    def __init__(self, db: Database):
        self.db = db

    def create(self, trigger: RunTrigger) -> IngestionRun:
        """Open a run in RUNNING state."""
        run = IngestionRun(
            trigger=RunTrigger(trigger),
            status=RunStatus.RUNNING,
            started_at=_utcnow(),
        )
        cursor = self.db.connection.cursor()
        cursor.execute(
            """
            INSERT INTO ingestion_runs (trigger, status, started_at)
            VALUES (?, ?, ?)
            """,
            (run.trigger.value, run.status.value, run.started_at.isoformat()),
        )
        self.db.connection.commit()
        run.id = cursor.lastrowid
        return run

    def finalize(
        self,
        run_id: int,
        status: RunStatus,
        summary: RunSummary,
        error: Optional[str] = None,
    ) -> None:
        """Move a running run to its terminal state."""
        cursor = self.db.connection.cursor()
        cursor.execute(
            """
            UPDATE ingestion_runs
            SET status = ?, finished_at = ?, processed = ?, updated = ?,
                history_upserts = ?, chart_upserts = ?, alerts_triggered = ?,
                error = ?
            WHERE id = ? AND status = ?
            """,
            (
                RunStatus(status).value,
                _utcnow().isoformat(),
                summary.processed,
                summary.updated,
                summary.history_upserts,
                summary.chart_upserts,
                summary.alerts_triggered,
                error,
                run_id,
                RunStatus.RUNNING.value,
            ),
        )
        self.db.connection.commit()

    def get_by_id(self, run_id: int) -> Optional[IngestionRun]:
        """Get run by ID."""
        cursor = self.db.connection.cursor()
        cursor.execute("SELECT * FROM ingestion_runs WHERE id = ?", (run_id,))
        row = cursor.fetchone()
        if row is None:
            return None
        return self._row_to_run(row)

    def get_last(self) -> Optional[IngestionRun]:
        """Most recently started run."""
        cursor = self.db.connection.cursor()
        cursor.execute(
            "SELECT * FROM ingestion_runs ORDER BY started_at DESC, id DESC LIMIT 1"
        )
        row = cursor.fetchone()
        if row is None:
            return None
        return self._row_to_run(row)

    def _row_to_run(self, row) -> IngestionRun:
        """Convert database row to IngestionRun."""
        return IngestionRun(
            id=row["id"],
            trigger=RunTrigger(row["trigger"]),
            status=RunStatus(row["status"]),
            started_at=_parse_datetime(row["started_at"]),
            finished_at=_parse_datetime(row["finished_at"]),
            processed=row["processed"],
            updated=row["updated"],
            history_upserts=row["history_upserts"],
            chart_upserts=row["chart_upserts"],
            alerts_triggered=row["alerts_triggered"],
            error=row["error"],
        )
