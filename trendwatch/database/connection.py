"""
SQLite database connection and schema management.
"""

import sqlite3
from pathlib import Path
from typing import Optional


class Database:
    """SQLite database connection manager."""

    def __init__(self, db_path: str):
        """
        Initialize database connection.

        Args:
            db_path: Path to SQLite database file, or ":memory:" for in-memory DB.
        """
        self.db_path = db_path
        self._connection: Optional[sqlite3.Connection] = None
        self._connect()

    def _connect(self) -> None:
        """Establish database connection."""
        if self.db_path != ":memory:":
            # Ensure parent directory exists
            path = Path(self.db_path)
            path.parent.mkdir(parents=True, exist_ok=True)

        self._connection = sqlite3.connect(self.db_path)
        self._connection.row_factory = sqlite3.Row
        # Enable foreign keys
        self._connection.execute("PRAGMA foreign_keys = ON")

    @property
    def connection(self) -> sqlite3.Connection:
        """Get the database connection."""
        if self._connection is None:
            raise sqlite3.ProgrammingError("Database connection is closed")
        return self._connection

    def initialize(self) -> None:
        """Create database schema if it doesn't exist."""
        cursor = self.connection.cursor()

        # Instruments, shared by every subscriber
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS instruments (
                uid TEXT PRIMARY KEY,
                symbol TEXT NOT NULL UNIQUE,
                logo_url TEXT,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS subscriptions (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id TEXT NOT NULL,
                instrument_uid TEXT NOT NULL,
                target_price REAL NOT NULL CHECK (target_price > 0),
                priority TEXT NOT NULL DEFAULT 'None',
                delta_to_quote REAL,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                FOREIGN KEY (instrument_uid) REFERENCES instruments(uid) ON DELETE CASCADE,
                UNIQUE (user_id, instrument_uid)
            )
        """)

        # One live snapshot per instrument
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS metric_snapshots (
                instrument_uid TEXT PRIMARY KEY,
                current_price REAL NOT NULL,
                trend_average REAL NOT NULL,
                delta_to_trend REAL NOT NULL,
                fetched_at TIMESTAMP NOT NULL,
                FOREIGN KEY (instrument_uid) REFERENCES instruments(uid) ON DELETE CASCADE
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS history_points (
                instrument_uid TEXT NOT NULL,
                date TEXT NOT NULL,
                current_price REAL,
                trend_average REAL,
                delta_to_trend REAL,
                PRIMARY KEY (instrument_uid, date),
                FOREIGN KEY (instrument_uid) REFERENCES instruments(uid) ON DELETE CASCADE
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS chart_points (
                instrument_uid TEXT NOT NULL,
                date TEXT NOT NULL,
                close REAL NOT NULL,
                PRIMARY KEY (instrument_uid, date),
                FOREIGN KEY (instrument_uid) REFERENCES instruments(uid) ON DELETE CASCADE
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS alert_events (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                rule_key TEXT NOT NULL,
                instrument_uid TEXT NOT NULL,
                symbol TEXT NOT NULL,
                user_id TEXT NOT NULL,
                status TEXT NOT NULL DEFAULT 'triggered',
                message TEXT NOT NULL,
                actual_value REAL,
                threshold_value REAL,
                context TEXT NOT NULL DEFAULT '{}',
                created_at TIMESTAMP NOT NULL,
                FOREIGN KEY (instrument_uid) REFERENCES instruments(uid) ON DELETE CASCADE
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS ingestion_runs (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                trigger TEXT NOT NULL,
                status TEXT NOT NULL,
                started_at TIMESTAMP NOT NULL,
                finished_at TIMESTAMP,
                processed INTEGER NOT NULL DEFAULT 0,
                updated INTEGER NOT NULL DEFAULT 0,
                history_upserts INTEGER NOT NULL DEFAULT 0,
                chart_upserts INTEGER NOT NULL DEFAULT 0,
                alerts_triggered INTEGER NOT NULL DEFAULT 0,
                error TEXT
            )
        """)

        # Create indexes for common queries
        cursor.execute("""
            CREATE INDEX IF NOT EXISTS idx_subscriptions_user ON subscriptions(user_id)
        """)
        cursor.execute("""
            CREATE INDEX IF NOT EXISTS idx_alert_events_lookup
            ON alert_events(instrument_uid, user_id, rule_key, created_at)
        """)
        cursor.execute("""
            CREATE INDEX IF NOT EXISTS idx_ingestion_runs_started
            ON ingestion_runs(started_at)
        """)

        self.connection.commit()

    def close(self) -> None:
        """Close the database connection."""
        if self._connection:
            self._connection.close()
            self._connection = None
