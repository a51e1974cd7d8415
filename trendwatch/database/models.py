"""
Data models for trendwatch.
"""

from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Optional, Any


class Priority(str, Enum):
    """Subscriber-chosen priority of a subscription."""

    NONE = "None"
    LOW = "Low"
    MEDIUM = "Medium"
    HIGH = "High"


def parse_priority(value: Any) -> Optional[Priority]:
    """Read a stored priority case-insensitively. None if unrecognized."""
    if isinstance(value, Priority):
        return value
    if value is None or not str(value).strip():
        return Priority.NONE
    text = str(value).strip().lower()
    for priority in Priority:
        if priority.value.lower() == text:
            return priority
    return None


class AlertStatus(str, Enum):
    """Alert lifecycle state. The pipeline only ever creates TRIGGERED."""

    TRIGGERED = "triggered"
    ACKNOWLEDGED = "acknowledged"
    CLEARED = "cleared"


class RunTrigger(str, Enum):
    """What started an ingestion run."""

    MANUAL = "manual"
    SCHEDULED = "scheduled"


class RunStatus(str, Enum):
    """Ingestion run state."""

    RUNNING = "running"
    SUCCESS = "success"
    ERROR = "error"


def normalize_symbol(symbol: str) -> str:
    """Trim and upper-case a ticker symbol."""
    return symbol.strip().upper()


def instrument_uid(symbol: str) -> str:
    """Stable instrument identifier derived from the symbol."""
    return f"inst_{normalize_symbol(symbol).lower()}"


@dataclass
class Instrument:
    """Tracked symbol, shared across subscribers."""

    symbol: str
    uid: str = ""
    logo_url: Optional[str] = None
    created_at: Optional[datetime] = None

    def __post_init__(self):
        self.symbol = normalize_symbol(self.symbol)
        if not self.uid:
            self.uid = instrument_uid(self.symbol)


@dataclass
class Subscription:
    """One user's interest in an instrument."""

    user_id: str
    instrument_uid: str
    target_price: float
    priority: Priority = Priority.NONE
    id: Optional[int] = None
    delta_to_quote: Optional[float] = None
    created_at: Optional[datetime] = None


@dataclass
class SubscriptionRow:
    """Flat subscription row as read by the ingestion pipeline."""

    user_id: str
    symbol: str
    target_price: float
    priority: Priority = Priority.NONE


@dataclass
class MetricSnapshot:
    """Latest refreshed metrics for an instrument."""

    instrument_uid: str
    current_price: float
    trend_average: float
    delta_to_trend: float
    fetched_at: datetime


@dataclass
class HistoryPoint:
    """Daily observation. Its presence marks a trading day."""

    instrument_uid: str
    date: date
    delta_to_trend: Optional[float]
    current_price: Optional[float] = None
    trend_average: Optional[float] = None


@dataclass
class ChartPoint:
    """Daily closing price."""

    instrument_uid: str
    date: date
    close: float


@dataclass
class AlertEvent:
    """Persisted alert."""

    rule_key: str
    instrument_uid: str
    symbol: str
    user_id: str
    message: str
    created_at: datetime
    status: AlertStatus = AlertStatus.TRIGGERED
    actual_value: Optional[float] = None
    threshold_value: Optional[float] = None
    context: dict[str, Any] = field(default_factory=dict)
    id: Optional[int] = None


@dataclass
class IngestionRun:
    """Execution record of one pipeline run."""

    trigger: RunTrigger
    status: RunStatus
    started_at: datetime
    id: Optional[int] = None
    finished_at: Optional[datetime] = None
    processed: int = 0
    updated: int = 0
    history_upserts: int = 0
    chart_upserts: int = 0
    alerts_triggered: int = 0
    error: Optional[str] = None


@dataclass
class RunSummary:
    """Counters and error list accumulated during a run."""

    processed: int = 0
    updated: int = 0
    history_upserts: int = 0
    chart_upserts: int = 0
    alerts_triggered: int = 0
    errors: list[str] = field(default_factory=list)
    max_errors: int = 100
    dropped_errors: int = 0

    def add_error(self, message: str) -> None:
        """Record an error, keeping the list bounded."""
        if len(self.errors) < self.max_errors:
            self.errors.append(message)
        else:
            self.dropped_errors += 1

    def error_list(self) -> list[str]:
        """Errors including a note about anything dropped."""
        if self.dropped_errors:
            return self.errors + [f"... and {self.dropped_errors} more errors"]
        return list(self.errors)

    def to_dict(self) -> dict[str, Any]:
        return {
            "processed": self.processed,
            "updated": self.updated,
            "history_upserts": self.history_upserts,
            "chart_upserts": self.chart_upserts,
            "alerts_triggered": self.alerts_triggered,
            "errors": self.error_list(),
        }
