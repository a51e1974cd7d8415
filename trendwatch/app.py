"""
Ingestion pipeline.

One run refreshes every subscribed instrument, persists its metrics and
history, evaluates alert rules per subscriber and records a run summary.
Failures are isolated per instrument, per subscriber and per alert; only a
failure outside the instrument loop ends the run in the error state.
"""

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from trendwatch.config import AppConfig
from trendwatch.database.connection import Database
from trendwatch.database.models import (
    AlertEvent,
    ChartPoint,
    HistoryPoint,
    MetricSnapshot,
    RunStatus,
    RunSummary,
    RunTrigger,
)
from trendwatch.database.repository import (
    AlertEventRepository,
    ChartRepository,
    HistoryRepository,
    IngestionRunRepository,
    InstrumentRepository,
    SnapshotRepository,
    SubscriptionRepository,
)
from trendwatch.data.aggregator import AggregatedInstrument, Subscriber, aggregate_subscriptions
from trendwatch.data.logos import LogoResolver
from trendwatch.data.metrics import delta_to_quote, delta_to_trend
from trendwatch.data.provider import QuoteProvider
from trendwatch.data.scheduler import FetchScheduler, QuoteResult
from trendwatch.notifiers.base import Notifier, deliver
from trendwatch.rules.cooldown import CooldownTracker
from trendwatch.rules.engine import RuleEngine
from trendwatch.rules.types import AlertContext, DrawdownRule, Observation

logger = logging.getLogger(__name__)


class RunSetupError(Exception):
    """Raised when a run cannot even be recorded."""

    pass


@dataclass
class IngestionResult:
    """Outcome of one run."""

    run_id: int
    status: RunStatus
    summary: RunSummary
    error: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        result = {
            "run_id": self.run_id,
            "status": self.status.value,
            "summary": self.summary.to_dict(),
        }
        if self.error:
            result["error"] = self.error
        return result


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class IngestionPipeline:
    """Refreshes market data and raises alerts for all subscriptions."""

    def __init__(
        self,
        db: Database,
        provider: QuoteProvider,
        config: Optional[AppConfig] = None,
        notifiers: Optional[list[Notifier]] = None,
        logo_resolver: Optional[LogoResolver] = None,
        rule_engine: Optional[RuleEngine] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], datetime] = _utcnow,
    ):
        """
        Initialize the pipeline.

        Args:
            db: Database instance
            provider: Market data provider
            config: Application configuration
            notifiers: Delivery channels for new alerts
            logo_resolver: Logo lookup, None to skip logos
            rule_engine: Alert rule engine
            sleep: Sleep function used for pacing
            clock: Returns the current UTC time
        """
        self.db = db
        self.config = config or AppConfig()
        self.notifiers = notifiers or []
        self.logo_resolver = logo_resolver
        self.clock = clock

        # Initialize repositories
        self.instrument_repo = InstrumentRepository(db)
        self.subscription_repo = SubscriptionRepository(db)
        self.snapshot_repo = SnapshotRepository(db)
        self.history_repo = HistoryRepository(db)
        self.chart_repo = ChartRepository(db)
        self.alert_repo = AlertEventRepository(db)
        self.run_repo = IngestionRunRepository(db)

        # Initialize services
        self.scheduler = FetchScheduler(provider, self.config.pacing, sleep=sleep)
        self.rule_engine = rule_engine or RuleEngine()
        self.cooldown = CooldownTracker(self.alert_repo, self.history_repo)

        self.chart_window = max(
            (
                rule.kind.window_size
                for rule in self.rule_engine.rules
                if isinstance(rule.kind, DrawdownRule)
            ),
            default=0,
        )

    def run_ingestion(self, trigger: RunTrigger = RunTrigger.MANUAL) -> IngestionResult:
        """
        Execute one ingestion run.

        Args:
            trigger: What started the run

        Returns:
            IngestionResult with run id, final status and summary

        Raises:
            RunSetupError: If the run record cannot be created
        """
        try:
            run = self.run_repo.create(RunTrigger(trigger))
        except Exception as e:
            raise RunSetupError(f"Failed to create run record: {e}") from e

        summary = RunSummary(max_errors=self.config.advanced.max_errors)
        logger.info(f"Ingestion run {run.id} started ({run.trigger.value})")

        try:
            self._run(summary)
        except Exception as e:
            return self._fail(run.id, summary, e)

        try:
            self.run_repo.finalize(run.id, RunStatus.SUCCESS, summary)
        except Exception as e:
            logger.error(f"Failed to finalize ingestion run {run.id}: {e}")
            return self._fail(run.id, summary, e)

        logger.info(
            f"Ingestion run {run.id} completed: {summary.processed} processed, "
            f"{summary.alerts_triggered} alerts, {len(summary.errors)} errors"
        )
        return IngestionResult(run.id, RunStatus.SUCCESS, summary)

    def _fail(self, run_id: int, summary: RunSummary, exc: Exception) -> IngestionResult:
        """Finalize a run as failed."""
        error = str(exc) or type(exc).__name__
        logger.error(f"Ingestion run {run_id} failed: {error}")
        summary.add_error(f"Global error: {error}")
        truncated = error[: self.config.advanced.max_error_length]
        try:
            self.run_repo.finalize(run_id, RunStatus.ERROR, summary, error=truncated)
        except Exception as e:
            logger.error(f"Could not record failure of ingestion run {run_id}: {e}")
        return IngestionResult(run_id, RunStatus.ERROR, summary, error=truncated)

    def _run(self, summary: RunSummary) -> None:
        """Fetch and process every subscribed instrument."""
        rows = self.subscription_repo.list_subscriptions()
        instruments = aggregate_subscriptions(rows)
        if not instruments:
            logger.info("No subscriptions found to process")
            return

        logger.info(
            f"Starting ingest for {len(instruments)} unique instruments "
            f"({len(rows)} subscriptions)"
        )

        bulk = self.scheduler.fetch_bulk_quotes(list(instruments))
        for error in bulk.errors:
            summary.add_error(error)

        for result in self.scheduler.iter_quotes(list(instruments.values()), bulk.prices):
            symbol = result.instrument.symbol
            if not result.ok:
                summary.add_error(f"{symbol}: {result.error}")
                continue

            try:
                self._process_instrument(result, summary)
                summary.processed += 1
            except Exception as e:
                message = f"{symbol}: {e}"
                logger.error(f"Error processing {message}")
                summary.add_error(message)

    def _process_instrument(self, result: QuoteResult, summary: RunSummary) -> None:
        """Persist metrics, evaluate subscribers, then refresh the chart."""
        instrument = result.instrument
        price = result.current_price
        average = result.trend_average
        logger.info(
            f"Processing {instrument.symbol} for {len(instrument.subscribers)} subscriber(s)"
        )

        trend_delta = delta_to_trend(price, average)
        now = self.clock()

        self._ensure_logo(instrument)

        self.snapshot_repo.upsert(
            MetricSnapshot(
                instrument_uid=instrument.uid,
                current_price=price,
                trend_average=average,
                delta_to_trend=trend_delta,
                fetched_at=now,
            )
        )
        summary.updated += 1

        self.history_repo.upsert(
            HistoryPoint(
                instrument_uid=instrument.uid,
                date=now.date(),
                delta_to_trend=trend_delta,
                current_price=price,
                trend_average=average,
            )
        )
        summary.history_upserts += 1

        history = self.history_repo.get_recent(instrument.uid, limit=2)
        closes = (
            self.chart_repo.get_recent(instrument.uid, limit=self.chart_window)
            if self.chart_window
            else []
        )

        for subscriber in instrument.subscribers:
            self._process_subscriber(
                instrument, subscriber, price, average, trend_delta, history, closes, summary
            )

        points = self.scheduler.fetch_history(
            instrument.symbol, years=self.config.data_source.history_years
        )
        written = self.chart_repo.upsert_many(
            [ChartPoint(instrument.uid, p.date, p.close) for p in points],
            batch_size=self.config.pacing.chart_batch_size,
        )
        summary.chart_upserts += written
        logger.info(f"Upserted {written} chart records for {instrument.symbol}")

    def _process_subscriber(
        self,
        instrument: AggregatedInstrument,
        subscriber: Subscriber,
        price: float,
        average: float,
        trend_delta: float,
        history: list[HistoryPoint],
        closes: list[ChartPoint],
        summary: RunSummary,
    ) -> None:
        """Store the subscriber's delta and raise any new alerts."""
        symbol = instrument.symbol
        user_id = subscriber.user_id

        try:
            quote_delta = delta_to_quote(price, subscriber.target_price)
        except ArithmeticError as e:
            summary.add_error(f"{symbol} (user {user_id}): {e}")
            return

        try:
            if self.subscription_repo.update_delta(user_id, instrument.uid, quote_delta):
                summary.updated += 1
        except Exception as e:
            logger.error(f"Failed to update delta for {symbol} (user {user_id}): {e}")
            summary.add_error(f"Delta update failed for {symbol} (user {user_id}): {e}")

        try:
            context = AlertContext(
                symbol=symbol,
                current_price=price,
                target_price=subscriber.target_price,
                trend_average=average,
                delta_to_quote=quote_delta,
                delta_to_trend=trend_delta,
                priority=subscriber.priority.value,
            )
            observations = [
                self._observation(point, subscriber.target_price) for point in history
            ]
            summary.alerts_triggered += self._raise_alerts(
                instrument, user_id, observations, closes, context, summary
            )
        except Exception as e:
            logger.error(f"Alert evaluation failed for {symbol} (user {user_id}): {e}")
            summary.add_error(f"Alert evaluation failed for {symbol} (user {user_id}): {e}")

    def _raise_alerts(
        self,
        instrument: AggregatedInstrument,
        user_id: str,
        observations: list[Observation],
        closes: list[ChartPoint],
        context: AlertContext,
        summary: RunSummary,
    ) -> int:
        """Apply cooldown to triggered rules and persist survivors."""
        candidates = self.rule_engine.evaluate(
            instrument.uid, user_id, observations, closes, context
        )

        created = 0
        for candidate in candidates:
            if self.cooldown.is_suppressed(instrument.uid, user_id, candidate.rule):
                logger.debug(
                    f"Alert {candidate.rule_key} for {instrument.symbol} "
                    f"(user {user_id}) is in cooldown, skipping"
                )
                continue

            try:
                event = self.alert_repo.create(
                    AlertEvent(
                        rule_key=candidate.rule_key,
                        instrument_uid=candidate.instrument_uid,
                        symbol=candidate.symbol,
                        user_id=user_id,
                        message=candidate.message,
                        actual_value=candidate.actual_value,
                        threshold_value=candidate.threshold_value,
                        context=candidate.context,
                        created_at=self.clock(),
                    )
                )
            except Exception as e:
                logger.error(f"Failed to insert alert {candidate.rule_key}: {e}")
                summary.add_error(
                    f"Alert insert failed for {instrument.symbol} "
                    f"(user {user_id}, {candidate.rule_key}): {e}"
                )
                continue

            created += 1
            logger.info(f"Alert triggered for user {user_id}: {event.message}")
            deliver(self.notifiers, event)

        return created

    def _observation(self, point: HistoryPoint, target_price: float) -> Observation:
        """View a history point through one subscriber's target price."""
        quote_delta = None
        if point.current_price is not None:
            quote_delta = delta_to_quote(point.current_price, target_price)
        return Observation(
            date=point.date,
            delta_to_quote=quote_delta,
            delta_to_trend=point.delta_to_trend,
        )

    def _ensure_logo(self, instrument: AggregatedInstrument) -> None:
        """Look up a logo once per instrument."""
        if self.logo_resolver is None:
            return

        try:
            stored = self.instrument_repo.get_by_uid(instrument.uid)
            if stored is None or stored.logo_url:
                return
            logo_url = self.scheduler.paced(self.logo_resolver.resolve, instrument.symbol)
            if logo_url:
                self.instrument_repo.update_logo(instrument.uid, logo_url)
        except Exception as e:
            logger.warning(f"Logo lookup failed for {instrument.symbol}: {e}")
