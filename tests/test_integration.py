"""
Integration tests.
End-to-end tests for ingestion runs, configuration, CLI helpers and health reports.
"""

import sqlite3
from datetime import date, datetime, timezone
from pathlib import Path
from unittest.mock import Mock, patch

import pytest

from conftest import FakeProvider
from trendwatch.app import IngestionPipeline, RunSetupError
from trendwatch.cli import (
    add_subscription,
    last_run,
    list_subscriptions,
    recent_alerts,
    remove_subscription,
)
from trendwatch.config import (
    AdvancedConfig,
    AppConfig,
    ConfigValidationError,
    DataSourceConfig,
    load_config,
)
from trendwatch.data.provider import PricePoint, ProviderError, ProviderErrorKind
from trendwatch.data.yahoo import YahooFinanceProvider
from trendwatch.database.connection import Database
from trendwatch.database.models import HistoryPoint, Priority, RunStatus, RunSummary, RunTrigger
from trendwatch.database.repository import (
    AlertEventRepository,
    ChartRepository,
    HistoryRepository,
    IngestionRunRepository,
    InstrumentRepository,
    SnapshotRepository,
    SubscriptionRepository,
)
from trendwatch.healthcheck import build_health_payload, run_healthcheck
from trendwatch.main import build_pipeline
from trendwatch.notifiers.base import NotificationResult, Notifier
from trendwatch.notifiers.discord import DiscordNotifier


class Clock:
    """Settable UTC clock."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def set_day(self, day: date) -> None:
        self.now = datetime(day.year, day.month, day.day, 21, 0, tzinfo=timezone.utc)


def _chart(*closes):
    days = [date(2024, 5, 31), date(2024, 6, 3), date(2024, 6, 4)]
    return [PricePoint(date=d, close=c) for d, c in zip(days, closes)]


class TestIngestionPipeline:
    """Test complete ingestion runs against an in-memory store."""

    @pytest.fixture
    def subscriptions(self, db: Database):
        """Two subscribers on AAPL and one on MSFT, with yesterday's AAPL history."""
        add_subscription(db, "alice", "AAPL", 100.0, Priority.HIGH)
        add_subscription(db, "bob", "aapl", 150.0)
        add_subscription(db, "carol", "MSFT", 400.0, Priority.LOW)
        HistoryRepository(db).upsert(
            HistoryPoint("inst_aapl", date(2024, 6, 3), 0.12, current_price=112.0, trend_average=100.0)
        )

    @pytest.fixture
    def provider(self):
        """Provider with bulk prices, averages and flat charts."""
        return FakeProvider(
            bulk={"AAPL": 103.0, "MSFT": 420.0},
            averages={"AAPL": 100.0, "MSFT": 400.0},
            history={"AAPL": _chart(101.0, 102.0, 103.0), "MSFT": _chart(415.0, 418.0, 420.0)},
        )

    @pytest.fixture
    def notifier(self):
        """Notifier accepting everything."""
        notifier = Mock(spec=Notifier)
        notifier.send.return_value = NotificationResult(success=True, channel="discord")
        return notifier

    @pytest.fixture
    def clock(self):
        """Clock at 2024-06-04 21:00 UTC."""
        return Clock(datetime(2024, 6, 4, 21, 0, tzinfo=timezone.utc))

    @pytest.fixture
    def pipeline(self, db, subscriptions, provider, notifier, clock, record_sleep):
        """Pipeline with fake provider and recorded sleeps."""
        return IngestionPipeline(
            db=db,
            provider=provider,
            notifiers=[notifier],
            sleep=record_sleep,
            clock=clock,
        )

    def test_full_run(self, db, pipeline, notifier):
        """Should refresh every instrument and raise alerts for crossings."""
        result = pipeline.run_ingestion(RunTrigger.SCHEDULED)

        assert result.status == RunStatus.SUCCESS
        summary = result.summary
        assert summary.processed == 2
        assert summary.updated == 5  # two snapshots and three subscriber deltas
        assert summary.history_upserts == 2
        assert summary.chart_upserts == 6
        assert summary.alerts_triggered == 2
        assert summary.errors == []

        alerts = AlertEventRepository(db).get_user_history("alice")
        assert sorted(a.rule_key for a in alerts) == ["price-near-target-10", "price-near-target-5"]
        assert AlertEventRepository(db).get_user_history("bob") == []
        assert notifier.send.call_count == 2

        snapshot = SnapshotRepository(db).get("inst_aapl")
        assert snapshot.current_price == 103.0
        assert snapshot.delta_to_trend == pytest.approx(0.03)
        assert SubscriptionRepository(db).get("alice", "inst_aapl").delta_to_quote == pytest.approx(0.03)
        assert SubscriptionRepository(db).get("bob", "inst_aapl").delta_to_quote == pytest.approx(103 / 150 - 1)

        run = IngestionRunRepository(db).get_by_id(result.run_id)
        assert run.status == RunStatus.SUCCESS
        assert run.trigger == RunTrigger.SCHEDULED
        assert run.alerts_triggered == 2
        assert run.finished_at is not None

    def test_alert_content(self, db, pipeline):
        """Should persist message, values and subscriber context."""
        pipeline.run_ingestion()

        alert = AlertEventRepository(db).find_last("inst_aapl", "alice", "price-near-target-5")
        assert alert.symbol == "AAPL"
        assert alert.actual_value == pytest.approx(0.03)
        assert alert.threshold_value == 0.05
        assert alert.context["priority"] == "High"
        assert alert.context["target_price"] == 100.0
        assert alert.created_at == datetime(2024, 6, 4, 21, 0, tzinfo=timezone.utc)
        assert "within 5% of your target price" in alert.message

    def test_second_run_is_idempotent(self, db, pipeline):
        """Should not duplicate alerts or rows when nothing changed."""
        pipeline.run_ingestion()
        second = pipeline.run_ingestion()

        assert second.status == RunStatus.SUCCESS
        assert second.summary.alerts_triggered == 0
        assert len(AlertEventRepository(db).get_user_history("alice")) == 2
        assert HistoryRepository(db).count("inst_aapl") == 2
        assert ChartRepository(db).count("inst_aapl") == 3

    def test_cooldown_across_days(self, db, pipeline, provider, clock):
        """Should suppress a repeated crossing inside the cooldown."""
        pipeline.run_ingestion()

        clock.set_day(date(2024, 6, 5))
        provider.bulk["AAPL"] = 115.0
        pipeline.run_ingestion()

        clock.set_day(date(2024, 6, 6))
        provider.bulk["AAPL"] = 103.0
        third = pipeline.run_ingestion()

        assert third.summary.alerts_triggered == 0
        assert len(AlertEventRepository(db).get_user_history("alice")) == 2

    def test_instrument_failure_is_isolated(self, db, pipeline, provider):
        """Should record the failing symbol and process the others."""
        del provider.averages["MSFT"]

        result = pipeline.run_ingestion()

        assert result.status == RunStatus.SUCCESS
        assert result.summary.processed == 1
        assert len(result.summary.errors) == 1
        assert result.summary.errors[0].startswith("MSFT: not_found")
        assert SnapshotRepository(db).get("inst_msft") is None
        assert SnapshotRepository(db).get("inst_aapl") is not None

    def test_bulk_failure_falls_back(self, db, pipeline, provider):
        """Should fetch quotes individually when the bulk call fails."""
        provider.failures[("bulk", "AAPL")] = ProviderError(ProviderErrorKind.RATE_LIMITED, "slow down")
        provider.quotes = {"AAPL": 103.0, "MSFT": 420.0}

        result = pipeline.run_ingestion()

        assert result.summary.processed == 2
        assert result.summary.errors[0].startswith("Bulk quote fetch failed (batch 1)")
        assert ("quote", "AAPL") in provider.calls

    def test_history_failure_keeps_metrics(self, db, pipeline, provider):
        """Should keep persisted metrics when the chart fetch fails."""
        provider.failures[("history", "AAPL")] = ProviderError(ProviderErrorKind.TRANSPORT, "reset")

        result = pipeline.run_ingestion()

        assert result.summary.processed == 1
        assert result.summary.errors == ["AAPL: transport: reset"]
        assert SnapshotRepository(db).get("inst_aapl") is not None
        assert ChartRepository(db).count("inst_aapl") == 0

    def test_alert_insert_failure_is_isolated(self, db, pipeline):
        """Should keep inserting the remaining alerts."""
        create = pipeline.alert_repo.create

        def flaky_create(event):
            if event.rule_key == "price-near-target-10":
                raise sqlite3.OperationalError("database is locked")
            return create(event)

        pipeline.alert_repo.create = flaky_create

        result = pipeline.run_ingestion()

        assert result.summary.alerts_triggered == 1
        assert result.summary.errors == [
            "Alert insert failed for AAPL (user alice, price-near-target-10): database is locked"
        ]

    def test_notification_failure_keeps_alert(self, db, pipeline, notifier):
        """Should keep the alert when delivery fails."""
        notifier.send.return_value = NotificationResult(success=False, channel="discord", error="HTTP 500")

        result = pipeline.run_ingestion()

        assert result.summary.alerts_triggered == 2
        assert len(AlertEventRepository(db).get_user_history("alice")) == 2

    def test_raising_notifier_keeps_alert(self, db, pipeline, notifier):
        """Should not turn a delivery exception into a run error."""
        notifier.send.side_effect = RuntimeError("webhook exploded")

        result = pipeline.run_ingestion()

        assert result.summary.alerts_triggered == 2
        assert result.summary.errors == []

    def test_logo_resolved_once(self, db, pipeline):
        """Should look up a missing logo and store it."""
        resolver = Mock()
        resolver.resolve.side_effect = lambda symbol: f"https://logos.example/{symbol}"
        pipeline.logo_resolver = resolver

        pipeline.run_ingestion()
        pipeline.run_ingestion()

        assert InstrumentRepository(db).get_by_uid("inst_aapl").logo_url == "https://logos.example/AAPL"
        assert resolver.resolve.call_count == 2  # once per instrument

    def test_edited_target_applies_to_previous_day(self, db, pipeline):
        """Should view yesterday's stored price through the current target."""
        add_subscription(db, "alice", "AAPL", 110.0, Priority.HIGH)

        result = pipeline.run_ingestion()

        # 112 vs 110 yesterday, 103 vs 110 today
        alerts = AlertEventRepository(db).get_user_history("alice")
        assert [a.rule_key for a in alerts] == ["price-at-target"]
        assert result.summary.alerts_triggered == 1

    def test_logo_lookup_is_paced(self, pipeline, sleeps):
        """Should pause after each logo lookup."""
        resolver = Mock()
        resolver.resolve.return_value = None
        pipeline.logo_resolver = resolver

        pipeline.run_ingestion()

        # average, logo, history for AAPL; instrument gap; the same for MSFT
        assert sleeps == [0.1, 0.1, 0.1, 0.2, 0.1, 0.1, 0.1]

    def test_unknown_priority_does_not_abort_run(self, db, pipeline):
        """Should process every instrument when a row has an unrecognized priority."""
        db.connection.execute("UPDATE subscriptions SET priority = 'urgent' WHERE user_id = 'carol'")
        db.connection.commit()

        result = pipeline.run_ingestion()

        assert result.status == RunStatus.SUCCESS
        assert result.summary.processed == 2
        assert result.summary.alerts_triggered == 2
        assert SnapshotRepository(db).get("inst_msft") is not None
        assert SubscriptionRepository(db).get("carol", "inst_msft").priority == Priority.NONE

    def test_finalize_failure_marks_error(self, db, pipeline):
        """Should record the run as failed when the success update fails."""
        finalize = pipeline.run_repo.finalize

        def flaky_finalize(run_id, status, summary, error=None):
            if status == RunStatus.SUCCESS:
                raise sqlite3.OperationalError("database is locked")
            return finalize(run_id, status, summary, error=error)

        pipeline.run_repo.finalize = flaky_finalize

        result = pipeline.run_ingestion()

        assert result.status == RunStatus.ERROR
        assert result.error == "database is locked"
        run = IngestionRunRepository(db).get_by_id(result.run_id)
        assert run.status == RunStatus.ERROR
        assert run.error == "database is locked"

    def test_global_error(self, db, pipeline):
        """Should finalize as error when subscriptions cannot be loaded."""
        pipeline.subscription_repo.list_subscriptions = Mock(
            side_effect=sqlite3.OperationalError("no such table: subscriptions")
        )

        result = pipeline.run_ingestion()

        assert result.status == RunStatus.ERROR
        assert result.error == "no such table: subscriptions"
        run = IngestionRunRepository(db).get_by_id(result.run_id)
        assert run.status == RunStatus.ERROR
        assert run.error == "no such table: subscriptions"

    def test_global_error_is_truncated(self, db, provider, record_sleep):
        """Should cap the stored error message."""
        pipeline = IngestionPipeline(
            db=db,
            provider=provider,
            config=AppConfig(advanced=AdvancedConfig(max_error_length=10)),
            sleep=record_sleep,
        )
        pipeline.subscription_repo.list_subscriptions = Mock(side_effect=RuntimeError("x" * 50))

        result = pipeline.run_ingestion()

        assert result.error == "x" * 10
        assert IngestionRunRepository(db).get_last().error == "x" * 10

    def test_run_setup_failure(self, pipeline):
        """Should raise when the run record cannot be created."""
        pipeline.run_repo.create = Mock(side_effect=sqlite3.OperationalError("disk I/O error"))

        with pytest.raises(RunSetupError):
            pipeline.run_ingestion()

    def test_no_subscriptions(self, db, record_sleep):
        """Should succeed without calling the provider."""
        provider = FakeProvider()
        pipeline = IngestionPipeline(db=db, provider=provider, sleep=record_sleep)

        result = pipeline.run_ingestion()

        assert result.status == RunStatus.SUCCESS
        assert result.summary.processed == 0
        assert provider.calls == []
        assert result.to_dict()["status"] == "success"


class TestConfigLoading:
    """Test configuration loading and validation."""

    def _write(self, tmp_path: Path, content: str) -> Path:
        config_file = tmp_path / "config.yaml"
        config_file.write_text(content)
        return config_file

    def test_load_valid_config(self, tmp_path):
        """Should load nested sections with defaults."""
        config_file = self._write(
            tmp_path,
            f"""
database:
  path: {tmp_path / "trendwatch.db"}
data_source:
  provider: alpha_vantage
  api_key: demo
pacing:
  chunk_size: 3
notifications:
  discord:
    webhook_url: ""
""",
        )

        config = load_config(str(config_file))

        assert config.data_source.api_key == "demo"
        assert config.pacing.chunk_size == 3
        assert config.pacing.bulk_batch_size == 100
        assert config.notifications.discord.webhook_url is None
        assert config.advanced.max_error_length == 1000

    def test_load_config_with_env_vars(self, tmp_path, monkeypatch):
        """Should substitute environment variables."""
        monkeypatch.setenv("AV_KEY", "secret-key")
        monkeypatch.setenv("HOOK", "https://discord.com/api/webhooks/1/x")
        config_file = self._write(
            tmp_path,
            f"""
database:
  path: {tmp_path / "trendwatch.db"}
data_source:
  api_key: ${{AV_KEY}}
notifications:
  discord:
    webhook_url: ${{HOOK}}
""",
        )

        config = load_config(str(config_file))

        assert config.data_source.api_key == "secret-key"
        assert config.notifications.discord.webhook_url == "https://discord.com/api/webhooks/1/x"

    def test_missing_file(self, tmp_path):
        """Should raise FileNotFoundError for a missing file."""
        with pytest.raises(FileNotFoundError):
            load_config(str(tmp_path / "missing.yaml"))

    @pytest.mark.parametrize(
        "body",
        [
            "data_source:\n  provider: yahoo_finance\n",
            "database:\n  path: db.sqlite\ndata_source:\n  provider: bloomberg\n",
            "database:\n  path: db.sqlite\ndata_source:\n  provider: alpha_vantage\n",
            "database:\n  path: db.sqlite\ndata_source:\n  provider: yahoo_finance\npacing:\n  bulk_batch_size: 150\n",
            "database:\n  path: db.sqlite\ndata_source:\n  provider: yahoo_finance\npacing:\n  chunk_delay_ms: -1\n",
        ],
    )
    def test_invalid_config_raises_error(self, tmp_path, body):
        """Should reject missing paths, unknown providers, missing keys and bad pacing."""
        config_file = self._write(tmp_path, body)
        with pytest.raises(ConfigValidationError):
            load_config(str(config_file))


class TestBuildPipeline:
    """Test wiring from configuration."""

    def test_dry_run_has_no_notifiers(self, db, sample_discord_webhook_url):
        """Should skip notifiers in dry-run mode."""
        config = AppConfig(data_source=DataSourceConfig(provider="yahoo_finance", logo_enabled=False))
        config.notifications.discord.webhook_url = sample_discord_webhook_url

        pipeline = build_pipeline(config, db, dry_run=True)

        assert pipeline.notifiers == []
        assert pipeline.logo_resolver is None
        assert isinstance(pipeline.scheduler.provider, YahooFinanceProvider)

    def test_discord_notifier_from_config(self, db, sample_discord_webhook_url):
        """Should create a Discord notifier when a webhook is configured."""
        config = AppConfig(data_source=DataSourceConfig(provider="yahoo_finance"))
        config.notifications.discord.webhook_url = sample_discord_webhook_url

        pipeline = build_pipeline(config, db)

        assert len(pipeline.notifiers) == 1
        assert isinstance(pipeline.notifiers[0], DiscordNotifier)
        assert pipeline.logo_resolver is not None


class TestCliCommands:
    """Test CLI helper functions."""

    def test_add_subscription(self, db):
        """Should create the instrument and the subscription."""
        sub = add_subscription(db, "alice", " aapl ", 150.0, Priority.MEDIUM)

        assert sub.instrument_uid == "inst_aapl"
        assert sub.priority == Priority.MEDIUM
        assert InstrumentRepository(db).get_by_symbol("AAPL") is not None

    def test_add_subscription_updates_target(self, db):
        """Should keep one subscription per user and symbol."""
        add_subscription(db, "alice", "AAPL", 150.0)
        add_subscription(db, "alice", "AAPL", 140.0)

        rows = list_subscriptions(db)
        assert len(rows) == 1
        assert rows[0].target_price == 140.0

    @pytest.mark.parametrize("symbol,target", [("", 10.0), ("AAPL", 0.0), ("AAPL", -1.0)])
    def test_add_subscription_invalid(self, db, symbol, target):
        """Should reject empty symbols and non-positive targets."""
        with pytest.raises(ValueError):
            add_subscription(db, "alice", symbol, target)

    def test_remove_subscription(self, db):
        """Should report whether a subscription was removed."""
        add_subscription(db, "alice", "AAPL", 150.0)

        assert remove_subscription(db, "alice", "AAPL") is True
        assert remove_subscription(db, "alice", "AAPL") is False
        assert remove_subscription(db, "alice", "MSFT") is False

    def test_list_subscriptions_by_user(self, db):
        """Should filter by user."""
        add_subscription(db, "alice", "AAPL", 150.0)
        add_subscription(db, "bob", "MSFT", 400.0)

        assert [r.symbol for r in list_subscriptions(db, user_id="bob")] == ["MSFT"]

    def test_last_run_and_recent_alerts(self, db, record_sleep):
        """Should expose the last run and recent alerts."""
        assert last_run(db) is None

        IngestionPipeline(db=db, provider=FakeProvider(), sleep=record_sleep).run_ingestion()

        run = last_run(db)
        assert run["status"] == "success"
        assert run["trigger"] == "manual"
        assert recent_alerts(db, "alice") == []


class TestHealthcheck:
    """Test the health report."""

    def test_without_webhook(self, db, monkeypatch):
        """Should do nothing without a webhook."""
        monkeypatch.delenv("DISCORD_WEBHOOK_URL", raising=False)
        with patch("requests.post") as mock_post:
            assert run_healthcheck(db) is None
        mock_post.assert_not_called()

    def test_reports_last_run(self, db, sample_discord_webhook_url, record_sleep):
        """Should post the last run's status."""
        add_subscription(db, "alice", "AAPL", 150.0)
        IngestionPipeline(
            db=db,
            provider=FakeProvider(bulk={"AAPL": 150.0}, averages={"AAPL": 140.0}),
            sleep=record_sleep,
        ).run_ingestion()

        with patch("requests.post") as mock_post:
            mock_post.return_value.status_code = 204
            status = run_healthcheck(db, webhook_url=sample_discord_webhook_url)

        assert status == 204
        embed = mock_post.call_args.kwargs["json"]["embeds"][0]
        assert embed["description"] == "Last ingestion run succeeded."
        fields = {f["name"]: f["value"] for f in embed["fields"]}
        assert fields["Instruments"] == "1"
        assert fields["Processed"] == "1"

    def test_failed_run_payload(self, db):
        """Should describe a failed run with its error."""
        runs = IngestionRunRepository(db)
        run = runs.create(RunTrigger.SCHEDULED)
        runs.finalize(run.id, RunStatus.ERROR, RunSummary(), error="no such table")

        embed = build_health_payload(db)["embeds"][0]

        assert embed["description"] == "Last ingestion run failed: no such table"
        assert embed["color"] == 0xFF0000
