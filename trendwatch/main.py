"""
Main application entry point.
"""

import json
import logging
import sys

from dotenv import load_dotenv

load_dotenv()

from trendwatch.app import IngestionPipeline, RunSetupError
from trendwatch.config import AppConfig, load_config
from trendwatch.database.connection import Database
from trendwatch.database.models import RunStatus, RunTrigger
from trendwatch.data.logos import LogoResolver
from trendwatch.data.provider import ProviderFactory
from trendwatch.notifiers.base import NotifierFactory

logger = logging.getLogger(__name__)


def build_pipeline(
    config: AppConfig, db: Database, dry_run: bool = False
) -> IngestionPipeline:
    """
    Wire an ingestion pipeline from configuration.

    Args:
        config: Application configuration
        db: Initialized database
        dry_run: Skip notification delivery

    Returns:
        Ready-to-run IngestionPipeline
    """
    source = config.data_source
    logo_resolver = None
    if source.logo_enabled:
        logo_resolver = LogoResolver(
            base_url=source.logo_base_url, timeout=source.timeout_seconds
        )

    return IngestionPipeline(
        db=db,
        provider=ProviderFactory.create(source),
        config=config,
        notifiers=[] if dry_run else NotifierFactory.from_config(config.notifications),
        logo_resolver=logo_resolver,
    )


def main():
    """CLI entry point."""
    import argparse

    parser = argparse.ArgumentParser(description="Trendwatch ingestion run")
    parser.add_argument(
        "--config", default="config.yaml", help="Path to config file"
    )
    parser.add_argument("--debug", action="store_true", help="Enable debug mode")
    parser.add_argument(
        "--dry-run", action="store_true", help="Run without sending notifications"
    )
    parser.add_argument(
        "--trigger",
        default=RunTrigger.MANUAL.value,
        choices=[t.value for t in RunTrigger],
        help="What started this run",
    )

    args = parser.parse_args()

    # Load config
    config = load_config(args.config)

    # Setup logging
    log_level = logging.DEBUG if args.debug else config.advanced.log_level.upper()
    logging.basicConfig(
        level=log_level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    # Initialize database
    db = Database(config.database.path)
    db.initialize()

    if args.dry_run:
        logger.info("Dry run mode - no notifications will be sent")

    pipeline = build_pipeline(config, db, dry_run=args.dry_run)

    try:
        result = pipeline.run_ingestion(RunTrigger(args.trigger))
    except RunSetupError as e:
        logger.error(str(e))
        sys.exit(2)
    finally:
        db.close()

    print(json.dumps(result.to_dict(), indent=2))
    if result.status == RunStatus.ERROR:
        sys.exit(1)


if __name__ == "__main__":
    main()
