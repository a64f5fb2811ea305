#!/usr/bin/env python
"""
Commission Aggregation Script - manual run or replay of the monthly invoicing

Usage:
    python scripts/run_commission_aggregation.py [--month YYYY-MM]

Without --month the previous calendar month is billed, exactly like the
scheduled job. Re-running a month is safe: invoices already sent are skipped
and interrupted ones are resumed under the same idempotency key.
"""
import sys
import logging
from pathlib import Path

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from mutuus_billing.config import config
from mutuus_billing.db.engine import create_db_engine, create_session_factory
from mutuus_billing.logging_config import setup_logging
from mutuus_billing.services.billing_gateway import get_billing_gateway
from mutuus_billing.services.monthly_aggregator import MonthlyAggregator

logger = logging.getLogger(__name__)


def main():
    """Main entry point"""
    import argparse

    parser = argparse.ArgumentParser(description="Monthly commission invoicing")
    parser.add_argument(
        '--month',
        help='Period to bill as YYYY-MM (default: previous calendar month)'
    )

    args = parser.parse_args()
    setup_logging(config.ENV, config.LOG_LEVEL)

    logger.info("=" * 60)
    logger.info("COMMISSION AGGREGATION SCRIPT")
    logger.info("=" * 60)

    session_factory = create_session_factory(create_db_engine(config))
    aggregator = MonthlyAggregator(session_factory, get_billing_gateway(config), config)

    try:
        report = aggregator.run_period(args.month) if args.month else aggregator.run()
    except ValueError as e:
        logger.error(str(e))
        sys.exit(2)

    logger.info("=" * 60)
    logger.info("AGGREGATION SUMMARY")
    logger.info("=" * 60)
    logger.info(f"Period: {report.period}")
    logger.info(f"Invoiced: {len(report.invoiced)}")
    logger.info(f"Skipped: {len(report.skipped)}")
    logger.info(f"Failed: {len(report.failed)}")

    if report.errors:
        logger.error(f"Errors encountered: {len(report.errors)}")
        for employer_id, error in report.errors.items():
            logger.error(f"  - {employer_id}: {error}")

    logger.info("=" * 60)

    # Exit with error code if any failures
    sys.exit(1 if report.failed else 0)


if __name__ == "__main__":
    main()
