#!/usr/bin/env python3
"""
Run every analytics scorer once against the configured DuckDB store.

Recomputes RFM, CLV, churn risk and recommendations for all customers,
then prints the batch summaries and the dashboard overview.

Usage:
    python scripts/run_analytics_now.py
    python scripts/run_analytics_now.py --db data/analytics.duckdb
    python scripts/run_analytics_now.py --customer 42  # Also show one customer
"""
import asyncio
import argparse
import json
import sys
from dataclasses import replace
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from crm_analytics.config import config
from crm_analytics.engine import AnalyticsEngine
from crm_analytics.exceptions import AnalyticsError
from crm_analytics.observability import get_logger, setup_logging

logger = get_logger(__name__)


async def main(db_path: str = None, customer_id: int = None, clean_cache: bool = False) -> int:
    """Run all analytics and report."""
    app_config = config
    if db_path:
        app_config = replace(config, store=replace(config.store, db_path=db_path))

    engine = AnalyticsEngine(app_config)
    await engine.start(with_scheduler=False)

    try:
        store_stats = await engine.store.get_stats()
        logger.info(f"Store: {store_stats['customers']} customers, {store_stats['transactions']} transactions")

        if clean_cache:
            removed = await engine.clean_expired_cache()
            logger.info(f"Removed {removed} expired cache rows")

        summaries = await engine.run_all_analytics_now()
        for name, summary in summaries.items():
            logger.info(
                f"{name}: {summary['processed']}/{summary['total']} processed, "
                f"{summary['failed']} failed in {summary['duration_ms']:.0f}ms"
            )

        overview = await engine.get_dashboard_overview()
        print(json.dumps(overview, indent=2, default=str))

        if customer_id is not None:
            complete = await engine.get_customer_complete_analytics(customer_id)
            print(json.dumps(complete, indent=2, default=str))

    except AnalyticsError as e:
        logger.error(f"Analytics run failed: {e}")
        return 1
    finally:
        await engine.stop()

    return 0


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Run all customer analytics now")
    parser.add_argument(
        "--db",
        default=None,
        help="DuckDB file (default: ANALYTICS_DB_PATH)"
    )
    parser.add_argument(
        "--customer",
        type=int,
        default=None,
        help="Also print complete analytics for this customer id"
    )
    parser.add_argument(
        "--clean-cache",
        action="store_true",
        help="Delete expired cache entries first"
    )
    parser.add_argument(
        "--json-logs",
        action="store_true",
        help="Emit JSON log lines"
    )
    args = parser.parse_args()

    setup_logging(level=config.logging.level, json_format=args.json_logs or config.logging.json_format)

    exit_code = asyncio.run(main(db_path=args.db, customer_id=args.customer, clean_cache=args.clean_cache))
    sys.exit(exit_code)
