#!/usr/bin/env python
"""
Run the rule engine against the configured database.

Examples:
  python backend/run_rule_engine.py
  python backend/run_rule_engine.py --once
  python backend/run_rule_engine.py --tick-interval 30 --log-level DEBUG
"""

from __future__ import annotations

import argparse
import json
import logging
import signal
import sys
import threading
from pathlib import Path

# Ensure package imports resolve when launched from repo root.
BACKEND_DIR = Path(__file__).resolve().parent
if str(BACKEND_DIR) not in sys.path:
    sys.path.insert(0, str(BACKEND_DIR))

from sqlalchemy.orm import sessionmaker  # noqa: E402

from config.settings import get_settings  # noqa: E402
from engine.retry import RetryPolicy  # noqa: E402
from engine.rule_engine import RuleEngine  # noqa: E402
from services.execution_service import ExecutionService  # noqa: E402
from services.logging_service import configure_file_logging, configure_structured_logging  # noqa: E402
from services.market_data import MarketDataService  # noqa: E402
from services.portfolio import PortfolioService  # noqa: E402
from storage.database import build_engine, check_db_connection, init_db  # noqa: E402
from storage.service import StorageService  # noqa: E402

logger = logging.getLogger("run_rule_engine")


def main(argv: list[str] | None = None) -> int:
    settings = get_settings()
    parser = argparse.ArgumentParser(description="Evaluate active trading rules on a fixed tick")
    parser.add_argument("--tick-interval", type=float, default=settings.tick_interval_seconds,
                        help="Seconds between evaluation cycles")
    parser.add_argument("--once", action="store_true", help="Run a single cycle and exit")
    parser.add_argument("--log-level", default=settings.log_level, help="Root log level")
    args = parser.parse_args(argv)

    if args.tick_interval <= 0:
        parser.error("--tick-interval must be positive")

    if settings.log_to_file:
        configure_file_logging(settings.resolved_log_directory())
    configure_structured_logging(args.log_level)

    db_engine = build_engine(settings.database_url)
    if not check_db_connection(db_engine):
        logger.error("Database unreachable at %s", settings.database_url)
        return 1
    init_db(db_engine)

    db = sessionmaker(autocommit=False, autoflush=False, bind=db_engine)()
    storage = StorageService(db)
    try:
        engine = RuleEngine(
            rules=storage.rules,
            market_data=MarketDataService(repository=storage.market_data),
            execution_service=ExecutionService(
                executions=storage.executions,
                rules=storage.rules,
                stats_batch_size=settings.stats_batch_size,
            ),
            portfolio_service=PortfolioService(repository=storage.portfolios),
            tick_interval=args.tick_interval,
            retry_policy=RetryPolicy.from_settings(settings),
        )

        if args.once:
            report = engine.run_cycle()
            print(json.dumps(report.to_dict(), indent=2, default=str))
            return 1 if report.aborted else 0

        shutdown = threading.Event()

        def _request_shutdown(signum, _frame):
            logger.info("Received signal %s, shutting down", signum)
            shutdown.set()

        signal.signal(signal.SIGINT, _request_shutdown)
        signal.signal(signal.SIGTERM, _request_shutdown)

        engine.start()
        while not shutdown.wait(timeout=1.0):
            pass
        engine.stop()
        return 0
    finally:
        storage.close()
        db_engine.dispose()


if __name__ == "__main__":
    sys.exit(main())
