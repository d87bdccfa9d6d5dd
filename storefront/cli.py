"""Operational commands, meant for cron or a one-off shell.

    python -m storefront.cli init-db
    python -m storefront.cli repair
"""
import argparse
import sys

import structlog

from storefront.config import get_settings
from storefront.database import SessionLocal, init_db
from storefront.log import configure_logging
from storefront.notifications import OrderNotifier
from storefront.orders import find_flagged_payments, repair_missing_orders

logger = structlog.get_logger(component="cli")


def run_repair() -> int:
    db = SessionLocal()
    try:
        repaired, failed = repair_missing_orders(db, notifier=OrderNotifier(get_settings()))
        flagged = [p.reference for p in find_flagged_payments(db)]
    finally:
        db.close()

    for reference in repaired:
        print(f"repaired {reference}")
    for reference in failed:
        print(f"FAILED   {reference}", file=sys.stderr)
    for reference in flagged:
        print(f"REVIEW   {reference}", file=sys.stderr)
    return 1 if failed or flagged else 0


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(prog="storefront")
    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("init-db", help="create database tables")
    sub.add_parser("repair", help="create missing orders for paid payments and list flagged ones")
    args = parser.parse_args(argv)

    settings = get_settings()
    configure_logging(settings.log_level, settings.log_json)

    if args.command == "init-db":
        init_db()
        logger.info("database_initialized")
        return 0
    return run_repair()


if __name__ == "__main__":
    sys.exit(main())
