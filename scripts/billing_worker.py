"""
PastCare Billing Worker
Runs scheduled billing jobs: recurring renewals and the past-due grace sweep.

    python scripts/billing_worker.py once
    python scripts/billing_worker.py loop --interval 3600 --downgrade
    python scripts/billing_worker.py seed-plans
"""
import argparse
import sys
import os
import time

# Ensure app is in path
sys.path.append(os.getcwd())

import structlog

from app.billing.catalog import seed_plans
from app.billing.service import BillingService
from app.core.db import SessionLocal, run_migrations
from app.core.instrumentation import setup_logging
from config.settings import get_settings

logger = structlog.get_logger()


def run_once(service: BillingService, downgrade: bool = False) -> dict:
    """One pass: charge due renewals, then suspend subscriptions out of grace."""
    renewals = service.process_renewals()
    suspended = service.suspend_past_due(downgrade=downgrade)
    logger.info("billing.worker.pass_completed", suspended=len(suspended), **renewals)
    return {"renewals": renewals, "suspended": suspended}


def _seed() -> int:
    run_migrations()
    db = SessionLocal()
    try:
        created = seed_plans(db)
        db.commit()
        return created
    finally:
        db.close()


def main(argv=None):
    parser = argparse.ArgumentParser(description="PastCare billing jobs.")
    sub = parser.add_subparsers(dest="command", required=True)
    once = sub.add_parser("once", help="Run renewals and the grace sweep once")
    once.add_argument("--downgrade", action="store_true", help="Move suspended tenants to the free plan")
    loop = sub.add_parser("loop", help="Run forever")
    loop.add_argument("--interval", type=int, default=3600, help="Seconds between passes")
    loop.add_argument("--downgrade", action="store_true")
    sub.add_parser("seed-plans", help="Insert missing default plans")

    args = parser.parse_args(argv)
    setup_logging(get_settings().log_level)

    if args.command == "seed-plans":
        print(f"Seeded {_seed()} plan(s).")
        return

    service = BillingService()
    if args.command == "once":
        run_once(service, downgrade=args.downgrade)
        return

    logger.info("billing.worker.started", interval=args.interval)
    while True:
        try:
            run_once(service, downgrade=args.downgrade)
        except Exception as e:
            logger.error("billing.worker.pass_failed", error=str(e))
        time.sleep(args.interval)


if __name__ == "__main__":
    main()
