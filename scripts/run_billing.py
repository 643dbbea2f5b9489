"""
Run the billing pipeline from cron or by hand.

    python scripts/run_billing.py                  # daily auto run (no-op if already run today)
    python scripts/run_billing.py --stage dunning  # one stage only
    python scripts/run_billing.py --dry-run        # list what is due, change nothing
"""
import sys
import os
import asyncio
import json
import argparse

# Add parent directory to path
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from core.config import logger
from core.database import SessionLocal, init_db
from models.invoice import Invoice, InvoiceStatus
from utils.auto_run import LAST_RUN_KEY, process_scheduled_cancellations, expire_trial_passes, run_auto_billing
from utils.billing import due_memberships, run_billing
from utils.dates import end_of_business_day, utc_now
from utils.dunning import mark_past_due, run_dunning
from utils.payments import PaymentOrchestrator
from utils.settings import get_timezone_name, set_setting

STAGES = ['auto', 'run', 'past-due', 'dunning', 'cancellations', 'trials']


def dry_run_report(db) -> dict:
    now = utc_now()
    due = due_memberships(db, end_of_business_day(get_timezone_name(db), now))
    overdue = (
        db.query(Invoice)
        .filter(Invoice.status == InvoiceStatus.PENDING.value, Invoice.due_date < now)
        .count()
    )
    retries = (
        db.query(Invoice)
        .filter(
            Invoice.status.in_([InvoiceStatus.PAST_DUE.value, InvoiceStatus.FAILED.value]),
            Invoice.next_retry_date.isnot(None),
            Invoice.next_retry_date <= now,
        )
        .count()
    )
    for ms in due:
        logger.info(f"  due: membership={ms.id} member={ms.member_id} next={ms.next_payment_date}")
    return {"dueMemberships": len(due), "pendingPastDue": overdue, "dueRetries": retries}


async def run_stage(stage: str, force: bool = False) -> dict:
    db = SessionLocal()
    try:
        if stage == 'auto':
            if force:
                set_setting(db, LAST_RUN_KEY, "")
            return await run_auto_billing(db)
        if stage == 'past-due':
            return {"marked": mark_past_due(db)}
        if stage == 'cancellations':
            return {"canceled": process_scheduled_cancellations(db)}
        if stage == 'trials':
            return {"expired": expire_trial_passes(db)}
        orchestrator = PaymentOrchestrator.from_settings(db)
        if stage == 'run':
            return (await run_billing(db, orchestrator)).to_dict()
        return (await run_dunning(db, orchestrator)).to_dict()
    finally:
        db.close()


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description='Run recurring billing and dunning')
    parser.add_argument('--stage', type=str, default='auto', choices=STAGES,
                        help='Stage to run (default: auto, the full idempotent daily run)')
    parser.add_argument('--dry-run', action='store_true', help='Report what is due without making changes')
    parser.add_argument('--force', action='store_true', help='Clear today\'s auto-run marker first')
    parser.add_argument('--init-db', action='store_true', help='Create missing tables before running')
    args = parser.parse_args(argv)

    if args.init_db:
        init_db()

    if args.dry_run:
        db = SessionLocal()
        try:
            report = dry_run_report(db)
        finally:
            db.close()
        print(json.dumps(report, indent=2))
        return 0

    logger.info("=" * 60)
    logger.info(f"Billing stage '{args.stage}' (force={args.force})")
    logger.info("=" * 60)
    try:
        result = asyncio.run(run_stage(args.stage, force=args.force))
    except Exception as ex:
        logger.exception(f"Billing stage '{args.stage}' failed: {ex}")
        return 1
    print(json.dumps(result, indent=2, default=str))
    return 0


if __name__ == "__main__":
    sys.exit(main())
