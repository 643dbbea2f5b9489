"""
Dunning: past-due sweep, retry ladder, escalation and suspension.

Invoice states: PENDING -> PAST_DUE -> (PAID | FAILED). The past-due sweep
seeds nextRetryDate; each retry either collects the invoice or climbs one rung
(friendly, urgent, final) until the retry ceiling suspends the membership.
"""
from dataclasses import dataclass, asdict
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.orm import Session

from core.config import DUNNING_MAX_RETRIES, logger
from models.invoice import Invoice, InvoiceStatus
from models.member import adjust_account_credit
from models.membership import MembershipStatus
from utils.dates import utc_now
from utils.notifications import NotifyFn, Notifier, invoice_variables
from utils.settings import get_int_setting

# Days until the next attempt, indexed by retry count; the last value repeats
RETRY_SCHEDULE_DAYS = (3, 7, 14, 30)

LEVEL_FRIENDLY = "friendly"
LEVEL_URGENT = "urgent"
LEVEL_FINAL = "final"
LEVEL_SUSPENSION = "suspension"


def get_retry_delay_days(retry_count: int) -> int:
    if retry_count < 0:
        retry_count = 0
    if retry_count >= len(RETRY_SCHEDULE_DAYS):
        return RETRY_SCHEDULE_DAYS[-1]
    return RETRY_SCHEDULE_DAYS[retry_count]


def calculate_next_retry_date(retry_count: int, now: Optional[datetime] = None) -> datetime:
    return (now or utc_now()) + timedelta(days=get_retry_delay_days(retry_count))


def get_dunning_level(retry_count: int) -> str:
    if retry_count <= 1:
        return LEVEL_FRIENDLY
    if retry_count == 2:
        return LEVEL_URGENT
    if retry_count == 3:
        return LEVEL_FINAL
    return LEVEL_SUSPENSION


def should_suspend(retry_count: int, max_retries: int) -> bool:
    return retry_count >= max_retries


def get_max_retries(db: Session) -> int:
    return get_int_setting(db, "dunning_max_retries", DUNNING_MAX_RETRIES)


@dataclass
class DunningResult:
    processed: int = 0
    recovered: int = 0
    suspended: int = 0
    errors: int = 0

    def to_dict(self):
        return asdict(self)


def mark_past_due(db: Session, notify: Optional[NotifyFn] = None, now: Optional[datetime] = None) -> int:
    """PENDING invoices whose due date has passed enter the ladder at attempt 0."""
    notify = notify or Notifier(db)
    now = now or utc_now()
    invoices = (
        db.query(Invoice)
        .filter(Invoice.status == InvoiceStatus.PENDING.value, Invoice.due_date < now)
        .order_by(Invoice.due_date)
        .all()
    )
    marked = 0
    for inv in invoices:
        try:
            inv.status = InvoiceStatus.PAST_DUE.value
            inv.next_retry_date = calculate_next_retry_date(0, now)
            db.commit()
            marked += 1
        except Exception as ex:
            db.rollback()
            logger.exception(f"[dunning.past_due] invoice {inv.id} failed: {ex}")
            continue
        notify("past_due", invoice_variables(inv, inv.member))
    if marked:
        logger.info(f"[dunning.past_due] marked {marked} invoice(s) past due")
    return marked


async def _retry_invoice(
    db: Session,
    inv: Invoice,
    orchestrator,
    notify: NotifyFn,
    max_retries: int,
    now: datetime,
    result: DunningResult,
) -> None:
    charge = await orchestrator.charge_stored_payment_method(
        inv.member_id,
        inv.amount_cents,
        f"Invoice {inv.invoice_number or inv.id} - payment retry",
        invoice_ref=inv.id,
        attempt=(inv.retry_count or 0) + 1,
    )
    if charge.success and charge.external_payment_id:
        gateway = orchestrator.get_active_gateway()
        inv.mark_paid(charge.external_payment_id, gateway.name if gateway else "unknown", now)
        inv.last_retry_date = now
        db.commit()
        result.processed += 1
        result.recovered += 1
        logger.info(f"[dunning] invoice {inv.invoice_number} collected on retry")
        return

    new_count = (inv.retry_count or 0) + 1
    inv.retry_count = new_count
    inv.last_retry_date = now

    if should_suspend(new_count, max_retries):
        inv.status = InvoiceStatus.FAILED.value
        inv.next_retry_date = None
        membership = inv.membership
        suspended = False
        if membership is not None and membership.status == MembershipStatus.ACTIVE.value:
            membership.stop_billing(MembershipStatus.PAUSED)
            suspended = True
        adjust_account_credit(db, inv.member_id, -(inv.amount_cents or 0))
        db.commit()
        result.processed += 1
        if suspended:
            result.suspended += 1
        logger.warning(f"[dunning] invoice {inv.invoice_number} failed after {new_count} attempts; membership suspended={suspended}")
        notify(f"dunning_{LEVEL_SUSPENSION}", invoice_variables(inv, inv.member, level=LEVEL_SUSPENSION))
        return

    level = get_dunning_level(new_count)
    inv.next_retry_date = calculate_next_retry_date(new_count, now)
    db.commit()
    result.processed += 1
    notify(f"dunning_{level}", invoice_variables(inv, inv.member, level=level))


async def run_dunning(
    db: Session,
    orchestrator,
    notify: Optional[NotifyFn] = None,
    max_retries: Optional[int] = None,
    now: Optional[datetime] = None,
) -> DunningResult:
    """Retry every PAST_DUE/FAILED invoice whose nextRetryDate has arrived."""
    notify = notify or Notifier(db)
    now = now or utc_now()
    max_retries = max_retries or get_max_retries(db)
    result = DunningResult()

    invoices = (
        db.query(Invoice)
        .filter(
            Invoice.status.in_([InvoiceStatus.PAST_DUE.value, InvoiceStatus.FAILED.value]),
            Invoice.next_retry_date.isnot(None),
            Invoice.next_retry_date <= now,
        )
        .order_by(Invoice.next_retry_date)
        .all()
    )
    for inv in invoices:
        try:
            await _retry_invoice(db, inv, orchestrator, notify, max_retries, now, result)
        except Exception as ex:
            db.rollback()
            result.errors += 1
            logger.exception(f"[dunning] invoice {inv.id} failed: {ex}")
    logger.info(
        f"[dunning] processed={result.processed} recovered={result.recovered} "
        f"suspended={result.suspended} errors={result.errors}"
    )
    return result
