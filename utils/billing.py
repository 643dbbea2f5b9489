"""
Recurring billing run.

For every ACTIVE auto-renewing membership whose nextPaymentDate falls on or
before the end of the business day: price the period, write one invoice,
try the stored payment method, then schedule the next cycle.
"""
import secrets
import string
from dataclasses import dataclass, asdict
from datetime import datetime, timedelta
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional, Tuple

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from core.config import (
    BILLING_GRACE_PERIOD_DAYS,
    FAMILY_DISCOUNT_MAX_PERCENT,
    FAMILY_DISCOUNT_MODE,
    logger,
)
from models.invoice import Invoice, InvoiceStatus
from models.membership import Membership, MembershipPlan, MembershipStatus
from utils.dates import add_billing_cycle, billing_period_end, end_of_business_day, utc_now
from utils.notifications import NotifyFn, Notifier, invoice_variables
from utils.settings import get_int_setting, get_timezone_name

INVOICE_NUMBER_ATTEMPTS = 3


def get_effective_price_cents(membership: Membership, plan: MembershipPlan, period_start: datetime) -> int:
    """Plan price unless the membership carries a custom price for this period."""
    plan_price = plan.price_cents or 0
    if membership.custom_price_cents is None:
        return plan_price
    if membership.first_month_discount_only:
        # First period: billing starts within a day of the membership start
        is_first = period_start <= membership.start_date + timedelta(days=1)
        return membership.custom_price_cents if is_first else plan_price
    return membership.custom_price_cents


def family_discount_percent(
    plan_percent: Optional[float],
    family_size: int,
    mode: str = FAMILY_DISCOUNT_MODE,
    cap: float = FAMILY_DISCOUNT_MAX_PERCENT,
) -> float:
    """
    Effective discount percent for a family of `family_size` (member included).

    flat:       plan percent for any family of 2+.
    per_member: plan percent once per additional family member, capped.
    """
    pct = float(plan_percent or 0)
    if pct <= 0 or family_size < 2:
        return 0.0
    if mode == "flat":
        effective = pct
    else:
        effective = pct * (family_size - 1)
    return max(0.0, min(effective, cap, 100.0))


def apply_family_discount(
    amount_cents: int,
    plan_percent: Optional[float],
    family_size: int,
    mode: str = FAMILY_DISCOUNT_MODE,
    cap: float = FAMILY_DISCOUNT_MAX_PERCENT,
) -> Tuple[int, float]:
    """Returns (discounted amount, percent applied). Discount rounds half-up to the cent."""
    pct = family_discount_percent(plan_percent, family_size, mode, cap)
    if pct <= 0 or amount_cents <= 0:
        return amount_cents, 0.0
    discount = int((Decimal(amount_cents) * Decimal(str(pct)) / Decimal(100)).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    return max(0, amount_cents - discount), pct


def family_discount_note(percent: float, discount_cents: int) -> str:
    return f"Family discount ({percent:g}%): -${discount_cents / 100:.2f}"


def generate_invoice_number(now: Optional[datetime] = None) -> str:
    """INV-YYYYMMDD-XXXX"""
    alphabet = string.ascii_uppercase + string.digits
    suffix = "".join(secrets.choice(alphabet) for _ in range(4))
    return f"INV-{(now or utc_now()).strftime('%Y%m%d')}-{suffix}"


def get_grace_period_days(db: Session) -> int:
    return get_int_setting(db, "billing_grace_period_days", BILLING_GRACE_PERIOD_DAYS)


@dataclass
class BillingResult:
    created: int = 0
    skipped: int = 0
    charged: int = 0
    errors: int = 0

    def to_dict(self):
        return asdict(self)


def due_memberships(db: Session, cutoff: datetime):
    return (
        db.query(Membership)
        .join(MembershipPlan, Membership.membership_plan_id == MembershipPlan.id)
        .filter(
            Membership.status == MembershipStatus.ACTIVE.value,
            Membership.next_payment_date.isnot(None),
            Membership.next_payment_date <= cutoff,
            MembershipPlan.auto_renew.is_(True),
        )
        .order_by(Membership.next_payment_date)
        .all()
    )


def _existing_invoice(db: Session, membership_id: str, period_start: datetime) -> Optional[Invoice]:
    return (
        db.query(Invoice)
        .filter(Invoice.membership_id == membership_id, Invoice.billing_period_start == period_start)
        .first()
    )


def _insert_invoice(db: Session, ms: Membership, period_start: datetime, **fields) -> Optional[Invoice]:
    """Insert the period's invoice. None means the period was already invoiced."""
    for _ in range(INVOICE_NUMBER_ATTEMPTS):
        invoice = Invoice(
            invoice_number=generate_invoice_number(),
            membership_id=ms.id,
            billing_period_start=period_start,
            **fields,
        )
        db.add(invoice)
        try:
            db.commit()
            return invoice
        except IntegrityError:
            db.rollback()
            if _existing_invoice(db, ms.id, period_start) is not None:
                return None
            # Invoice number collision; draw a new one
    raise RuntimeError(f"could not allocate a unique invoice number for membership {ms.id}")


async def bill_membership(
    db: Session,
    ms: Membership,
    orchestrator,
    notify: NotifyFn,
    grace_days: int,
    now: datetime,
    result: BillingResult,
) -> None:
    plan = ms.plan
    member = ms.member
    period_start = ms.next_payment_date
    next_payment = add_billing_cycle(period_start, plan.billing_cycle)

    amount = get_effective_price_cents(ms, plan, period_start)
    notes = None
    family_size = len(member.related_member_ids()) + 1 if member else 1
    if (plan.family_discount_percent or 0) > 0 and family_size >= 2:
        discounted, pct = apply_family_discount(amount, plan.family_discount_percent, family_size)
        if pct > 0:
            notes = family_discount_note(pct, amount - discounted)
            amount = discounted

    invoice = _insert_invoice(
        db,
        ms,
        period_start,
        member_id=ms.member_id,
        amount_cents=amount,
        status=InvoiceStatus.PENDING.value,
        due_date=period_start + timedelta(days=grace_days),
        billing_period_end=billing_period_end(period_start, plan.billing_cycle),
        notes=notes,
    )
    if invoice is None:
        result.skipped += 1
        # Already invoiced by an overlapping run; make sure the schedule moved on
        if ms.next_payment_date == period_start:
            ms.next_payment_date = next_payment
            db.commit()
        logger.info(f"[billing.run] membership {ms.id} period {period_start.date()} already invoiced; skipped")
        return
    result.created += 1

    if amount > 0:
        charge = await orchestrator.charge_stored_payment_method(
            ms.member_id,
            amount,
            f"Invoice {invoice.invoice_number} - {plan.name}",
            invoice_ref=invoice.id,
        )
        if charge.success and charge.external_payment_id:
            gateway = orchestrator.get_active_gateway()
            invoice.mark_paid(charge.external_payment_id, gateway.name if gateway else "unknown", now)
            ms.last_payment_date = now
            result.charged += 1
    else:
        # Nothing to collect; a zero invoice must not enter dunning
        invoice.status = InvoiceStatus.PAID.value
        invoice.paid_at = now
        invoice.payment_method = "NO_CHARGE"

    # Scheduled from the period start regardless of the charge outcome
    ms.next_payment_date = next_payment
    db.commit()
    notify("invoice_created", invoice_variables(invoice, member, planName=plan.name))


async def run_billing(
    db: Session,
    orchestrator,
    notify: Optional[NotifyFn] = None,
    now: Optional[datetime] = None,
    grace_days: Optional[int] = None,
) -> BillingResult:
    notify = notify or Notifier(db)
    now = now or utc_now()
    grace_days = grace_days if grace_days is not None else get_grace_period_days(db)
    cutoff = end_of_business_day(get_timezone_name(db), now)
    result = BillingResult()

    for ms in due_memberships(db, cutoff):
        ms_id = ms.id
        try:
            await bill_membership(db, ms, orchestrator, notify, grace_days, now, result)
        except Exception as ex:
            db.rollback()
            result.errors += 1
            logger.exception(f"[billing.run] membership {ms_id} failed: {ex}")
    logger.info(
        f"[billing.run] created={result.created} skipped={result.skipped} "
        f"charged={result.charged} errors={result.errors}"
    )
    return result
