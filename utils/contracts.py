"""Contract terms: minimum length, early-termination fee, cancellation notice. Pure functions."""
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from utils.dates import add_months, utc_now


@dataclass(frozen=True)
class CancellationQuote:
    under_contract: bool
    contract_end_date: Optional[datetime]
    early_termination_fee_cents: int
    notice_days: int
    effective_date: datetime

    def to_dict(self):
        return {
            "underContract": self.under_contract,
            "contractEndDate": self.contract_end_date.isoformat() if self.contract_end_date else None,
            "earlyTerminationFeeCents": self.early_termination_fee_cents,
            "noticeDays": self.notice_days,
            "effectiveDate": self.effective_date.isoformat(),
        }


def contract_end_date(start: datetime, contract_length_months: int) -> datetime:
    return add_months(start, contract_length_months)


def resolve_contract_end(membership, plan) -> Optional[datetime]:
    """Stored end date wins; otherwise derive it from the plan's contract length."""
    if membership.contract_end_date:
        return membership.contract_end_date
    months = getattr(plan, "contract_length_months", None) if plan is not None else None
    if months and months > 0 and membership.start_date:
        return contract_end_date(membership.start_date, months)
    return None


def is_under_contract(membership, plan=None, now: Optional[datetime] = None) -> bool:
    end = resolve_contract_end(membership, plan)
    if end is None:
        return False
    return (now or utc_now()) < end


def early_termination_fee(membership, plan, now: Optional[datetime] = None) -> int:
    if not is_under_contract(membership, plan, now):
        return 0
    return plan.cancellation_fee_cents or 0


def cancellation_effective_date(plan, now: Optional[datetime] = None) -> datetime:
    notice = (plan.cancellation_notice_days or 0) if plan is not None else 0
    return (now or utc_now()) + timedelta(days=max(0, notice))


def plan_cancellation(membership, plan, now: Optional[datetime] = None) -> CancellationQuote:
    now = now or utc_now()
    return CancellationQuote(
        under_contract=is_under_contract(membership, plan, now),
        contract_end_date=resolve_contract_end(membership, plan),
        early_termination_fee_cents=early_termination_fee(membership, plan, now),
        notice_days=max(0, (plan.cancellation_notice_days or 0) if plan is not None else 0),
        effective_date=cancellation_effective_date(plan, now),
    )
