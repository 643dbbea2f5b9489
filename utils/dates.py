"""
Date helpers for billing.

Domain datetimes are naive UTC. The business calendar ("today") is evaluated in
the gym's configured IANA timezone so a run just after midnight UTC still counts
for the correct local day.
"""
from datetime import datetime, timedelta, timezone
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from dateutil.relativedelta import relativedelta

from core.config import BUSINESS_TIMEZONE, logger


_CYCLE_STEPS = {
    "DAILY": relativedelta(days=1),
    "WEEKLY": relativedelta(days=7),
    "BIWEEKLY": relativedelta(days=14),
    "MONTHLY": relativedelta(months=1),
    "QUARTERLY": relativedelta(months=3),
    "SEMI_ANNUALLY": relativedelta(months=6),
    "YEARLY": relativedelta(years=1),
}

# Spellings seen in older plan rows
_CYCLE_ALIASES = {
    "SEMI-ANNUALLY": "SEMI_ANNUALLY",
    "SEMIANNUALLY": "SEMI_ANNUALLY",
    "ANNUALLY": "YEARLY",
    "BI-WEEKLY": "BIWEEKLY",
    "BI_WEEKLY": "BIWEEKLY",
}


def utc_now() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def normalize_cycle(billing_cycle: Optional[str]) -> str:
    c = (billing_cycle or "MONTHLY").strip().upper()
    c = _CYCLE_ALIASES.get(c, c)
    return c if c in _CYCLE_STEPS else "MONTHLY"


def add_billing_cycle(start: datetime, billing_cycle: Optional[str]) -> datetime:
    """One billing cycle after start. Month arithmetic clamps to month end (Jan 31 -> Feb 28)."""
    return start + _CYCLE_STEPS[normalize_cycle(billing_cycle)]


def billing_period_end(period_start: datetime, billing_cycle: Optional[str]) -> datetime:
    """Billing period end = one cycle after start, minus 1 day."""
    return add_billing_cycle(period_start, billing_cycle) - timedelta(days=1)


def add_months(start: datetime, months: int) -> datetime:
    return start + relativedelta(months=months)


def end_of_day(moment: datetime) -> datetime:
    return moment.replace(hour=23, minute=59, second=59, microsecond=999999)


def resolve_timezone(name: Optional[str]) -> ZoneInfo:
    try:
        return ZoneInfo((name or BUSINESS_TIMEZONE).strip())
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning(f"[dates] unknown timezone '{name}', falling back to {BUSINESS_TIMEZONE}")
        return ZoneInfo(BUSINESS_TIMEZONE)


def today_in_timezone(tz_name: Optional[str], now: Optional[datetime] = None) -> str:
    """Today's YYYY-MM-DD in the given timezone. `now` is naive UTC."""
    moment = (now or utc_now()).replace(tzinfo=timezone.utc)
    return moment.astimezone(resolve_timezone(tz_name)).strftime("%Y-%m-%d")


def format_date(d: Optional[datetime]) -> str:
    if not d:
        return ""
    return d.strftime("%b %d, %Y")


def format_cents(amount_cents: int) -> str:
    sign = "-" if amount_cents < 0 else ""
    return f"{sign}${abs(amount_cents) / 100:.2f}"


def end_of_business_day(tz_name: Optional[str], now: Optional[datetime] = None) -> datetime:
    """Last instant of the business-local calendar day containing `now`, as naive UTC."""
    local = (now or utc_now()).replace(tzinfo=timezone.utc).astimezone(resolve_timezone(tz_name))
    local_end = local.replace(hour=23, minute=59, second=59, microsecond=999999)
    return local_end.astimezone(timezone.utc).replace(tzinfo=None)
