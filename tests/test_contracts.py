from datetime import datetime, timedelta
from types import SimpleNamespace

from conftest import NOW
from utils.contracts import (
    early_termination_fee,
    is_under_contract,
    plan_cancellation,
    resolve_contract_end,
)


def _plan(**kw):
    defaults = dict(contract_length_months=12, cancellation_fee_cents=5000, cancellation_notice_days=30)
    defaults.update(kw)
    return SimpleNamespace(**defaults)


def _membership(start=datetime(2025, 12, 15, 12, 0, 0), contract_end_date=None):
    return SimpleNamespace(start_date=start, contract_end_date=contract_end_date)


def test_cancel_three_months_into_a_year_contract():
    quote = plan_cancellation(_membership(), _plan(), NOW)

    assert quote.under_contract is True
    assert quote.contract_end_date == datetime(2026, 12, 15, 12, 0, 0)
    assert quote.early_termination_fee_cents == 5000
    assert quote.notice_days == 30
    assert quote.effective_date == NOW + timedelta(days=30)
    assert quote.to_dict()["earlyTerminationFeeCents"] == 5000


def test_no_fee_once_contract_has_ended():
    ms = _membership(start=datetime(2024, 1, 1))
    assert is_under_contract(ms, _plan(), NOW) is False
    assert early_termination_fee(ms, _plan(), NOW) == 0


def test_stored_contract_end_wins_over_plan_length():
    stored = datetime(2026, 4, 1)
    ms = _membership(contract_end_date=stored)
    assert resolve_contract_end(ms, _plan(contract_length_months=24)) == stored


def test_plan_without_contract():
    plan = _plan(contract_length_months=None, cancellation_notice_days=None)
    quote = plan_cancellation(_membership(), plan, NOW)

    assert quote.under_contract is False
    assert quote.contract_end_date is None
    assert quote.early_termination_fee_cents == 0
    assert quote.effective_date == NOW


def test_month_end_clamping():
    ms = _membership(start=datetime(2026, 1, 31))
    assert resolve_contract_end(ms, _plan(contract_length_months=1)) == datetime(2026, 2, 28)
