import asyncio
from datetime import timedelta

from conftest import NOW, FakeGateway, make_member, make_membership, make_plan
from models.invoice import Invoice, InvoiceStatus
from models.membership import MembershipStatus
from utils.dunning import (
    calculate_next_retry_date,
    get_dunning_level,
    get_max_retries,
    get_retry_delay_days,
    mark_past_due,
    run_dunning,
)
from utils.gateway_base import DECLINED, ChargeResult
from utils.payments import GatewayConfig, PaymentOrchestrator
from utils.settings import set_setting


def _declining_orchestrator(db, attempts=10):
    gateway = FakeGateway(charge_results=[ChargeResult.failed(DECLINED, "insufficient_funds")] * attempts)
    return PaymentOrchestrator(db, GatewayConfig(active="stripe"), gateway=gateway), gateway


def _invoice(db, member, membership=None, **kw):
    inv = Invoice(
        invoice_number=kw.pop("invoice_number", "INV-20260301-AAAA"),
        member_id=member.id,
        membership_id=membership.id if membership else None,
        amount_cents=kw.pop("amount_cents", 10000),
        status=kw.pop("status", InvoiceStatus.PENDING.value),
        due_date=kw.pop("due_date", NOW - timedelta(days=1)),
        **kw,
    )
    db.add(inv)
    db.commit()
    return inv


def test_retry_schedule():
    assert [get_retry_delay_days(n) for n in range(6)] == [3, 7, 14, 30, 30, 30]
    assert calculate_next_retry_date(1, NOW) == NOW + timedelta(days=7)


def test_dunning_levels():
    assert [get_dunning_level(n) for n in (0, 1, 2, 3, 4, 7)] == [
        "friendly", "friendly", "urgent", "final", "suspension", "suspension",
    ]


def test_max_retries_from_settings(db):
    assert get_max_retries(db) == 4
    set_setting(db, "dunning_max_retries", "6")
    assert get_max_retries(db) == 6
    set_setting(db, "dunning_max_retries", "zero")
    assert get_max_retries(db) == 4


def test_past_due_sweep(db, notifier):
    member = make_member(db)
    overdue = _invoice(db, member)
    not_due = _invoice(db, member, invoice_number="INV-20260301-BBBB", due_date=NOW + timedelta(days=2))
    paid = _invoice(db, member, invoice_number="INV-20260301-CCCC", status=InvoiceStatus.PAID.value)

    marked = mark_past_due(db, notify=notifier, now=NOW)

    assert marked == 1
    assert overdue.status == InvoiceStatus.PAST_DUE.value
    assert overdue.next_retry_date == NOW + timedelta(days=3)
    assert not_due.status == InvoiceStatus.PENDING.value
    assert paid.status == InvoiceStatus.PAID.value
    assert notifier.kinds() == ["past_due"]
    assert notifier.events[0][1]["invoiceNumber"] == overdue.invoice_number


def test_ladder_escalates_then_suspends(db, notifier):
    orchestrator, gateway = _declining_orchestrator(db)
    member = make_member(db)
    ms = make_membership(db, member, make_plan(db), next_payment_date=NOW + timedelta(days=20))
    inv = _invoice(db, member, ms, status=InvoiceStatus.PAST_DUE.value, next_retry_date=NOW)

    now = NOW
    expected_gaps = [7, 14, 30]
    for attempt in range(4):
        result = asyncio.run(run_dunning(db, orchestrator, notify=notifier, max_retries=4, now=now))
        assert result.processed == 1
        if attempt < 3:
            assert inv.status == InvoiceStatus.PAST_DUE.value
            assert inv.next_retry_date == now + timedelta(days=expected_gaps[attempt])
            now = inv.next_retry_date

    assert notifier.kinds() == ["dunning_friendly", "dunning_urgent", "dunning_final", "dunning_suspension"]
    assert inv.status == InvoiceStatus.FAILED.value
    assert inv.retry_count == 4
    assert inv.next_retry_date is None
    assert ms.status == MembershipStatus.PAUSED.value
    assert ms.next_payment_date is None
    db.refresh(member)
    assert member.account_credit_cents == -10000
    assert len(gateway.charges) == 4
    # Each retry is a fresh charge attempt on the gateway side
    assert [c["idempotency_ref"] for c in gateway.charges] == [f"{inv.id}-{n}" for n in (1, 2, 3, 4)]

    # Terminal: nothing left to retry
    again = asyncio.run(run_dunning(db, orchestrator, notify=notifier, max_retries=4, now=now + timedelta(days=60)))
    assert again.processed == 0


def test_successful_retry_short_circuits(db, orchestrator, notifier):
    member = make_member(db)
    ms = make_membership(db, member, make_plan(db), next_payment_date=NOW + timedelta(days=20))
    inv = _invoice(db, member, ms, status=InvoiceStatus.PAST_DUE.value, retry_count=2, next_retry_date=NOW)

    result = asyncio.run(run_dunning(db, orchestrator, notify=notifier, max_retries=4, now=NOW))

    assert result.recovered == 1 and result.suspended == 0
    assert inv.status == InvoiceStatus.PAID.value
    assert inv.next_retry_date is None
    assert inv.retry_count == 2
    assert inv.last_retry_date == NOW
    assert ms.status == MembershipStatus.ACTIVE.value
    assert notifier.events == []


def test_retry_not_due_yet_is_left_alone(db, notifier):
    orchestrator, gateway = _declining_orchestrator(db)
    member = make_member(db)
    inv = _invoice(db, member, status=InvoiceStatus.PAST_DUE.value, next_retry_date=NOW + timedelta(hours=1))

    result = asyncio.run(run_dunning(db, orchestrator, notify=notifier, max_retries=4, now=NOW))

    assert result.processed == 0
    assert gateway.charges == []
    assert inv.retry_count == 0


def test_suspension_skips_membership_that_is_not_active(db, notifier):
    orchestrator, _ = _declining_orchestrator(db)
    member = make_member(db)
    ms = make_membership(db, member, make_plan(db), status=MembershipStatus.CANCELED.value, next_payment_date=None)
    _invoice(db, member, ms, status=InvoiceStatus.PAST_DUE.value, retry_count=3, next_retry_date=NOW)

    result = asyncio.run(run_dunning(db, orchestrator, notify=notifier, max_retries=4, now=NOW))

    assert result.suspended == 0
    assert ms.status == MembershipStatus.CANCELED.value
    assert notifier.kinds() == ["dunning_suspension"]
