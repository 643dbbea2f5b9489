import asyncio
import json
from datetime import timedelta

from conftest import NOW, make_member, make_membership, make_plan
from models.audit import AuditLog
from models.invoice import Invoice, InvoiceStatus
from models.membership import MembershipStatus
from models.pos import TrialPass
from utils import auto_run
from utils.auto_run import (
    AUTO_GENERATE_KEY,
    DUNNING_ENABLED_KEY,
    LAST_RUN_KEY,
    notify_promotion_eligibility,
    promotion_candidates_from_styles,
    run_auto_billing,
)
from utils.settings import get_setting, set_setting


def _no_candidates(db):
    return []


def _run(db, orchestrator, notifier, **kw):
    kw.setdefault("eligibility_source", _no_candidates)
    return asyncio.run(run_auto_billing(db, orchestrator, notify=notifier, now=NOW, **kw))


def test_runs_once_per_business_day(db, orchestrator, notifier):
    member = make_member(db)
    make_membership(db, member, make_plan(db))

    first = _run(db, orchestrator, notifier)
    second = _run(db, orchestrator, notifier)

    assert first["skipped"] is False
    assert first["invoicesCreated"] == 1
    assert first["errors"] == []
    assert second == {"skipped": True, "message": "Already run today"}
    assert get_setting(db, LAST_RUN_KEY) == "2026-03-15"
    assert db.query(Invoice).count() == 1

    (audit,) = db.query(AuditLog).all()
    assert audit.action == "BILLING_RUN"
    assert audit.entity_id == "2026-03-15"
    assert "1 invoices created" in audit.summary


def test_next_day_runs_again(db, orchestrator, notifier):
    set_setting(db, LAST_RUN_KEY, "2026-03-14")

    summary = _run(db, orchestrator, notifier)

    assert summary["skipped"] is False


def test_auto_generate_disabled(db, orchestrator, notifier):
    set_setting(db, AUTO_GENERATE_KEY, "false")
    member = make_member(db)
    make_membership(db, member, make_plan(db))

    summary = _run(db, orchestrator, notifier)

    assert summary == {"skipped": True, "message": "Auto-generate disabled"}
    assert db.query(Invoice).count() == 0
    assert get_setting(db, LAST_RUN_KEY) is None


def test_failing_stage_does_not_stop_later_stages(db, orchestrator, notifier, monkeypatch):
    async def broken_billing(*args, **kwargs):
        raise RuntimeError("db hiccup")

    monkeypatch.setattr(auto_run, "run_billing", broken_billing)
    member = make_member(db)
    overdue = Invoice(
        invoice_number="INV-20260301-LATE",
        member_id=member.id,
        amount_cents=5000,
        due_date=NOW - timedelta(days=2),
    )
    db.add(overdue)
    db.commit()

    def broken_source(db):
        raise ValueError("bad rank data")

    summary = _run(db, orchestrator, notifier, eligibility_source=broken_source)

    assert summary["errors"] == ["billing", "promotions"]
    assert summary["pastDueMarked"] == 1
    assert overdue.status == InvoiceStatus.PAST_DUE.value
    assert get_setting(db, LAST_RUN_KEY) == "2026-03-15"


def test_dunning_can_be_switched_off(db, orchestrator, gateway, notifier):
    set_setting(db, DUNNING_ENABLED_KEY, "false")
    member = make_member(db)
    inv = Invoice(
        invoice_number="INV-20260301-DUN1",
        member_id=member.id,
        amount_cents=5000,
        status=InvoiceStatus.PAST_DUE.value,
        due_date=NOW - timedelta(days=10),
        next_retry_date=NOW - timedelta(days=1),
    )
    db.add(inv)
    db.commit()

    summary = _run(db, orchestrator, notifier)

    assert summary["dunningProcessed"] == 0
    assert inv.retry_count == 0
    assert gateway.charges == []


def test_scheduled_cancellations_take_effect(db, orchestrator, notifier):
    member = make_member(db)
    plan = make_plan(db)
    due = make_membership(db, member, plan, next_payment_date=NOW + timedelta(days=5),
                          cancellation_effective_date=NOW - timedelta(hours=1))
    later = make_membership(db, member, plan, next_payment_date=NOW + timedelta(days=5),
                            cancellation_effective_date=NOW + timedelta(days=10))

    summary = _run(db, orchestrator, notifier)

    assert summary["cancellationsProcessed"] == 1
    assert due.status == MembershipStatus.CANCELED.value
    assert due.next_payment_date is None
    assert due.end_date == NOW - timedelta(hours=1)
    assert later.status == MembershipStatus.ACTIVE.value


def test_trial_passes_expire(db, orchestrator, notifier):
    member = make_member(db)
    old = TrialPass(member_id=member.id, expires_at=NOW - timedelta(hours=1))
    fresh = TrialPass(member_id=member.id, expires_at=NOW + timedelta(days=3))
    db.add_all([old, fresh])
    db.commit()

    summary = _run(db, orchestrator, notifier)

    assert summary["trialsExpired"] == 1
    assert old.status == "EXPIRED"
    assert fresh.status == "ACTIVE"


def test_promotion_candidates_read_from_rank_notes(db):
    make_member(db, first_name="Taylor", styles_notes=json.dumps([
        {"name": "BJJ", "rank": "White", "nextRank": "Blue", "eligible": True},
        {"name": "Judo", "rank": "Yellow", "nextRank": "Orange", "eligible": False},
        {"name": "Karate", "rank": "Green", "nextRank": "Brown", "eligible": True, "active": False},
    ]))
    make_member(db, first_name="Casey", styles_notes="not json")

    assert promotion_candidates_from_styles(db) == [
        {"memberName": "Taylor Kim", "styleName": "BJJ", "currentRank": "White", "nextRank": "Blue"},
    ]


def test_promotion_alerts_only_for_new_candidates(db, notifier):
    candidates = [{"memberName": "Taylor Kim", "styleName": "BJJ", "nextRank": "Blue"}]

    def source(db):
        return list(candidates)

    assert notify_promotion_eligibility(db, notifier, source) == 1
    assert notify_promotion_eligibility(db, notifier, source) == 0

    candidates.append({"memberName": "Jordan Lee", "styleName": "Muay Thai", "nextRank": "Red"})
    assert notify_promotion_eligibility(db, notifier, source) == 1

    assert notifier.kinds() == ["promotion_eligibility", "promotion_eligibility"]
    assert notifier.events[1][1]["alerts"] == [candidates[1]]
    assert notifier.events[1][1]["count"] == 1
