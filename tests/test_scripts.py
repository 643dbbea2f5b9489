import json
from datetime import timedelta

from conftest import make_member, make_membership, make_plan
from models.invoice import Invoice, InvoiceStatus
from scripts import run_billing
from utils.dates import utc_now
from utils.settings import set_setting


def test_dry_run_reports_without_changes(db, capsys):
    member = make_member(db)
    ms = make_membership(db, member, make_plan(db), next_payment_date=utc_now() - timedelta(hours=1))

    assert run_billing.main(["--dry-run"]) == 0

    report = json.loads(capsys.readouterr().out)
    assert report == {"dueMemberships": 1, "pendingPastDue": 0, "dueRetries": 0}
    assert db.query(Invoice).count() == 0
    db.refresh(ms)
    assert ms.next_payment_date is not None


def test_single_stage(db, capsys):
    set_setting(db, "notify_past_due", "false")
    member = make_member(db)
    db.add(Invoice(invoice_number="INV-20260301-CRON", member_id=member.id, amount_cents=1000,
                   due_date=utc_now() - timedelta(days=3)))
    db.commit()

    assert run_billing.main(["--stage", "past-due"]) == 0

    assert json.loads(capsys.readouterr().out) == {"marked": 1}
    inv = db.query(Invoice).one()
    db.refresh(inv)
    assert inv.status == InvoiceStatus.PAST_DUE.value
