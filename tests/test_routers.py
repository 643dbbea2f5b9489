import base64
import hashlib
import hmac
import json
import time
from datetime import timedelta

import pytest
from fastapi.testclient import TestClient

from conftest import FakeGateway, make_member, make_membership, make_plan
from core.database import get_db
from main import app
from models.invoice import Invoice, InvoiceStatus
from models.membership import MembershipStatus
from models.payment_event import PaymentEvent
from routers import billing as billing_router
from routers import payments as payments_router
from routers import webhooks as webhooks_router
from routers.payments import get_orchestrator
from utils.checkout_origin import PortalInvoice, encode_metadata
from utils.dates import utc_now
from utils.payments import GatewayConfig, PaymentOrchestrator
from utils.settings import set_setting

ADMIN = {"X-Billing-Secret": "test-cron-secret"}
STRIPE_SECRET = "whsec_test"
SQUARE_KEY = "sq-signing-key"
SQUARE_URL = "https://gym.example/api/webhooks/square"


def _allow(*args, **kwargs):
    return True, ""


@pytest.fixture
def fake_gateway():
    return FakeGateway()


@pytest.fixture
def client(db, fake_gateway, monkeypatch):
    monkeypatch.setattr(billing_router, "check_billing_trigger_rate_limit", _allow)
    monkeypatch.setattr(payments_router, "check_checkout_rate_limit", _allow)
    monkeypatch.setattr(webhooks_router, "check_webhook_rate_limit", _allow)
    # Keep notification threads out of the way
    for kind in ("invoice_created", "past_due", "dunning_friendly", "dunning_urgent", "dunning_final", "dunning_suspension"):
        set_setting(db, f"notify_{kind}", "false")

    def _db():
        yield db

    app.dependency_overrides[get_db] = _db
    app.dependency_overrides[get_orchestrator] = lambda: PaymentOrchestrator(
        db, GatewayConfig(active="stripe"), gateway=fake_gateway
    )
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


def _invoice(db, member, **kw):
    inv = Invoice(
        invoice_number=kw.pop("invoice_number", "INV-20260315-HTTP"),
        member_id=member.id,
        amount_cents=kw.pop("amount_cents", 10000),
        status=kw.pop("status", InvoiceStatus.PENDING.value),
        due_date=kw.pop("due_date", utc_now() + timedelta(days=7)),
        **kw,
    )
    db.add(inv)
    db.commit()
    return inv


def _stripe_post(client, event, secret=STRIPE_SECRET):
    payload = json.dumps(event)
    ts = int(time.time())
    sig = hmac.new(secret.encode(), f"{ts}.{payload}".encode(), hashlib.sha256).hexdigest()
    return client.post(
        "/api/webhooks/stripe",
        content=payload,
        headers={"Stripe-Signature": f"t={ts},v1={sig}", "Content-Type": "application/json"},
    )


def _square_post(client, event, key=SQUARE_KEY):
    body = json.dumps(event).encode()
    sig = base64.b64encode(hmac.new(key.encode(), SQUARE_URL.encode() + body, hashlib.sha256).digest()).decode()
    return client.post(
        "/api/webhooks/square",
        content=body,
        headers={"x-square-hmacsha256-signature": sig, "Content-Type": "application/json"},
    )


def test_root(client):
    res = client.get("/")
    assert res.status_code == 200
    assert res.json()["ok"] is True
    assert res.headers["X-Content-Type-Options"] == "nosniff"


# ---------------------------------------------------------------------------
# Billing triggers
# ---------------------------------------------------------------------------

def test_billing_endpoints_require_secret(client):
    assert client.post("/api/billing/auto-run").status_code == 401
    assert client.post("/api/billing/run", headers={"X-Billing-Secret": "nope"}).status_code == 401


def test_billing_endpoints_unconfigured_secret(client, monkeypatch):
    monkeypatch.setattr("core.auth.BILLING_CRON_SECRET", "")
    res = client.post("/api/billing/auto-run", headers=ADMIN)
    assert res.status_code == 503
    assert res.json() == {"error": "billing_not_configured"}


def test_billing_trigger_is_rate_limited(client, monkeypatch):
    monkeypatch.setattr(billing_router, "check_billing_trigger_rate_limit", lambda ip: (False, "slow down"))
    res = client.post("/api/billing/auto-run", headers=ADMIN)
    assert res.status_code == 429
    assert res.json() == {"error": "slow down"}


def test_auto_run_is_idempotent_over_http(client):
    first = client.post("/api/billing/auto-run", headers=ADMIN)
    second = client.post("/api/billing/auto-run", headers={"Authorization": "Bearer test-cron-secret"})

    assert first.status_code == 200
    assert first.json()["skipped"] is False
    assert second.json() == {"skipped": True, "message": "Already run today"}


def test_run_and_dunning_endpoints(client, db, fake_gateway):
    member = make_member(db)
    make_membership(db, member, make_plan(db), next_payment_date=utc_now() - timedelta(hours=1))
    _invoice(db, member, invoice_number="INV-20260301-OVER", due_date=utc_now() - timedelta(days=1))

    run = client.post("/api/billing/run", headers=ADMIN)
    assert run.status_code == 200
    assert run.json() == {"created": 1, "skipped": 0, "charged": 1, "errors": 0}
    assert len(fake_gateway.charges) == 1

    past_due = client.post("/api/billing/past-due", headers=ADMIN)
    assert past_due.json() == {"marked": 1}

    dunning = client.post("/api/billing/dunning", headers=ADMIN)
    assert dunning.json() == {"processed": 0, "recovered": 0, "suspended": 0, "errors": 0}


# ---------------------------------------------------------------------------
# Checkout and refunds
# ---------------------------------------------------------------------------

def test_checkout_session(client, db, fake_gateway):
    member = make_member(db)
    inv = _invoice(db, member)

    res = client.post("/api/payments/checkout", json={
        "amount_cents": 10000,
        "description": "Invoice",
        "success_url": "https://gym.example/ok",
        "cancel_url": "https://gym.example/cancel",
        "member_id": member.id,
        "metadata": encode_metadata(PortalInvoice(invoice_id=inv.id, member_id=member.id)),
    })

    assert res.status_code == 200
    assert res.json() == {"url": "https://pay.example/cs_1", "sessionId": "cs_1", "orderId": None}
    assert fake_gateway.sessions[0]["metadata"]["invoiceId"] == inv.id


def test_checkout_validation(client):
    base = {"description": "x", "success_url": "https://a", "cancel_url": "https://b"}
    assert client.post("/api/payments/checkout", json={**base, "amount_cents": 0}).status_code == 400
    res = client.post("/api/payments/checkout", json={**base, "amount_cents": 100, "metadata": {"foo": "bar"}})
    assert res.status_code == 400


def test_checkout_without_processor(client, db):
    app.dependency_overrides[get_orchestrator] = lambda: PaymentOrchestrator(db, GatewayConfig(active=None))
    res = client.post("/api/payments/checkout", json={
        "amount_cents": 100, "description": "x", "success_url": "https://a", "cancel_url": "https://b",
    })
    assert res.status_code == 503


def test_checkout_status_poll(client):
    res = client.get("/api/payments/checkout/cs_1/status")
    assert res.status_code == 200
    assert res.json()["status"] == "pending"


def test_refund_endpoint(client, db, fake_gateway):
    member = make_member(db)
    inv = _invoice(db, member, status=InvoiceStatus.PAID.value, external_payment_id="pi_5", payment_processor="stripe")

    assert client.post("/api/payments/refund", json={"external_payment_id": "pi_5"}).status_code == 401
    res = client.post("/api/payments/refund", json={"external_payment_id": "pi_5"}, headers=ADMIN)

    assert res.status_code == 200
    assert res.json() == {"ok": True, "refundId": "re_1"}
    db.refresh(inv)
    assert inv.status == InvoiceStatus.REFUNDED.value


# ---------------------------------------------------------------------------
# Webhooks
# ---------------------------------------------------------------------------

def test_stripe_webhook_applies_checkout_once(client, db):
    set_setting(db, "stripe_webhook_secret", STRIPE_SECRET)
    member = make_member(db)
    inv = _invoice(db, member)
    event = {
        "id": "evt_1",
        "type": "checkout.session.completed",
        "data": {"object": {
            "id": "cs_1",
            "mode": "payment",
            "payment_status": "paid",
            "payment_intent": "pi_hook",
            "amount_total": 10000,
            "metadata": encode_metadata(PortalInvoice(invoice_id=inv.id)),
        }},
    }

    first = _stripe_post(client, event)
    replay = _stripe_post(client, event)

    assert first.json() == {"received": True, "outcome": "invoice_paid"}
    assert replay.status_code == 200
    assert replay.json()["outcome"] == "duplicate"
    db.refresh(inv)
    assert inv.status == InvoiceStatus.PAID.value
    assert inv.external_payment_id == "pi_hook"
    assert db.query(PaymentEvent).filter(PaymentEvent.provider == "stripe").count() == 2


def test_stripe_webhook_rejects_bad_signature(client, db):
    set_setting(db, "stripe_webhook_secret", STRIPE_SECRET)
    res = _stripe_post(client, {"id": "evt_2", "type": "charge.refunded", "data": {"object": {}}}, secret="whsec_other")
    assert res.status_code == 400
    assert db.query(PaymentEvent).count() == 0


def test_stripe_webhook_unconfigured(client, monkeypatch):
    monkeypatch.setattr(webhooks_router, "STRIPE_WEBHOOK_SECRET", "")
    assert _stripe_post(client, {"id": "evt_3", "type": "x", "data": {"object": {}}}).status_code == 503


def test_stripe_payment_failed_moves_invoice_past_due(client, db):
    set_setting(db, "stripe_webhook_secret", STRIPE_SECRET)
    member = make_member(db)
    inv = _invoice(db, member, due_date=utc_now() - timedelta(days=1))
    event = {
        "id": "evt_4",
        "type": "payment_intent.payment_failed",
        "data": {"object": {"id": "pi_fail", "metadata": {"invoiceId": inv.id, "memberId": member.id}}},
    }

    assert _stripe_post(client, event).json()["outcome"] == "past_due"
    db.refresh(inv)
    assert inv.status == InvoiceStatus.PAST_DUE.value


def test_stripe_payment_failed_inside_grace_period_stays_pending(client, db):
    set_setting(db, "stripe_webhook_secret", STRIPE_SECRET)
    member = make_member(db)
    inv = _invoice(db, member)
    event = {
        "id": "evt_4b",
        "type": "payment_intent.payment_failed",
        "data": {"object": {"id": "pi_fail", "metadata": {"invoiceId": inv.id, "memberId": member.id}}},
    }

    assert _stripe_post(client, event).json()["outcome"] == "ignored"
    db.refresh(inv)
    assert inv.status == InvoiceStatus.PENDING.value
    assert inv.next_retry_date is None


def test_stripe_partial_refund_keeps_invoice_paid(client, db):
    set_setting(db, "stripe_webhook_secret", STRIPE_SECRET)
    member = make_member(db)
    inv = _invoice(db, member, status=InvoiceStatus.PAID.value, external_payment_id="pi_r", payment_processor="stripe")
    event = {
        "id": "evt_5",
        "type": "charge.refunded",
        "data": {"object": {"id": "ch_1", "payment_intent": "pi_r", "amount_refunded": 4000, "refunded": False}},
    }

    assert _stripe_post(client, event).json()["outcome"] == "ignored"
    db.refresh(inv)
    assert inv.status == InvoiceStatus.PAID.value


def test_stripe_setup_session_saves_default_card(client, db, fake_gateway):
    set_setting(db, "stripe_webhook_secret", STRIPE_SECRET)
    member = make_member(db, with_card=False)

    async def setup_payment_method(setup_intent_id):
        assert setup_intent_id == "seti_1"
        return "pm_saved"

    fake_gateway.setup_payment_method = setup_payment_method
    event = {
        "id": "evt_6",
        "type": "checkout.session.completed",
        "data": {"object": {
            "id": "cs_setup",
            "mode": "setup",
            "customer": "cus_new",
            "setup_intent": "seti_1",
            "metadata": {"memberId": member.id},
        }},
    }

    assert _stripe_post(client, event).json()["outcome"] == "card_saved"
    db.refresh(member)
    assert member.default_payment_method_id == "pm_saved"
    assert member.stripe_customer_id == "cus_new"


def test_square_webhook(client, db):
    set_setting(db, "square_webhook_signature_key", SQUARE_KEY)
    set_setting(db, "square_webhook_url", SQUARE_URL)
    member = make_member(db)
    inv = _invoice(db, member)
    event = {
        "event_id": "sq-evt-1",
        "type": "payment.updated",
        "data": {"id": "PAY1", "object": {"payment": {
            "id": "PAY1",
            "status": "COMPLETED",
            "note": json.dumps({"invoiceId": inv.id}),
            "amount_money": {"amount": 10000, "currency": "USD"},
        }}},
    }

    assert _square_post(client, event).json() == {"received": True, "outcome": "invoice_paid"}
    assert _square_post(client, event, key="wrong-key").status_code == 400
    db.refresh(inv)
    assert inv.payment_processor == "square"


def test_paypal_webhook_needs_configured_gateway(client):
    res = client.post("/api/webhooks/paypal", json={"event_type": "PAYMENT.CAPTURE.COMPLETED"})
    assert res.status_code == 503


# ---------------------------------------------------------------------------
# Memberships
# ---------------------------------------------------------------------------

def _contract_membership(db, notice_days=30):
    member = make_member(db)
    plan = make_plan(db, contract_length_months=12, cancellation_fee_cents=5000, cancellation_notice_days=notice_days)
    return make_membership(
        db, member, plan,
        start_date=utc_now() - timedelta(days=90),
        next_payment_date=utc_now() + timedelta(days=10),
    )


def test_cancellation_quote(client, db):
    ms = _contract_membership(db)

    res = client.get(f"/api/memberships/{ms.id}/cancellation-quote")

    assert res.status_code == 200
    body = res.json()
    assert body["underContract"] is True
    assert body["earlyTerminationFeeCents"] == 5000
    assert body["noticeDays"] == 30
    assert client.get("/api/memberships/missing/cancellation-quote").status_code == 404


def test_cancel_with_notice_creates_fee_invoice(client, db):
    ms = _contract_membership(db)

    assert client.post(f"/api/memberships/{ms.id}/cancel").status_code == 401
    res = client.post(f"/api/memberships/{ms.id}/cancel", json={"reason": "Moving away"}, headers=ADMIN)

    assert res.status_code == 200
    body = res.json()
    assert body["earlyTerminationFeeCents"] == 5000
    fee = db.query(Invoice).filter(Invoice.id == body["feeInvoiceId"]).one()
    assert fee.amount_cents == 5000 and fee.notes == "Early termination fee"
    db.refresh(ms)
    assert ms.status == MembershipStatus.ACTIVE.value
    assert ms.cancellation_reason == "Moving away"
    assert ms.cancellation_effective_date is not None

    again = client.post(f"/api/memberships/{ms.id}/cancel", headers=ADMIN)
    assert again.status_code == 409


def test_cancel_without_notice_is_immediate(client, db):
    ms = _contract_membership(db, notice_days=0)

    res = client.post(f"/api/memberships/{ms.id}/cancel", json={"waive_fee": True}, headers=ADMIN)

    assert res.status_code == 200
    assert res.json()["feeInvoiceId"] is None
    db.refresh(ms)
    assert ms.status == MembershipStatus.CANCELED.value
    assert ms.next_payment_date is None
    assert client.post(f"/api/memberships/{ms.id}/cancel", headers=ADMIN).status_code == 400
