import os

# Settings are read at import time
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["BILLING_CRON_SECRET"] = "test-cron-secret"
os.environ["BUSINESS_TIMEZONE"] = "UTC"
os.environ["FAMILY_DISCOUNT_MODE"] = "per_member"
os.environ["SMTP_HOST"] = ""

from datetime import datetime
from typing import Dict, List, Optional

import pytest

from core.database import Base, SessionLocal, engine, init_db
from models.member import Member, MemberRelationship
from models.membership import Membership, MembershipPlan, MembershipStatus
from utils.gateway_base import (
    ChargeResult,
    CheckoutSession,
    CheckoutStatus,
    GatewayAdapter,
    RefundResult,
    STATUS_PENDING,
)
from utils.payments import GatewayConfig, PaymentOrchestrator

NOW = datetime(2026, 3, 15, 12, 0, 0)


class FakeGateway(GatewayAdapter):
    """Scripted in-memory gateway; charge outcomes are popped from `charge_results` in order."""

    def __init__(self, name: str = "stripe", charge_results: Optional[List[ChargeResult]] = None):
        self.name = name
        self.charge_results = list(charge_results or [])
        self.charges: List[Dict] = []
        self.sessions: List[Dict] = []
        self.refunds: List[Dict] = []
        self.checkout_status = CheckoutStatus(status=STATUS_PENDING)
        self.refund_result = RefundResult(success=True, refund_id="re_1")
        self._counter = 0

    async def create_checkout_session(self, amount_cents, currency, description, success_url, cancel_url,
                                      line_items=None, customer_ref=None, metadata=None):
        self.sessions.append({
            "amount_cents": amount_cents,
            "currency": currency,
            "description": description,
            "line_items": line_items,
            "customer_ref": customer_ref,
            "metadata": dict(metadata or {}),
        })
        return CheckoutSession(url="https://pay.example/cs_1", session_id="cs_1")

    async def get_checkout_status(self, session_id, order_id=None):
        return self.checkout_status

    async def charge_stored_method(self, customer_ref, method_ref, amount_cents, currency, description,
                                   idempotency_ref=None, metadata=None):
        self.charges.append({
            "customer_ref": customer_ref,
            "method_ref": method_ref,
            "amount_cents": amount_cents,
            "currency": currency,
            "idempotency_ref": idempotency_ref,
            "metadata": dict(metadata or {}),
        })
        if self.charge_results:
            return self.charge_results.pop(0)
        self._counter += 1
        return ChargeResult(success=True, external_payment_id=f"pi_{self._counter}")

    async def refund(self, external_payment_id, amount_cents=None, currency=None):
        self.refunds.append({"external_payment_id": external_payment_id, "amount_cents": amount_cents, "currency": currency})
        return self.refund_result

    async def ensure_customer(self, member):
        if not member.stripe_customer_id:
            member.stripe_customer_id = f"cus_{member.id[:8]}"
        return member.stripe_customer_id

    def customer_ref_for(self, member):
        return member.stripe_customer_id


class RecordingNotifier:
    def __init__(self):
        self.events: List[tuple] = []

    def __call__(self, event_kind: str, variables: dict) -> None:
        self.events.append((event_kind, dict(variables)))

    def kinds(self) -> List[str]:
        return [k for k, _ in self.events]


@pytest.fixture
def db():
    init_db()
    session = SessionLocal()
    try:
        yield session
    finally:
        session.rollback()
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def orchestrator(db, gateway):
    return PaymentOrchestrator(db, GatewayConfig(active=gateway.name, currency="usd"), gateway=gateway)


@pytest.fixture
def no_gateway_orchestrator(db):
    return PaymentOrchestrator(db, GatewayConfig(active=None))


@pytest.fixture
def notifier():
    return RecordingNotifier()


def make_member(db, first_name="Alex", last_name="Kim", with_card=True, **kw):
    member = Member(
        first_name=first_name,
        last_name=last_name,
        email=kw.pop("email", f"{first_name.lower()}@example.com"),
        stripe_customer_id=kw.pop("stripe_customer_id", "cus_test" if with_card else None),
        default_payment_method_id=kw.pop("default_payment_method_id", "pm_test" if with_card else None),
        **kw,
    )
    db.add(member)
    db.commit()
    return member


def make_plan(db, name="Adult Unlimited", price_cents=10000, billing_cycle="MONTHLY", **kw):
    plan = MembershipPlan(
        name=name,
        price_cents=price_cents,
        billing_cycle=billing_cycle,
        auto_renew=kw.pop("auto_renew", True),
        **kw,
    )
    db.add(plan)
    db.commit()
    return plan


def make_membership(db, member, plan, next_payment_date=NOW, start_date=None, **kw):
    ms = Membership(
        member_id=member.id,
        membership_plan_id=plan.id,
        status=kw.pop("status", MembershipStatus.ACTIVE.value),
        start_date=start_date or datetime(2026, 1, 15, 12, 0, 0),
        next_payment_date=next_payment_date,
        **kw,
    )
    db.add(ms)
    db.commit()
    return ms


def link_family(db, a, b, relationship_type="sibling"):
    db.add(MemberRelationship(from_member_id=a.id, to_member_id=b.id, relationship_type=relationship_type))
    db.commit()
    db.expire_all()
