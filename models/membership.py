"""
Membership models
Plans are pricing templates; memberships link a member to a plan and carry the
billing schedule (next_payment_date) and cancellation bookkeeping.
All domain datetimes are stored as naive UTC.
"""
from datetime import datetime
import uuid
import enum
from sqlalchemy import Column, String, DateTime, Boolean, Integer, Float, ForeignKey
from sqlalchemy.orm import relationship
from core.database import Base


class BillingCycle(str, enum.Enum):
    DAILY = "DAILY"
    WEEKLY = "WEEKLY"
    BIWEEKLY = "BIWEEKLY"
    MONTHLY = "MONTHLY"
    QUARTERLY = "QUARTERLY"
    SEMI_ANNUALLY = "SEMI_ANNUALLY"
    YEARLY = "YEARLY"


class MembershipStatus(str, enum.Enum):
    ACTIVE = "ACTIVE"
    PAUSED = "PAUSED"
    CANCELED = "CANCELED"
    EXPIRED = "EXPIRED"


class MembershipPlan(Base):
    __tablename__ = "membership_plans"

    id = Column(String(64), primary_key=True, default=lambda: str(uuid.uuid4()))
    name = Column(String(255), nullable=False)
    price_cents = Column(Integer, nullable=True)
    billing_cycle = Column(String(20), nullable=False, default=BillingCycle.MONTHLY.value)
    family_discount_percent = Column(Float, nullable=True)
    auto_renew = Column(Boolean, nullable=False, default=True)

    # Contract terms
    contract_length_months = Column(Integer, nullable=True)
    cancellation_notice_days = Column(Integer, nullable=True)
    cancellation_fee_cents = Column(Integer, nullable=True)

    # Whether members may buy this plan from the portal store
    portal_purchasable = Column(Boolean, nullable=False, default=False)
    is_active = Column(Boolean, nullable=False, default=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    memberships = relationship("Membership", back_populates="plan")

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "priceCents": self.price_cents,
            "billingCycle": self.billing_cycle,
            "familyDiscountPercent": self.family_discount_percent,
            "autoRenew": self.auto_renew,
            "contractLengthMonths": self.contract_length_months,
            "cancellationNoticeDays": self.cancellation_notice_days,
            "cancellationFeeCents": self.cancellation_fee_cents,
        }


class Membership(Base):
    __tablename__ = "memberships"

    id = Column(String(64), primary_key=True, default=lambda: str(uuid.uuid4()))
    member_id = Column(String(64), ForeignKey("members.id"), nullable=False, index=True)
    membership_plan_id = Column(String(64), ForeignKey("membership_plans.id"), nullable=False, index=True)

    status = Column(String(20), nullable=False, default=MembershipStatus.ACTIVE.value, index=True)
    start_date = Column(DateTime, nullable=False, default=datetime.utcnow)
    end_date = Column(DateTime, nullable=True)

    # Billing schedule; only set while ACTIVE on an auto-renewing plan
    next_payment_date = Column(DateTime, nullable=True, index=True)
    last_payment_date = Column(DateTime, nullable=True)

    # Pricing overrides
    custom_price_cents = Column(Integer, nullable=True)
    first_month_discount_only = Column(Boolean, nullable=False, default=False)

    # Contract / cancellation bookkeeping
    contract_end_date = Column(DateTime, nullable=True)
    cancellation_request_date = Column(DateTime, nullable=True)
    cancellation_effective_date = Column(DateTime, nullable=True, index=True)
    cancellation_reason = Column(String(255), nullable=True)
    pause_end_date = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    member = relationship("Member")
    plan = relationship("MembershipPlan", back_populates="memberships")

    def stop_billing(self, status: MembershipStatus) -> None:
        """Leave the ACTIVE state; a non-active membership never has a next payment date."""
        self.status = status.value
        self.next_payment_date = None

    def to_dict(self):
        def _iso(d):
            return d.isoformat() if d else None

        return {
            "id": self.id,
            "memberId": self.member_id,
            "membershipPlanId": self.membership_plan_id,
            "status": self.status,
            "startDate": _iso(self.start_date),
            "endDate": _iso(self.end_date),
            "nextPaymentDate": _iso(self.next_payment_date),
            "lastPaymentDate": _iso(self.last_payment_date),
            "customPriceCents": self.custom_price_cents,
            "contractEndDate": _iso(self.contract_end_date),
            "cancellationRequestDate": _iso(self.cancellation_request_date),
            "cancellationEffectiveDate": _iso(self.cancellation_effective_date),
            "pauseEndDate": _iso(self.pause_end_date),
        }
