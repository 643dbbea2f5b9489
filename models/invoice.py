"""
Invoice model
One billed period of a membership. Created by the billing run, moved through
the dunning ladder, never deleted.
"""
from datetime import datetime
import uuid
import enum
from sqlalchemy import Column, String, Text, DateTime, Integer, ForeignKey, UniqueConstraint
from sqlalchemy.orm import relationship
from core.database import Base


class InvoiceStatus(str, enum.Enum):
    PENDING = "PENDING"
    PAID = "PAID"
    PAST_DUE = "PAST_DUE"
    FAILED = "FAILED"
    REFUNDED = "REFUNDED"


class Invoice(Base):
    __tablename__ = "invoices"
    __table_args__ = (
        # One invoice per membership period; a second insert means "already billed"
        UniqueConstraint("membership_id", "billing_period_start", name="uq_invoice_membership_period"),
    )

    id = Column(String(64), primary_key=True, default=lambda: str(uuid.uuid4()))
    invoice_number = Column(String(32), nullable=False, unique=True, index=True)  # INV-YYYYMMDD-XXXX
    member_id = Column(String(64), ForeignKey("members.id"), nullable=False, index=True)
    membership_id = Column(String(64), ForeignKey("memberships.id"), nullable=True, index=True)

    amount_cents = Column(Integer, nullable=False, default=0)
    status = Column(String(20), nullable=False, default=InvoiceStatus.PENDING.value, index=True)
    due_date = Column(DateTime, nullable=False)
    billing_period_start = Column(DateTime, nullable=True)
    billing_period_end = Column(DateTime, nullable=True)
    notes = Column(Text, nullable=True)

    # Dunning bookkeeping
    retry_count = Column(Integer, nullable=False, default=0)
    last_retry_date = Column(DateTime, nullable=True)
    next_retry_date = Column(DateTime, nullable=True, index=True)

    # Payment result
    paid_at = Column(DateTime, nullable=True)
    payment_method = Column(String(50), nullable=True)  # STRIPE, PAYPAL, SQUARE, CASH, ...
    external_payment_id = Column(String(255), nullable=True, index=True)
    payment_processor = Column(String(20), nullable=True)  # stripe, paypal, square

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    member = relationship("Member")
    membership = relationship("Membership")

    def mark_paid(self, external_payment_id: str, processor: str, when: datetime) -> None:
        self.status = InvoiceStatus.PAID.value
        self.paid_at = when
        self.payment_method = processor.upper()
        self.external_payment_id = external_payment_id
        self.payment_processor = processor
        self.next_retry_date = None

    def to_dict(self):
        def _iso(d):
            return d.isoformat() if d else None

        return {
            "id": self.id,
            "invoiceNumber": self.invoice_number,
            "memberId": self.member_id,
            "membershipId": self.membership_id,
            "amountCents": self.amount_cents,
            "status": self.status,
            "dueDate": _iso(self.due_date),
            "billingPeriodStart": _iso(self.billing_period_start),
            "billingPeriodEnd": _iso(self.billing_period_end),
            "notes": self.notes,
            "retryCount": self.retry_count,
            "lastRetryDate": _iso(self.last_retry_date),
            "nextRetryDate": _iso(self.next_retry_date),
            "paidAt": _iso(self.paid_at),
            "paymentMethod": self.payment_method,
            "externalPaymentId": self.external_payment_id,
            "paymentProcessor": self.payment_processor,
        }
