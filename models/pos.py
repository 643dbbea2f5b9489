"""
Point-of-sale models
- pos_transactions / pos_line_items: completed sales (one per external payment)
- pos_items / pos_item_variants: catalog stock counters
- gift_certificates: issued and redeemed gift balances
- trial_passes: time-boxed trial access
"""
from datetime import datetime
import uuid
from sqlalchemy import Column, String, Text, DateTime, Integer, Boolean, ForeignKey
from sqlalchemy.orm import relationship
from core.database import Base


def _uuid() -> str:
    return str(uuid.uuid4())


class POSTransaction(Base):
    __tablename__ = "pos_transactions"

    id = Column(String(64), primary_key=True, default=_uuid)
    transaction_number = Column(String(64), nullable=False, index=True)
    member_id = Column(String(64), ForeignKey("members.id"), nullable=True, index=True)
    member_name = Column(String(255), nullable=True)

    subtotal_cents = Column(Integer, nullable=False, default=0)
    tax_cents = Column(Integer, nullable=False, default=0)
    discount_cents = Column(Integer, nullable=False, default=0)
    total_cents = Column(Integer, nullable=False, default=0)

    payment_method = Column(Text, nullable=True)  # STRIPE or a JSON split list
    status = Column(String(20), nullable=False, default="COMPLETED")  # PENDING, COMPLETED, REFUNDED
    # External payment id; the idempotency key for webhook reconciliation
    payment_intent_id = Column(String(255), nullable=True, unique=True, index=True)
    payment_processor = Column(String(20), nullable=True)
    notes = Column(Text, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    line_items = relationship("POSLineItem", back_populates="transaction", cascade="all, delete-orphan")

    def to_dict(self):
        return {
            "id": self.id,
            "transactionNumber": self.transaction_number,
            "memberId": self.member_id,
            "memberName": self.member_name,
            "subtotalCents": self.subtotal_cents,
            "taxCents": self.tax_cents,
            "discountCents": self.discount_cents,
            "totalCents": self.total_cents,
            "paymentMethod": self.payment_method,
            "status": self.status,
            "paymentIntentId": self.payment_intent_id,
            "paymentProcessor": self.payment_processor,
            "lineItems": [li.to_dict() for li in self.line_items],
        }


class POSLineItem(Base):
    __tablename__ = "pos_line_items"

    id = Column(String(64), primary_key=True, default=_uuid)
    transaction_id = Column(String(64), ForeignKey("pos_transactions.id"), nullable=False, index=True)
    item_id = Column(String(64), nullable=True)
    item_name = Column(String(255), nullable=False)
    item_sku = Column(String(100), nullable=True)
    type = Column(String(20), nullable=False, default="product")  # product, membership, credit, gift
    membership_plan_id = Column(String(64), nullable=True)
    variant_info = Column(Text, nullable=True)  # {"size": ..., "color": ...}
    quantity = Column(Integer, nullable=False, default=1)
    unit_price_cents = Column(Integer, nullable=False, default=0)
    subtotal_cents = Column(Integer, nullable=False, default=0)

    transaction = relationship("POSTransaction", back_populates="line_items")

    def to_dict(self):
        return {
            "id": self.id,
            "itemId": self.item_id,
            "itemName": self.item_name,
            "itemSku": self.item_sku,
            "type": self.type,
            "membershipPlanId": self.membership_plan_id,
            "variantInfo": self.variant_info,
            "quantity": self.quantity,
            "unitPriceCents": self.unit_price_cents,
            "subtotalCents": self.subtotal_cents,
        }


class POSItem(Base):
    __tablename__ = "pos_items"

    id = Column(String(64), primary_key=True, default=_uuid)
    name = Column(String(255), nullable=False)
    sku = Column(String(100), nullable=True)
    price_cents = Column(Integer, nullable=False, default=0)
    quantity = Column(Integer, nullable=False, default=0)
    portal_purchasable = Column(Boolean, nullable=False, default=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class POSItemVariant(Base):
    __tablename__ = "pos_item_variants"

    id = Column(String(64), primary_key=True, default=_uuid)
    item_id = Column(String(64), ForeignKey("pos_items.id"), nullable=False, index=True)
    size = Column(String(50), nullable=True)
    color = Column(String(50), nullable=True)
    quantity = Column(Integer, nullable=False, default=0)


class GiftCertificate(Base):
    __tablename__ = "gift_certificates"

    id = Column(String(64), primary_key=True, default=_uuid)
    code = Column(String(32), nullable=False, unique=True, index=True)
    amount_cents = Column(Integer, nullable=False, default=0)
    balance_cents = Column(Integer, nullable=False, default=0)
    purchased_by = Column(String(255), nullable=True)
    recipient_name = Column(String(255), nullable=True)
    status = Column(String(20), nullable=False, default="ACTIVE")  # ACTIVE, REDEEMED
    created_at = Column(DateTime, default=datetime.utcnow)


class TrialPass(Base):
    __tablename__ = "trial_passes"

    id = Column(String(64), primary_key=True, default=_uuid)
    member_id = Column(String(64), ForeignKey("members.id"), nullable=False, index=True)
    status = Column(String(20), nullable=False, default="ACTIVE")  # ACTIVE, EXPIRED, CONVERTED
    expires_at = Column(DateTime, nullable=False)
    classes_used = Column(Integer, nullable=False, default=0)
    max_classes = Column(Integer, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
