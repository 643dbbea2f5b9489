"""
Member models
- members: people on the roster, with gateway customer refs and running balance
- member_relationships: family links (stored one-way, read both ways)
"""
import uuid
from sqlalchemy import Column, String, Text, DateTime, Integer, ForeignKey, UniqueConstraint
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from core.database import Base


def _uuid() -> str:
    return str(uuid.uuid4())


class Member(Base):
    __tablename__ = "members"

    id = Column(String(64), primary_key=True, default=_uuid)

    # Basic info
    first_name = Column(String(255), nullable=False)
    last_name = Column(String(255), nullable=False, default="")
    email = Column(String(255), nullable=True, index=True)
    parent_email = Column(String(255), nullable=True)  # guardian contact for minors
    status = Column(String(50), nullable=False, default="ACTIVE")

    # Running balance in cents; negative means the member owes the gym
    account_credit_cents = Column(Integer, nullable=False, default=0)

    # Gateway customer identifiers (one per supported gateway)
    stripe_customer_id = Column(String(255), nullable=True, index=True)
    paypal_payer_id = Column(String(255), nullable=True)
    square_customer_id = Column(String(255), nullable=True)
    default_payment_method_id = Column(String(255), nullable=True)

    # Rank tracking JSON owned by the attendance/promotion module
    styles_notes = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    relationships_from = relationship(
        "MemberRelationship",
        foreign_keys="MemberRelationship.from_member_id",
        back_populates="from_member",
        cascade="all, delete-orphan",
    )
    relationships_to = relationship(
        "MemberRelationship",
        foreign_keys="MemberRelationship.to_member_id",
        back_populates="to_member",
        cascade="all, delete-orphan",
    )

    @property
    def full_name(self) -> str:
        return f"{self.first_name or ''} {self.last_name or ''}".strip()

    def related_member_ids(self) -> set[str]:
        """Distinct ids linked to this member in either direction."""
        ids = {r.to_member_id for r in self.relationships_from}
        ids.update(r.from_member_id for r in self.relationships_to)
        ids.discard(self.id)
        return ids

    def to_dict(self):
        """Convert to dict for API responses"""
        return {
            "id": self.id,
            "firstName": self.first_name,
            "lastName": self.last_name,
            "email": self.email,
            "status": self.status,
            "accountCreditCents": self.account_credit_cents,
            "stripeCustomerId": self.stripe_customer_id,
            "paypalPayerId": self.paypal_payer_id,
            "squareCustomerId": self.square_customer_id,
            "defaultPaymentMethodId": self.default_payment_method_id,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
        }


class MemberRelationship(Base):
    __tablename__ = "member_relationships"
    __table_args__ = (UniqueConstraint("from_member_id", "to_member_id", name="uq_member_relationship_pair"),)

    id = Column(String(64), primary_key=True, default=_uuid)
    from_member_id = Column(String(64), ForeignKey("members.id"), nullable=False, index=True)
    to_member_id = Column(String(64), ForeignKey("members.id"), nullable=False, index=True)
    relationship_type = Column(String(50), nullable=True)  # parent, sibling, spouse, ...
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    from_member = relationship("Member", foreign_keys=[from_member_id], back_populates="relationships_from")
    to_member = relationship("Member", foreign_keys=[to_member_id], back_populates="relationships_to")


def adjust_account_credit(db, member_id: str, delta_cents: int) -> None:
    """Atomic in-database increment (negative delta debits); never read-modify-write."""
    db.query(Member).filter(Member.id == member_id).update(
        {Member.account_credit_cents: Member.account_credit_cents + int(delta_cents)},
        synchronize_session=False,
    )
