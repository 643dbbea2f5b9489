"""
Raw gateway webhook events, kept for audit and replay diagnosis.
"""
from sqlalchemy import Column, Integer, String, DateTime, JSON
from sqlalchemy.sql import func
from core.database import Base


class PaymentEvent(Base):
    __tablename__ = "payment_events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    provider = Column(String(20), nullable=False)  # stripe, paypal, square
    event_type = Column(String(100), nullable=False)
    event_id = Column(String(255), nullable=True, index=True)
    external_payment_id = Column(String(255), nullable=True, index=True)
    payload = Column(JSON, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
