from datetime import datetime
from sqlalchemy import Column, Integer, String, Text, DateTime
from core.database import Base


class AuditLog(Base):
    """Append-only record of billing actions (runs, cancellations, refunds)."""
    __tablename__ = "audit_log"

    id = Column(Integer, primary_key=True, autoincrement=True)
    entity_type = Column(String(50), nullable=False)
    entity_id = Column(String(64), nullable=False, index=True)
    action = Column(String(50), nullable=False)
    summary = Column(Text, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
