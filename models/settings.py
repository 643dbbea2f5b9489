from sqlalchemy import Column, String, Text, DateTime
from sqlalchemy.sql import func
from core.database import Base


class Setting(Base):
    """Key/value business settings (feature flags, processor selection, markers)."""
    __tablename__ = "settings"

    key = Column(String(128), primary_key=True, index=True)
    value = Column(Text, nullable=True)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)
