from sqlalchemy.orm import Session

from core.config import logger
from models.audit import AuditLog


def log_audit(db: Session, entity_type: str, entity_id: str, action: str, summary: str) -> None:
    """Best-effort audit row; a failure here never breaks the calling operation."""
    try:
        db.add(AuditLog(entity_type=entity_type, entity_id=entity_id, action=action, summary=summary))
        db.commit()
    except Exception as ex:
        db.rollback()
        logger.warning(f"[audit] could not record {action} for {entity_type}:{entity_id}: {ex}")
