"""Business settings stored in the settings table."""
from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from core.config import BUSINESS_TIMEZONE
from models.settings import Setting
from utils.dates import today_in_timezone


def get_setting(db: Session, key: str) -> Optional[str]:
    row = db.query(Setting).filter(Setting.key == key).first()
    if row is None or row.value is None:
        return None
    return row.value


def get_int_setting(db: Session, key: str, default: int) -> int:
    raw = get_setting(db, key)
    try:
        value = int(str(raw).strip()) if raw is not None else default
    except (TypeError, ValueError):
        return default
    # "0" and negatives fall back like an unset row
    return value if value > 0 else default


def is_disabled(db: Session, key: str) -> bool:
    """Flags default to enabled; only an explicit "false" turns them off."""
    return (get_setting(db, key) or "").strip().lower() == "false"


def set_setting(db: Session, key: str, value: str) -> None:
    row = db.query(Setting).filter(Setting.key == key).first()
    if row:
        row.value = value
    else:
        db.add(Setting(key=key, value=value))
    db.commit()


def get_timezone_name(db: Session) -> str:
    return (get_setting(db, "timezone") or "").strip() or BUSINESS_TIMEZONE


def today_in_business_timezone(db: Session, now: Optional[datetime] = None) -> str:
    return today_in_timezone(get_timezone_name(db), now)
