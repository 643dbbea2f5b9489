"""
Daily auto-run coordinator.

Safe to trigger any number of times: the business-local day is recorded in the
`billing_last_auto_run` setting and a second call on the same day is a no-op.
Stages run in a fixed order and each one is isolated, so a failing stage only
shows up in `errors` while the later stages still run.
"""
import json
from datetime import datetime
from typing import Callable, Dict, List, Optional

from sqlalchemy.orm import Session

from core.config import logger
from models.member import Member
from models.membership import Membership, MembershipStatus
from models.pos import TrialPass
from utils.audit import log_audit
from utils.billing import run_billing
from utils.dates import utc_now
from utils.dunning import mark_past_due, run_dunning
from utils.notifications import NotifyFn, Notifier
from utils.settings import get_setting, is_disabled, set_setting, today_in_business_timezone

LAST_RUN_KEY = "billing_last_auto_run"
AUTO_GENERATE_KEY = "billing_auto_generate"
DUNNING_ENABLED_KEY = "dunning_enabled"
PROMOTION_NOTIFIED_KEY = "promotion_eligible_last_notified"

EligibilitySource = Callable[[Session], List[Dict[str, str]]]


def process_scheduled_cancellations(db: Session, now: Optional[datetime] = None) -> int:
    """ACTIVE memberships whose cancellation date has arrived become CANCELED."""
    now = now or utc_now()
    due = (
        db.query(Membership)
        .filter(
            Membership.status == MembershipStatus.ACTIVE.value,
            Membership.cancellation_effective_date.isnot(None),
            Membership.cancellation_effective_date <= now,
        )
        .all()
    )
    count = 0
    for ms in due:
        try:
            ms.stop_billing(MembershipStatus.CANCELED)
            if ms.end_date is None:
                ms.end_date = ms.cancellation_effective_date
            db.commit()
            count += 1
        except Exception as ex:
            db.rollback()
            logger.exception(f"[auto_run.cancellations] membership {ms.id} failed: {ex}")
    return count


def expire_trial_passes(db: Session, now: Optional[datetime] = None) -> int:
    now = now or utc_now()
    count = (
        db.query(TrialPass)
        .filter(TrialPass.status == "ACTIVE", TrialPass.expires_at < now)
        .update({TrialPass.status: "EXPIRED"}, synchronize_session=False)
    )
    db.commit()
    if count:
        logger.info(f"[auto_run.trials] expired {count} trial pass(es)")
    return count


def promotion_candidates_from_styles(db: Session) -> List[Dict[str, str]]:
    """
    Members flagged as ready for their next rank.

    The attendance module owns the rank rules and records its verdict in each
    member's styles_notes JSON: [{"name", "rank", "nextRank", "eligible"}, ...].
    """
    out = []
    members = (
        db.query(Member)
        .filter(Member.status == "ACTIVE", Member.styles_notes.isnot(None))
        .all()
    )
    for m in members:
        try:
            styles = json.loads(m.styles_notes or "[]")
        except ValueError:
            continue
        if not isinstance(styles, list):
            continue
        for s in styles:
            if not isinstance(s, dict) or s.get("active") is False:
                continue
            if s.get("eligible") and s.get("nextRank"):
                out.append({
                    "memberName": m.full_name,
                    "styleName": str(s.get("name") or ""),
                    "currentRank": str(s.get("rank") or ""),
                    "nextRank": str(s["nextRank"]),
                })
    return out


def _eligibility_key(e: Dict[str, str]) -> str:
    return f"{e.get('memberName', '')}|{e.get('styleName', '')}|{e.get('nextRank', '')}"


def notify_promotion_eligibility(
    db: Session,
    notify: NotifyFn,
    source: EligibilitySource = promotion_candidates_from_styles,
) -> int:
    """Alert staff about newly eligible members only. Returns how many were new."""
    eligible = source(db)
    if not eligible:
        return 0
    previous = set()
    raw = get_setting(db, PROMOTION_NOTIFIED_KEY)
    if raw:
        try:
            keys = json.loads(raw)
            if isinstance(keys, list):
                previous.update(str(k) for k in keys)
        except ValueError:
            logger.warning("[auto_run.promotions] unreadable notified list; resetting")
    fresh = [e for e in eligible if _eligibility_key(e) not in previous]
    if fresh:
        notify("promotion_eligibility", {"alerts": fresh, "count": len(fresh)})
    set_setting(db, PROMOTION_NOTIFIED_KEY, json.dumps([_eligibility_key(e) for e in eligible]))
    return len(fresh)


def _empty_summary() -> Dict[str, object]:
    return {
        "skipped": False,
        "invoicesCreated": 0,
        "invoicesSkipped": 0,
        "pastDueMarked": 0,
        "dunningProcessed": 0,
        "membershipsSuspended": 0,
        "cancellationsProcessed": 0,
        "trialsExpired": 0,
        "promotionAlerts": 0,
        "errors": [],
    }


async def run_auto_billing(
    db: Session,
    orchestrator=None,
    notify: Optional[NotifyFn] = None,
    now: Optional[datetime] = None,
    eligibility_source: EligibilitySource = promotion_candidates_from_styles,
) -> Dict[str, object]:
    now = now or utc_now()
    today = today_in_business_timezone(db, now)

    if get_setting(db, LAST_RUN_KEY) == today:
        return {"skipped": True, "message": "Already run today"}
    if is_disabled(db, AUTO_GENERATE_KEY):
        return {"skipped": True, "message": "Auto-generate disabled"}

    if orchestrator is None:
        from utils.payments import PaymentOrchestrator
        orchestrator = PaymentOrchestrator.from_settings(db)
    notify = notify or Notifier(db)
    summary = _empty_summary()
    errors: List[str] = summary["errors"]  # type: ignore[assignment]

    logger.info(f"[auto_run] starting run for {today}")

    try:
        billed = await run_billing(db, orchestrator, notify=notify, now=now)
        summary["invoicesCreated"] = billed.created
        summary["invoicesSkipped"] = billed.skipped
    except Exception as ex:
        db.rollback()
        errors.append("billing")
        logger.exception(f"[auto_run] billing stage failed: {ex}")

    try:
        summary["pastDueMarked"] = mark_past_due(db, notify=notify, now=now)
    except Exception as ex:
        db.rollback()
        errors.append("past_due")
        logger.exception(f"[auto_run] past-due stage failed: {ex}")

    if not is_disabled(db, DUNNING_ENABLED_KEY):
        try:
            dunned = await run_dunning(db, orchestrator, notify=notify, now=now)
            summary["dunningProcessed"] = dunned.processed
            summary["membershipsSuspended"] = dunned.suspended
        except Exception as ex:
            db.rollback()
            errors.append("dunning")
            logger.exception(f"[auto_run] dunning stage failed: {ex}")

    try:
        summary["cancellationsProcessed"] = process_scheduled_cancellations(db, now)
    except Exception as ex:
        db.rollback()
        errors.append("cancellations")
        logger.exception(f"[auto_run] cancellation stage failed: {ex}")

    try:
        summary["trialsExpired"] = expire_trial_passes(db, now)
    except Exception as ex:
        db.rollback()
        errors.append("trial_passes")
        logger.exception(f"[auto_run] trial expiry stage failed: {ex}")

    try:
        summary["promotionAlerts"] = notify_promotion_eligibility(db, notify, eligibility_source)
    except Exception as ex:
        db.rollback()
        errors.append("promotions")
        logger.exception(f"[auto_run] promotion eligibility stage failed: {ex}")

    set_setting(db, LAST_RUN_KEY, today)
    log_audit(
        db,
        "Billing",
        today,
        "BILLING_RUN",
        f"Auto billing run: {summary['invoicesCreated']} invoices created, {summary['pastDueMarked']} past-due, "
        f"{summary['dunningProcessed']} dunning, {summary['membershipsSuspended']} suspended, "
        f"{summary['cancellationsProcessed']} cancellations",
    )
    logger.info(f"[auto_run] finished {today}: {summary}")
    return summary
