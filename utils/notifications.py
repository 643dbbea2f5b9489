"""
Member-facing billing notifications.

Delivery is best-effort: each message is rendered and sent from a daemon thread
so a slow or failing SMTP server never holds up a billing batch.
"""
import threading
from typing import Callable, Optional

from sqlalchemy.orm import Session

from core.config import GYM_NOTIFY_EMAIL, PUBLIC_BASE_URL, logger
from utils.dates import format_cents, format_date
from utils.emailing import render_email, send_email_smtp
from utils.settings import is_disabled

NotifyFn = Callable[[str, dict], None]

_SUBJECTS = {
    "invoice_created": "New invoice {invoiceNumber}",
    "past_due": "Payment past due: invoice {invoiceNumber}",
    "dunning_friendly": "Friendly reminder: invoice {invoiceNumber} is unpaid",
    "dunning_urgent": "Urgent: invoice {invoiceNumber} is overdue",
    "dunning_final": "Final notice before suspension",
    "dunning_suspension": "Your membership has been suspended",
    "promotion_eligibility": "Members eligible for promotion",
}

_INTROS = {
    "invoice_created": "Hi {memberName}, a new invoice for {amount} has been issued. It is due on {dueDate}.",
    "past_due": "Hi {memberName}, invoice {invoiceNumber} for {amount} is past due. Please update your payment method.",
    "dunning_friendly": "Hi {memberName}, we could not collect {amount} for invoice {invoiceNumber}. We will try again on {nextRetryDate}.",
    "dunning_urgent": "Hi {memberName}, invoice {invoiceNumber} for {amount} is still unpaid after {retryCount} attempts. Next attempt: {nextRetryDate}.",
    "dunning_final": "Hi {memberName}, this is the final notice for invoice {invoiceNumber} ({amount}). The next failed attempt will suspend your membership.",
    "dunning_suspension": "Hi {memberName}, your membership has been paused because invoice {invoiceNumber} ({amount}) could not be collected.",
    "promotion_eligibility": "{count} member(s) are ready for their next rank.",
}


class _SafeDict(dict):
    def __missing__(self, key):
        return ""


def _recipients(event_kind: str, variables: dict) -> list[str]:
    if event_kind == "promotion_eligibility":
        return [GYM_NOTIFY_EMAIL] if GYM_NOTIFY_EMAIL else []
    out = []
    for key in ("email", "parentEmail"):
        addr = (variables.get(key) or "").strip()
        if addr and addr not in out:
            out.append(addr)
    return out


def _rows(event_kind: str, variables: dict) -> list[tuple[str, str]]:
    if event_kind == "promotion_eligibility":
        return [(a.get("memberName", ""), f"{a.get('styleName', '')}: {a.get('nextRank', '')}") for a in variables.get("alerts") or []]
    rows = []
    for label, key in (("Invoice", "invoiceNumber"), ("Amount", "amount"), ("Due", "dueDate")):
        if variables.get(key):
            rows.append((label, str(variables[key])))
    return rows


def invoice_variables(invoice, member, **extra) -> dict:
    """Template variables shared by every invoice-related notification."""
    out = {
        "memberId": member.id if member else invoice.member_id,
        "memberName": member.full_name if member else "",
        "email": member.email if member else None,
        "parentEmail": member.parent_email if member else None,
        "invoiceId": invoice.id,
        "invoiceNumber": invoice.invoice_number,
        "amountCents": invoice.amount_cents,
        "amount": format_cents(invoice.amount_cents or 0),
        "dueDate": format_date(invoice.due_date),
        "retryCount": invoice.retry_count or 0,
        "nextRetryDate": format_date(invoice.next_retry_date),
    }
    out.update(extra)
    return out


def deliver_notification(event_kind: str, variables: dict) -> bool:
    """Render and send one notification synchronously. Returns False when nothing was sent."""
    to = _recipients(event_kind, variables)
    if not to:
        logger.info(f"[notify] no recipient for {event_kind}; skipping")
        return False
    fmt = _SafeDict(variables)
    subject = _SUBJECTS.get(event_kind, "Billing update").format_map(fmt)
    intro = _INTROS.get(event_kind, "").format_map(fmt)
    html = render_email(
        "email_basic.html",
        title=subject,
        intro=intro,
        rows=_rows(event_kind, variables),
        button_label="Open member portal",
        button_url=f"{PUBLIC_BASE_URL}/portal/billing" if PUBLIC_BASE_URL else "",
    )
    return send_email_smtp(to, subject, html, intro)


def _deliver_quietly(event_kind: str, variables: dict) -> None:
    try:
        deliver_notification(event_kind, variables)
    except Exception as ex:
        logger.warning(f"[notify] {event_kind} delivery failed: {ex}")


def send_notification(event_kind: str, variables: dict) -> None:
    """Fire-and-forget: returns immediately, delivery happens on a daemon thread."""
    thread = threading.Thread(
        target=_deliver_quietly,
        args=(event_kind, dict(variables or {})),
        daemon=True,
    )
    thread.start()


class Notifier:
    """Callable notifier honouring the per-kind `notify_<kind>` settings flags."""

    def __init__(self, db: Optional[Session] = None, send: NotifyFn = send_notification):
        self.db = db
        self._send = send

    def __call__(self, event_kind: str, variables: dict) -> None:
        try:
            if self.db is not None and is_disabled(self.db, f"notify_{event_kind}"):
                return
            self._send(event_kind, variables)
        except Exception as ex:
            logger.warning(f"[notify] could not queue {event_kind}: {ex}")
