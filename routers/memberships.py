from typing import Optional

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy.orm import Session

from core.auth import require_billing_admin
from core.config import logger
from core.database import get_db
from models.invoice import Invoice, InvoiceStatus
from models.membership import Membership, MembershipStatus
from utils.audit import log_audit
from utils.billing import generate_invoice_number
from utils.contracts import plan_cancellation
from utils.dates import format_cents, utc_now

router = APIRouter(prefix="/api/memberships", tags=["memberships"])


class CancelPayload(BaseModel):
    reason: Optional[str] = None
    waive_fee: Optional[bool] = False


@router.get("/{membership_id}/cancellation-quote")
async def cancellation_quote(membership_id: str, db: Session = Depends(get_db)):
    ms = db.query(Membership).filter(Membership.id == membership_id).first()
    if not ms:
        return JSONResponse({"error": "Membership not found"}, status_code=404)
    quote = plan_cancellation(ms, ms.plan)
    return quote.to_dict()


@router.post("/{membership_id}/cancel")
async def cancel_membership(
    membership_id: str,
    request: Request,
    payload: Optional[CancelPayload] = None,
    db: Session = Depends(get_db),
):
    ok, reason = require_billing_admin(request)
    if not ok:
        return JSONResponse({"error": reason or "unauthorized"}, status_code=401)
    payload = payload or CancelPayload()

    ms = db.query(Membership).filter(Membership.id == membership_id).first()
    if not ms:
        return JSONResponse({"error": "Membership not found"}, status_code=404)
    if ms.status != MembershipStatus.ACTIVE.value:
        return JSONResponse({"error": f"Membership is {ms.status}"}, status_code=400)
    if ms.cancellation_effective_date is not None:
        return JSONResponse({"error": "Cancellation already scheduled"}, status_code=409)

    now = utc_now()
    quote = plan_cancellation(ms, ms.plan, now)
    fee_cents = 0 if payload.waive_fee else quote.early_termination_fee_cents

    try:
        ms.cancellation_request_date = now
        ms.cancellation_effective_date = quote.effective_date
        ms.cancellation_reason = (payload.reason or "").strip()[:255] or None
        if quote.effective_date <= now:
            ms.stop_billing(MembershipStatus.CANCELED)
            ms.end_date = now

        fee_invoice = None
        if fee_cents > 0:
            fee_invoice = Invoice(
                invoice_number=generate_invoice_number(now),
                member_id=ms.member_id,
                membership_id=ms.id,
                amount_cents=fee_cents,
                status=InvoiceStatus.PENDING.value,
                due_date=now,
                notes="Early termination fee",
            )
            db.add(fee_invoice)
        db.commit()
    except Exception as ex:
        db.rollback()
        logger.exception(f"[memberships.cancel] {membership_id} failed: {ex}")
        return JSONResponse({"error": "cancel_failed"}, status_code=500)

    summary = f"Cancellation requested, effective {quote.effective_date.date().isoformat()}"
    if fee_cents > 0:
        summary += f", early termination fee {format_cents(fee_cents)}"
    log_audit(db, "Membership", ms.id, "CANCELLATION_REQUESTED", summary)
    logger.info(f"[memberships.cancel] {ms.id}: {summary}")

    out = quote.to_dict()
    out.update({
        "membership": ms.to_dict(),
        "earlyTerminationFeeCents": fee_cents,
        "feeInvoiceId": fee_invoice.id if fee_invoice is not None else None,
    })
    return out
