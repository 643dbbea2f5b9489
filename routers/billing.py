from fastapi import APIRouter, Request, Depends
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from core.auth import get_client_ip, require_billing_admin
from core.config import logger
from core.database import get_db
from routers.payments import get_orchestrator
from utils.auto_run import run_auto_billing
from utils.billing import run_billing
from utils.dunning import mark_past_due, run_dunning
from utils.payments import PaymentOrchestrator
from utils.rate_limit import check_billing_trigger_rate_limit

router = APIRouter(prefix="/api/billing", tags=["billing"])


def _guard(request: Request):
    allowed, msg = check_billing_trigger_rate_limit(get_client_ip(request))
    if not allowed:
        return JSONResponse({"error": msg}, status_code=429)
    ok, reason = require_billing_admin(request)
    if not ok:
        if reason == "billing secret not configured":
            return JSONResponse({"error": "billing_not_configured"}, status_code=503)
        return JSONResponse({"error": "unauthorized"}, status_code=401)
    return None


@router.post("/auto-run")
async def auto_run(
    request: Request,
    db: Session = Depends(get_db),
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
):
    """Daily entry point for the cron job and the dashboard. Idempotent per business day."""
    denied = _guard(request)
    if denied:
        return denied
    try:
        return await run_auto_billing(db, orchestrator)
    except Exception as ex:
        # Stage failures are reported in the summary; reaching here means setup failed
        db.rollback()
        logger.exception(f"[billing.auto_run] failed: {ex}")
        return JSONResponse({"error": "auto_run_failed"}, status_code=500)


@router.post("/run")
async def run(
    request: Request,
    db: Session = Depends(get_db),
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
):
    denied = _guard(request)
    if denied:
        return denied
    try:
        result = await run_billing(db, orchestrator)
    except Exception as ex:
        db.rollback()
        logger.exception(f"[billing.run] failed: {ex}")
        return JSONResponse({"error": "billing_run_failed"}, status_code=500)
    return result.to_dict()


@router.post("/past-due")
async def past_due(request: Request, db: Session = Depends(get_db)):
    denied = _guard(request)
    if denied:
        return denied
    try:
        marked = mark_past_due(db)
    except Exception as ex:
        db.rollback()
        logger.exception(f"[dunning.past_due] failed: {ex}")
        return JSONResponse({"error": "past_due_failed"}, status_code=500)
    return {"marked": marked}


@router.post("/dunning")
async def dunning(
    request: Request,
    db: Session = Depends(get_db),
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
):
    denied = _guard(request)
    if denied:
        return denied
    try:
        result = await run_dunning(db, orchestrator)
    except Exception as ex:
        db.rollback()
        logger.exception(f"[dunning] run failed: {ex}")
        return JSONResponse({"error": "dunning_failed"}, status_code=500)
    return result.to_dict()
