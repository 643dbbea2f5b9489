from typing import List, Optional

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy.orm import Session

from core.auth import get_client_ip, require_billing_admin
from core.config import logger
from core.database import get_db
from utils.checkout_origin import decode_metadata
from utils.gateway_base import GatewayError, LineItem
from utils.payments import PaymentOrchestrator
from utils.rate_limit import check_checkout_rate_limit

router = APIRouter(prefix="/api/payments", tags=["payments"])


def get_orchestrator(db: Session = Depends(get_db)) -> PaymentOrchestrator:
    """Gateway configuration is resolved once per request."""
    return PaymentOrchestrator.from_settings(db)


class LineItemPayload(BaseModel):
    name: str
    amount_cents: int
    quantity: int = 1


class CheckoutPayload(BaseModel):
    amount_cents: int
    description: str
    success_url: str
    cancel_url: str
    member_id: Optional[str] = None
    metadata: Optional[dict] = None
    line_items: Optional[List[LineItemPayload]] = None


class RefundPayload(BaseModel):
    external_payment_id: str
    amount_cents: Optional[int] = None
    processor: Optional[str] = None


@router.post("/checkout")
async def create_checkout(
    request: Request,
    payload: CheckoutPayload,
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
):
    allowed, msg = check_checkout_rate_limit(payload.member_id or get_client_ip(request))
    if not allowed:
        return JSONResponse({"error": msg}, status_code=429)
    if payload.amount_cents <= 0:
        return JSONResponse({"error": "amount_cents must be positive"}, status_code=400)

    origin = None
    if payload.metadata:
        origin = decode_metadata({str(k): str(v) for k, v in payload.metadata.items() if v is not None})
        if origin is None:
            return JSONResponse({"error": "unrecognized checkout metadata"}, status_code=400)
    line_items = [LineItem(li.name, li.amount_cents, li.quantity) for li in payload.line_items or []]

    try:
        session = await orchestrator.create_checkout_session(
            payload.amount_cents,
            payload.description,
            payload.success_url,
            payload.cancel_url,
            origin=origin,
            line_items=line_items or None,
            member_id=payload.member_id,
        )
    except GatewayError as ex:
        logger.warning(f"[payments.checkout] failed: {ex}")
        if orchestrator.get_active_gateway() is None:
            return JSONResponse({"error": "No payment processor configured"}, status_code=503)
        return JSONResponse({"error": "checkout_failed"}, status_code=502)
    return session.to_dict()


@router.get("/checkout/{session_id}/status")
async def checkout_status(
    session_id: str,
    order_id: Optional[str] = None,
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
):
    try:
        status = await orchestrator.get_checkout_status(session_id, order_id)
    except GatewayError as ex:
        logger.warning(f"[payments.status] {session_id} failed: {ex}")
        if orchestrator.get_active_gateway() is None:
            return JSONResponse({"error": "No payment processor configured"}, status_code=503)
        return JSONResponse({"error": "status_lookup_failed"}, status_code=502)
    return status.to_dict()


@router.post("/refund")
async def refund(
    request: Request,
    payload: RefundPayload,
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
):
    ok, reason = require_billing_admin(request)
    if not ok:
        return JSONResponse({"error": reason or "unauthorized"}, status_code=401)
    if payload.amount_cents is not None and payload.amount_cents <= 0:
        return JSONResponse({"error": "amount_cents must be positive"}, status_code=400)

    result = await orchestrator.refund_payment(payload.external_payment_id, payload.amount_cents, payload.processor)
    if not result.success:
        return JSONResponse({"error": result.message or "refund_failed"}, status_code=400)
    logger.info(f"[payments.refund] refunded {payload.external_payment_id} ({result.refund_id})")
    return {"ok": True, "refundId": result.refund_id}
