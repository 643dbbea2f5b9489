"""
Inbound gateway webhooks.

Every delivery is signature-verified, stored as a PaymentEvent row, then handed
to the orchestrator. Reconciliation is idempotent on the external payment id,
so replays and duplicate deliveries are acknowledged with 200 and change nothing.
"""
import json
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Optional

import stripe
from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from core.config import (
    PUBLIC_BASE_URL,
    SQUARE_WEBHOOK_SIGNATURE_KEY,
    SQUARE_WEBHOOK_URL,
    STRIPE_WEBHOOK_SECRET,
    logger,
)
from core.database import get_db
from models.member import Member
from models.payment_event import PaymentEvent
from routers.payments import get_orchestrator
from utils.checkout_origin import expand_metadata
from utils.gateway_base import GatewayError
from utils.payments import PaymentOrchestrator
from utils.rate_limit import check_webhook_rate_limit
from utils.settings import get_setting
from utils.square import verify_signature as verify_square_signature
from utils.stripe_gateway import construct_webhook_event

router = APIRouter(prefix="/api/webhooks", tags=["webhooks"])


def _record_event(
    db: Session,
    provider: str,
    event_type: str,
    event_id: Optional[str],
    external_payment_id: Optional[str],
    payload: Dict[str, Any],
) -> None:
    try:
        db.add(
            PaymentEvent(
                provider=provider,
                event_type=event_type or "unknown",
                event_id=event_id,
                external_payment_id=external_payment_id,
                payload=payload,
            )
        )
        db.commit()
    except Exception as ex:
        db.rollback()
        logger.warning(f"[webhooks.{provider}] could not record event {event_id}: {ex}")


def _to_cents(value: Any) -> Optional[int]:
    """PayPal sends decimal strings ("49.00")."""
    if value in (None, ""):
        return None
    try:
        return int((Decimal(str(value)) * 100).quantize(Decimal("1")))
    except (InvalidOperation, ValueError):
        return None


def _str_metadata(raw: Any) -> Dict[str, str]:
    if not isinstance(raw, dict):
        return {}
    return {str(k): str(v) for k, v in raw.items() if v is not None}


def _throttled(processor: str) -> Optional[JSONResponse]:
    allowed, msg = check_webhook_rate_limit(processor)
    if not allowed:
        return JSONResponse({"error": msg}, status_code=429)
    return None


# ---------------------------------------------------------------------------
# Stripe
# ---------------------------------------------------------------------------


async def _save_setup_card(orchestrator: PaymentOrchestrator, session_obj: Dict[str, Any]) -> bool:
    """mode=setup checkout: store the saved card as the member's default method."""
    db = orchestrator.db
    metadata = _str_metadata(session_obj.get("metadata"))
    customer_id = session_obj.get("customer")
    member = None
    if metadata.get("memberId"):
        member = db.query(Member).filter(Member.id == metadata["memberId"]).first()
    if member is None and customer_id:
        member = db.query(Member).filter(Member.stripe_customer_id == customer_id).first()
    if member is None:
        logger.warning(f"[webhooks.stripe] setup session {session_obj.get('id')} has no matching member")
        return False

    gateway = orchestrator.gateway_for("stripe")
    setup_intent = session_obj.get("setup_intent")
    if gateway is None or not setup_intent:
        return False
    method_id = await gateway.setup_payment_method(setup_intent)
    if not method_id:
        return False
    member.default_payment_method_id = method_id
    if customer_id and not member.stripe_customer_id:
        member.stripe_customer_id = customer_id
    db.commit()
    logger.info(f"[webhooks.stripe] saved default card for member {member.id}")
    return True


async def _dispatch_stripe(orchestrator: PaymentOrchestrator, event: Dict[str, Any]) -> str:
    evt_type = event.get("type") or ""
    obj = ((event.get("data") or {}).get("object")) or {}
    metadata = _str_metadata(obj.get("metadata"))

    if evt_type == "checkout.session.completed":
        if obj.get("mode") == "setup":
            return "card_saved" if await _save_setup_card(orchestrator, obj) else "ignored"
        if obj.get("payment_status") not in ("paid", "no_payment_required"):
            return "ignored"
        external_id = obj.get("payment_intent") or obj.get("id")
        tax = (obj.get("total_details") or {}).get("amount_tax")
        return orchestrator.handle_checkout_completed(
            external_id, "stripe", metadata, amount_total_cents=obj.get("amount_total"), tax_cents=tax
        )
    if evt_type == "payment_intent.succeeded":
        changed = orchestrator.handle_payment_succeeded(obj.get("id"), "stripe", metadata.get("invoiceId"))
        return "invoice_paid" if changed else "ignored"
    if evt_type == "payment_intent.payment_failed":
        return "past_due" if orchestrator.handle_payment_failed(metadata.get("invoiceId")) else "ignored"
    if evt_type == "charge.refunded":
        intent_id = obj.get("payment_intent")
        if not intent_id:
            return "ignored"
        full = bool(obj.get("refunded")) or orchestrator.is_full_refund(intent_id, obj.get("amount_refunded"))
        return "refunded" if orchestrator.handle_refund_completed(intent_id, full_refund=full) else "ignored"
    return "ignored"


@router.post("/stripe")
async def stripe_webhook(
    request: Request,
    db: Session = Depends(get_db),
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
):
    limited = _throttled("stripe")
    if limited:
        return limited
    secret = (get_setting(db, "stripe_webhook_secret") or STRIPE_WEBHOOK_SECRET or "").strip()
    if not secret:
        return JSONResponse({"error": "webhook_not_configured"}, status_code=503)

    raw_body = await request.body()
    signature = request.headers.get("stripe-signature") or ""
    try:
        construct_webhook_event(raw_body, signature, secret)
        event = json.loads(raw_body)
    except (ValueError, stripe.SignatureVerificationError) as ex:
        logger.warning(f"[webhooks.stripe] rejected delivery: {ex}")
        return JSONResponse({"error": "invalid signature"}, status_code=400)

    obj = ((event.get("data") or {}).get("object")) or {}
    _record_event(db, "stripe", event.get("type"), event.get("id"), obj.get("payment_intent") or obj.get("id"), event)
    try:
        outcome = await _dispatch_stripe(orchestrator, event)
    except GatewayError as ex:
        logger.warning(f"[webhooks.stripe] {event.get('type')} needs retry: {ex}")
        return JSONResponse({"error": "gateway_unavailable"}, status_code=502)
    except Exception as ex:
        logger.exception(f"[webhooks.stripe] {event.get('type')} failed: {ex}")
        return JSONResponse({"error": "processing_failed"}, status_code=500)
    logger.info(f"[webhooks.stripe] {event.get('type')} {event.get('id')}: {outcome}")
    return {"received": True, "outcome": outcome}


# ---------------------------------------------------------------------------
# PayPal
# ---------------------------------------------------------------------------


def _capture_id_from_links(resource: Dict[str, Any]) -> Optional[str]:
    for link in resource.get("links") or []:
        if link.get("rel") == "up" and "/captures/" in (link.get("href") or ""):
            return link["href"].rstrip("/").rsplit("/", 1)[-1]
    return None


async def _dispatch_paypal(orchestrator: PaymentOrchestrator, gateway, event: Dict[str, Any]) -> str:
    evt_type = event.get("event_type") or ""
    resource = event.get("resource") or {}

    if evt_type == "CHECKOUT.ORDER.APPROVED":
        # Capture on approval; the capture completes the checkout
        status = await gateway.get_checkout_status(resource.get("id"))
        if status.status != "complete" or not status.external_payment_id:
            return "ignored"
        return orchestrator.handle_checkout_completed(status.external_payment_id, "paypal", status.metadata)
    if evt_type == "PAYMENT.CAPTURE.COMPLETED":
        metadata = expand_metadata(resource.get("custom_id"))
        amount = _to_cents((resource.get("amount") or {}).get("value"))
        return orchestrator.handle_checkout_completed(resource.get("id"), "paypal", metadata, amount_total_cents=amount)
    if evt_type in ("PAYMENT.CAPTURE.DENIED", "PAYMENT.CAPTURE.DECLINED"):
        metadata = expand_metadata(resource.get("custom_id"))
        return "past_due" if orchestrator.handle_payment_failed(metadata.get("invoiceId")) else "ignored"
    if evt_type == "PAYMENT.CAPTURE.REFUNDED":
        capture_id = _capture_id_from_links(resource)
        if not capture_id:
            return "ignored"
        refunded = _to_cents((resource.get("amount") or {}).get("value"))
        full = orchestrator.is_full_refund(capture_id, refunded)
        return "refunded" if orchestrator.handle_refund_completed(capture_id, full_refund=full) else "ignored"
    return "ignored"


@router.post("/paypal")
async def paypal_webhook(
    request: Request,
    db: Session = Depends(get_db),
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
):
    limited = _throttled("paypal")
    if limited:
        return limited
    gateway = orchestrator.gateway_for("paypal")
    if gateway is None:
        return JSONResponse({"error": "webhook_not_configured"}, status_code=503)
    try:
        event = await request.json()
    except Exception as ex:
        logger.warning(f"[webhooks.paypal] invalid JSON: {ex}")
        return JSONResponse({"error": "invalid JSON"}, status_code=400)

    try:
        verified = await gateway.verify_webhook(dict(request.headers), event)
    except GatewayError as ex:
        logger.warning(f"[webhooks.paypal] verification call failed: {ex}")
        return JSONResponse({"error": "verification_unavailable"}, status_code=502)
    if not verified:
        return JSONResponse({"error": "invalid signature"}, status_code=400)

    resource = event.get("resource") or {}
    _record_event(db, "paypal", event.get("event_type"), event.get("id"), resource.get("id"), event)
    try:
        outcome = await _dispatch_paypal(orchestrator, gateway, event)
    except GatewayError as ex:
        logger.warning(f"[webhooks.paypal] {event.get('event_type')} needs retry: {ex}")
        return JSONResponse({"error": "gateway_unavailable"}, status_code=502)
    except Exception as ex:
        logger.exception(f"[webhooks.paypal] {event.get('event_type')} failed: {ex}")
        return JSONResponse({"error": "processing_failed"}, status_code=500)
    logger.info(f"[webhooks.paypal] {event.get('event_type')} {event.get('id')}: {outcome}")
    return {"received": True, "outcome": outcome}


# ---------------------------------------------------------------------------
# Square
# ---------------------------------------------------------------------------


def _dispatch_square(orchestrator: PaymentOrchestrator, event: Dict[str, Any]) -> str:
    evt_type = event.get("type") or ""
    obj = ((event.get("data") or {}).get("object")) or {}

    if evt_type in ("payment.created", "payment.updated"):
        payment = obj.get("payment") or {}
        metadata = expand_metadata(payment.get("note"))
        status = payment.get("status")
        if status == "COMPLETED":
            amount = (payment.get("amount_money") or {}).get("amount")
            return orchestrator.handle_checkout_completed(payment.get("id"), "square", metadata, amount_total_cents=amount)
        if status == "FAILED":
            return "past_due" if orchestrator.handle_payment_failed(metadata.get("invoiceId")) else "ignored"
        return "ignored"
    if evt_type in ("refund.created", "refund.updated"):
        refund = obj.get("refund") or {}
        payment_id = refund.get("payment_id")
        if refund.get("status") != "COMPLETED" or not payment_id:
            return "ignored"
        full = orchestrator.is_full_refund(payment_id, (refund.get("amount_money") or {}).get("amount"))
        return "refunded" if orchestrator.handle_refund_completed(payment_id, full_refund=full) else "ignored"
    return "ignored"


def _square_notification_url(db: Session, request: Request) -> str:
    configured = (get_setting(db, "square_webhook_url") or SQUARE_WEBHOOK_URL or "").strip()
    if configured:
        return configured
    if PUBLIC_BASE_URL:
        return f"{PUBLIC_BASE_URL}/api/webhooks/square"
    return str(request.url)


@router.post("/square")
async def square_webhook(
    request: Request,
    db: Session = Depends(get_db),
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
):
    limited = _throttled("square")
    if limited:
        return limited
    key = (get_setting(db, "square_webhook_signature_key") or SQUARE_WEBHOOK_SIGNATURE_KEY or "").strip()
    if not key:
        return JSONResponse({"error": "webhook_not_configured"}, status_code=503)

    raw_body = await request.body()
    signature = request.headers.get("x-square-hmacsha256-signature") or ""
    if not verify_square_signature(key, _square_notification_url(db, request), raw_body, signature):
        return JSONResponse({"error": "invalid signature"}, status_code=400)
    try:
        event = json.loads(raw_body)
    except ValueError as ex:
        logger.warning(f"[webhooks.square] invalid JSON: {ex}")
        return JSONResponse({"error": "invalid JSON"}, status_code=400)

    _record_event(db, "square", event.get("type"), event.get("event_id"), (event.get("data") or {}).get("id"), event)
    try:
        outcome = _dispatch_square(orchestrator, event)
    except Exception as ex:
        logger.exception(f"[webhooks.square] {event.get('type')} failed: {ex}")
        return JSONResponse({"error": "processing_failed"}, status_code=500)
    logger.info(f"[webhooks.square] {event.get('type')} {event.get('event_id')}: {outcome}")
    return {"received": True, "outcome": outcome}
