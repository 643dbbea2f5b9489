"""Stripe hosted checkout + off-session PaymentIntents."""
from typing import Dict, List, Optional

import stripe

from core.config import logger
from utils.gateway_base import (
    GatewayAdapter,
    GatewayError,
    CheckoutSession,
    CheckoutStatus,
    ChargeResult,
    RefundResult,
    LineItem,
    DECLINED,
    NO_STORED_METHOD,
    STATUS_COMPLETE,
    STATUS_EXPIRED,
    STATUS_PENDING,
)


def _get(obj, key, default=None):
    # StripeObject is a dict subclass; expanded fields may be objects or plain ids
    try:
        value = obj.get(key, default)
    except AttributeError:
        value = getattr(obj, key, default)
    return default if value is None else value


def _id_of(value) -> Optional[str]:
    if not value:
        return None
    if isinstance(value, str):
        return value
    return _get(value, "id")


class StripeGateway(GatewayAdapter):
    name = "stripe"

    def __init__(self, secret_key: str):
        if not secret_key:
            raise ValueError("Stripe secret key is required")
        self.secret_key = secret_key

    def customer_ref_for(self, member) -> Optional[str]:
        return member.stripe_customer_id

    async def create_checkout_session(
        self,
        amount_cents: int,
        currency: str,
        description: str,
        success_url: str,
        cancel_url: str,
        line_items: Optional[List[LineItem]] = None,
        customer_ref: Optional[str] = None,
        metadata: Optional[Dict[str, str]] = None,
    ) -> CheckoutSession:
        items = line_items or [LineItem(name=description, amount_cents=amount_cents)]
        params = {
            "mode": "payment",
            "line_items": [
                {
                    "price_data": {
                        "currency": currency.lower(),
                        "product_data": {"name": li.name},
                        "unit_amount": li.amount_cents,
                    },
                    "quantity": li.quantity,
                }
                for li in items
            ],
            "success_url": success_url,
            "cancel_url": cancel_url,
            "metadata": dict(metadata or {}),
            # Copy onto the PaymentIntent so payment_intent.* webhooks see it too
            "payment_intent_data": {"metadata": dict(metadata or {})},
        }
        if customer_ref:
            params["customer"] = customer_ref
        try:
            session = await stripe.checkout.Session.create_async(api_key=self.secret_key, **params)
        except stripe.StripeError as ex:
            raise GatewayError(f"[stripe] checkout session create failed: {ex}", status_code=getattr(ex, "http_status", None)) from ex
        return CheckoutSession(url=_get(session, "url", ""), session_id=_get(session, "id", ""))

    async def get_checkout_status(self, session_id: str, order_id: Optional[str] = None) -> CheckoutStatus:
        try:
            session = await stripe.checkout.Session.retrieve_async(session_id, api_key=self.secret_key)
        except stripe.StripeError as ex:
            raise GatewayError(f"[stripe] checkout session lookup failed: {ex}", status_code=getattr(ex, "http_status", None)) from ex
        metadata = {k: str(v) for k, v in dict(_get(session, "metadata", {}) or {}).items()}
        status = _get(session, "status", "")
        if status == "complete":
            return CheckoutStatus(
                status=STATUS_COMPLETE,
                external_payment_id=_id_of(_get(session, "payment_intent")) or session_id,
                metadata=metadata,
            )
        if status == "expired":
            return CheckoutStatus(status=STATUS_EXPIRED, metadata=metadata)
        return CheckoutStatus(status=STATUS_PENDING, metadata=metadata)

    async def charge_stored_method(
        self,
        customer_ref: Optional[str],
        method_ref: str,
        amount_cents: int,
        currency: str,
        description: str,
        idempotency_ref: Optional[str] = None,
        metadata: Optional[Dict[str, str]] = None,
    ) -> ChargeResult:
        if not customer_ref or not method_ref:
            return ChargeResult.failed(NO_STORED_METHOD)
        params = {
            "amount": amount_cents,
            "currency": currency.lower(),
            "customer": customer_ref,
            "payment_method": method_ref,
            "off_session": True,
            "confirm": True,
            "description": description,
            "metadata": dict(metadata or {}),
        }
        if idempotency_ref:
            params["idempotency_key"] = f"charge-{idempotency_ref}"
        try:
            intent = await stripe.PaymentIntent.create_async(api_key=self.secret_key, **params)
        except stripe.CardError as ex:
            logger.info(f"[stripe] card declined for {customer_ref}: {ex.user_message or ex}")
            return ChargeResult.failed(DECLINED, ex.user_message or str(ex))
        except stripe.StripeError as ex:
            raise GatewayError(f"[stripe] charge failed: {ex}", status_code=getattr(ex, "http_status", None)) from ex
        if _get(intent, "status") == "succeeded":
            return ChargeResult(success=True, external_payment_id=_get(intent, "id"))
        return ChargeResult.failed(DECLINED, f"payment intent status {_get(intent, 'status')}")

    async def refund(
        self,
        external_payment_id: str,
        amount_cents: Optional[int] = None,
        currency: Optional[str] = None,
    ) -> RefundResult:
        params = {"payment_intent": external_payment_id}
        if amount_cents:
            params["amount"] = amount_cents
        try:
            refund = await stripe.Refund.create_async(api_key=self.secret_key, **params)
        except stripe.InvalidRequestError as ex:
            return RefundResult(success=False, message=ex.user_message or str(ex))
        except stripe.StripeError as ex:
            raise GatewayError(f"[stripe] refund failed: {ex}", status_code=getattr(ex, "http_status", None)) from ex
        ok = _get(refund, "status") in ("succeeded", "pending")
        return RefundResult(success=ok, refund_id=_get(refund, "id"), message=None if ok else _get(refund, "status"))

    async def ensure_customer(self, member) -> Optional[str]:
        if member.stripe_customer_id:
            return member.stripe_customer_id
        try:
            customer = await stripe.Customer.create_async(
                api_key=self.secret_key,
                email=member.email or member.parent_email or None,
                name=member.full_name or None,
                metadata={"memberId": member.id},
            )
        except stripe.StripeError as ex:
            raise GatewayError(f"[stripe] customer create failed: {ex}", status_code=getattr(ex, "http_status", None)) from ex
        member.stripe_customer_id = _get(customer, "id")
        logger.info(f"[stripe] created customer {member.stripe_customer_id} for member {member.id}")
        return member.stripe_customer_id

    async def setup_payment_method(self, setup_intent_id: str) -> Optional[str]:
        """Payment method saved by a mode=setup checkout session."""
        try:
            intent = await stripe.SetupIntent.retrieve_async(setup_intent_id, api_key=self.secret_key)
        except stripe.StripeError as ex:
            raise GatewayError(f"[stripe] setup intent lookup failed: {ex}", status_code=getattr(ex, "http_status", None)) from ex
        return _id_of(_get(intent, "payment_method"))


def construct_webhook_event(payload: bytes, signature: str, secret: str):
    """Verify the Stripe-Signature header and parse the event. Raises stripe.SignatureVerificationError."""
    return stripe.Webhook.construct_event(payload, signature, secret)
