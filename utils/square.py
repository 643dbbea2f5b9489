"""Square payment links, card-on-file payments and refunds."""
import base64
import hashlib
import hmac
import uuid
from typing import Any, Dict, List, Optional

import httpx

from core.config import logger
from utils.checkout_origin import compact_metadata, expand_metadata
from utils.gateway_base import (
    HttpGateway,
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

SQUARE_SANDBOX_BASE = "https://connect.squareupsandbox.com"
SQUARE_LIVE_BASE = "https://connect.squareup.com"

# Square caps payment notes at 500 characters
NOTE_LIMIT = 500

# Error categories that mean the card itself was refused
_DECLINE_CATEGORIES = {"PAYMENT_METHOD_ERROR"}


def _money(amount_cents: int, currency: str) -> Dict[str, Any]:
    return {"amount": int(amount_cents), "currency": currency.upper()}


def _charge_key(idempotency_ref: Optional[str]) -> str:
    if not idempotency_ref:
        return str(uuid.uuid4())
    key = f"charge-{idempotency_ref}"
    # Square caps idempotency keys at 45 characters
    if len(key) > 45:
        key = "charge-" + hashlib.sha256(idempotency_ref.encode()).hexdigest()[:38]
    return key


def _is_decline(ex: GatewayError) -> bool:
    body = ex.body if isinstance(ex.body, dict) else {}
    return any((e or {}).get("category") in _DECLINE_CATEGORIES for e in body.get("errors") or [])


def verify_signature(signature_key: str, notification_url: str, body: bytes, signature: str) -> bool:
    """x-square-hmacsha256-signature = base64(HMAC-SHA256(key, notification_url + raw body))."""
    if not signature_key or not signature:
        return False
    digest = hmac.new(signature_key.encode("utf-8"), notification_url.encode("utf-8") + body, hashlib.sha256).digest()
    expected = base64.b64encode(digest).decode("ascii")
    return hmac.compare_digest(expected, signature)


class SquareGateway(HttpGateway):
    name = "square"

    def __init__(
        self,
        access_token: str,
        location_id: str,
        sandbox: bool = False,
        api_version: str = "2024-01-18",
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        if not access_token or not location_id:
            raise ValueError("Square access token and location id are required")
        super().__init__(SQUARE_SANDBOX_BASE if sandbox else SQUARE_LIVE_BASE, timeout=timeout, transport=transport)
        self.access_token = access_token
        self.location_id = location_id
        self.api_version = api_version

    async def _headers(self) -> Dict[str, str]:
        hdrs = await super()._headers()
        hdrs["Authorization"] = f"Bearer {self.access_token}"
        hdrs["Square-Version"] = self.api_version
        return hdrs

    def customer_ref_for(self, member) -> Optional[str]:
        return member.square_customer_id

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
        body: Dict[str, Any] = {
            "idempotency_key": str(uuid.uuid4()),
            "checkout_options": {"redirect_url": success_url},
        }
        if metadata:
            body["payment_note"] = compact_metadata(metadata, NOTE_LIMIT)
        if line_items and sum(li.amount_cents * li.quantity for li in line_items) == amount_cents:
            order: Dict[str, Any] = {
                "location_id": self.location_id,
                "line_items": [
                    {"name": li.name, "quantity": str(li.quantity), "base_price_money": _money(li.amount_cents, currency)}
                    for li in line_items
                ],
            }
            if customer_ref:
                order["customer_id"] = customer_ref
            if metadata and metadata.get("invoiceId"):
                order["reference_id"] = metadata["invoiceId"][:40]
            body["order"] = order
        else:
            body["quick_pay"] = {
                "name": description or "Payment",
                "price_money": _money(amount_cents, currency),
                "location_id": self.location_id,
            }
        data = await self._send("POST", "/v2/online-checkout/payment-links", json=body)
        link = data.get("payment_link") or {}
        if not link.get("url"):
            raise GatewayError("[square] payment link response missing url", body=data)
        return CheckoutSession(url=link["url"], session_id=link.get("id", ""), order_id=link.get("order_id"))

    async def get_checkout_status(self, session_id: str, order_id: Optional[str] = None) -> CheckoutStatus:
        oid = order_id
        if not oid:
            link = (await self._send("GET", f"/v2/online-checkout/payment-links/{session_id}")).get("payment_link") or {}
            oid = link.get("order_id")
        if not oid:
            return CheckoutStatus(status=STATUS_PENDING)
        order = (await self._send("GET", f"/v2/orders/{oid}")).get("order") or {}
        state = order.get("state")
        if state == "COMPLETED":
            payment_id = next((t.get("payment_id") or t.get("id") for t in order.get("tenders") or []), None)
            metadata: Dict[str, str] = {}
            if payment_id:
                payment = (await self._send("GET", f"/v2/payments/{payment_id}")).get("payment") or {}
                metadata = expand_metadata(payment.get("note"))
            if not metadata and order.get("reference_id"):
                metadata = {"invoiceId": order["reference_id"]}
            return CheckoutStatus(status=STATUS_COMPLETE, external_payment_id=payment_id or oid, metadata=metadata)
        if state == "CANCELED":
            return CheckoutStatus(status=STATUS_EXPIRED)
        return CheckoutStatus(status=STATUS_PENDING)

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
        body: Dict[str, Any] = {
            "idempotency_key": _charge_key(idempotency_ref),
            "source_id": method_ref,
            "customer_id": customer_ref,
            "amount_money": _money(amount_cents, currency),
            "location_id": self.location_id,
            "autocomplete": True,
            "note": compact_metadata(metadata, NOTE_LIMIT) if metadata else (description or "")[:NOTE_LIMIT],
        }
        if metadata and metadata.get("invoiceId"):
            body["reference_id"] = metadata["invoiceId"][:40]
        try:
            data = await self._send("POST", "/v2/payments", json=body)
        except GatewayError as ex:
            if _is_decline(ex):
                return ChargeResult.failed(DECLINED, str(ex.body)[:300])
            raise
        payment = data.get("payment") or {}
        if payment.get("status") == "COMPLETED":
            return ChargeResult(success=True, external_payment_id=payment.get("id"))
        return ChargeResult.failed(DECLINED, f"payment status {payment.get('status')}")

    async def refund(
        self,
        external_payment_id: str,
        amount_cents: Optional[int] = None,
        currency: Optional[str] = None,
    ) -> RefundResult:
        if not amount_cents or not currency:
            return RefundResult(success=False, message="Square refunds require amount and currency")
        body = {
            "idempotency_key": str(uuid.uuid4()),
            "payment_id": external_payment_id,
            "amount_money": _money(amount_cents, currency),
        }
        data = await self._send("POST", "/v2/refunds", json=body)
        refund = data.get("refund") or {}
        ok = refund.get("status") in ("PENDING", "COMPLETED")
        return RefundResult(success=ok, refund_id=refund.get("id"), message=None if ok else refund.get("status"))

    async def ensure_customer(self, member) -> Optional[str]:
        if member.square_customer_id:
            return member.square_customer_id
        found = await self._send(
            "POST",
            "/v2/customers/search",
            json={"query": {"filter": {"reference_id": {"exact": member.id}}}, "limit": 1},
        )
        customers = found.get("customers") or []
        if customers:
            member.square_customer_id = customers[0].get("id")
            return member.square_customer_id
        body = {
            "idempotency_key": str(uuid.uuid4()),
            "given_name": member.first_name,
            "family_name": member.last_name or None,
            "email_address": member.email or member.parent_email or None,
            "reference_id": member.id,
        }
        created = await self._send("POST", "/v2/customers", json={k: v for k, v in body.items() if v})
        member.square_customer_id = (created.get("customer") or {}).get("id")
        logger.info(f"[square] created customer {member.square_customer_id} for member {member.id}")
        return member.square_customer_id
