"""
PayPal Orders v2 integration (redirect / approval flow).

The buyer approves the order on PayPal; the order is then captured the first
time its status is polled (or when the webhook arrives). Stored-method charges
use a vaulted PayPal wallet (vault_id).
"""
import time
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
    STATUS_FAILED,
    STATUS_PENDING,
)

PAYPAL_SANDBOX_BASE = "https://api-m.sandbox.paypal.com"
PAYPAL_LIVE_BASE = "https://api-m.paypal.com"

# PayPal limits purchase_units[].custom_id to 127 characters
CUSTOM_ID_LIMIT = 127
# Refresh the cached OAuth token this many seconds before it expires
TOKEN_REFRESH_BUFFER_SEC = 300


def _money(amount_cents: int, currency: str) -> Dict[str, str]:
    return {"currency_code": currency.upper(), "value": f"{amount_cents / 100:.2f}"}


def _first_capture(order: Dict[str, Any]) -> Dict[str, Any]:
    for unit in order.get("purchase_units") or []:
        captures = ((unit.get("payments") or {}).get("captures")) or []
        if captures:
            return captures[0]
    return {}


def _custom_id(order: Dict[str, Any]) -> Optional[str]:
    for unit in order.get("purchase_units") or []:
        if unit.get("custom_id"):
            return unit["custom_id"]
    return _first_capture(order).get("custom_id")


class PayPalGateway(HttpGateway):
    name = "paypal"

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        sandbox: bool = False,
        webhook_id: str = "",
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        if not client_id or not client_secret:
            raise ValueError("PayPal client id and secret are required")
        super().__init__(PAYPAL_SANDBOX_BASE if sandbox else PAYPAL_LIVE_BASE, timeout=timeout, transport=transport)
        self.client_id = client_id
        self.client_secret = client_secret
        self.webhook_id = webhook_id
        self._token: Optional[str] = None
        self._token_expires_at = 0.0

    async def _access_token(self) -> str:
        if self._token and time.monotonic() < self._token_expires_at - TOKEN_REFRESH_BUFFER_SEC:
            return self._token
        try:
            async with self._client() as client:
                resp = await client.post(
                    "/v1/oauth2/token",
                    data={"grant_type": "client_credentials"},
                    auth=(self.client_id, self.client_secret),
                    headers={"Accept": "application/json"},
                )
        except httpx.HTTPError as ex:
            raise GatewayError(f"[paypal] token request failed: {ex}") from ex
        if resp.status_code >= 400:
            raise GatewayError("[paypal] token request rejected", status_code=resp.status_code, body=resp.text[:500])
        data = resp.json()
        self._token = data.get("access_token")
        self._token_expires_at = time.monotonic() + int(data.get("expires_in") or 0)
        if not self._token:
            raise GatewayError("[paypal] token response missing access_token", body=data)
        return self._token

    async def _headers(self) -> Dict[str, str]:
        hdrs = await super()._headers()
        hdrs["Authorization"] = f"Bearer {await self._access_token()}"
        return hdrs

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
        unit: Dict[str, Any] = {
            "amount": _money(amount_cents, currency),
            "description": (description or "")[:127],
        }
        if metadata:
            unit["custom_id"] = compact_metadata(metadata, CUSTOM_ID_LIMIT)
        if line_items:
            item_total = sum(li.amount_cents * li.quantity for li in line_items)
            if item_total == amount_cents:
                unit["items"] = [
                    {"name": li.name[:127], "quantity": str(li.quantity), "unit_amount": _money(li.amount_cents, currency)}
                    for li in line_items
                ]
                unit["amount"]["breakdown"] = {"item_total": _money(item_total, currency)}
        body = {
            "intent": "CAPTURE",
            "purchase_units": [unit],
            "payment_source": {
                "paypal": {
                    "experience_context": {
                        "return_url": success_url,
                        "cancel_url": cancel_url,
                        "user_action": "PAY_NOW",
                        "shipping_preference": "NO_SHIPPING",
                    }
                }
            },
        }
        order = await self._send("POST", "/v2/checkout/orders", json=body, headers={"PayPal-Request-Id": str(uuid.uuid4())})
        link = next(
            (lk.get("href") for lk in order.get("links") or [] if lk.get("rel") in ("payer-action", "approve")),
            None,
        )
        if not link:
            raise GatewayError("[paypal] order created without an approval link", body=order)
        return CheckoutSession(url=link, session_id=order["id"], order_id=order["id"])

    async def capture_order(self, order_id: str) -> Dict[str, Any]:
        return await self._send(
            "POST",
            f"/v2/checkout/orders/{order_id}/capture",
            json={},
            headers={"Prefer": "return=representation", "PayPal-Request-Id": f"capture-{order_id}"},
        )

    async def get_checkout_status(self, session_id: str, order_id: Optional[str] = None) -> CheckoutStatus:
        oid = order_id or session_id
        order = await self._send("GET", f"/v2/checkout/orders/{oid}")
        metadata = expand_metadata(_custom_id(order))
        status = order.get("status")
        if status == "APPROVED":
            # Buyer approved but funds are not moved until capture
            order = await self.capture_order(oid)
            status = order.get("status")
            logger.info(f"[paypal] captured approved order {oid}: {status}")
        if status == "COMPLETED":
            capture = _first_capture(order)
            if capture.get("status") in (None, "COMPLETED", "PENDING"):
                return CheckoutStatus(status=STATUS_COMPLETE, external_payment_id=capture.get("id") or oid, metadata=metadata)
            return CheckoutStatus(status=STATUS_FAILED, metadata=metadata)
        if status == "VOIDED":
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
        if not method_ref:
            return ChargeResult.failed(NO_STORED_METHOD)
        unit: Dict[str, Any] = {"amount": _money(amount_cents, currency), "description": (description or "")[:127]}
        if metadata:
            unit["custom_id"] = compact_metadata(metadata, CUSTOM_ID_LIMIT)
        body = {
            "intent": "CAPTURE",
            "purchase_units": [unit],
            "payment_source": {"paypal": {"vault_id": method_ref}},
        }
        headers = {"PayPal-Request-Id": f"charge-{idempotency_ref}" if idempotency_ref else str(uuid.uuid4())}
        try:
            order = await self._send("POST", "/v2/checkout/orders", json=body, headers=headers)
        except GatewayError as ex:
            # 422 UNPROCESSABLE_ENTITY carries instrument declines
            if ex.status_code == 422:
                return ChargeResult.failed(DECLINED, str(ex.body)[:300])
            raise
        capture = _first_capture(order)
        if order.get("status") == "COMPLETED" and capture.get("status") == "COMPLETED":
            return ChargeResult(success=True, external_payment_id=capture.get("id"))
        return ChargeResult.failed(DECLINED, f"order status {order.get('status')}")

    async def refund(
        self,
        external_payment_id: str,
        amount_cents: Optional[int] = None,
        currency: Optional[str] = None,
    ) -> RefundResult:
        body: Dict[str, Any] = {}
        if amount_cents and currency:
            body["amount"] = _money(amount_cents, currency)
        try:
            data = await self._send("POST", f"/v2/payments/captures/{external_payment_id}/refund", json=body)
        except GatewayError as ex:
            if ex.status_code == 422:
                return RefundResult(success=False, message=str(ex.body)[:300])
            raise
        ok = data.get("status") in ("COMPLETED", "PENDING")
        return RefundResult(success=ok, refund_id=data.get("id"), message=None if ok else data.get("status"))

    async def ensure_customer(self, member) -> Optional[str]:
        # PayPal has no standalone customer object; the payer id arrives with the first vaulted approval
        return member.paypal_payer_id

    def customer_ref_for(self, member) -> Optional[str]:
        return member.paypal_payer_id

    async def verify_webhook(self, headers: Dict[str, str], event: Dict[str, Any]) -> bool:
        if not self.webhook_id:
            logger.warning("[paypal] PAYPAL_WEBHOOK_ID not set; rejecting webhook")
            return False
        lower = {k.lower(): v for k, v in headers.items()}
        body = {
            "auth_algo": lower.get("paypal-auth-algo", ""),
            "cert_url": lower.get("paypal-cert-url", ""),
            "transmission_id": lower.get("paypal-transmission-id", ""),
            "transmission_sig": lower.get("paypal-transmission-sig", ""),
            "transmission_time": lower.get("paypal-transmission-time", ""),
            "webhook_id": self.webhook_id,
            "webhook_event": event,
        }
        data = await self._send("POST", "/v1/notifications/verify-webhook-signature", json=body)
        return data.get("verification_status") == "SUCCESS"
