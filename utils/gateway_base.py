"""
Gateway adapter contract shared by the Stripe, PayPal and Square integrations.

Adapters raise GatewayError for transport / API failures. Charge and refund
outcomes that the caller must branch on are returned as values instead.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import httpx


# Typed failure reasons surfaced by charge_stored_payment_method
NO_STORED_METHOD = "NO_STORED_METHOD"
NO_GATEWAY = "NO_GATEWAY"
MEMBER_NOT_FOUND = "MEMBER_NOT_FOUND"
DECLINED = "DECLINED"
GATEWAY_ERROR = "GATEWAY_ERROR"

# Checkout status values
STATUS_PENDING = "pending"
STATUS_COMPLETE = "complete"
STATUS_EXPIRED = "expired"
STATUS_FAILED = "failed"


class GatewayError(Exception):
    def __init__(self, message: str, status_code: Optional[int] = None, body: Any = None):
        super().__init__(message)
        self.status_code = status_code
        self.body = body


@dataclass
class LineItem:
    name: str
    amount_cents: int
    quantity: int = 1


@dataclass
class CheckoutSession:
    url: str
    session_id: str
    order_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"url": self.url, "sessionId": self.session_id, "orderId": self.order_id}


@dataclass
class CheckoutStatus:
    status: str
    external_payment_id: Optional[str] = None
    metadata: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status,
            "externalPaymentId": self.external_payment_id,
            "metadata": self.metadata,
        }


@dataclass
class ChargeResult:
    success: bool
    external_payment_id: Optional[str] = None
    failure_reason: Optional[str] = None
    message: Optional[str] = None

    @classmethod
    def failed(cls, reason: str, message: Optional[str] = None) -> "ChargeResult":
        return cls(success=False, failure_reason=reason, message=message)


@dataclass
class RefundResult:
    success: bool
    refund_id: Optional[str] = None
    message: Optional[str] = None


class GatewayAdapter(ABC):
    """One payment processor behind the five operations billing relies on."""

    name: str = ""

    @abstractmethod
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
        ...

    @abstractmethod
    async def get_checkout_status(self, session_id: str, order_id: Optional[str] = None) -> CheckoutStatus:
        ...

    @abstractmethod
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
        ...

    @abstractmethod
    async def refund(
        self,
        external_payment_id: str,
        amount_cents: Optional[int] = None,
        currency: Optional[str] = None,
    ) -> RefundResult:
        ...

    @abstractmethod
    async def ensure_customer(self, member) -> Optional[str]:
        """Return the gateway customer id for member, creating it on first use."""
        ...

    def customer_ref_for(self, member) -> Optional[str]:
        return None


class HttpGateway(GatewayAdapter):
    """Base for gateways spoken to over plain JSON/HTTPS with httpx."""

    def __init__(self, base_url: str, timeout: float = 30.0, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(base_url=self.base_url, timeout=self.timeout, transport=self._transport)

    async def _headers(self) -> Dict[str, str]:
        return {"Content-Type": "application/json", "Accept": "application/json"}

    async def _send(
        self,
        method: str,
        path: str,
        json: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> Dict[str, Any]:
        hdrs = await self._headers()
        hdrs.update(headers or {})
        try:
            async with self._client() as client:
                resp = await client.request(method, path, json=json, headers=hdrs)
        except httpx.HTTPError as ex:
            raise GatewayError(f"[{self.name}] {method} {path} failed: {ex}") from ex
        try:
            data = resp.json() if resp.content else {}
        except ValueError:
            data = {"raw": resp.text[:500]}
        if resp.status_code >= 400:
            raise GatewayError(
                f"[{self.name}] {method} {path} returned {resp.status_code}",
                status_code=resp.status_code,
                body=data,
            )
        return data if isinstance(data, dict) else {"data": data}
