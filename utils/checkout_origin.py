"""
Checkout metadata codec.

Every checkout session carries a flat string->string metadata map that comes
back untouched on the gateway webhook. The map is decoded once into one of the
CheckoutOrigin variants below and reconciliation matches on the variant type.
"""
import json
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional, Tuple, Union

from core.config import logger

SOURCE_PORTAL_INVOICE = "portal_invoice_pay"
SOURCE_ADMIN_POS = "admin_pos"
SOURCE_PORTAL_STORE = "portal_store"

PLAN_ITEM_PREFIX = "plan_"


def _int(value: Any, default: int = 0) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


@dataclass(frozen=True)
class CartItem:
    item_id: Optional[str] = None
    quantity: int = 1
    type: str = "product"  # product, membership, credit, gift
    item_name: Optional[str] = None
    item_sku: Optional[str] = None
    unit_price_cents: int = 0
    custom_price_cents: Optional[int] = None
    discount_cents: int = 0
    membership_plan_id: Optional[str] = None
    membership_start_date: Optional[str] = None  # YYYY-MM-DD
    membership_end_date: Optional[str] = None
    first_month_discount_only: bool = False
    selected_size: Optional[str] = None
    selected_color: Optional[str] = None
    recipient_name: Optional[str] = None

    _KEYS = (
        ("item_id", "itemId"),
        ("quantity", "quantity"),
        ("type", "type"),
        ("item_name", "itemName"),
        ("item_sku", "itemSku"),
        ("unit_price_cents", "unitPriceCents"),
        ("custom_price_cents", "customPriceCents"),
        ("discount_cents", "discountCents"),
        ("membership_plan_id", "membershipPlanId"),
        ("membership_start_date", "membershipStartDate"),
        ("membership_end_date", "membershipEndDate"),
        ("first_month_discount_only", "firstMonthDiscountOnly"),
        ("selected_size", "selectedSize"),
        ("selected_color", "selectedColor"),
        ("recipient_name", "recipientName"),
    )

    @property
    def is_plan(self) -> bool:
        return bool(self.item_id and self.item_id.startswith(PLAN_ITEM_PREFIX))

    @property
    def plan_id(self) -> Optional[str]:
        return self.item_id[len(PLAN_ITEM_PREFIX):] if self.is_plan else None

    @property
    def effective_unit_price_cents(self) -> int:
        if self.custom_price_cents is not None:
            return self.custom_price_cents
        return self.unit_price_cents

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "CartItem":
        custom = raw.get("customPriceCents")
        return cls(
            item_id=raw.get("itemId") or None,
            quantity=_int(raw.get("quantity"), 1) or 1,
            type=str(raw.get("type") or "product"),
            item_name=raw.get("itemName") or None,
            item_sku=raw.get("itemSku") or None,
            unit_price_cents=_int(raw.get("unitPriceCents")),
            custom_price_cents=_int(custom) if custom is not None else None,
            discount_cents=_int(raw.get("discountCents")),
            membership_plan_id=raw.get("membershipPlanId") or None,
            membership_start_date=raw.get("membershipStartDate") or None,
            membership_end_date=raw.get("membershipEndDate") or None,
            first_month_discount_only=bool(raw.get("firstMonthDiscountOnly") or False),
            selected_size=raw.get("selectedSize") or None,
            selected_color=raw.get("selectedColor") or None,
            recipient_name=raw.get("recipientName") or None,
        )

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {}
        defaults = CartItem()
        for attr, key in self._KEYS:
            value = getattr(self, attr)
            # quantity and type are always written; the rest only when set
            if key in ("quantity", "type") or value != getattr(defaults, attr):
                out[key] = value
        return out


@dataclass(frozen=True)
class POSSplit:
    """Split tender at the register: the transaction already exists locally."""
    transaction_id: str
    invoice_id: Optional[str] = None


@dataclass(frozen=True)
class PortalInvoice:
    invoice_id: str
    member_id: Optional[str] = None


@dataclass(frozen=True)
class AdminPOSCart:
    items: Tuple[CartItem, ...]
    member_id: Optional[str] = None
    member_name: Optional[str] = None
    notes: Optional[str] = None
    discount_cents: int = 0
    service_discount_cents: int = 0
    product_discount_cents: int = 0
    tax_cents: int = 0
    redeemed_gift_code: Optional[str] = None
    redeemed_gift_amount_cents: int = 0


@dataclass(frozen=True)
class PortalStoreCart:
    items: Tuple[CartItem, ...]
    member_id: Optional[str] = None


@dataclass(frozen=True)
class BareInvoice:
    invoice_id: str


CheckoutOrigin = Union[POSSplit, PortalInvoice, AdminPOSCart, PortalStoreCart, BareInvoice]


def _items(raw: Optional[str]) -> Tuple[CartItem, ...]:
    if not raw:
        return ()
    try:
        data = json.loads(raw)
    except (TypeError, ValueError):
        logger.warning("[checkout] cartItems metadata is not valid JSON")
        return ()
    if not isinstance(data, list):
        return ()
    return tuple(CartItem.from_dict(d) for d in data if isinstance(d, dict))


def decode_metadata(metadata: Optional[Mapping[str, Any]]) -> Optional[CheckoutOrigin]:
    """Decode checkout metadata into its origin. Returns None for metadata we do not own."""
    md = {k: ("" if v is None else str(v)) for k, v in (metadata or {}).items()}
    source = md.get("source", "")

    if md.get("transactionId"):
        return POSSplit(transaction_id=md["transactionId"], invoice_id=md.get("invoiceId") or None)
    if source == SOURCE_PORTAL_INVOICE and md.get("invoiceId"):
        return PortalInvoice(invoice_id=md["invoiceId"], member_id=md.get("memberId") or None)
    if source == SOURCE_ADMIN_POS:
        return AdminPOSCart(
            items=_items(md.get("cartItems")),
            member_id=md.get("memberId") or None,
            member_name=md.get("memberName") or None,
            notes=md.get("notes") or None,
            discount_cents=_int(md.get("discountCents")),
            service_discount_cents=_int(md.get("serviceDiscountCents")),
            product_discount_cents=_int(md.get("productDiscountCents")),
            tax_cents=_int(md.get("taxCents")),
            redeemed_gift_code=md.get("redeemedGiftCode") or None,
            redeemed_gift_amount_cents=_int(md.get("redeemedGiftAmountCents")),
        )
    if md.get("cartItems"):
        return PortalStoreCart(items=_items(md["cartItems"]), member_id=md.get("memberId") or None)
    if md.get("invoiceId"):
        return BareInvoice(invoice_id=md["invoiceId"])
    return None


def _cart_json(items: Tuple[CartItem, ...]) -> str:
    return json.dumps([i.to_dict() for i in items], separators=(",", ":"))


def encode_metadata(origin: CheckoutOrigin) -> Dict[str, str]:
    """Inverse of decode_metadata: decode_metadata(encode_metadata(o)) == o."""
    if isinstance(origin, POSSplit):
        out = {"transactionId": origin.transaction_id}
        if origin.invoice_id:
            out["invoiceId"] = origin.invoice_id
        return out
    if isinstance(origin, PortalInvoice):
        out = {"source": SOURCE_PORTAL_INVOICE, "invoiceId": origin.invoice_id}
        if origin.member_id:
            out["memberId"] = origin.member_id
        return out
    if isinstance(origin, AdminPOSCart):
        out = {"source": SOURCE_ADMIN_POS, "cartItems": _cart_json(origin.items)}
        for key, value in (
            ("memberId", origin.member_id),
            ("memberName", origin.member_name),
            ("notes", origin.notes),
            ("redeemedGiftCode", origin.redeemed_gift_code),
        ):
            if value:
                out[key] = value
        for key, cents in (
            ("discountCents", origin.discount_cents),
            ("serviceDiscountCents", origin.service_discount_cents),
            ("productDiscountCents", origin.product_discount_cents),
            ("taxCents", origin.tax_cents),
            ("redeemedGiftAmountCents", origin.redeemed_gift_amount_cents),
        ):
            if cents:
                out[key] = str(cents)
        return out
    if isinstance(origin, PortalStoreCart):
        out = {"source": SOURCE_PORTAL_STORE, "cartItems": _cart_json(origin.items)}
        if origin.member_id:
            out["memberId"] = origin.member_id
        return out
    if isinstance(origin, BareInvoice):
        return {"invoiceId": origin.invoice_id}
    raise TypeError(f"unknown checkout origin: {type(origin).__name__}")


# Keys that are enough to route a payment when the full map does not fit
_ROUTING_KEYS = ("source", "transactionId", "invoiceId", "memberId")


def compact_metadata(metadata: Mapping[str, str], limit: int) -> str:
    """Serialize metadata into a size-limited text field (PayPal custom_id, Square note)."""
    text = json.dumps(dict(metadata), separators=(",", ":"))
    if len(text) <= limit:
        return text
    routing = {k: metadata[k] for k in _ROUTING_KEYS if metadata.get(k)}
    text = json.dumps(routing, separators=(",", ":"))
    if len(text) <= limit:
        logger.warning(f"[checkout] metadata exceeds {limit} chars; keeping routing keys only")
        return text
    return (metadata.get("invoiceId") or "")[:limit]


def expand_metadata(text: Optional[str]) -> Dict[str, str]:
    """Inverse of compact_metadata. Plain text is treated as a bare invoice id."""
    raw = (text or "").strip()
    if not raw:
        return {}
    try:
        data = json.loads(raw)
    except ValueError:
        return {"invoiceId": raw}
    if not isinstance(data, dict):
        return {"invoiceId": raw}
    return {str(k): str(v) for k, v in data.items() if v is not None}
