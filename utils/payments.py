"""
Payment orchestration across the supported gateways.

The orchestrator is built from a GatewayConfig resolved once (per request or
per billing run) and exposes gateway-agnostic operations to billing, dunning
and the routers. Webhook reconciliation also lives here: every completed
checkout is decoded into a CheckoutOrigin and applied to the database.
"""
import json
import secrets
import string
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from core.config import (
    DEFAULT_CURRENCY,
    GATEWAY_TIMEOUT_SEC,
    PAYPAL_CLIENT_ID,
    PAYPAL_CLIENT_SECRET,
    PAYPAL_SANDBOX,
    PAYPAL_WEBHOOK_ID,
    SQUARE_ACCESS_TOKEN,
    SQUARE_API_VERSION,
    SQUARE_LOCATION_ID,
    SQUARE_SANDBOX,
    STRIPE_SECRET_KEY,
    logger,
)
from models.invoice import Invoice, InvoiceStatus
from models.member import Member, adjust_account_credit
from models.membership import Membership, MembershipPlan, MembershipStatus
from models.pos import GiftCertificate, POSItem, POSItemVariant, POSLineItem, POSTransaction
from utils.checkout_origin import (
    AdminPOSCart,
    BareInvoice,
    CartItem,
    CheckoutOrigin,
    PortalInvoice,
    PortalStoreCart,
    POSSplit,
    decode_metadata,
    encode_metadata,
)
from utils.dates import add_billing_cycle, utc_now
from utils.dunning import get_retry_delay_days
from utils.gateway_base import (
    GATEWAY_ERROR,
    MEMBER_NOT_FOUND,
    NO_GATEWAY,
    NO_STORED_METHOD,
    ChargeResult,
    CheckoutSession,
    CheckoutStatus,
    GatewayAdapter,
    GatewayError,
    LineItem,
    RefundResult,
    STATUS_COMPLETE,
)
from utils.settings import get_setting

PROCESSORS = ("stripe", "paypal", "square")
_PAYABLE_STATUSES = (InvoiceStatus.PENDING.value, InvoiceStatus.PAST_DUE.value, InvoiceStatus.FAILED.value)


@dataclass(frozen=True)
class GatewayConfig:
    active: Optional[str] = None
    currency: str = "usd"
    stripe_secret_key: str = ""
    paypal_client_id: str = ""
    paypal_client_secret: str = ""
    paypal_sandbox: bool = False
    paypal_webhook_id: str = ""
    square_access_token: str = ""
    square_location_id: str = ""
    square_sandbox: bool = False
    square_api_version: str = "2024-01-18"
    timeout: float = 30.0


def _flag(value: Optional[str], default: bool) -> bool:
    if value is None or value == "":
        return default
    return value.strip().lower() in ("1", "true", "yes", "sandbox")


def resolve_active_processor(db: Session) -> Optional[str]:
    active = (get_setting(db, "payment_active_processor") or "").strip().lower()
    if active in PROCESSORS:
        return active
    if active and active != "none":
        logger.warning(f"[payments] unknown active processor '{active}'")
        return None
    # Older installs only carry per-processor enabled flags
    for name in PROCESSORS:
        if (get_setting(db, f"payment_{name}_enabled") or "").strip().lower() == "true":
            return name
    return None


def load_gateway_config(db: Session) -> GatewayConfig:
    """Settings rows win over environment values for every credential."""

    def pick(key: str, env_value: str) -> str:
        return (get_setting(db, key) or env_value or "").strip()

    return GatewayConfig(
        active=resolve_active_processor(db),
        currency=(get_setting(db, "currency") or DEFAULT_CURRENCY).strip().lower(),
        stripe_secret_key=pick("stripe_secret_key", STRIPE_SECRET_KEY),
        paypal_client_id=pick("paypal_client_id", PAYPAL_CLIENT_ID),
        paypal_client_secret=pick("paypal_client_secret", PAYPAL_CLIENT_SECRET),
        paypal_sandbox=_flag(get_setting(db, "paypal_sandbox"), PAYPAL_SANDBOX),
        paypal_webhook_id=pick("paypal_webhook_id", PAYPAL_WEBHOOK_ID),
        square_access_token=pick("square_access_token", SQUARE_ACCESS_TOKEN),
        square_location_id=pick("square_location_id", SQUARE_LOCATION_ID),
        square_sandbox=_flag(get_setting(db, "square_sandbox"), SQUARE_SANDBOX),
        square_api_version=SQUARE_API_VERSION,
        timeout=GATEWAY_TIMEOUT_SEC,
    )


def build_gateway(config: GatewayConfig, name: Optional[str] = None, transport=None) -> Optional[GatewayAdapter]:
    """Factory keyed by processor name. Returns None when the processor is unset or lacks credentials."""
    name = name or config.active
    try:
        if name == "stripe":
            from utils.stripe_gateway import StripeGateway
            return StripeGateway(config.stripe_secret_key)
        if name == "paypal":
            from utils.paypal import PayPalGateway
            return PayPalGateway(
                config.paypal_client_id,
                config.paypal_client_secret,
                sandbox=config.paypal_sandbox,
                webhook_id=config.paypal_webhook_id,
                timeout=config.timeout,
                transport=transport,
            )
        if name == "square":
            from utils.square import SquareGateway
            return SquareGateway(
                config.square_access_token,
                config.square_location_id,
                sandbox=config.square_sandbox,
                api_version=config.square_api_version,
                timeout=config.timeout,
                transport=transport,
            )
    except ValueError as ex:
        logger.warning(f"[payments] {name} selected but not configured: {ex}")
        return None
    return None


def _gift_code() -> str:
    alphabet = string.ascii_uppercase + string.digits
    return "GC-" + "".join(secrets.choice(alphabet) for _ in range(6))


def _transaction_number() -> str:
    return f"TXN-{int(time.time() * 1000)}"


def _parse_day(value: Optional[str], hour: int, minute: int = 0, second: int = 0) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.strptime(value[:10], "%Y-%m-%d").replace(hour=hour, minute=minute, second=second)
    except ValueError:
        logger.warning(f"[payments] ignoring malformed date '{value}'")
        return None


def _variant_info(item: CartItem) -> Optional[str]:
    if not (item.selected_size or item.selected_color):
        return None
    return json.dumps({"size": item.selected_size, "color": item.selected_color})


class PaymentOrchestrator:
    def __init__(self, db: Session, config: GatewayConfig, gateway: Optional[GatewayAdapter] = None):
        self.db = db
        self.config = config
        self._gateway = gateway
        self._resolved = gateway is not None

    @classmethod
    def from_settings(cls, db: Session) -> "PaymentOrchestrator":
        return cls(db, load_gateway_config(db))

    # ------------------------------------------------------------------
    # Gateway selection
    # ------------------------------------------------------------------

    def get_active_gateway(self) -> Optional[GatewayAdapter]:
        if not self._resolved:
            self._gateway = build_gateway(self.config)
            self._resolved = True
        return self._gateway

    def gateway_for(self, processor: Optional[str]) -> Optional[GatewayAdapter]:
        active = self.get_active_gateway()
        if not processor or (active is not None and active.name == processor):
            return active
        # Refunds of payments taken before a processor switch
        return build_gateway(self.config, processor)

    def get_currency(self) -> str:
        return self.config.currency or "usd"

    # ------------------------------------------------------------------
    # Outbound operations
    # ------------------------------------------------------------------

    async def ensure_customer(self, member: Member) -> Optional[str]:
        gateway = self.get_active_gateway()
        if gateway is None:
            return None
        ref = await gateway.ensure_customer(member)
        self.db.commit()
        return ref

    async def create_checkout_session(
        self,
        amount_cents: int,
        description: str,
        success_url: str,
        cancel_url: str,
        origin: Optional[CheckoutOrigin] = None,
        line_items: Optional[List[LineItem]] = None,
        member_id: Optional[str] = None,
    ) -> CheckoutSession:
        gateway = self.get_active_gateway()
        if gateway is None:
            raise GatewayError("No payment processor configured")
        customer_ref = None
        if member_id:
            member = self.db.query(Member).filter(Member.id == member_id).first()
            if member is not None:
                customer_ref = await self.ensure_customer(member)
        metadata = encode_metadata(origin) if origin is not None else {}
        session = await gateway.create_checkout_session(
            amount_cents,
            self.get_currency(),
            description,
            success_url,
            cancel_url,
            line_items=line_items,
            customer_ref=customer_ref,
            metadata=metadata,
        )
        logger.info(f"[payments] {gateway.name} checkout session {session.session_id} for {amount_cents} cents")
        return session

    async def get_checkout_status(self, session_id: str, order_id: Optional[str] = None) -> CheckoutStatus:
        """Poll the gateway; a completed checkout is reconciled here as well as by webhook."""
        gateway = self.get_active_gateway()
        if gateway is None:
            raise GatewayError("No payment processor configured")
        status = await gateway.get_checkout_status(session_id, order_id)
        if status.status == STATUS_COMPLETE and status.external_payment_id:
            self.handle_checkout_completed(status.external_payment_id, gateway.name, status.metadata)
        return status

    async def charge_stored_payment_method(
        self,
        member_id: str,
        amount_cents: int,
        description: str,
        invoice_ref: Optional[str] = None,
        currency: Optional[str] = None,
        attempt: int = 0,
    ) -> ChargeResult:
        """Off-session charge. Failures come back as ChargeResult values, never exceptions.

        `attempt` is folded into the idempotency key; every retry of an invoice
        is a distinct charge on the gateway side.
        """
        gateway = self.get_active_gateway()
        if gateway is None:
            return ChargeResult.failed(NO_GATEWAY)
        member = self.db.query(Member).filter(Member.id == member_id).first()
        if member is None:
            return ChargeResult.failed(MEMBER_NOT_FOUND)
        if not member.default_payment_method_id:
            return ChargeResult.failed(NO_STORED_METHOD)
        metadata = {"memberId": member_id}
        if invoice_ref:
            metadata["invoiceId"] = invoice_ref
        try:
            result = await gateway.charge_stored_method(
                gateway.customer_ref_for(member),
                member.default_payment_method_id,
                amount_cents,
                currency or self.get_currency(),
                description,
                idempotency_ref=f"{invoice_ref}-{attempt}" if invoice_ref else None,
                metadata=metadata,
            )
        except GatewayError as ex:
            logger.warning(f"[payments] {gateway.name} charge for member {member_id} errored: {ex}")
            return ChargeResult.failed(GATEWAY_ERROR, str(ex))
        except Exception as ex:
            logger.exception(f"[payments] unexpected charge failure for member {member_id}: {ex}")
            return ChargeResult.failed(GATEWAY_ERROR, str(ex))
        if not result.success:
            logger.info(f"[payments] charge for member {member_id} failed: {result.failure_reason} {result.message or ''}")
        return result

    async def refund_payment(
        self,
        external_payment_id: str,
        amount_cents: Optional[int] = None,
        processor: Optional[str] = None,
    ) -> RefundResult:
        txn = self.db.query(POSTransaction).filter(POSTransaction.payment_intent_id == external_payment_id).first()
        invoice = self.db.query(Invoice).filter(Invoice.external_payment_id == external_payment_id).first()
        processor = processor or (txn.payment_processor if txn else None) or (invoice.payment_processor if invoice else None)
        gateway = self.gateway_for(processor)
        if gateway is None:
            return RefundResult(success=False, message="No payment processor configured")

        paid_total = self.paid_total_cents(external_payment_id)
        send_amount = amount_cents
        if send_amount is None and gateway.name == "square":
            send_amount = paid_total
        try:
            result = await gateway.refund(external_payment_id, send_amount, self.get_currency())
        except GatewayError as ex:
            logger.warning(f"[payments] refund of {external_payment_id} failed: {ex}")
            return RefundResult(success=False, message=str(ex))
        if result.success:
            self.handle_refund_completed(external_payment_id, full_refund=self.is_full_refund(external_payment_id, amount_cents))
        return result

    # ------------------------------------------------------------------
    # Inbound reconciliation
    # ------------------------------------------------------------------

    def paid_total_cents(self, external_payment_id: str) -> Optional[int]:
        """Amount originally collected for a payment, from its transaction or invoice."""
        txn = self.db.query(POSTransaction).filter(POSTransaction.payment_intent_id == external_payment_id).first()
        if txn is not None:
            return txn.total_cents
        invoice = self.db.query(Invoice).filter(Invoice.external_payment_id == external_payment_id).first()
        return invoice.amount_cents if invoice is not None else None

    def is_full_refund(self, external_payment_id: str, refunded_cents: Optional[int]) -> bool:
        total = self.paid_total_cents(external_payment_id)
        return refunded_cents is None or total is None or refunded_cents >= total

    def _find_invoice(self, ref: Optional[str]) -> Optional[Invoice]:
        if not ref:
            return None
        return self.db.query(Invoice).filter(or_(Invoice.id == ref, Invoice.invoice_number == ref)).first()

    def _mark_invoice_paid(self, ref: Optional[str], external_payment_id: str, processor: str) -> bool:
        invoice = self._find_invoice(ref)
        if invoice is None:
            logger.warning(f"[payments] invoice {ref} not found for payment {external_payment_id}")
            return False
        if invoice.status not in _PAYABLE_STATUSES:
            return False
        invoice.mark_paid(external_payment_id, processor, utc_now())
        return True

    def handle_checkout_completed(
        self,
        external_payment_id: str,
        processor: str,
        metadata: Optional[Dict[str, str]],
        amount_total_cents: Optional[int] = None,
        tax_cents: Optional[int] = None,
    ) -> str:
        """Apply a completed checkout exactly once. Returns a short outcome label."""
        db = self.db
        if db.query(POSTransaction).filter(POSTransaction.payment_intent_id == external_payment_id).first():
            return "duplicate"
        if db.query(Invoice).filter(Invoice.external_payment_id == external_payment_id).first():
            return "duplicate"

        origin = decode_metadata(metadata)
        try:
            outcome = self._apply_origin(origin, external_payment_id, processor, amount_total_cents, tax_cents)
            db.commit()
        except IntegrityError:
            # A concurrent delivery recorded the same payment first
            db.rollback()
            logger.info(f"[payments] payment {external_payment_id} already reconciled")
            return "duplicate"
        except Exception:
            db.rollback()
            raise
        logger.info(f"[payments] {processor} payment {external_payment_id}: {outcome}")
        return outcome

    def _apply_origin(
        self,
        origin: Optional[CheckoutOrigin],
        external_payment_id: str,
        processor: str,
        amount_total_cents: Optional[int],
        tax_cents: Optional[int],
    ) -> str:
        if isinstance(origin, POSSplit):
            txn = self.db.query(POSTransaction).filter(POSTransaction.id == origin.transaction_id).first()
            if txn is None:
                logger.warning(f"[payments] split transaction {origin.transaction_id} not found")
                return "ignored"
            txn.payment_intent_id = external_payment_id
            txn.payment_processor = processor
            if origin.invoice_id:
                self._mark_invoice_paid(origin.invoice_id, external_payment_id, processor)
            return "linked"
        if isinstance(origin, PortalInvoice):
            return "invoice_paid" if self._mark_invoice_paid(origin.invoice_id, external_payment_id, processor) else "ignored"
        if isinstance(origin, AdminPOSCart):
            return self._materialize_admin_cart(origin, external_payment_id, processor, amount_total_cents, tax_cents)
        if isinstance(origin, PortalStoreCart):
            return self._materialize_store_cart(origin, external_payment_id, processor, amount_total_cents, tax_cents)
        if isinstance(origin, BareInvoice):
            return "invoice_paid" if self._mark_invoice_paid(origin.invoice_id, external_payment_id, processor) else "ignored"
        return "ignored"

    def _decrement_stock(self, item: CartItem) -> None:
        if item.selected_size or item.selected_color:
            variant = (
                self.db.query(POSItemVariant)
                .filter(
                    POSItemVariant.item_id == item.item_id,
                    POSItemVariant.size == item.selected_size,
                    POSItemVariant.color == item.selected_color,
                )
                .first()
            )
            if variant is not None:
                self.db.query(POSItemVariant).filter(POSItemVariant.id == variant.id).update(
                    {POSItemVariant.quantity: POSItemVariant.quantity - item.quantity}, synchronize_session=False
                )
        self.db.query(POSItem).filter(POSItem.id == item.item_id).update(
            {POSItem.quantity: POSItem.quantity - item.quantity, POSItem.updated_at: utc_now()},
            synchronize_session=False,
        )

    def _start_membership(
        self,
        member_id: str,
        plan: MembershipPlan,
        start: datetime,
        end: Optional[datetime] = None,
        custom_price_cents: Optional[int] = None,
        first_month_discount_only: bool = False,
    ) -> Membership:
        # The first period is paid at checkout, so billing starts one cycle later
        next_payment = add_billing_cycle(start, plan.billing_cycle) if (end is None and plan.auto_renew) else None
        membership = Membership(
            member_id=member_id,
            membership_plan_id=plan.id,
            status=MembershipStatus.ACTIVE.value,
            start_date=start,
            end_date=end,
            next_payment_date=next_payment,
            custom_price_cents=custom_price_cents,
            first_month_discount_only=first_month_discount_only,
        )
        if plan.contract_length_months:
            from utils.contracts import contract_end_date
            membership.contract_end_date = contract_end_date(start, plan.contract_length_months)
        self.db.add(membership)
        self.db.query(Member).filter(Member.id == member_id).update({Member.status: "ACTIVE"}, synchronize_session=False)
        return membership

    def _materialize_admin_cart(
        self,
        cart: AdminPOSCart,
        external_payment_id: str,
        processor: str,
        amount_total_cents: Optional[int],
        tax_cents: Optional[int],
    ) -> str:
        if not cart.items:
            return "ignored"
        db = self.db
        lines = []
        for item in cart.items:
            unit = item.effective_unit_price_cents
            lines.append(
                POSLineItem(
                    item_id=item.item_id,
                    item_name=item.item_name or item.type,
                    item_sku=item.item_sku,
                    type=item.type,
                    membership_plan_id=item.membership_plan_id,
                    variant_info=_variant_info(item),
                    quantity=item.quantity,
                    unit_price_cents=unit,
                    subtotal_cents=unit * item.quantity - item.discount_cents,
                )
            )
        subtotal = sum(li.subtotal_cents for li in lines)
        total_discount = cart.discount_cents + cart.service_discount_cents + cart.product_discount_cents
        tax = tax_cents if tax_cents is not None else cart.tax_cents
        total = amount_total_cents or max(0, subtotal - total_discount + tax)
        txn = POSTransaction(
            transaction_number=_transaction_number(),
            member_id=cart.member_id,
            member_name=cart.member_name,
            subtotal_cents=subtotal,
            tax_cents=tax,
            discount_cents=total_discount,
            total_cents=total,
            payment_method=processor.upper(),
            status="COMPLETED",
            payment_intent_id=external_payment_id,
            payment_processor=processor,
            notes=cart.notes,
            line_items=lines,
        )
        db.add(txn)
        db.flush()

        for item in cart.items:
            if item.type == "product" and item.item_id:
                self._decrement_stock(item)
            elif item.type == "membership" and cart.member_id and item.membership_plan_id:
                plan = db.query(MembershipPlan).filter(MembershipPlan.id == item.membership_plan_id).first()
                if plan is None:
                    logger.warning(f"[payments] plan {item.membership_plan_id} in cart not found")
                    continue
                self._start_membership(
                    cart.member_id,
                    plan,
                    start=_parse_day(item.membership_start_date, 12) or utc_now(),
                    end=_parse_day(item.membership_end_date, 23, 59, 59),
                    custom_price_cents=item.custom_price_cents,
                    first_month_discount_only=item.first_month_discount_only,
                )
            elif item.type == "credit" and cart.member_id:
                adjust_account_credit(db, cart.member_id, item.unit_price_cents * item.quantity)
            elif item.type == "gift":
                amount = item.unit_price_cents * item.quantity
                db.add(
                    GiftCertificate(
                        code=_gift_code(),
                        amount_cents=amount,
                        balance_cents=amount,
                        purchased_by=cart.member_name or "POS",
                        recipient_name=item.recipient_name,
                        status="ACTIVE",
                    )
                )

        if cart.redeemed_gift_code and cart.redeemed_gift_amount_cents > 0:
            gc = db.query(GiftCertificate).filter(GiftCertificate.code == cart.redeemed_gift_code).first()
            if gc is not None:
                remaining = gc.balance_cents - cart.redeemed_gift_amount_cents
                gc.balance_cents = max(0, remaining)
                gc.status = "REDEEMED" if remaining <= 0 else "ACTIVE"
            else:
                logger.warning(f"[payments] redeemed gift code {cart.redeemed_gift_code} not found")
        return "pos_created"

    def _materialize_store_cart(
        self,
        cart: PortalStoreCart,
        external_payment_id: str,
        processor: str,
        amount_total_cents: Optional[int],
        tax_cents: Optional[int],
    ) -> str:
        if not cart.items:
            return "ignored"
        db = self.db
        product_items = [i for i in cart.items if i.item_id and not i.is_plan]
        plan_items = [i for i in cart.items if i.is_plan]

        products = {}
        if product_items:
            rows = (
                db.query(POSItem)
                .filter(POSItem.id.in_([i.item_id for i in product_items]), POSItem.portal_purchasable.is_(True))
                .all()
            )
            products = {p.id: p for p in rows}
        plans = {}
        if plan_items:
            rows = (
                db.query(MembershipPlan)
                .filter(
                    MembershipPlan.id.in_([i.plan_id for i in plan_items]),
                    MembershipPlan.portal_purchasable.is_(True),
                    MembershipPlan.is_active.is_(True),
                )
                .all()
            )
            plans = {p.id: p for p in rows}

        member_name = None
        if cart.member_id:
            member = db.query(Member).filter(Member.id == cart.member_id).first()
            member_name = member.full_name if member else None

        lines = []
        for item in product_items:
            product = products.get(item.item_id)
            if product is None:
                logger.warning(f"[payments] store item {item.item_id} is not portal purchasable; skipped")
                continue
            variant = " / ".join(v for v in (item.selected_size, item.selected_color) if v)
            lines.append(
                POSLineItem(
                    item_id=product.id,
                    item_name=f"{product.name} ({variant})" if variant else product.name,
                    item_sku=product.sku,
                    type="product",
                    variant_info=_variant_info(item),
                    quantity=item.quantity,
                    unit_price_cents=product.price_cents,
                    subtotal_cents=product.price_cents * item.quantity,
                )
            )
        for item in plan_items:
            plan = plans.get(item.plan_id)
            if plan is None:
                logger.warning(f"[payments] store plan {item.plan_id} is not portal purchasable; skipped")
                continue
            price = plan.price_cents or 0
            lines.append(
                POSLineItem(
                    item_name=plan.name,
                    type="membership",
                    membership_plan_id=plan.id,
                    quantity=item.quantity,
                    unit_price_cents=price,
                    subtotal_cents=price * item.quantity,
                )
            )
        if not lines:
            return "ignored"

        subtotal = sum(li.subtotal_cents for li in lines)
        tax = tax_cents or 0
        db.add(
            POSTransaction(
                transaction_number=_transaction_number(),
                member_id=cart.member_id,
                member_name=member_name,
                subtotal_cents=subtotal,
                tax_cents=tax,
                discount_cents=0,
                total_cents=amount_total_cents or subtotal + tax,
                payment_method=processor.upper(),
                status="COMPLETED",
                payment_intent_id=external_payment_id,
                payment_processor=processor,
                line_items=lines,
            )
        )
        db.flush()

        for item in product_items:
            if item.item_id in products:
                self._decrement_stock(item)
        if cart.member_id:
            for item in plan_items:
                plan = plans.get(item.plan_id)
                if plan is not None:
                    self._start_membership(cart.member_id, plan, start=utc_now())
        return "store_created"

    def handle_payment_succeeded(self, external_payment_id: str, processor: str, invoice_ref: Optional[str]) -> bool:
        """Off-session success reported by webhook (auto-billing, dunning)."""
        changed = self._mark_invoice_paid(invoice_ref, external_payment_id, processor) if invoice_ref else False
        if changed:
            self.db.commit()
        return changed

    def handle_payment_failed(self, invoice_ref: Optional[str]) -> bool:
        invoice = self._find_invoice(invoice_ref)
        if invoice is None or invoice.status != InvoiceStatus.PENDING.value:
            return False
        # Still inside the grace period; the past-due sweep picks it up after due_date
        if invoice.due_date is not None and invoice.due_date >= utc_now():
            return False
        invoice.status = InvoiceStatus.PAST_DUE.value
        if invoice.next_retry_date is None:
            invoice.next_retry_date = utc_now() + timedelta(days=get_retry_delay_days(invoice.retry_count or 0))
        self.db.commit()
        return True

    def handle_refund_completed(self, external_payment_id: str, full_refund: bool = True) -> bool:
        changed = False
        txn = self.db.query(POSTransaction).filter(POSTransaction.payment_intent_id == external_payment_id).first()
        if txn is not None and txn.status != "REFUNDED" and full_refund:
            txn.status = "REFUNDED"
            changed = True
        invoice = self.db.query(Invoice).filter(Invoice.external_payment_id == external_payment_id).first()
        if invoice is not None and invoice.status != InvoiceStatus.REFUNDED.value and full_refund:
            invoice.status = InvoiceStatus.REFUNDED.value
            changed = True
        if changed:
            self.db.commit()
        return changed
