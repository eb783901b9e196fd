"""
Checkout orchestration.

``CheckoutService`` walks a submitted checkout through cart review, field
validation, payment method resolution, stock reservation, payment
confirmation and order persistence. Every step either advances or ends the
checkout with a ``CheckoutOutcome`` the blueprints turn into a flash message
and redirect (or a JSON body for the PayPal endpoints).
"""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, MutableMapping, Optional, Sequence, Tuple

from sqlalchemy.orm import Session

from storefront.config import Config
from storefront.errors import CheckoutError, InsufficientStock, ProductNotFound, RemoteProviderError, ValidationError
from storefront.models import PaymentMethod, PaymentStatus, ShippingStatus
from storefront.observability import increment_counter, observe_latency, record_event
from storefront.services.cart_service import CartService
from storefront.services.inventory_service import InventoryService
from storefront.services.nets_client import NetsQrClient
from storefront.services.order_service import (
    SESSION_HISTORY_KEY,
    SESSION_LAST_ORDER_KEY,
    STATUS_KIND_PAYMENT,
    STATUS_KIND_SHIPPING,
    CustomerSnapshot,
    OrderRecord,
    OrderService,
    build_order_record,
    generate_invoice_number,
)
from storefront.services.payment_service import (
    PaymentContext,
    PaymentConfirmation,
    PaymentService,
    build_paynow_payload,
)
from storefront.services.paypal_client import PayPalClient
from storefront.services.pending_checkout import SESSION_PENDING_KEY, PendingCheckout, PendingCheckoutStore
from storefront.services.pricing import LineItem, Totals, calculate_totals, format_amount, totals_for_order
from storefront.services.saved_card_service import SavedCardService
from storefront.services.wallet_service import WalletService

EMPTY_CART_MESSAGE = "Your cart is empty. Add items before checking out."
MISSING_FIELDS_MESSAGE = "Please complete all checkout fields before placing your order."
GENERIC_FAILURE_MESSAGE = "Something went wrong while placing your order. Please try again."
REQUIRED_FIELDS = ("fullName", "email", "address", "paymentMethod")
CONTACT_FIELDS = ("fullName", "email", "address")
SESSION_PAYNOW_FLAG = "pending_paynow"
SESSION_SAVED_CARDS_KEY = "saved_cards_cache"


@dataclass
class CheckoutOutcome:
    redirect: Optional[str] = None
    message: Optional[str] = None
    category: str = "error"
    payload: Optional[Dict[str, Any]] = None
    status_code: int = 200

    @property
    def ok(self) -> bool:
        return self.category != "error"


def placed_message(email: Optional[str]) -> str:
    return f"Order placed! An invoice has been generated for {email}."


def _success(redirect: str, message: Optional[str] = None, payload: Optional[Dict[str, Any]] = None) -> CheckoutOutcome:
    return CheckoutOutcome(redirect=redirect, message=message, category="success", payload=payload)


def _failure_from(exc: CheckoutError) -> CheckoutOutcome:
    return CheckoutOutcome(
        redirect=exc.redirect_to,
        message=exc.message,
        category="error",
        status_code=exc.status_code,
    )


class CheckoutService:
    def __init__(
        self,
        db_session: Session,
        order_service: OrderService,
        pending_store: PendingCheckoutStore,
        nets_client: Optional[NetsQrClient] = None,
        paypal_client: Optional[PayPalClient] = None,
        config: type[Config] = Config,
        payment_service: Optional[PaymentService] = None,
    ) -> None:
        self.db = db_session
        self.config = config
        self.orders = order_service
        self.pending = pending_store
        self.nets = nets_client
        self.paypal = paypal_client
        self.carts = CartService(db_session)
        self.inventory = InventoryService(db_session, config)
        self.wallets = WalletService(db_session)
        self.saved_cards = SavedCardService(db_session)
        self.payments = payment_service or PaymentService(db_session, self.wallets, self.saved_cards)
        self.logger = logging.getLogger(__name__)

    # ------------------------------------------------------------------
    # Views
    # ------------------------------------------------------------------
    def render_checkout(self, session: MutableMapping[str, Any]) -> CheckoutOutcome:
        line_items = self.carts.normalize_session_cart(session)
        if not line_items:
            return CheckoutOutcome(redirect="/cart", message=EMPTY_CART_MESSAGE)

        user = session.get("user") or {}
        saved_cards = [card.to_dict() for card in self.saved_cards.list_by_user(user.get("id"))]
        session[SESSION_SAVED_CARDS_KEY] = saved_cards[: self.config.SAVED_CARDS_CACHE_LIMIT]
        totals = calculate_totals(line_items, self.config)
        return CheckoutOutcome(
            category="info",
            payload={
                "cartItems": [item.to_dict() for item in line_items],
                "totals": totals.to_dict(),
                "currency": self.config.CURRENCY,
                "savedCards": saved_cards,
                "walletBalance": float(self.wallets.get_balance(user.get("id"))),
                "paypalClientId": self.config.PAYPAL_CLIENT_ID,
                "user": user or None,
            },
        )

    def render_paynow(self, session: MutableMapping[str, Any]) -> CheckoutOutcome:
        """The PayNow page can be seen once, straight after a PayNow checkout."""
        order = session.get(SESSION_LAST_ORDER_KEY)
        if not order:
            return CheckoutOutcome(redirect="/checkout", message="No PayNow payment is pending.")
        customer = order.get("customer") or {}
        if customer.get("paymentMethod") != PaymentMethod.PAYNOW.value or not session.get(SESSION_PAYNOW_FLAG):
            return CheckoutOutcome(redirect="/invoice", category="info")
        session[SESSION_PAYNOW_FLAG] = False

        paynow = order.get("paynow") or build_paynow_payload(
            order.get("invoiceNumber"),
            totals_for_order(order, self.config).total,
            customer.get("fullName"),
            customer.get("email"),
        )
        return CheckoutOutcome(category="info", payload={"order": order, "paynow": paynow})

    def render_invoice(self, session: MutableMapping[str, Any]) -> CheckoutOutcome:
        order = session.get(SESSION_LAST_ORDER_KEY)
        if not order:
            return CheckoutOutcome(redirect="/cart", message="No recent order to show.")
        totals = totals_for_order(order, self.config)
        return CheckoutOutcome(category="info", payload={"order": {**order, **totals.to_dict()}})

    def order_history(self, session: MutableMapping[str, Any]) -> CheckoutOutcome:
        orders = self.orders.orders_for_user(session.get("user"), session.get(SESSION_HISTORY_KEY))
        return CheckoutOutcome(category="info", payload={"orders": [order.to_dict() for order in orders]})

    def view_order(self, session: MutableMapping[str, Any], invoice_number: str) -> CheckoutOutcome:
        order = self.orders.find_for_user(invoice_number, session.get("user"), session.get(SESSION_HISTORY_KEY))
        if order is None:
            return CheckoutOutcome(redirect="/orders", message="Order not found in your history.")
        session[SESSION_LAST_ORDER_KEY] = order.to_dict()
        return CheckoutOutcome(redirect="/invoice", category="info")

    def track_order(self, session: MutableMapping[str, Any], invoice_number: str) -> CheckoutOutcome:
        order = self.orders.find_for_user(invoice_number, session.get("user"), session.get(SESSION_HISTORY_KEY))
        if order is None:
            return CheckoutOutcome(redirect="/orders", message="Order not found in your history.")
        return CheckoutOutcome(
            category="info",
            payload={
                "invoiceNumber": order.invoice_number,
                "shippingStatus": order.shipping_status,
                "shippingUpdatedAt": order.shipping_updated_at,
                "paymentStatus": order.payment_status,
                "paymentUpdatedAt": order.payment_updated_at,
                "placedAt": order.placed_at,
                "timeline": _tracking_timeline(order.shipping_status),
            },
        )

    # ------------------------------------------------------------------
    # Synchronous checkout (cash, card, wallet, PayNow)
    # ------------------------------------------------------------------
    def process_checkout(self, session: MutableMapping[str, Any], form: Mapping[str, Any]) -> CheckoutOutcome:
        started = time.perf_counter()
        increment_counter("checkout_submitted_total")
        user = session.get("user")
        reserved: Sequence[LineItem] = ()

        line_items = self.carts.normalize_session_cart(session)
        if not line_items:
            return self._fail("empty_cart", CheckoutOutcome(redirect="/cart", message=EMPTY_CART_MESSAGE))

        try:
            self._require_fields(form, REQUIRED_FIELDS)
            method = PaymentMethod.parse(form.get("paymentMethod"))
            if method is None:
                raise ValidationError("Please choose a valid payment method.")
            if method is PaymentMethod.NETS:
                # 307 keeps the POST body for the NETS flow
                return CheckoutOutcome(redirect="/checkout/nets", category="info", status_code=307)
            if method is PaymentMethod.PAYPAL:
                return CheckoutOutcome(
                    redirect="/checkout",
                    message="Please use the PayPal button to pay with PayPal.",
                    category="info",
                )

            totals = calculate_totals(line_items, self.config)
            ctx = PaymentContext(
                method=method,
                form=form,
                totals=totals,
                invoice_number=generate_invoice_number(),
                user=user,
            )
            strategy = self.payments.prevalidate(ctx)

            if strategy.reserves_before_payment:
                reservation = self.inventory.reserve(line_items)
                if not reservation.skipped:
                    reserved = line_items

            confirmation = self.payments.confirm(ctx)
            order = self._place_order(session, ctx, line_items, confirmation)
        except CheckoutError as exc:
            self._release(reserved)
            return self._fail(exc.reason, _failure_from(exc))
        except Exception:
            self.logger.exception("Checkout failed unexpectedly")
            self._release(reserved)
            return self._fail("unexpected", CheckoutOutcome(redirect="/checkout", message=GENERIC_FAILURE_MESSAGE, status_code=500))
        finally:
            observe_latency("checkout_duration_ms", (time.perf_counter() - started) * 1000)

        if method is PaymentMethod.PAYNOW:
            session[SESSION_PAYNOW_FLAG] = True
            return _success("/paynow", self._placed_message(order), {"order": order.to_dict()})
        return _success("/invoice", self._placed_message(order), {"order": order.to_dict()})

    # ------------------------------------------------------------------
    # NETS QR
    # ------------------------------------------------------------------
    def start_nets_checkout(self, session: MutableMapping[str, Any], form: Mapping[str, Any]) -> CheckoutOutcome:
        increment_counter("checkout_submitted_total")
        line_items = self.carts.normalize_session_cart(session)
        if not line_items:
            return self._fail("empty_cart", CheckoutOutcome(redirect="/cart", message=EMPTY_CART_MESSAGE))
        if self.nets is None:
            return self._fail("unconfigured", CheckoutOutcome(redirect="/checkout", message="NETS QR is not available right now."))

        pending: Optional[PendingCheckout] = None
        try:
            self._require_fields(form, CONTACT_FIELDS)
            totals = calculate_totals(line_items, self.config)
            invoice_number = generate_invoice_number()
            pending = self.pending.stage(
                "nets",
                invoice_number,
                self._customer(form, session.get("user"), PaymentMethod.NETS),
                line_items,
                totals,
                form=_clean_form(form),
            )
            qr = self.nets.request_qr_code(format_amount(totals.total), invoice_number)
        except CheckoutError as exc:
            if pending is not None:
                self.pending.discard(pending.token)
            return self._fail(exc.reason, _failure_from(exc))

        reference = qr.get("txn_retrieval_ref")
        self.pending.attach_reference(pending.token, reference)
        session[SESSION_PENDING_KEY] = pending.token
        record_event("nets_qr_issued", {"invoice_number": pending.invoice_number})
        return CheckoutOutcome(
            category="info",
            payload={
                "invoiceNumber": pending.invoice_number,
                "total": format_amount(pending.totals.total),
                "qrCodeUrl": f"data:image/png;base64,{qr.get('qr_code')}",
                "txnRetrievalRef": reference,
                "sseUrl": f"/sse/payment-status/{reference}",
                "timerSeconds": int(self.config.NETS_POLL_INTERVAL_SECONDS * self.config.NETS_MAX_POLLS),
            },
        )

    def mark_nets_paid(self, retrieval_ref: str) -> bool:
        """Called by the status stream once NETS reports the payment as done."""
        marked = self.pending.mark_paid(retrieval_ref)
        if marked:
            self.logger.info("NETS payment confirmed", extra={"txn_retrieval_ref": retrieval_ref})
        return marked

    def finalize_nets_checkout(self, session: MutableMapping[str, Any], token: Optional[str] = None) -> CheckoutOutcome:
        token = token or session.get(SESSION_PENDING_KEY)
        record = self.pending.get(token, "nets")
        if record is None:
            return self._already_finalized(session, PaymentMethod.NETS, "No pending NETS payment was found.")

        if not record.paid:
            if self.nets is None:
                return self._fail("unconfigured", CheckoutOutcome(redirect="/checkout", message="NETS QR is not available right now."))
            try:
                status = self.nets.query_transaction_status(record.provider_reference)
            except RemoteProviderError as exc:
                return self._fail(exc.reason, _failure_from(exc))
            if not status.succeeded:
                return self._fail(
                    "payment_unconfirmed",
                    CheckoutOutcome(redirect="/checkout", message="Your NETS payment has not been confirmed yet."),
                )

        claimed = self.pending.claim(token, "nets")
        if claimed is None:
            return self._already_finalized(session, PaymentMethod.NETS, "No pending NETS payment was found.")
        session.pop(SESSION_PENDING_KEY, None)

        try:
            order = self._finalize_staged(session, claimed, PaymentMethod.NETS, {"txnRetrievalRef": claimed.provider_reference})
        except CheckoutError as exc:
            self.logger.error(
                "NETS order could not be finalised after payment",
                extra={"invoice_number": claimed.invoice_number, "reason": exc.message},
            )
            return self._fail(exc.reason, _failure_from(exc))
        return _success("/invoice", self._placed_message(order), {"order": order.to_dict()})

    def fail_nets_checkout(self, session: MutableMapping[str, Any]) -> CheckoutOutcome:
        self.pending.discard(session.pop(SESSION_PENDING_KEY, None))
        return self._fail(
            "payment_failed",
            CheckoutOutcome(redirect="/checkout", message="NETS payment failed or was cancelled. Please try again."),
        )

    # ------------------------------------------------------------------
    # PayPal
    # ------------------------------------------------------------------
    def create_paypal_order(self, session: MutableMapping[str, Any], body: Mapping[str, Any]) -> Tuple[Dict[str, Any], int]:
        increment_counter("checkout_submitted_total")
        line_items = self.carts.normalize_session_cart(session)
        if not line_items:
            return {"error": EMPTY_CART_MESSAGE}, 400
        if self.paypal is None:
            return {"error": "PayPal is not available right now."}, 502

        pending: Optional[PendingCheckout] = None
        try:
            self._require_fields(body, CONTACT_FIELDS)
            totals = calculate_totals(line_items, self.config)
            invoice_number = generate_invoice_number()
            pending = self.pending.stage(
                "paypal",
                invoice_number,
                self._customer(body, session.get("user"), PaymentMethod.PAYPAL),
                line_items,
                totals,
                form=_clean_form(body),
            )
            created = self.paypal.create_order(format_amount(totals.total), invoice_number)
        except CheckoutError as exc:
            if pending is not None:
                self.pending.discard(pending.token)
            self._fail(exc.reason)
            return {"error": exc.message}, exc.status_code

        order_id = created.get("id")
        self.pending.attach_reference(pending.token, order_id)
        session[SESSION_PENDING_KEY] = pending.token
        return {"id": order_id}, 200

    def capture_paypal_order(self, session: MutableMapping[str, Any], body: Mapping[str, Any]) -> Tuple[Dict[str, Any], int]:
        order_id = (body or {}).get("orderId")
        if not order_id:
            return {"error": "Missing PayPal order id."}, 400

        token = session.get(SESSION_PENDING_KEY)
        record = self.pending.get(token, "paypal")
        if record is None or record.provider_reference != order_id:
            return {"error": "No pending checkout found. Please start again."}, 400

        try:
            capture = self.paypal.capture_order(order_id)
        except RemoteProviderError as exc:
            self._fail(exc.reason)
            return {"error": exc.message}, exc.status_code
        if not capture.completed:
            self._fail("payment_failed")
            self.logger.warning("PayPal capture not completed", extra={"order_id": order_id, "status": capture.status})
            return {"error": "PayPal payment was not completed.", "status": capture.status}, 400

        claimed = self.pending.claim(token, "paypal")
        if claimed is None:
            outcome = self._already_finalized(session, PaymentMethod.PAYPAL, "No pending checkout found. Please start again.")
            return ({"ok": True, "redirectUrl": outcome.redirect}, 200) if outcome.ok else ({"error": outcome.message}, 400)
        session.pop(SESSION_PENDING_KEY, None)

        try:
            order = self._finalize_staged(session, claimed, PaymentMethod.PAYPAL, capture.to_dict())
        except (InsufficientStock, ProductNotFound) as exc:
            # Money has been captured at this point; support must refund it
            self.logger.error(
                "Stock unavailable after PayPal capture",
                extra={"order_id": order_id, "invoice_number": claimed.invoice_number, "reason": exc.message},
            )
            self._fail(exc.reason)
            body = {"error": exc.message}
            if isinstance(exc, InsufficientStock):
                body.update(exc.to_dict())
            return body, 409
        except CheckoutError as exc:
            self._fail(exc.reason)
            return {"error": exc.message}, exc.status_code

        return {"ok": True, "redirectUrl": "/invoice"}, 200

    # ------------------------------------------------------------------
    # Post-completion
    # ------------------------------------------------------------------
    def cancel_order_for_user(self, session: MutableMapping[str, Any], invoice_number: str) -> CheckoutOutcome:
        ok, message = self.orders.cancel_for_user(invoice_number, session.get("user"), session.get(SESSION_HISTORY_KEY))
        if not ok:
            return CheckoutOutcome(redirect="/orders", message=message)
        self._sync_session_status(session, invoice_number, ShippingStatus.CANCELLED.value, STATUS_KIND_SHIPPING)
        return _success("/orders", message)

    def set_order_status(self, invoice_number: str, status: str, kind: str = STATUS_KIND_SHIPPING) -> CheckoutOutcome:
        kind = (kind or STATUS_KIND_SHIPPING).lower()
        allowed = ShippingStatus if kind == STATUS_KIND_SHIPPING else PaymentStatus if kind == STATUS_KIND_PAYMENT else None
        if allowed is None:
            return CheckoutOutcome(redirect="/admin/orders", message="Unknown status type.")
        canonical = next((member.value for member in allowed if member.value.lower() == str(status or "").strip().lower()), None)
        if canonical is None:
            return CheckoutOutcome(redirect="/admin/orders", message="Invalid status value.")
        if not self.orders.set_status(invoice_number, canonical, kind):
            return CheckoutOutcome(redirect="/admin/orders", message="Order not found.", status_code=404)
        return _success("/admin/orders", f"Order {invoice_number} updated to {canonical}.")

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _finalize_staged(
        self,
        session: MutableMapping[str, Any],
        record: PendingCheckout,
        method: PaymentMethod,
        provider_payload: Dict[str, Any],
    ) -> OrderRecord:
        """Reserve stock and persist an order for a checkout the provider has already paid."""
        ctx = PaymentContext(
            method=method,
            form=record.form,
            totals=record.totals,
            invoice_number=record.invoice_number,
            user=session.get("user"),
            provider_payload=provider_payload,
        )
        self.inventory.reserve(record.line_items)
        confirmation = self.payments.confirm(ctx)
        return self._persist(session, record.line_items, record.totals, record.invoice_number, record.customer, confirmation)

    def _place_order(
        self,
        session: MutableMapping[str, Any],
        ctx: PaymentContext,
        line_items: Sequence[LineItem],
        confirmation: PaymentConfirmation,
    ) -> OrderRecord:
        customer = self._customer(ctx.form, ctx.user, ctx.method, ctx.card_last4)
        if confirmation.saved_card:
            cache = [confirmation.saved_card] + list(session.get(SESSION_SAVED_CARDS_KEY) or [])
            session[SESSION_SAVED_CARDS_KEY] = cache[: self.config.SAVED_CARDS_CACHE_LIMIT]
        return self._persist(session, line_items, ctx.totals, ctx.invoice_number, customer, confirmation)

    def _persist(
        self,
        session: MutableMapping[str, Any],
        line_items: Sequence[LineItem],
        totals: Totals,
        invoice_number: str,
        customer: CustomerSnapshot,
        confirmation: PaymentConfirmation,
    ) -> OrderRecord:
        order = build_order_record(
            line_items,
            totals,
            invoice_number,
            customer,
            paynow=confirmation.paynow,
            paypal=confirmation.paypal,
            payment_status=confirmation.payment_status,
        )
        self.orders.persist(order, session.get("user"), session, self.carts)
        return order

    def _release(self, line_items: Sequence[LineItem]) -> None:
        if not line_items:
            return
        try:
            self.inventory.release(line_items)
        except Exception:
            self.logger.exception("Could not release reserved stock")

    def _already_finalized(self, session: MutableMapping[str, Any], method: PaymentMethod, message: str) -> CheckoutOutcome:
        last = session.get(SESSION_LAST_ORDER_KEY) or {}
        if (last.get("customer") or {}).get("paymentMethod") == method.value:
            return CheckoutOutcome(redirect="/invoice", category="info")
        return CheckoutOutcome(redirect="/checkout", message=message)

    def _fail(self, reason: str, outcome: Optional[CheckoutOutcome] = None) -> Optional[CheckoutOutcome]:
        increment_counter("checkout_failures_total", labels={"reason": reason})
        if outcome is not None:
            self.logger.info("Checkout stopped: %s", outcome.message, extra={"reason": reason})
        return outcome

    @staticmethod
    def _require_fields(form: Mapping[str, Any], fields: Sequence[str]) -> None:
        missing = [name for name in fields if not str(form.get(name) or "").strip()]
        if missing:
            raise ValidationError(MISSING_FIELDS_MESSAGE)

    @staticmethod
    def _customer(
        form: Mapping[str, Any],
        user: Optional[Mapping[str, Any]],
        method: PaymentMethod,
        card_last4: Optional[str] = None,
    ) -> CustomerSnapshot:
        return CustomerSnapshot(
            full_name=str(form.get("fullName") or "").strip(),
            email=str(form.get("email") or "").strip(),
            address=str(form.get("address") or "").strip(),
            payment_method=method.value,
            card_last4=card_last4,
            user_id=(user or {}).get("id"),
        )

    @staticmethod
    def _placed_message(order: OrderRecord) -> str:
        return placed_message(order.customer.email)

    @staticmethod
    def _sync_session_status(session: MutableMapping[str, Any], invoice_number: str, status: str, kind: str) -> None:
        field = "paymentStatus" if kind == STATUS_KIND_PAYMENT else "shippingStatus"
        entries: List[Dict[str, Any]] = list(session.get(SESSION_HISTORY_KEY) or [])
        last = session.get(SESSION_LAST_ORDER_KEY)
        for entry in entries + ([last] if last else []):
            if str(entry.get("invoiceNumber", "")).lower() == str(invoice_number).lower():
                entry[field] = status
                if kind != STATUS_KIND_PAYMENT:
                    entry["status"] = status
        session[SESSION_HISTORY_KEY] = entries
        if last:
            session[SESSION_LAST_ORDER_KEY] = last


_TRACKING_STEPS = (
    ShippingStatus.PROCESSING.value,
    ShippingStatus.SHIPPED.value,
    ShippingStatus.OUT_FOR_DELIVERY.value,
    ShippingStatus.DELIVERED.value,
)


def _tracking_timeline(current: str) -> List[Dict[str, Any]]:
    if current == ShippingStatus.CANCELLED.value:
        return [{"status": ShippingStatus.CANCELLED.value, "reached": True}]
    reached = _TRACKING_STEPS.index(current) if current in _TRACKING_STEPS else 0
    return [{"status": step, "reached": index <= reached} for index, step in enumerate(_TRACKING_STEPS)]


def _clean_form(form: Mapping[str, Any]) -> Dict[str, Any]:
    """Contact fields only; card details never go into the staging store."""
    return {key: form.get(key) for key in CONTACT_FIELDS if form.get(key) is not None}
