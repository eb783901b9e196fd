"""
Order records and where they live.

A placed order is written to three places: the shopper's session (current
order + a short history), a per-user in-process history, and the global feed
shown on the admin dashboard. The feed is mirrored to a JSON file after every
mutation so it survives restarts.
"""
from __future__ import annotations

import json
import logging
import os
import secrets
import tempfile
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Mapping, MutableMapping, Optional, Sequence, Tuple

from storefront.config import Config
from storefront.errors import PersistenceWarning
from storefront.models import PaymentMethod, PaymentStatus, ShippingStatus
from storefront.observability import increment_counter, record_event
from storefront.services.pricing import LineItem, Totals, totals_for_order

SESSION_LAST_ORDER_KEY = "last_order"
SESSION_HISTORY_KEY = "order_history"

STATUS_KIND_SHIPPING = "shipping"
STATUS_KIND_PAYMENT = "payment"

_IMMUTABLE_FIELDS = frozenset({"invoice_number", "customer", "cart_items", "totals", "placed_at"})


def _utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def generate_invoice_number(now: Optional[datetime] = None) -> str:
    """Timestamp plus a random suffix so two checkouts in the same second never collide."""
    now = now or datetime.now(timezone.utc)
    return f"INV-{now:%Y%m%d%H%M%S}-{secrets.token_hex(3).upper()}"


@dataclass(frozen=True)
class CustomerSnapshot:
    full_name: str
    email: str
    address: str
    payment_method: str
    card_last4: Optional[str] = None
    user_id: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.user_id,
            "fullName": self.full_name,
            "email": self.email,
            "address": self.address,
            "paymentMethod": self.payment_method,
            "cardLast4": self.card_last4,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "CustomerSnapshot":
        return cls(
            full_name=data.get("fullName") or "",
            email=data.get("email") or "",
            address=data.get("address") or "",
            payment_method=data.get("paymentMethod") or "",
            card_last4=data.get("cardLast4"),
            user_id=data.get("id"),
        )


@dataclass
class OrderRecord:
    invoice_number: str
    customer: CustomerSnapshot
    cart_items: Tuple[LineItem, ...]
    totals: Totals
    placed_at: str
    paynow: Optional[Dict[str, Any]] = None
    paypal: Optional[Dict[str, Any]] = None
    shipping_status: str = ShippingStatus.PROCESSING.value
    shipping_updated_at: str = field(default_factory=_utcnow_iso)
    payment_status: str = PaymentStatus.PAID.value
    payment_updated_at: str = field(default_factory=_utcnow_iso)
    status: str = ShippingStatus.PROCESSING.value
    status_updated_at: str = field(default_factory=_utcnow_iso)

    def __setattr__(self, name: str, value: Any) -> None:
        if name in _IMMUTABLE_FIELDS and name in self.__dict__:
            raise AttributeError(f"{name} cannot change once the order is placed")
        super().__setattr__(name, value)

    def matches(self, key: str) -> bool:
        return str(self.invoice_number).lower() == str(key).lower()

    def apply_status(self, status: str, kind: str = STATUS_KIND_SHIPPING) -> None:
        now = _utcnow_iso()
        if kind == STATUS_KIND_PAYMENT:
            self.payment_status = status
            self.payment_updated_at = now
        else:
            self.shipping_status = status
            self.shipping_updated_at = now
            self.status = status
            self.status_updated_at = now

    def to_dict(self) -> Dict[str, Any]:
        return {
            "invoiceNumber": self.invoice_number,
            "customer": self.customer.to_dict(),
            "paynow": self.paynow,
            "paypal": self.paypal,
            "status": self.status,
            "statusUpdatedAt": self.status_updated_at,
            "paymentStatus": self.payment_status,
            "paymentUpdatedAt": self.payment_updated_at,
            "shippingStatus": self.shipping_status,
            "shippingUpdatedAt": self.shipping_updated_at,
            "cartItems": [item.to_dict() for item in self.cart_items],
            **self.totals.to_dict(),
            "placedAt": self.placed_at,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "OrderRecord":
        placed_at = data.get("placedAt") or data.get("createdAt") or _utcnow_iso()
        shipping_status = data.get("shippingStatus") or data.get("status") or ShippingStatus.PROCESSING.value
        return cls(
            invoice_number=str(data.get("invoiceNumber") or data.get("orderNumber") or data.get("id")),
            customer=CustomerSnapshot.from_dict(data.get("customer") or {}),
            cart_items=tuple(LineItem.from_dict(item) for item in data.get("cartItems") or []),
            totals=totals_for_order(data),
            placed_at=placed_at,
            paynow=data.get("paynow"),
            paypal=data.get("paypal"),
            shipping_status=shipping_status,
            shipping_updated_at=data.get("shippingUpdatedAt") or placed_at,
            payment_status=data.get("paymentStatus") or PaymentStatus.PAID.value,
            payment_updated_at=data.get("paymentUpdatedAt") or placed_at,
            status=data.get("status") or shipping_status,
            status_updated_at=data.get("statusUpdatedAt") or placed_at,
        )


def initial_payment_status(payment_method: str) -> str:
    method = PaymentMethod.parse(payment_method)
    if method is PaymentMethod.CASH:
        return PaymentStatus.CASH_ON_DELIVERY.value
    if method is PaymentMethod.PAYNOW:
        return PaymentStatus.AWAITING_PAYMENT.value
    return PaymentStatus.PAID.value


def build_order_record(
    line_items: Sequence[LineItem],
    totals: Totals,
    invoice_number: str,
    customer: CustomerSnapshot,
    paynow: Optional[Dict[str, Any]] = None,
    paypal: Optional[Dict[str, Any]] = None,
    payment_status: Optional[str] = None,
) -> OrderRecord:
    now = _utcnow_iso()
    return OrderRecord(
        invoice_number=invoice_number,
        customer=customer,
        cart_items=tuple(line_items),
        totals=totals,
        placed_at=now,
        paynow=paynow,
        paypal=paypal,
        shipping_status=ShippingStatus.PROCESSING.value,
        shipping_updated_at=now,
        payment_status=payment_status or initial_payment_status(customer.payment_method),
        payment_updated_at=now,
        status=ShippingStatus.PROCESSING.value,
        status_updated_at=now,
    )


def _placed_sort_key(order: OrderRecord) -> str:
    return order.placed_at or ""


class OrderFeedStore:
    """Most-recent-first feed of orders across all users, mirrored to a JSON file."""

    def __init__(self, path: Optional[Path] = None, limit: int = Config.GLOBAL_FEED_LIMIT) -> None:
        self.path = Path(path) if path is not None else None
        self.limit = limit
        self._orders: List[OrderRecord] = []
        self._lock = threading.RLock()
        self.logger = logging.getLogger(__name__)
        self.load()

    def load(self) -> None:
        if self.path is None or not self.path.exists():
            return
        try:
            parsed = json.loads(self.path.read_text(encoding="utf-8"))
            if not isinstance(parsed, list):
                raise ValueError("order feed is not a JSON array")
        except (OSError, ValueError) as exc:
            warning = PersistenceWarning(str(self.path), exc)
            self.logger.warning("Could not load orders feed: %s", warning)
            return

        orders = []
        for index, entry in enumerate(parsed[: self.limit]):
            try:
                orders.append(OrderRecord.from_dict(entry))
            except (AttributeError, KeyError, OverflowError, TypeError, ValueError) as exc:
                warning = PersistenceWarning(str(self.path), exc)
                self.logger.warning("Skipping malformed order feed entry %d: %s", index, warning)
        with self._lock:
            self._orders = orders
        self.logger.info("Loaded %d orders from feed", len(orders))

    def add(self, order: OrderRecord) -> None:
        with self._lock:
            self._orders.insert(0, order)
            del self._orders[self.limit:]
            self.persist()

    def all(self) -> List[OrderRecord]:
        with self._lock:
            return list(self._orders)

    def apply(self, fn: Callable[[OrderRecord], bool]) -> bool:
        """Run ``fn`` over every order; persist once if any call reported a change."""
        with self._lock:
            changed = False
            for order in self._orders:
                if fn(order):
                    changed = True
            return changed

    def persist(self) -> bool:
        """Rewrite the whole feed file. Failures are logged, never raised."""
        if self.path is None:
            return True
        with self._lock:
            payload = [order.to_dict() for order in self._orders[: self.limit]]
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(dir=self.path.parent, prefix=".orders-feed-", suffix=".json")
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(payload, handle, indent=2, default=str)
            os.replace(tmp_name, self.path)
        except OSError as exc:
            warning = PersistenceWarning(str(self.path), exc)
            increment_counter("order_feed_write_failures_total")
            self.logger.warning("Could not save orders feed: %s", warning)
            return False
        return True


class OrderHistoryStore:
    """Per-user bounded order histories, keyed by user id or email."""

    def __init__(self, limit: int = Config.USER_HISTORY_LIMIT) -> None:
        self.limit = limit
        self._buckets: Dict[str, List[OrderRecord]] = {}
        self._lock = threading.RLock()

    @staticmethod
    def key_for(user: Optional[Mapping[str, Any]]) -> Optional[str]:
        if not user:
            return None
        if user.get("id"):
            return f"id:{user['id']}"
        if user.get("email"):
            return f"email:{user['email']}"
        return None

    def record(self, user: Optional[Mapping[str, Any]], order: OrderRecord) -> bool:
        key = self.key_for(user)
        if not key:
            return False
        with self._lock:
            bucket = self._buckets.setdefault(key, [])
            bucket.insert(0, order)
            del bucket[self.limit:]
        return True

    def get(self, user: Optional[Mapping[str, Any]]) -> Optional[List[OrderRecord]]:
        key = self.key_for(user)
        if not key:
            return None
        with self._lock:
            bucket = self._buckets.get(key)
            return list(bucket) if bucket is not None else None

    def all(self) -> List[OrderRecord]:
        with self._lock:
            return [order for bucket in self._buckets.values() for order in bucket]

    def apply(self, fn: Callable[[OrderRecord], bool]) -> bool:
        with self._lock:
            changed = False
            for bucket in self._buckets.values():
                for order in bucket:
                    if fn(order):
                        changed = True
            return changed


class OrderService:
    def __init__(
        self,
        feed: Optional[OrderFeedStore] = None,
        histories: Optional[OrderHistoryStore] = None,
        config: type[Config] = Config,
    ) -> None:
        self.config = config
        self.feed = feed if feed is not None else OrderFeedStore(config.ORDER_FEED_FILE, config.GLOBAL_FEED_LIMIT)
        self.histories = histories if histories is not None else OrderHistoryStore(config.USER_HISTORY_LIMIT)
        self.logger = logging.getLogger(__name__)

    def persist(
        self,
        order: OrderRecord,
        user: Optional[Mapping[str, Any]],
        session: MutableMapping[str, Any],
        cart_service=None,
    ) -> None:
        """Record a freshly placed order everywhere and empty the cart."""
        order_dict = order.to_dict()
        session[SESSION_LAST_ORDER_KEY] = order_dict
        history = session.get(SESSION_HISTORY_KEY)
        history = list(history) if isinstance(history, list) else []
        history.insert(0, order_dict)
        session[SESSION_HISTORY_KEY] = history[: self.config.USER_HISTORY_LIMIT]

        self.histories.record(user, order)
        self.feed.add(order)

        session["cart"] = []
        if cart_service is not None and user and user.get("id"):
            cart_service.clear_user_cart(user["id"])

        increment_counter("orders_placed_total", labels={"method": order.customer.payment_method})
        record_event(
            "order_placed",
            {
                "invoice_number": order.invoice_number,
                "total": float(order.totals.total),
                "method": order.customer.payment_method,
            },
        )
        self.logger.info(
            "Order %s placed",
            order.invoice_number,
            extra={"payment_method": order.customer.payment_method, "total": str(order.totals.total)},
        )

    def set_status(self, order_key: Optional[str], status: str, kind: str = STATUS_KIND_SHIPPING) -> bool:
        """
        Update the shipping or payment status of every stored copy of an order.

        Matching on the invoice number is case-insensitive. Returns False (and
        touches nothing) when no copy matches.
        """
        if not order_key or not status:
            return False
        seen: set = set()

        def _apply(order: OrderRecord) -> bool:
            if not order.matches(order_key):
                return False
            if id(order) not in seen:
                seen.add(id(order))
                order.apply_status(status, kind)
            return True

        in_feed = self.feed.apply(_apply)
        in_histories = self.histories.apply(_apply)
        if in_feed or in_histories:
            self.feed.persist()
            self.logger.info("Order %s %s status set to %s", order_key, kind, status)
            return True
        return False

    def recent_orders(self, limit: int = 5) -> List[OrderRecord]:
        combined = self.feed.all() + self.histories.all()
        return self._dedupe_newest_first(combined)[: max(0, int(limit))]

    def orders_for_user(
        self,
        user: Optional[Mapping[str, Any]],
        session_history: Optional[Iterable[Mapping[str, Any]]] = None,
    ) -> List[OrderRecord]:
        base = self.histories.get(user)
        if base is None:
            base = [OrderRecord.from_dict(entry) for entry in session_history or [] if isinstance(entry, Mapping)]
        merged = list(base)

        email = str((user or {}).get("email") or "").lower()
        user_id = (user or {}).get("id")
        for order in self.feed.all():
            email_match = email and order.customer.email.lower() == email
            id_match = user_id and order.customer.user_id is not None and str(order.customer.user_id) == str(user_id)
            if email_match or id_match:
                merged.append(order)
        return self._dedupe_newest_first(merged)

    def find_for_user(
        self,
        invoice_number: str,
        user: Optional[Mapping[str, Any]],
        session_history: Optional[Iterable[Mapping[str, Any]]] = None,
    ) -> Optional[OrderRecord]:
        return next(
            (order for order in self.orders_for_user(user, session_history) if order.matches(invoice_number)),
            None,
        )

    def cancel_for_user(
        self,
        invoice_number: str,
        user: Optional[Mapping[str, Any]],
        session_history: Optional[Iterable[Mapping[str, Any]]] = None,
    ) -> Tuple[bool, str]:
        order = self.find_for_user(invoice_number, user, session_history)
        if order is None:
            return False, "Order not found in your history."

        current = str(order.shipping_status or order.status or "").lower()
        if "cancel" in current:
            return False, "This order is already cancelled."
        if "deliver" in current:
            return False, "Delivered orders cannot be cancelled."

        if not self.set_status(order.invoice_number, ShippingStatus.CANCELLED.value, STATUS_KIND_SHIPPING):
            # Only present in the session copy (e.g. after a restart)
            order.apply_status(ShippingStatus.CANCELLED.value, STATUS_KIND_SHIPPING)
        increment_counter("orders_cancelled_total")
        return True, "Order cancelled successfully."

    @staticmethod
    def _dedupe_newest_first(orders: Iterable[OrderRecord]) -> List[OrderRecord]:
        seen: set = set()
        unique: List[OrderRecord] = []
        for order in orders:
            if not order.invoice_number or order.invoice_number in seen:
                continue
            seen.add(order.invoice_number)
            unique.append(order)
        unique.sort(key=_placed_sort_key, reverse=True)
        return unique
