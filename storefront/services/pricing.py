from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any, Dict, Iterable, List, Mapping, Optional

from storefront.config import Config

CENT = Decimal("0.01")


def to_money(value: Any, default: Decimal = Decimal("0")) -> Decimal:
    """Coerce a loosely-typed amount to a cent-precision Decimal."""
    if isinstance(value, bool) or value is None:
        return default
    try:
        amount = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        return default
    if not amount.is_finite():
        return default
    return amount.quantize(CENT, rounding=ROUND_HALF_UP)


def format_amount(value: Decimal) -> str:
    return f"{to_money(value):.2f}"


@dataclass(frozen=True)
class LineItem:
    product_id: Optional[str]
    name: str
    unit_price: Decimal
    quantity: int

    @property
    def line_subtotal(self) -> Decimal:
        return (self.unit_price * self.quantity).quantize(CENT, rounding=ROUND_HALF_UP)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.product_id,
            "name": self.name,
            "quantity": self.quantity,
            "price": float(self.unit_price),
            "subtotal": float(self.line_subtotal),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "LineItem":
        product_id = data.get("id")
        return cls(
            product_id=str(product_id) if product_id is not None else None,
            name=str(data.get("name") or f"Item {product_id}"),
            unit_price=to_money(data.get("price")),
            quantity=max(1, int(data.get("quantity") or 1)),
        )


@dataclass(frozen=True)
class Totals:
    subtotal: Decimal
    tax: Decimal
    shipping: Decimal
    total: Decimal

    def to_dict(self) -> Dict[str, float]:
        return {
            "subtotal": float(self.subtotal),
            "gst": float(self.tax),
            "tax": float(self.tax),
            "shipping": float(self.shipping),
            "total": float(self.total),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Totals":
        tax = data.get("tax", data.get("gst"))
        return cls(
            subtotal=to_money(data.get("subtotal")),
            tax=to_money(tax),
            shipping=to_money(data.get("shipping")),
            total=to_money(data.get("total")),
        )


def calculate_totals(line_items: Iterable[LineItem], config: type[Config] = Config) -> Totals:
    """Subtotal, 9% GST rounded to cents, flat shipping under the free-shipping threshold."""
    subtotal = sum((item.line_subtotal for item in line_items), Decimal("0.00"))
    tax = (subtotal * config.TAX_RATE).quantize(CENT, rounding=ROUND_HALF_UP)
    shipping = Decimal("0.00") if subtotal >= config.FREE_SHIPPING_THRESHOLD else to_money(config.FLAT_SHIPPING_FEE)
    return Totals(
        subtotal=subtotal,
        tax=tax,
        shipping=shipping,
        total=subtotal + tax + shipping,
    )


def totals_for_order(order: Mapping[str, Any], config: type[Config] = Config) -> Totals:
    """
    Totals for a stored order dict. Stored fields win; missing ones are
    re-derived from the order's line items.
    """
    items: List[LineItem] = [LineItem.from_dict(item) for item in order.get("cartItems") or []]
    fallback = calculate_totals(items, config)

    def _pick(key: str, default: Decimal, *aliases: str) -> Decimal:
        for candidate in (key, *aliases):
            if order.get(candidate) is not None:
                return to_money(order[candidate], default)
        return default

    return Totals(
        subtotal=_pick("subtotal", fallback.subtotal),
        tax=_pick("tax", fallback.tax, "gst"),
        shipping=_pick("shipping", fallback.shipping),
        total=_pick("total", fallback.total),
    )
