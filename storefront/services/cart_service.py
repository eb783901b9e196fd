from __future__ import annotations

import logging
import re
from decimal import Decimal
from typing import Any, Dict, List, MutableMapping, Optional, Tuple

from sqlalchemy.orm import Session

from storefront.models import CartItem, Product
from storefront.services.pricing import LineItem, to_money

SESSION_CART_KEY = "cart"
_LEADING_INT = re.compile(r"\s*[+-]?\d+")


def _coerce_quantity(raw: Any) -> int:
    """Whole units, truncating numbers and reading a leading integer from strings."""
    if isinstance(raw, bool) or raw is None:
        return 1
    if isinstance(raw, (int, float, Decimal)):
        try:
            quantity = int(raw)
        except (OverflowError, ValueError):
            return 1
    else:
        match = _LEADING_INT.match(str(raw))
        if match is None:
            return 1
        quantity = int(match.group())
    return quantity if quantity > 0 else 1


def _coerce_price(entry: MutableMapping[str, Any]) -> Decimal:
    product = entry.get("product") if isinstance(entry.get("product"), dict) else {}
    for candidate in (entry.get("price"), product.get("price")):
        price = to_money(candidate, default=Decimal("-1"))
        if price >= 0:
            return price
    return Decimal("0.00")


def _entry_name(entry: MutableMapping[str, Any], index: int) -> str:
    product = entry.get("product") if isinstance(entry.get("product"), dict) else {}
    name = (
        entry.get("name")
        or entry.get("productName")
        or product.get("name")
        or product.get("title")
    )
    if name:
        return str(name)
    if entry.get("id") is not None:
        return f"Item {entry['id']}"
    return f"Item {index + 1}"


class CartService:
    """
    Session cart normalisation plus the database-backed cart kept for
    signed-in shoppers.
    """

    def __init__(self, db_session: Optional[Session] = None) -> None:
        self.db = db_session
        self.logger = logging.getLogger(__name__)

    # ------------------------------------------------------------------
    # Session cart
    # ------------------------------------------------------------------
    def normalize_session_cart(self, session: MutableMapping[str, Any]) -> List[LineItem]:
        """
        Turn whatever is in ``session["cart"]`` into priced line items and
        rewrite the session entry into the canonical list shape.
        """
        raw = session.get(SESSION_CART_KEY)
        if isinstance(raw, list):
            raw_items = raw
        elif isinstance(raw, dict) and isinstance(raw.get("items"), list):
            raw_items = raw["items"]
        else:
            raw_items = []

        line_items: List[LineItem] = []
        canonical: List[Dict[str, Any]] = []
        for index, entry in enumerate(raw_items):
            if not isinstance(entry, dict):
                continue
            quantity = _coerce_quantity(entry.get("quantity", entry.get("qty")))
            price = _coerce_price(entry)
            product_id = entry.get("id", entry.get("productId", entry.get("product_id")))
            item = LineItem(
                product_id=str(product_id) if product_id is not None else None,
                name=_entry_name(entry, index),
                unit_price=price,
                quantity=quantity,
            )
            line_items.append(item)
            canonical.append({
                "id": item.product_id,
                "name": item.name,
                "price": float(item.unit_price),
                "quantity": item.quantity,
                "image": entry.get("image"),
            })

        session[SESSION_CART_KEY] = canonical
        return line_items

    @staticmethod
    def clear_session_cart(session: MutableMapping[str, Any]) -> None:
        session[SESSION_CART_KEY] = []

    # ------------------------------------------------------------------
    # Persisted cart (signed-in shoppers)
    # ------------------------------------------------------------------
    def get_user_cart(self, user_id: int) -> List[Dict[str, Any]]:
        rows = (
            self.db.query(CartItem, Product)
            .join(Product, Product.productID == CartItem.productID)
            .filter(CartItem.userID == user_id)
            .order_by(CartItem.cartItemID.asc())
            .all()
        )
        return [product.to_cart_entry(cart_item.quantity) for cart_item, product in rows]

    def sync_session_from_db(self, session: MutableMapping[str, Any], user_id: int) -> List[LineItem]:
        session[SESSION_CART_KEY] = self.get_user_cart(user_id)
        return self.normalize_session_cart(session)

    def add_item(
        self,
        session: MutableMapping[str, Any],
        product_id: int,
        quantity: int = 1,
        user_id: Optional[int] = None,
    ) -> Tuple[bool, str]:
        """Add a product to the cart, refusing quantities beyond the shelf stock."""
        quantity = _coerce_quantity(quantity)
        product = self.db.query(Product).filter_by(productID=product_id).first()
        if not product:
            return False, "Product not found."
        if (product.stock or 0) < 1:
            return False, "Product is out of stock."

        self.normalize_session_cart(session)
        cart = session[SESSION_CART_KEY]
        existing = next((entry for entry in cart if entry["id"] == str(product_id)), None)
        new_quantity = (existing["quantity"] if existing else 0) + quantity
        if new_quantity > product.stock:
            return False, f"Not enough stock. Only {product.stock} available."

        if existing:
            existing["quantity"] = new_quantity
        else:
            cart.append(product.to_cart_entry(new_quantity))
        session[SESSION_CART_KEY] = cart

        if user_id:
            self._upsert_db_item(user_id, product_id, new_quantity)
        return True, f"{product.name} added to cart."

    def update_quantity(
        self,
        session: MutableMapping[str, Any],
        product_id: int,
        quantity: int,
        user_id: Optional[int] = None,
    ) -> Tuple[bool, str]:
        if quantity <= 0:
            return self.remove_item(session, product_id, user_id)

        product = self.db.query(Product).filter_by(productID=product_id).first()
        if not product:
            return False, "Product not found."
        if quantity > (product.stock or 0):
            return False, f"Only {product.stock} in stock."

        self.normalize_session_cart(session)
        cart = session[SESSION_CART_KEY]
        for entry in cart:
            if entry["id"] == str(product_id):
                entry["quantity"] = quantity
                break
        else:
            return False, "Item is not in your cart."
        session[SESSION_CART_KEY] = cart

        if user_id:
            self._upsert_db_item(user_id, product_id, quantity)
        return True, "Cart updated."

    def remove_item(
        self,
        session: MutableMapping[str, Any],
        product_id: int,
        user_id: Optional[int] = None,
    ) -> Tuple[bool, str]:
        self.normalize_session_cart(session)
        session[SESSION_CART_KEY] = [
            entry for entry in session[SESSION_CART_KEY] if entry["id"] != str(product_id)
        ]
        if user_id:
            self.db.query(CartItem).filter_by(userID=user_id, productID=product_id).delete()
            self.db.commit()
        return True, "Item removed from cart."

    def clear_user_cart(self, user_id: int) -> None:
        """Delete the persisted cart rows for a user."""
        try:
            self.db.query(CartItem).filter_by(userID=user_id).delete()
            self.db.commit()
        except Exception:
            self.db.rollback()
            self.logger.exception("Failed to clear persisted cart for user %s", user_id)

    def _upsert_db_item(self, user_id: int, product_id: int, quantity: int) -> None:
        item = self.db.query(CartItem).filter_by(userID=user_id, productID=product_id).first()
        if item:
            item.quantity = quantity
        else:
            self.db.add(CartItem(userID=user_id, productID=product_id, quantity=quantity))
        self.db.commit()
