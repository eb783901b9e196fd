from __future__ import annotations

from flask import Blueprint, flash, jsonify, redirect, request, session

from storefront.blueprints.common import current_user
from storefront.config import Config
from storefront.database import get_db
from storefront.services.cart_service import CartService
from storefront.services.pricing import calculate_totals

cart_bp = Blueprint("cart", __name__, url_prefix="/cart")


def _user_id():
    user = current_user()
    return user["id"] if user else None


def _flash_result(ok: bool, message: str):
    flash(message, "success" if ok else "error")
    return redirect("/cart")


@cart_bp.route("", methods=["GET"])
def view_cart():
    service = CartService(get_db())
    user_id = _user_id()
    if user_id:
        line_items = service.sync_session_from_db(session, user_id)
    else:
        line_items = service.normalize_session_cart(session)
    totals = calculate_totals(line_items, Config)
    return jsonify({
        "cartItems": [item.to_dict() for item in line_items],
        "totals": totals.to_dict(),
        "currency": Config.CURRENCY,
    })


@cart_bp.route("/add/<int:product_id>", methods=["POST"])
def add_to_cart(product_id: int):
    quantity = request.form.get("quantity", default=1, type=int)
    ok, message = CartService(get_db()).add_item(session, product_id, quantity, _user_id())
    return _flash_result(ok, message)


@cart_bp.route("/update/<int:product_id>", methods=["POST"])
def update_cart_item(product_id: int):
    quantity = request.form.get("quantity", default=0, type=int)
    ok, message = CartService(get_db()).update_quantity(session, product_id, quantity, _user_id())
    return _flash_result(ok, message)


@cart_bp.route("/remove/<int:product_id>", methods=["POST"])
def remove_cart_item(product_id: int):
    ok, message = CartService(get_db()).remove_item(session, product_id, _user_id())
    return _flash_result(ok, message)


@cart_bp.route("/clear", methods=["POST"])
def clear_cart():
    service = CartService(get_db())
    service.clear_session_cart(session)
    user_id = _user_id()
    if user_id:
        service.clear_user_cart(user_id)
    return _flash_result(True, "Cart cleared.")
