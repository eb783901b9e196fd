from __future__ import annotations

from flask import Blueprint, session

from storefront.blueprints.common import get_checkout_service, respond

orders_bp = Blueprint("orders", __name__)


@orders_bp.route("/orders", methods=["GET"])
def order_history():
    return respond(get_checkout_service().order_history(session))


@orders_bp.route("/orders/<invoice_number>", methods=["GET"])
def view_order(invoice_number: str):
    return respond(get_checkout_service().view_order(session, invoice_number))


@orders_bp.route("/orders/<invoice_number>/track", methods=["GET"])
def track_order(invoice_number: str):
    return respond(get_checkout_service().track_order(session, invoice_number))


@orders_bp.route("/orders/<invoice_number>/cancel", methods=["POST"])
def cancel_order(invoice_number: str):
    return respond(get_checkout_service().cancel_order_for_user(session, invoice_number))
