from __future__ import annotations

from flask import Blueprint, jsonify, request

from storefront.blueprints.common import get_checkout_service, require_admin, respond, runtime
from storefront.observability import get_metrics_snapshot

admin_bp = Blueprint("admin", __name__, url_prefix="/admin")


@admin_bp.route("/orders", methods=["GET"])
def recent_orders():
    require_admin()
    limit = request.args.get("limit", default=5, type=int)
    orders = runtime()["order_service"].recent_orders(limit)
    return jsonify({"orders": [order.to_dict() for order in orders]})


@admin_bp.route("/orders/<invoice_number>/status", methods=["POST"])
def update_order_status(invoice_number: str):
    require_admin()
    outcome = get_checkout_service().set_order_status(
        invoice_number,
        request.form.get("status", ""),
        request.form.get("kind", "shipping"),
    )
    return respond(outcome)


@admin_bp.route("/metrics", methods=["GET"])
def metrics():
    require_admin()
    return jsonify(get_metrics_snapshot())
