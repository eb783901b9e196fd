from __future__ import annotations

from flask import Blueprint, Response, flash, jsonify, request, session, stream_with_context

from storefront.blueprints.common import get_checkout_service, respond, runtime
from storefront.services.checkout_service import placed_message
from storefront.services.nets_service import NetsPaymentPoller
from storefront.services.order_service import SESSION_LAST_ORDER_KEY

checkout_bp = Blueprint("checkout", __name__)


@checkout_bp.route("/checkout", methods=["GET"])
def view_checkout():
    return respond(get_checkout_service().render_checkout(session))


@checkout_bp.route("/checkout", methods=["POST"])
def submit_checkout():
    return respond(get_checkout_service().process_checkout(session, request.form))


@checkout_bp.route("/checkout/nets", methods=["POST"])
def start_nets():
    return respond(get_checkout_service().start_nets_checkout(session, request.form))


@checkout_bp.route("/sse/payment-status/<path:txn_retrieval_ref>", methods=["GET"])
def nets_payment_status(txn_retrieval_ref: str):
    state = runtime()
    service = get_checkout_service()
    poller = state.get("nets_poller") or NetsPaymentPoller(state["nets_client"])
    stream = poller.stream(txn_retrieval_ref, on_success=lambda: service.mark_nets_paid(txn_retrieval_ref))
    return Response(
        stream_with_context(stream),
        mimetype="text/event-stream",
        headers={"Cache-Control": "no-cache", "Connection": "keep-alive", "X-Accel-Buffering": "no"},
    )


@checkout_bp.route("/nets-qr/success", methods=["GET"])
def nets_success():
    return respond(get_checkout_service().finalize_nets_checkout(session))


@checkout_bp.route("/nets-qr/fail", methods=["GET"])
def nets_fail():
    return respond(get_checkout_service().fail_nets_checkout(session))


@checkout_bp.route("/checkout/paypal/order", methods=["POST"])
def paypal_create_order():
    body, status = get_checkout_service().create_paypal_order(session, request.get_json(silent=True) or {})
    return jsonify(body), status


@checkout_bp.route("/checkout/paypal/capture", methods=["POST"])
def paypal_capture_order():
    body, status = get_checkout_service().capture_paypal_order(session, request.get_json(silent=True) or {})
    if status == 200:
        order = session.get(SESSION_LAST_ORDER_KEY) or {}
        flash(placed_message((order.get("customer") or {}).get("email")), "success")
    return jsonify(body), status


@checkout_bp.route("/paynow", methods=["GET"])
def view_paynow():
    return respond(get_checkout_service().render_paynow(session))


@checkout_bp.route("/invoice", methods=["GET"])
def view_invoice():
    return respond(get_checkout_service().render_invoice(session))
