from __future__ import annotations

from typing import Any, Dict, Optional

from flask import abort, current_app, flash, jsonify, redirect, session

from storefront.database import get_db
from storefront.services.checkout_service import CheckoutOutcome, CheckoutService

EXTENSION_KEY = "storefront"


def runtime() -> Dict[str, Any]:
    """Process-wide collaborators created once in ``storefront.main``."""
    return current_app.extensions[EXTENSION_KEY]


def get_checkout_service() -> CheckoutService:
    state = runtime()
    return CheckoutService(
        get_db(),
        state["order_service"],
        state["pending_store"],
        nets_client=state.get("nets_client"),
        paypal_client=state.get("paypal_client"),
    )


def current_user() -> Optional[Dict[str, Any]]:
    user = session.get("user")
    return user if isinstance(user, dict) and user.get("id") else None


def require_admin() -> None:
    user = session.get("user") or {}
    if str(user.get("role") or "").lower() != "admin":
        abort(403)


def respond(outcome: CheckoutOutcome):
    """Flash + redirect for navigations, JSON for view-models and errors."""
    if outcome.status_code >= 400:
        return jsonify({"error": outcome.message}), outcome.status_code
    if outcome.message:
        flash(outcome.message, outcome.category)
    if outcome.redirect:
        code = 307 if outcome.status_code == 307 else 302
        return redirect(outcome.redirect, code=code)
    return jsonify(outcome.payload or {}), outcome.status_code
