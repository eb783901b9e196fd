from __future__ import annotations

from flask import Blueprint, flash, jsonify, redirect, request

from storefront.blueprints.common import current_user
from storefront.config import Config
from storefront.database import get_db
from storefront.errors import ValidationError
from storefront.services.payment_service import validate_card_fields
from storefront.services.pricing import format_amount
from storefront.services.wallet_service import WalletService

wallet_bp = Blueprint("wallet", __name__, url_prefix="/wallet")


@wallet_bp.route("", methods=["GET"])
def view_wallet():
    user = current_user()
    if not user:
        return "User not logged in.", 401
    balance = WalletService(get_db()).get_balance(user["id"])
    return jsonify({"balance": float(balance), "currency": Config.CURRENCY})


@wallet_bp.route("/topup", methods=["POST"])
def top_up():
    user = current_user()
    if not user:
        return "User not logged in.", 401

    try:
        validate_card_fields(request.form)
        balance = WalletService(get_db()).add_funds(user["id"], request.form.get("amount"))
    except ValidationError as exc:
        flash(exc.message, "error")
        return redirect("/wallet")
    except ValueError:
        flash("Please enter a valid top-up amount.", "error")
        return redirect("/wallet")

    flash(f"Wallet topped up. New balance: {Config.CURRENCY} {format_amount(balance)}", "success")
    return redirect("/wallet")
