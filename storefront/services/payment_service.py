"""
Payment confirmation strategies.

Each payment method is a strategy with two hooks: ``prevalidate`` runs before
any stock is touched and only inspects the submitted form; ``confirm`` runs
once stock is reserved (or, for PayPal, after the remote capture) and yields
the payment status recorded on the order.
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Mapping, Optional, Tuple

from sqlalchemy.orm import Session

from storefront.errors import InsufficientBalance, SavedCardNotFound, ValidationError
from storefront.models import PaymentMethod, PaymentStatus, SavedPaymentMethod
from storefront.observability import increment_counter
from storefront.services.pricing import Totals, format_amount
from storefront.services.saved_card_service import SavedCardService
from storefront.services.wallet_service import WalletService

_EXPIRY_PATTERN = re.compile(r"^(\d{1,2})\s*[/-]\s*(\d{2}|\d{4})$")


@dataclass
class PaymentContext:
    method: PaymentMethod
    form: Mapping[str, Any]
    totals: Totals
    invoice_number: str
    user: Optional[Mapping[str, Any]] = None
    provider_payload: Optional[Dict[str, Any]] = None
    saved_card: Optional[SavedPaymentMethod] = None
    card_number: Optional[str] = None
    exp_month: Optional[str] = None
    exp_year: Optional[str] = None

    @property
    def user_id(self) -> Optional[int]:
        return (self.user or {}).get("id")

    @property
    def card_last4(self) -> Optional[str]:
        if self.saved_card is not None:
            return self.saved_card.last4
        if self.card_number and len(self.card_number) >= 4:
            return self.card_number[-4:]
        return None


@dataclass(frozen=True)
class PaymentConfirmation:
    payment_status: str
    paynow: Optional[Dict[str, Any]] = None
    paypal: Optional[Dict[str, Any]] = None
    saved_card: Optional[Dict[str, Any]] = None


def build_paynow_payload(invoice_number: str, total, full_name: Optional[str], email: Optional[str]) -> Dict[str, Any]:
    """PayNow display data; the payload string drops any part that is empty."""
    amount = format_amount(total)
    parts = [
        "PAYNOW",
        f"INV:{invoice_number}",
        f"AMT:{amount}",
        f"NAME:{full_name}" if full_name else None,
        f"EMAIL:{email}" if email else None,
    ]
    return {
        "reference": invoice_number,
        "amount": amount,
        "payload": "|".join(part for part in parts if part),
    }


def parse_card_expiry(raw: str, now: Optional[datetime] = None):
    """Return ``(month, year)`` strings for MM/YY or MM/YYYY; raise when malformed or expired."""
    match = _EXPIRY_PATTERN.match(raw.replace(" ", ""))
    if not match:
        raise ValidationError("Card expiry must be in MM/YY or MM/YYYY format.")
    month = int(match.group(1))
    year = int(match.group(2))
    if year < 100:
        year += 2000
    if not 1 <= month <= 12:
        raise ValidationError("Card expiry must be in MM/YY or MM/YYYY format.")
    now = now or datetime.now(timezone.utc)
    if (year, month) < (now.year, now.month):
        raise ValidationError("This card has expired. Please use another card.")
    return f"{month:02d}", str(year)


def validate_card_fields(form: Mapping[str, Any], now: Optional[datetime] = None) -> Tuple[str, str, str]:
    """
    Check a freshly typed card. Returns ``(digits, exp_month, exp_year)``.

    The CVV is checked for shape only and is not returned.
    """
    number = re.sub(r"[\s-]+", "", str(form.get("cardNumber") or ""))
    expiry = str(form.get("cardExpiry") or "").strip()
    cvv = str(form.get("cardCvv") or "").strip()
    missing = [
        label
        for label, value in (("card number", number), ("expiry", expiry), ("CVV", cvv))
        if not value
    ]
    if missing:
        raise ValidationError(f"Please enter your {', '.join(missing)} to pay by card.")
    if not number.isdigit() or not 12 <= len(number) <= 19:
        raise ValidationError("Card number must be 12 to 19 digits.")
    if not cvv.isdigit() or len(cvv) not in (3, 4):
        raise ValidationError("CVV must be 3 or 4 digits.")
    exp_month, exp_year = parse_card_expiry(expiry, now)
    return number, exp_month, exp_year


class PaymentStrategy:
    method: PaymentMethod
    reserves_before_payment = True

    def prevalidate(self, ctx: PaymentContext) -> None:
        return None

    def confirm(self, ctx: PaymentContext) -> PaymentConfirmation:
        raise NotImplementedError


class CashStrategy(PaymentStrategy):
    method = PaymentMethod.CASH

    def confirm(self, ctx: PaymentContext) -> PaymentConfirmation:
        return PaymentConfirmation(payment_status=PaymentStatus.CASH_ON_DELIVERY.value)


class WalletStrategy(PaymentStrategy):
    method = PaymentMethod.WALLET

    def __init__(self, wallet_service: WalletService) -> None:
        self.wallets = wallet_service

    def prevalidate(self, ctx: PaymentContext) -> None:
        if not ctx.user_id:
            raise ValidationError("Please log in to pay with your wallet.")
        if self.wallets.get_balance(ctx.user_id) < ctx.totals.total:
            raise InsufficientBalance()

    def confirm(self, ctx: PaymentContext) -> PaymentConfirmation:
        result = self.wallets.charge(ctx.user_id, ctx.totals.total)
        if not result.ok:
            raise InsufficientBalance()
        return PaymentConfirmation(payment_status=PaymentStatus.PAID.value)


class CardStrategy(PaymentStrategy):
    """Card payments are validated locally; no gateway call is made."""

    method = PaymentMethod.CARD

    def __init__(self, saved_cards: SavedCardService, clock: Callable[[], datetime]) -> None:
        self.saved_cards = saved_cards
        self.clock = clock

    def prevalidate(self, ctx: PaymentContext) -> None:
        saved_id = str(ctx.form.get("savedPaymentMethod") or "").strip()
        if saved_id:
            card = self.saved_cards.get_for_user(saved_id, ctx.user_id)
            if card is None:
                raise SavedCardNotFound(saved_id)
            ctx.saved_card = card
            return

        ctx.card_number, ctx.exp_month, ctx.exp_year = validate_card_fields(ctx.form, self.clock())

    def confirm(self, ctx: PaymentContext) -> PaymentConfirmation:
        saved = None
        if ctx.saved_card is None and ctx.form.get("saveCard") and ctx.user_id:
            card = self.saved_cards.add(
                ctx.user_id,
                ctx.card_number,
                ctx.exp_month,
                ctx.exp_year,
                cardholder_name=ctx.form.get("cardName") or ctx.form.get("fullName"),
                label=ctx.form.get("cardName") or None,
            )
            saved = card.to_dict()
        return PaymentConfirmation(payment_status=PaymentStatus.PAID.value, saved_card=saved)


class PayNowStrategy(PaymentStrategy):
    method = PaymentMethod.PAYNOW

    def confirm(self, ctx: PaymentContext) -> PaymentConfirmation:
        return PaymentConfirmation(
            payment_status=PaymentStatus.AWAITING_PAYMENT.value,
            paynow=build_paynow_payload(
                ctx.invoice_number,
                ctx.totals.total,
                ctx.form.get("fullName"),
                ctx.form.get("email"),
            ),
        )


class NetsStrategy(PaymentStrategy):
    """Confirmed by the status poller before finalisation runs."""

    method = PaymentMethod.NETS

    def confirm(self, ctx: PaymentContext) -> PaymentConfirmation:
        return PaymentConfirmation(payment_status=PaymentStatus.PAID.value)


class PayPalStrategy(PaymentStrategy):
    """The capture happens remotely; stock is reserved only after it completes."""

    method = PaymentMethod.PAYPAL
    reserves_before_payment = False

    def confirm(self, ctx: PaymentContext) -> PaymentConfirmation:
        return PaymentConfirmation(payment_status=PaymentStatus.PAID.value, paypal=ctx.provider_payload)


class PaymentService:
    def __init__(
        self,
        db_session: Session,
        wallet_service: Optional[WalletService] = None,
        saved_card_service: Optional[SavedCardService] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.db = db_session
        self.logger = logging.getLogger(__name__)
        self.wallets = wallet_service or WalletService(db_session)
        self.saved_cards = saved_card_service or SavedCardService(db_session)
        clock = clock or (lambda: datetime.now(timezone.utc))
        self._strategies: Dict[PaymentMethod, PaymentStrategy] = {
            PaymentMethod.CASH: CashStrategy(),
            PaymentMethod.WALLET: WalletStrategy(self.wallets),
            PaymentMethod.CARD: CardStrategy(self.saved_cards, clock),
            PaymentMethod.PAYNOW: PayNowStrategy(),
            PaymentMethod.NETS: NetsStrategy(),
            PaymentMethod.PAYPAL: PayPalStrategy(),
        }

    def strategy_for(self, method) -> PaymentStrategy:
        parsed = PaymentMethod.parse(method)
        if parsed is None:
            raise ValidationError("Please choose a valid payment method.")
        return self._strategies[parsed]

    def prevalidate(self, ctx: PaymentContext) -> PaymentStrategy:
        strategy = self.strategy_for(ctx.method)
        strategy.prevalidate(ctx)
        return strategy

    def confirm(self, ctx: PaymentContext) -> PaymentConfirmation:
        strategy = self.strategy_for(ctx.method)
        labels = {"method": strategy.method.value}
        try:
            confirmation = strategy.confirm(ctx)
        except Exception:
            increment_counter("payment_confirmations_total", labels={**labels, "result": "failed"})
            raise
        increment_counter("payment_confirmations_total", labels={**labels, "result": "confirmed"})
        self.logger.info(
            "Payment confirmed for %s",
            ctx.invoice_number,
            extra={"payment_method": strategy.method.value, "payment_status": confirmation.payment_status},
        )
        return confirmation
