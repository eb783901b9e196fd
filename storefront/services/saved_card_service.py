from __future__ import annotations

import logging
import secrets
from typing import List, Optional

from sqlalchemy.orm import Session

from storefront.models import SavedPaymentMethod


def detect_card_brand(card_number: str) -> str:
    digits = "".join(ch for ch in card_number if ch.isdigit())
    if digits.startswith("4"):
        return "Visa"
    if digits[:2] in {"34", "37"}:
        return "Amex"
    if digits[:2] in {"51", "52", "53", "54", "55"} or (digits[:4].isdigit() and 2221 <= int(digits[:4]) <= 2720):
        return "Mastercard"
    return "Card"


class SavedCardService:
    """Cards kept for reuse. The PAN and CVV never reach the database."""

    def __init__(self, db_session: Session) -> None:
        self.db = db_session
        self.logger = logging.getLogger(__name__)

    def list_by_user(self, user_id: Optional[int]) -> List[SavedPaymentMethod]:
        if not user_id:
            return []
        return (
            self.db.query(SavedPaymentMethod)
            .filter_by(userID=user_id)
            .order_by(SavedPaymentMethod.paymentMethodID.desc())
            .all()
        )

    def get_for_user(self, card_id, user_id: Optional[int]) -> Optional[SavedPaymentMethod]:
        if not user_id:
            return None
        try:
            card_pk = int(card_id)
        except (TypeError, ValueError):
            return None
        return (
            self.db.query(SavedPaymentMethod)
            .filter_by(paymentMethodID=card_pk, userID=user_id)
            .first()
        )

    def add(
        self,
        user_id: int,
        card_number: str,
        exp_month: Optional[str],
        exp_year: Optional[str],
        cardholder_name: Optional[str] = None,
        label: Optional[str] = None,
    ) -> SavedPaymentMethod:
        brand = detect_card_brand(card_number)
        card = SavedPaymentMethod(
            userID=user_id,
            brand=brand,
            label=label or brand,
            last4=card_number[-4:],
            exp_month=exp_month,
            exp_year=exp_year,
            cardholder_name=cardholder_name,
            card_token=f"tok_{secrets.token_hex(16)}",
        )
        self.db.add(card)
        self.db.commit()
        self.logger.info(
            "Saved card ending %s for user %s",
            card.last4,
            user_id,
            extra={"payment_method_id": card.paymentMethodID},
        )
        return card
