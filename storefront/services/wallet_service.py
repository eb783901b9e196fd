from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy import func, update
from sqlalchemy.orm import Session

from storefront.models import Wallet
from storefront.observability import increment_counter, record_event
from storefront.services.pricing import to_money


def _cents(expr):
    # SQLite keeps NUMERIC arithmetic in floating point
    return func.round(expr, 2, type_=Wallet.balance.type)


@dataclass(frozen=True)
class ChargeResult:
    ok: bool
    balance: Decimal


class WalletService:
    """Stored-value wallet. Debits are a single conditional UPDATE."""

    def __init__(self, db_session: Session) -> None:
        self.db = db_session
        self.logger = logging.getLogger(__name__)

    def get_balance(self, user_id: Optional[int]) -> Decimal:
        if not user_id:
            return Decimal("0.00")
        wallet = self.db.query(Wallet).filter_by(userID=user_id).first()
        if wallet is None or wallet.balance is None:
            return Decimal("0.00")
        return to_money(wallet.balance)

    def add_funds(self, user_id: int, amount: Any) -> Decimal:
        """Top up a wallet, creating it on first use. Returns the new balance."""
        if not user_id:
            raise ValueError("Missing user")
        topup = to_money(amount)
        if topup <= 0:
            raise ValueError("Invalid amount")

        self._ensure_wallet(user_id)
        self.db.execute(
            update(Wallet)
            .where(Wallet.userID == user_id)
            .values(balance=_cents(Wallet.balance + topup), updated_at=datetime.now(timezone.utc))
        )
        self.db.commit()
        balance = self.get_balance(user_id)
        increment_counter("wallet_topups_total")
        self.logger.info("Wallet topped up for user %s", user_id, extra={"amount": str(topup)})
        return balance

    def charge(self, user_id: int, amount: Any) -> ChargeResult:
        """
        Debit ``amount`` only if the balance still covers it at write time.

        ``ok`` is False when the balance is insufficient; nothing is changed in
        that case.
        """
        if not user_id:
            raise ValueError("Missing user")
        charge_amount = to_money(amount)
        if charge_amount <= 0:
            raise ValueError("Invalid amount")

        self._ensure_wallet(user_id)
        try:
            result = self.db.execute(
                update(Wallet)
                .where(Wallet.userID == user_id)
                .where(_cents(Wallet.balance) >= charge_amount)
                .values(balance=_cents(Wallet.balance - charge_amount), updated_at=datetime.now(timezone.utc))
            )
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        balance = self.get_balance(user_id)
        if not result.rowcount:
            increment_counter("wallet_charges_total", labels={"result": "insufficient"})
            self.logger.info("Wallet charge declined for user %s: insufficient balance", user_id)
            return ChargeResult(ok=False, balance=balance)

        increment_counter("wallet_charges_total", labels={"result": "charged"})
        record_event("wallet_charged", {"user_id": user_id, "amount": float(charge_amount)})
        return ChargeResult(ok=True, balance=balance)

    def _ensure_wallet(self, user_id: int) -> None:
        if self.db.query(Wallet.userID).filter_by(userID=user_id).first() is None:
            self.db.add(Wallet(userID=user_id, balance=Decimal("0.00")))
            self.db.flush()
