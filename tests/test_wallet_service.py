from decimal import Decimal

import pytest

from storefront.services.wallet_service import WalletService


def test_missing_wallet_reads_as_zero(db_session, shopper):
    assert WalletService(db_session).get_balance(shopper.userID) == Decimal("0.00")


def test_back_to_back_charges(db_session, shopper, fund_wallet):
    fund_wallet(shopper, "50.00")
    wallets = WalletService(db_session)

    first = wallets.charge(shopper.userID, "39.70")
    second = wallets.charge(shopper.userID, "39.70")
    third = wallets.charge(shopper.userID, "10.30")

    assert first.ok and first.balance == Decimal("10.30")
    assert not second.ok and second.balance == Decimal("10.30")
    assert third.ok and third.balance == Decimal("0.00")


def test_top_up_rounds_to_cents_and_creates_wallet(db_session, shopper):
    wallets = WalletService(db_session)

    balance = wallets.add_funds(shopper.userID, "20.005")

    assert balance == Decimal("20.01")


@pytest.mark.parametrize("amount", ["0", "-5", "abc", None])
def test_top_up_rejects_bad_amounts(db_session, shopper, amount):
    with pytest.raises(ValueError):
        WalletService(db_session).add_funds(shopper.userID, amount)
