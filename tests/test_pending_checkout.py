from decimal import Decimal

from storefront.services.pending_checkout import PendingCheckoutStore
from storefront.services.pricing import LineItem, calculate_totals

ITEMS = [LineItem("1", "Fresh Milk 1L", Decimal("10.00"), 3)]


class Clock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


def _stage(store, kind="nets"):
    return store.stage(kind, "INV-1", {"email": "a@example.com"}, ITEMS, calculate_totals(ITEMS))


def test_records_expire_after_ttl():
    clock = Clock()
    store = PendingCheckoutStore(ttl_seconds=900, clock=clock)
    record = _stage(store)

    clock.now += 899
    assert store.get(record.token) is record
    clock.now += 1
    assert store.get(record.token) is None
    assert len(store) == 0


def test_kind_must_match():
    store = PendingCheckoutStore()
    record = _stage(store, kind="paypal")

    assert store.get(record.token, "nets") is None
    assert store.get(record.token, "paypal") is record


def test_claim_is_single_use():
    store = PendingCheckoutStore()
    record = _stage(store)

    assert store.claim(record.token, "nets") is record
    assert store.claim(record.token, "nets") is None


def test_mark_paid_by_reference():
    store = PendingCheckoutStore()
    record = _stage(store)
    store.attach_reference(record.token, "REF-9")

    assert store.mark_paid("REF-9")
    assert store.get(record.token).paid
    assert not store.mark_paid("REF-unknown")


def test_purge_expired_counts_removed():
    clock = Clock()
    store = PendingCheckoutStore(ttl_seconds=10, clock=clock)
    _stage(store)
    _stage(store)
    clock.now += 11

    assert store.purge_expired() == 2
