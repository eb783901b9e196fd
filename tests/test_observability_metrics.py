from storefront.observability.metrics import (
    get_counter,
    get_metrics_snapshot,
    increment_counter,
    observe_latency,
    record_event,
    reset_metrics,
)


def test_metrics_snapshot_accumulates_counts():
    reset_metrics()
    increment_counter("orders_placed_total", labels={"method": "cash"})
    increment_counter("orders_placed_total", amount=2, labels={"method": "wallet"})
    observe_latency("checkout_duration_ms", 100, labels={"method": "cash"})
    observe_latency("checkout_duration_ms", 50, labels={"method": "cash"})
    record_event("order_placed", {"invoice_number": "INV-1"})

    snapshot = get_metrics_snapshot()
    assert len(snapshot["counters"]["orders_placed_total"]) == 2
    assert get_counter("orders_placed_total", {"method": "wallet"}) == 2

    hist = snapshot["histograms"]["checkout_duration_ms"][0]["stats"]
    assert hist["count"] == 2
    assert hist["max"] == 100
    assert hist["avg"] == 75
    assert snapshot["events"][-1]["name"] == "order_placed"


def test_unknown_counter_reads_zero():
    reset_metrics()

    assert get_counter("never_incremented") == 0
