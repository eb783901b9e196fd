import json

from storefront.models import Product
from storefront.observability import get_counter
from storefront.services.checkout_service import EMPTY_CART_MESSAGE

CONTACT = {"fullName": "Tan Ah Kow", "email": "tan@example.com", "address": "1 Orchard Road"}


def _entry(product, quantity):
    return {"id": str(product.productID), "name": product.name, "price": float(product.price), "quantity": quantity}


def _flashes(client):
    with client.session_transaction() as sess:
        return sess.get("_flashes", [])


def _session(client):
    with client.session_transaction() as sess:
        return dict(sess)


def _stock(db_session, product):
    db_session.expire_all()
    return db_session.get(Product, product.productID).stock


def test_health_reports_components(client):
    response = client.get("/health")

    assert response.status_code == 200
    body = response.get_json()
    assert body["status"] == "UP"
    assert set(body["components"]) == {"database", "orderFeed"}


def test_checkout_page_with_empty_cart_redirects_to_cart(client):
    response = client.get("/checkout")

    assert response.status_code == 302
    assert response.headers["Location"].endswith("/cart")
    assert ("error", EMPTY_CART_MESSAGE) in _flashes(client)


def test_checkout_page_lists_totals(client, products, fill_cart):
    fill_cart(_entry(products[0], 3))

    response = client.get("/checkout")

    assert response.status_code == 200
    body = response.get_json()
    assert body["totals"]["total"] == 39.7
    assert body["cartItems"][0]["quantity"] == 3


def test_cash_checkout_flashes_and_shows_invoice(client, db_session, products, fill_cart):
    fill_cart(_entry(products[0], 3))

    response = client.post("/checkout", data={**CONTACT, "paymentMethod": "cash"})

    assert response.status_code == 302
    assert response.headers["Location"].endswith("/invoice")
    assert ("success", "Order placed! An invoice has been generated for tan@example.com.") in _flashes(client)
    assert _stock(db_session, products[0]) == 7

    invoice = client.get("/invoice").get_json()["order"]
    assert invoice["total"] == 39.7
    assert invoice["paymentStatus"] == "Cash on Delivery"


def test_missing_fields_flash_error(client, products, fill_cart):
    fill_cart(_entry(products[0], 1))

    response = client.post("/checkout", data={"paymentMethod": "cash"})

    assert response.headers["Location"].endswith("/checkout")
    assert ("error", "Please complete all checkout fields before placing your order.") in _flashes(client)
    assert len(_session(client)["cart"]) == 1


def test_nets_choice_is_forwarded_with_post_body(client, products, fill_cart):
    fill_cart(_entry(products[0], 1))

    response = client.post("/checkout", data={**CONTACT, "paymentMethod": "nets"})

    assert response.status_code == 307
    assert response.headers["Location"].endswith("/checkout/nets")


def test_nets_flow_over_http(client, db_session, products, fill_cart, fake_nets):
    fill_cart(_entry(products[0], 3))
    fake_nets.statuses = [
        {"response_code": "00", "txn_status": 0},
        {"response_code": "00", "txn_status": 1},
    ]

    started = client.post("/checkout/nets", data=CONTACT).get_json()
    assert started["txnRetrievalRef"] == "REF-123"
    assert started["total"] == "39.70"

    stream = client.get(started["sseUrl"])
    assert stream.mimetype == "text/event-stream"
    frames = [chunk for chunk in stream.get_data(as_text=True).split("\n\n") if chunk]
    assert json.loads(frames[-1][len("data: "):]) == {"success": True}

    done = client.get("/nets-qr/success")
    assert done.headers["Location"].endswith("/invoice")
    assert _session(client)["last_order"]["paymentStatus"] == "Paid"
    assert _stock(db_session, products[0]) == 7

    again = client.get("/nets-qr/success")
    assert again.headers["Location"].endswith("/invoice")
    assert get_counter("orders_placed_total", {"method": "nets"}) == 1


def test_nets_success_without_payment_is_refused(client, db_session, products, fill_cart):
    fill_cart(_entry(products[0], 1))
    client.post("/checkout/nets", data=CONTACT)

    response = client.get("/nets-qr/success")

    assert response.headers["Location"].endswith("/checkout")
    assert "last_order" not in _session(client)
    assert _stock(db_session, products[0]) == 10


def test_nets_fail_page_keeps_cart(client, products, fill_cart):
    fill_cart(_entry(products[0], 1))
    client.post("/checkout/nets", data=CONTACT)

    response = client.get("/nets-qr/fail")

    assert response.headers["Location"].endswith("/checkout")
    assert len(_session(client)["cart"]) == 1


def test_paypal_create_and_capture(client, db_session, products, fill_cart, fake_paypal):
    fill_cart(_entry(products[0], 2))

    created = client.post("/checkout/paypal/order", json=CONTACT)
    assert created.status_code == 200
    assert created.get_json() == {"id": "PAYPAL-ORDER-1"}
    assert fake_paypal.created[0][0] == "28.80"

    captured = client.post("/checkout/paypal/capture", json={"orderId": "PAYPAL-ORDER-1"})
    assert captured.status_code == 200
    assert captured.get_json() == {"ok": True, "redirectUrl": "/invoice"}
    assert ("success", "Order placed! An invoice has been generated for tan@example.com.") in _flashes(client)
    assert _stock(db_session, products[0]) == 8


def test_paypal_capture_without_order_id(client):
    response = client.post("/checkout/paypal/capture", json={})

    assert response.status_code == 400
    assert "error" in response.get_json()


def test_paypal_capture_for_unknown_order(client, products, fill_cart):
    fill_cart(_entry(products[0], 1))
    client.post("/checkout/paypal/order", json=CONTACT)

    response = client.post("/checkout/paypal/capture", json={"orderId": "SOMEONE-ELSE"})

    assert response.status_code == 400


def test_paynow_page_is_shown_once(client, products, fill_cart):
    fill_cart(_entry(products[1], 2))
    client.post("/checkout", data={**CONTACT, "paymentMethod": "paynow"})

    first = client.get("/paynow")
    assert first.status_code == 200
    assert first.get_json()["paynow"]["payload"].startswith("PAYNOW|INV:")

    second = client.get("/paynow")
    assert second.status_code == 302
    assert second.headers["Location"].endswith("/invoice")


def test_invoice_without_order_redirects(client):
    response = client.get("/invoice")

    assert response.headers["Location"].endswith("/cart")


def test_order_history_track_and_cancel(client, products, shopper, login_as, fill_cart):
    login_as(shopper)
    fill_cart(_entry(products[0], 1))
    client.post("/checkout", data={**CONTACT, "paymentMethod": "cash"})
    invoice = _session(client)["last_order"]["invoiceNumber"]

    history = client.get("/orders").get_json()["orders"]
    assert [order["invoiceNumber"] for order in history] == [invoice]

    tracking = client.get(f"/orders/{invoice}/track").get_json()
    assert tracking["shippingStatus"] == "Processing"
    assert tracking["timeline"]

    cancelled = client.post(f"/orders/{invoice}/cancel")
    assert cancelled.status_code == 302
    assert ("success", "Order cancelled successfully.") in _flashes(client)
    assert _session(client)["order_history"][0]["shippingStatus"] == "Cancelled"


def test_unknown_order_redirects_to_history(client, shopper, login_as):
    login_as(shopper)

    response = client.get("/orders/INV-NOPE/track")

    assert response.headers["Location"].endswith("/orders")


def test_admin_routes_require_admin(client, shopper, login_as):
    assert client.get("/admin/orders").status_code == 403
    login_as(shopper)
    assert client.get("/admin/metrics").status_code == 403


def test_admin_updates_status(client, products, admin_user, login_as, fill_cart):
    fill_cart(_entry(products[0], 1))
    client.post("/checkout", data={**CONTACT, "paymentMethod": "cash"})
    invoice = _session(client)["last_order"]["invoiceNumber"]
    login_as(admin_user)

    response = client.post(f"/admin/orders/{invoice}/status", data={"status": "shipped", "kind": "shipping"})
    assert response.status_code == 302

    orders = client.get("/admin/orders").get_json()["orders"]
    assert orders[0]["invoiceNumber"] == invoice
    assert orders[0]["shippingStatus"] == "Shipped"

    missing = client.post("/admin/orders/INV-NOPE/status", data={"status": "Shipped"})
    assert missing.status_code == 404


def test_admin_metrics_snapshot(client, admin_user, login_as):
    login_as(admin_user)
    client.get("/health")

    snapshot = client.get("/admin/metrics").get_json()

    assert "counters" in snapshot


def test_cart_routes(client, products):
    milk = products[0]

    added = client.post(f"/cart/add/{milk.productID}", data={"quantity": 2})
    assert added.headers["Location"].endswith("/cart")
    assert client.get("/cart").get_json()["cartItems"][0]["quantity"] == 2

    client.post(f"/cart/update/{milk.productID}", data={"quantity": 4})
    assert client.get("/cart").get_json()["totals"]["subtotal"] == 40.0

    client.post(f"/cart/remove/{milk.productID}")
    assert client.get("/cart").get_json()["cartItems"] == []


def test_cart_rejects_more_than_stock(client, products):
    client.post(f"/cart/add/{products[2].productID}", data={"quantity": 5})

    assert ("error", "Not enough stock. Only 2 available.") in _flashes(client)


def test_wallet_requires_login(client):
    response = client.get("/wallet")

    assert response.status_code == 401


def test_wallet_topup(client, shopper, login_as):
    login_as(shopper)
    card = {"cardNumber": "4111 1111 1111 1111", "cardExpiry": "12/39", "cardCvv": "123"}

    response = client.post("/wallet/topup", data={**card, "amount": "25.50"})

    assert response.headers["Location"].endswith("/wallet")
    assert client.get("/wallet").get_json()["balance"] == 25.5


def test_wallet_topup_rejects_bad_card(client, shopper, login_as):
    login_as(shopper)

    client.post("/wallet/topup", data={"cardNumber": "4111", "cardExpiry": "12/39", "cardCvv": "123", "amount": "10"})

    assert ("error", "Card number must be 12 to 19 digits.") in _flashes(client)
    assert client.get("/wallet").get_json()["balance"] == 0.0
