from decimal import Decimal

from storefront.models import CartItem
from storefront.services.cart_service import CartService


def test_normalizes_mixed_entries_into_canonical_list():
    session = {
        "cart": {
            "items": [
                {"id": 7, "productName": "Eggs", "price": "4.20", "qty": "2"},
                {"id": 8, "product": {"title": "Rice", "price": 9.5}, "price": -1},
                {"quantity": 0},
                "not-an-entry",
            ]
        }
    }

    items = CartService().normalize_session_cart(session)

    assert [(i.product_id, i.name, i.unit_price, i.quantity) for i in items] == [
        ("7", "Eggs", Decimal("4.20"), 2),
        ("8", "Rice", Decimal("9.50"), 1),
        (None, "Item 3", Decimal("0.00"), 1),
    ]
    assert session["cart"][0] == {"id": "7", "name": "Eggs", "price": 4.2, "quantity": 2, "image": None}


def test_missing_or_odd_cart_is_empty():
    for raw in (None, "x", {"items": "nope"}, 42):
        session = {"cart": raw}
        assert CartService().normalize_session_cart(session) == []
        assert session["cart"] == []


def test_fractional_quantities_truncate_to_whole_units():
    session = {"cart": [
        {"id": "1", "price": 10, "quantity": 2.0},
        {"id": "2", "price": 10, "quantity": "3.7"},
        {"id": "3", "price": 10, "qty": " 4 boxes"},
        {"id": "4", "price": 10, "quantity": 0.5},
    ]}

    items = CartService().normalize_session_cart(session)

    assert [item.quantity for item in items] == [2, 3, 4, 1]
    assert items[0].line_subtotal == Decimal("20.00")


def test_name_falls_back_to_product_id():
    session = {"cart": [{"id": "P1", "price": 10, "quantity": 3}]}

    (item,) = CartService().normalize_session_cart(session)

    assert item.name == "Item P1"
    assert item.line_subtotal == Decimal("30.00")


def test_add_item_respects_stock(db_session, products, shopper):
    service = CartService(db_session)
    session = {}
    milk = products[0]

    ok, _ = service.add_item(session, milk.productID, 4, user_id=shopper.userID)
    assert ok
    ok, message = service.add_item(session, milk.productID, 7, user_id=shopper.userID)

    assert not ok
    assert "Only 10 available" in message
    assert session["cart"][0]["quantity"] == 4
    row = db_session.query(CartItem).filter_by(userID=shopper.userID).one()
    assert row.quantity == 4


def test_update_to_zero_removes_item(db_session, products, shopper):
    service = CartService(db_session)
    session = {}
    bread = products[1]
    service.add_item(session, bread.productID, 2, user_id=shopper.userID)

    ok, _ = service.update_quantity(session, bread.productID, 0, user_id=shopper.userID)

    assert ok
    assert session["cart"] == []
    assert db_session.query(CartItem).filter_by(userID=shopper.userID).count() == 0


def test_sync_session_from_db_uses_catalogue_prices(db_session, products, shopper):
    service = CartService(db_session)
    service.add_item({}, products[2].productID, 2, user_id=shopper.userID)

    session = {"cart": []}
    items = service.sync_session_from_db(session, shopper.userID)

    assert [(i.name, i.unit_price, i.quantity) for i in items] == [("Olive Oil 500ml", Decimal("12.90"), 2)]
