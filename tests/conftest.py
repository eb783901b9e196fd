# tests/conftest.py
"""
Shared pytest fixtures: a throwaway SQLite database, seeded catalogue rows,
fake payment gateways and a Flask test client wired to them.
"""

import os
import tempfile
from decimal import Decimal

import pytest

_TMP_DIR = tempfile.mkdtemp(prefix="storefront-tests-")
os.environ["DATABASE_URL"] = os.getenv("TEST_DATABASE_URL", f"sqlite:///{_TMP_DIR}/storefront-test.db")
os.environ["ORDER_FEED_FILE"] = os.path.join(_TMP_DIR, "orders-feed.json")
os.environ["STRUCTURED_LOGS_ENABLED"] = "false"
os.environ.setdefault("SECRET_KEY", "test-secret")

from storefront.database import Base, SessionLocal, engine  # noqa: E402
from storefront.models import Product, User, Wallet  # noqa: E402
from storefront.observability.metrics import reset_metrics  # noqa: E402
from storefront.services.inventory_service import reset_stock_column_cache  # noqa: E402
from storefront.services.order_service import OrderFeedStore, OrderHistoryStore, OrderService  # noqa: E402
from storefront.services.pending_checkout import PendingCheckoutStore  # noqa: E402

from fakes import FakeNetsClient, FakePayPalClient  # noqa: E402


@pytest.fixture
def db_session():
    """Fresh schema for every test."""
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    reset_stock_column_cache()
    reset_metrics()
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def shopper(db_session):
    user = User(username="testuser_shopper", email="shopper@example.com", role="customer")
    db_session.add(user)
    db_session.commit()
    return user


@pytest.fixture
def admin_user(db_session):
    user = User(username="testuser_admin", email="admin@example.com", role="admin")
    db_session.add(user)
    db_session.commit()
    return user


@pytest.fixture
def products(db_session):
    items = [
        Product(name="Fresh Milk 1L", description="Dairy", price=Decimal("10.00"), stock=10),
        Product(name="Wholemeal Bread", description="Bakery", price=Decimal("3.50"), stock=5),
        Product(name="Olive Oil 500ml", description="Pantry", price=Decimal("12.90"), stock=2),
    ]
    db_session.add_all(items)
    db_session.commit()
    return items


@pytest.fixture
def fund_wallet(db_session):
    def _fund(user, amount):
        db_session.add(Wallet(userID=user.userID, balance=Decimal(str(amount))))
        db_session.commit()

    return _fund


@pytest.fixture
def feed_path(tmp_path):
    return tmp_path / "orders-feed.json"


@pytest.fixture
def order_service(feed_path):
    return OrderService(OrderFeedStore(feed_path, limit=50), OrderHistoryStore(limit=20))


@pytest.fixture
def pending_store():
    return PendingCheckoutStore(ttl_seconds=900)


@pytest.fixture
def fake_nets():
    return FakeNetsClient()


@pytest.fixture
def fake_paypal():
    return FakePayPalClient()


@pytest.fixture
def app(db_session, order_service, pending_store, fake_nets, fake_paypal):
    from storefront.blueprints.common import EXTENSION_KEY
    from storefront.main import app as flask_app
    from storefront.services.nets_service import NetsPaymentPoller

    flask_app.config["TESTING"] = True
    flask_app.extensions[EXTENSION_KEY] = {
        "order_service": order_service,
        "pending_store": pending_store,
        "nets_client": fake_nets,
        "nets_poller": NetsPaymentPoller(fake_nets, interval_seconds=0, max_polls=5, sleep=lambda _s: None),
        "paypal_client": fake_paypal,
    }
    return flask_app


@pytest.fixture
def client(app):
    with app.test_client() as test_client:
        yield test_client


@pytest.fixture
def login_as(client):
    def _login(user):
        with client.session_transaction() as sess:
            sess["user"] = user.to_session()

    return _login


@pytest.fixture
def fill_cart(client):
    def _fill(*entries):
        with client.session_transaction() as sess:
            sess["cart"] = list(entries)

    return _fill
