# storefront/main.py
import logging
import time

from flask import Flask, g, jsonify, request

from storefront.blueprints.admin import admin_bp
from storefront.blueprints.cart import cart_bp
from storefront.blueprints.checkout import checkout_bp
from storefront.blueprints.common import EXTENSION_KEY
from storefront.blueprints.orders import orders_bp
from storefront.blueprints.wallet import wallet_bp
from storefront.config import Config
from storefront.database import Base, close_db, engine
from storefront.observability import configure_logging, increment_counter, observe_latency
from storefront.observability.health import check_database_health, check_order_feed_health
from storefront.observability.logging_config import ensure_request_id
from storefront.services.nets_client import NetsQrClient
from storefront.services.nets_service import NetsPaymentPoller
from storefront.services.order_service import OrderService
from storefront.services.paypal_client import PayPalClient
from storefront.services.pending_checkout import PendingCheckoutStore

app = Flask(__name__)
Config.configure_app(app)
configure_logging(app)

for blueprint in (checkout_bp, cart_bp, orders_bp, wallet_bp, admin_bp):
    app.register_blueprint(blueprint)

logger = logging.getLogger(__name__)


def init_database():
    """Initialize database tables"""
    try:
        Base.metadata.create_all(bind=engine)
        logger.info("Database tables initialized successfully")
    except Exception as e:
        logger.exception("Error initializing database: %s", e)


def init_runtime(flask_app: Flask) -> None:
    """Create the process-wide stores and gateway clients the blueprints share."""
    nets_client = NetsQrClient()
    flask_app.extensions[EXTENSION_KEY] = {
        "order_service": OrderService(),
        "pending_store": PendingCheckoutStore(Config.PENDING_CHECKOUT_TTL_SECONDS),
        "nets_client": nets_client,
        "nets_poller": NetsPaymentPoller(nets_client),
        "paypal_client": PayPalClient(),
    }


init_database()
init_runtime(app)


@app.before_request
def before_request_logging():
    g.request_started_at = time.perf_counter()
    g.request_id = ensure_request_id()
    increment_counter(
        "http_requests_total",
        labels={
            "method": request.method,
            "endpoint": request.endpoint or request.path,
        },
    )


@app.after_request
def after_request_logging(response):
    started = getattr(g, "request_started_at", None)
    if started is not None:
        duration_ms = (time.perf_counter() - started) * 1000
        observe_latency(
            "http_request_latency_ms",
            duration_ms,
            labels={
                "method": request.method,
                "endpoint": request.endpoint or request.path,
                "status": str(response.status_code),
            },
        )
    if response.status_code >= 500:
        increment_counter(
            "http_errors_total",
            labels={
                "method": request.method,
                "endpoint": request.endpoint or request.path,
                "status": str(response.status_code),
            },
        )
        logger.error("Request finished with error status %s", response.status_code)
    else:
        logger.info("Request finished", extra={"status_code": response.status_code})
    return response


@app.teardown_appcontext
def teardown_db(exception):
    close_db(exception)


@app.route("/health", methods=["GET"])
def health():
    db_status = check_database_health()
    feed_status = check_order_feed_health(Config.ORDER_FEED_FILE)
    overall = "UP" if db_status.get("status") == "UP" else "DEGRADED"
    status_code = 200 if overall == "UP" else 503
    return jsonify({
        "status": overall,
        "components": {
            "database": db_status,
            "orderFeed": feed_status,
        }
    }), status_code
