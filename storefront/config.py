"""Centralized application configuration for all environments."""
from __future__ import annotations

import os
from decimal import Decimal
from pathlib import Path
from typing import Any, Final

from dotenv import load_dotenv

BASE_DIR: Final[Path] = Path(__file__).resolve().parent.parent
ENV_PATH = BASE_DIR / ".env"

# Load environment variables once, prioritizing runtime env over file values
load_dotenv(dotenv_path=ENV_PATH, override=False)


def _str_to_bool(value: str | bool | None, default: bool = False) -> bool:
    if isinstance(value, bool):
        return value
    if value is None:
        return default
    return str(value).strip().lower() in {"1", "true", "yes", "on"}


def _determine_database_url() -> str:
    """
    Return a connection string using the following precedence:
    1. Explicit DATABASE_URL
    2. Individual DB_* components (for MySQL/PostgreSQL)
    3. Local SQLite fallback (for onboarding / tests)
    """
    explicit_url = os.getenv("DATABASE_URL")
    if explicit_url:
        return explicit_url

    username = os.getenv("DB_USERNAME")
    password = os.getenv("DB_PASSWORD")
    host = os.getenv("DB_HOST")
    port = os.getenv("DB_PORT")
    name = os.getenv("DB_NAME")

    if all([username, password, host, port, name]):
        driver = os.getenv("DB_DRIVER", "postgresql+psycopg2")
        return f"{driver}://{username}:{password}@{host}:{port}/{name}"

    fallback_path = BASE_DIR / "db" / "storefront.db"
    fallback_path.parent.mkdir(parents=True, exist_ok=True)
    return f"sqlite:///{fallback_path.as_posix()}"


class Config:
    """Default runtime configuration shared across Flask, services, and scripts."""

    APP_NAME: Final[str] = os.getenv("APP_NAME", "Supermarket Storefront")
    APP_ENV: Final[str] = os.getenv("APP_ENV", "development")

    SECRET_KEY: Final[str] = os.getenv("SECRET_KEY", "change-me-in-prod")
    DEBUG: Final[bool] = _str_to_bool(os.getenv("FLASK_DEBUG"), default=APP_ENV == "development")
    TESTING: Final[bool] = _str_to_bool(os.getenv("FLASK_TESTING"), default=False)

    # Flask run configuration (used by run.py)
    FLASK_RUN_HOST: Final[str] = os.getenv("FLASK_RUN_HOST", "0.0.0.0")
    FLASK_RUN_PORT: Final[int] = int(os.getenv("FLASK_RUN_PORT", "3000"))

    # Database
    DATABASE_URL: Final[str] = _determine_database_url()
    SQL_ECHO: Final[bool] = _str_to_bool(os.getenv("SQL_ECHO"), default=False)
    DB_POOL_SIZE: Final[int] = int(os.getenv("DB_POOL_SIZE", "10"))
    DB_MAX_OVERFLOW: Final[int] = int(os.getenv("DB_MAX_OVERFLOW", "20"))

    # Pricing (GST + shipping)
    CURRENCY: Final[str] = os.getenv("CURRENCY", "SGD")
    TAX_RATE: Final[Decimal] = Decimal(os.getenv("TAX_RATE", "0.09"))
    FREE_SHIPPING_THRESHOLD: Final[Decimal] = Decimal(os.getenv("FREE_SHIPPING_THRESHOLD", "59.00"))
    FLAT_SHIPPING_FEE: Final[Decimal] = Decimal(os.getenv("FLAT_SHIPPING_FEE", "7.00"))

    # Order retention
    USER_HISTORY_LIMIT: Final[int] = int(os.getenv("USER_HISTORY_LIMIT", "20"))
    GLOBAL_FEED_LIMIT: Final[int] = int(os.getenv("GLOBAL_FEED_LIMIT", "50"))
    ORDER_FEED_FILE: Final[Path] = Path(
        os.getenv("ORDER_FEED_FILE", (BASE_DIR / "db" / "orders-feed.json").as_posix())
    )

    # Checkout behaviour
    STOCK_ENFORCEMENT_ENABLED: Final[bool] = _str_to_bool(os.getenv("STOCK_ENFORCEMENT_ENABLED"), default=True)
    PENDING_CHECKOUT_TTL_SECONDS: Final[int] = int(os.getenv("PENDING_CHECKOUT_TTL_SECONDS", "900"))
    SAVED_CARDS_CACHE_LIMIT: Final[int] = int(os.getenv("SAVED_CARDS_CACHE_LIMIT", "5"))

    # NETS QR gateway
    NETS_API_BASE: Final[str] = os.getenv(
        "NETS_API_BASE", "https://sandbox.nets.openapipaas.com/api/v1/common/payments/nets-qr"
    )
    NETS_API_KEY: Final[str] = os.getenv("NETS_API_KEY", os.getenv("API_KEY", ""))
    NETS_PROJECT_ID: Final[str] = os.getenv("NETS_PROJECT_ID", os.getenv("PROJECT_ID", ""))
    NETS_POLL_INTERVAL_SECONDS: Final[float] = float(os.getenv("NETS_POLL_INTERVAL_SECONDS", "5"))
    NETS_MAX_POLLS: Final[int] = int(os.getenv("NETS_MAX_POLLS", "60"))

    # PayPal
    PAYPAL_CLIENT_ID: Final[str] = os.getenv("PAYPAL_CLIENT_ID", "")
    PAYPAL_CLIENT_SECRET: Final[str] = os.getenv("PAYPAL_CLIENT_SECRET", "")
    PAYPAL_API_BASE: Final[str] = os.getenv("PAYPAL_API", "https://api-m.sandbox.paypal.com")

    HTTP_TIMEOUT_SECONDS: Final[float] = float(os.getenv("HTTP_TIMEOUT_SECONDS", "10"))

    # Observability
    STRUCTURED_LOGS_ENABLED: Final[bool] = _str_to_bool(os.getenv("STRUCTURED_LOGS_ENABLED"), default=True)
    LOG_LEVEL: Final[str] = os.getenv("LOG_LEVEL", "INFO")
    REQUEST_ID_HEADER: Final[str] = os.getenv("REQUEST_ID_HEADER", "X-Request-ID")

    @classmethod
    def configure_app(cls, app: Any) -> None:
        """Apply core configuration to a Flask app instance."""
        app.config["SECRET_KEY"] = cls.SECRET_KEY
        app.config["ENV"] = cls.APP_ENV
        app.config["DEBUG"] = cls.DEBUG
        app.config["TESTING"] = cls.TESTING
        app.config["SQLALCHEMY_DATABASE_URI"] = cls.DATABASE_URL
        app.config["SQLALCHEMY_ECHO"] = cls.SQL_ECHO
        app.config["CURRENCY"] = cls.CURRENCY
        app.config["PAYPAL_CLIENT_ID"] = cls.PAYPAL_CLIENT_ID
        app.config["STRUCTURED_LOGS_ENABLED"] = cls.STRUCTURED_LOGS_ENABLED
        cls.ORDER_FEED_FILE.parent.mkdir(parents=True, exist_ok=True)
        app.config["ORDER_FEED_FILE"] = str(cls.ORDER_FEED_FILE)
