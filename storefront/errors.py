"""Checkout error taxonomy.

Every error carries the page the shopper should be sent back to; the
orchestrator turns them into flash + redirect outcomes (or JSON bodies for the
PayPal endpoints).
"""
from __future__ import annotations

from typing import Any, Dict, Optional


class CheckoutError(Exception):
    """Base exception for recoverable checkout failures."""

    redirect_to = "/checkout"
    status_code = 400
    reason = "checkout_error"

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class ValidationError(CheckoutError):
    """Missing or malformed shopper input."""

    reason = "validation"


class ProductNotFound(CheckoutError):
    """A line item references a product row that no longer exists."""

    redirect_to = "/cart"
    status_code = 409
    reason = "product_not_found"

    def __init__(self, product_id: Any):
        self.product_id = product_id
        super().__init__(f"Product {product_id} not found")


class InsufficientStock(CheckoutError):
    """Requested quantity exceeds what is on hand."""

    redirect_to = "/cart"
    status_code = 409
    reason = "insufficient_stock"

    def __init__(self, product_id: Any, product_name: Optional[str], available: int, requested: int):
        self.product_id = product_id
        self.product_name = product_name
        self.available = available
        self.requested = requested
        name = product_name or f"Product {product_id}"
        super().__init__(
            f"Not enough stock for {name}. Available: {available}, requested: {requested}."
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "productId": self.product_id,
            "productName": self.product_name,
            "available": self.available,
            "requested": self.requested,
        }


class InsufficientBalance(CheckoutError):
    """Wallet balance does not cover the order total."""

    reason = "insufficient_balance"

    def __init__(self, message: str = "Insufficient wallet balance. Please top up your wallet."):
        super().__init__(message)


class SavedCardNotFound(CheckoutError):
    """The saved card id does not belong to the shopper."""

    reason = "saved_card_not_found"

    def __init__(self, card_id: Any):
        self.card_id = card_id
        super().__init__("Saved card not found. Please re-enter card details.")


class RemoteProviderError(CheckoutError):
    """NETS or PayPal returned an error or could not be reached."""

    status_code = 502
    reason = "remote_provider"

    def __init__(self, provider: str, message: str, status: Optional[int] = None, detail: Optional[str] = None):
        self.provider = provider
        self.status = status
        self.detail = detail
        super().__init__(message)


class PersistenceWarning(Exception):
    """The order feed file could not be read or written. Logged, never surfaced."""

    def __init__(self, path: str, cause: Exception):
        self.path = path
        self.cause = cause
        super().__init__(f"Order feed persistence failed for {path}: {cause}")
