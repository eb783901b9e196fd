from .cart_service import CartService
from .checkout_service import CheckoutOutcome, CheckoutService
from .inventory_service import InventoryService
from .nets_client import NetsQrClient
from .nets_service import NetsPaymentPoller
from .order_service import OrderFeedStore, OrderHistoryStore, OrderService
from .payment_service import PaymentService
from .paypal_client import PayPalClient
from .pending_checkout import PendingCheckoutStore
from .saved_card_service import SavedCardService
from .wallet_service import WalletService

__all__ = [
    "CartService",
    "CheckoutOutcome",
    "CheckoutService",
    "InventoryService",
    "NetsQrClient",
    "NetsPaymentPoller",
    "OrderFeedStore",
    "OrderHistoryStore",
    "OrderService",
    "PaymentService",
    "PayPalClient",
    "PendingCheckoutStore",
    "SavedCardService",
    "WalletService",
]
