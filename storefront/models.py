# storefront/models.py
from enum import Enum
from datetime import datetime, timezone

from sqlalchemy import (
    Column,
    Integer,
    String,
    Numeric,
    DateTime,
    ForeignKey,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

# Use a single, shared Base for all models
from storefront.database import Base


class PaymentMethod(str, Enum):
    CASH = "cash"
    CARD = "card"
    WALLET = "wallet"
    PAYNOW = "paynow"
    NETS = "nets"
    PAYPAL = "paypal"

    @classmethod
    def parse(cls, value):
        """Return the enum member for a form value, or None when unknown."""
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value or "").strip().lower())
        except ValueError:
            return None


class ShippingStatus(str, Enum):
    PROCESSING = "Processing"
    SHIPPED = "Shipped"
    OUT_FOR_DELIVERY = "Out for Delivery"
    DELIVERED = "Delivered"
    CANCELLED = "Cancelled"


class PaymentStatus(str, Enum):
    PAID = "Paid"
    CASH_ON_DELIVERY = "Cash on Delivery"
    AWAITING_PAYMENT = "Awaiting Payment"
    REFUNDED = "Refunded"
    FAILED = "Failed"


class User(Base):
    __tablename__ = 'User'
    userID = Column(Integer, primary_key=True, autoincrement=True)
    username = Column(String(255), unique=True, nullable=False)
    email = Column(String(255), unique=True, nullable=False)
    role = Column(String(50), default='customer', nullable=False)
    _created_at = Column('created_at', DateTime, default=lambda: datetime.now(timezone.utc))

    wallet = relationship("Wallet", uselist=False, back_populates="user")
    cart_items = relationship("CartItem", back_populates="user", cascade="all, delete-orphan")
    payment_methods = relationship("SavedPaymentMethod", back_populates="user", cascade="all, delete-orphan")

    @property
    def created_at(self):
        return self._created_at

    @property
    def is_admin(self) -> bool:
        return (self.role or '').lower() == 'admin'

    def to_session(self) -> dict:
        return {
            "id": self.userID,
            "username": self.username,
            "email": self.email,
            "role": self.role,
        }


class Product(Base):
    __tablename__ = 'Product'
    productID = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(255), nullable=False)
    description = Column(String)
    price = Column(Numeric(10, 2), nullable=False)
    stock = Column(Integer, nullable=False, default=0)
    image = Column(String(255))

    def to_cart_entry(self, quantity: int) -> dict:
        return {
            "id": str(self.productID),
            "name": self.name,
            "price": float(self.price),
            "image": self.image,
            "quantity": quantity,
        }


class Wallet(Base):
    __tablename__ = 'Wallet'
    userID = Column(Integer, ForeignKey('User.userID', ondelete="CASCADE"), primary_key=True)
    balance = Column(Numeric(10, 2), nullable=False, default=0)
    updated_at = Column(
        DateTime,
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    user = relationship("User", back_populates="wallet")


class CartItem(Base):
    __tablename__ = 'CartItem'
    __table_args__ = (UniqueConstraint('userID', 'productID', name='uq_cart_user_product'),)

    cartItemID = Column(Integer, primary_key=True, autoincrement=True)
    userID = Column(Integer, ForeignKey('User.userID', ondelete="CASCADE"), nullable=False)
    productID = Column(Integer, ForeignKey('Product.productID', ondelete="CASCADE"), nullable=False)
    quantity = Column(Integer, nullable=False, default=1)

    user = relationship("User", back_populates="cart_items")
    product = relationship("Product")


class SavedPaymentMethod(Base):
    """A card kept for reuse. Only display fields and an opaque token are stored."""

    __tablename__ = 'SavedPaymentMethod'
    paymentMethodID = Column(Integer, primary_key=True, autoincrement=True)
    userID = Column(Integer, ForeignKey('User.userID', ondelete="CASCADE"), nullable=False)
    brand = Column(String(50), nullable=False, default='Card')
    label = Column(String(120))
    last4 = Column(String(4), nullable=False)
    exp_month = Column(String(2))
    exp_year = Column(String(4))
    cardholder_name = Column(String(255))
    card_token = Column(String(64), unique=True, nullable=False)
    created_at = Column(DateTime, default=lambda: datetime.now(timezone.utc))

    user = relationship("User", back_populates="payment_methods")

    @property
    def masked(self) -> str:
        return f"{self.brand or 'Card'} •••• {self.last4}"

    def to_dict(self) -> dict:
        return {
            "id": self.paymentMethodID,
            "userId": self.userID,
            "brand": self.brand,
            "label": self.label or self.brand,
            "last4": self.last4,
            "expMonth": self.exp_month,
            "expYear": self.exp_year,
            "cardholderName": self.cardholder_name,
            "masked": self.masked,
        }
