"""Database models for the marketplace service."""
import enum
import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Enum,
    ForeignKey,
    Numeric,
    String,
    Text,
)
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class UserRole(str, enum.Enum):
    FARMER = "FARMER"
    BUYER = "BUYER"
    ADMIN = "ADMIN"


class OrderStatus(str, enum.Enum):
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    PAYMENT_PROCESSING = "PAYMENT_PROCESSING"
    PAID = "PAID"
    SHIPPED = "SHIPPED"
    DELIVERED = "DELIVERED"
    CANCELLED = "CANCELLED"
    FAILED = "FAILED"


class PaymentType(str, enum.Enum):
    CARD_GATEWAY = "PAYSTACK"
    ALT_GATEWAY = "FLUTTERWAVE"
    TOKEN_TRANSFER = "STACKS_CRYPTO"


class PaymentStatus(str, enum.Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    REFUNDED = "REFUNDED"


# Attempts in these states block a new attempt on the same order
OPEN_PAYMENT_STATUSES = (PaymentStatus.PENDING, PaymentStatus.PROCESSING)


class EarningStatus(str, enum.Enum):
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    WITHDRAWN = "WITHDRAWN"


def _enum(enum_cls):
    return Enum(enum_cls, native_enum=False, length=32, validate_strings=True)


class User(Base):
    """Marketplace account (farmer, buyer or admin)."""
    __tablename__ = "users"

    id = Column(String(36), primary_key=True, default=new_id)
    email = Column(String(255), unique=True, nullable=False)
    name = Column(String(255))
    role = Column(_enum(UserRole), nullable=False)
    wallet_address = Column(String(128))
    api_token = Column(String(128), unique=True, index=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)


class Product(Base):
    """Produce listed by a farmer."""
    __tablename__ = "products"

    id = Column(String(36), primary_key=True, default=new_id)
    farmer_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    description = Column(Text)
    category = Column(String(64), index=True)
    unit = Column(String(32), default="kg")
    price_per_unit = Column(Numeric(12, 2), nullable=False)
    quantity = Column(Numeric(12, 3), nullable=False)
    available = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    farmer = relationship("User")


class Order(Base):
    """A buyer's purchase of a quantity of one product at a frozen total."""
    __tablename__ = "orders"

    id = Column(String(36), primary_key=True, default=new_id)
    buyer_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    product_id = Column(String(36), ForeignKey("products.id"), nullable=False, index=True)
    quantity = Column(Numeric(12, 3), nullable=False)
    total_price = Column(Numeric(14, 2), nullable=False)
    status = Column(_enum(OrderStatus), nullable=False, default=OrderStatus.PENDING)
    notes = Column(Text)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    product = relationship("Product")
    buyer = relationship("User")
    payments = relationship(
        "Payment",
        back_populates="order",
        order_by="Payment.created_at.desc()",
    )


class Payment(Base):
    """One settlement attempt against an order through one provider."""
    __tablename__ = "payments"

    id = Column(String(36), primary_key=True, default=new_id)
    order_id = Column(String(36), ForeignKey("orders.id"), nullable=False, index=True)
    user_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    type = Column(_enum(PaymentType), nullable=False)
    amount = Column(Numeric(14, 2), nullable=False)
    reference = Column(String(255), unique=True)
    wallet_address = Column(String(128))
    status = Column(_enum(PaymentStatus), nullable=False, default=PaymentStatus.PENDING)
    # "metadata" is reserved on declarative classes
    provider_payload = Column("metadata", JSON)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    order = relationship("Order", back_populates="payments")
    payer = relationship("User")


class Earning(Base):
    """Revenue credited to a farmer for one paid order."""
    __tablename__ = "earnings"

    id = Column(String(36), primary_key=True, default=new_id)
    farmer_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    order_id = Column(String(36), ForeignKey("orders.id"), nullable=False, index=True)
    product_id = Column(String(36), ForeignKey("products.id"), nullable=False)
    # Set on the remainder split off a partially withdrawn earning
    parent_id = Column(String(36), ForeignKey("earnings.id"))
    amount = Column(Numeric(14, 2), nullable=False)
    quantity_sold = Column(Numeric(12, 3), nullable=False, default=0)
    status = Column(_enum(EarningStatus), nullable=False, default=EarningStatus.PENDING)
    description = Column(Text)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)
