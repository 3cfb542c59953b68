"""
Database Models - Transactional Order Schema

This module defines the relational tables the order and refund pipelines
mutate. Aggregate metrics are not stored here; they live in the Redis
aggregate store (see orderflow.ledger.store).

Tables:
- customers: Customer identity plus derived spend/order totals
- products: Catalog entries with on-hand and reserved stock
- orders / order_items: Orders and their immutable line items
- refunds: Refund requests and their settlement state
- notifications: Fire-and-forget notification records
"""

from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional, List

from sqlalchemy import (
    JSON,
    DateTime,
    Enum as SQLEnum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    and_,
    or_,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


def utcnow() -> datetime:
    """Timezone-aware current UTC time"""
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    """Base class for all database models"""
    pass


# =============================================================================
# ENUMERATIONS
# =============================================================================

class OrderStatus(str, Enum):
    """Order status enumeration"""
    PENDING = "pending"
    PROCESSING = "processing"
    PAID = "paid"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


class PaymentStatus(str, Enum):
    """Payment status enumeration"""
    PENDING = "pending"
    PROCESSING = "processing"
    PAID = "paid"
    FAILED = "failed"
    REFUNDED = "refunded"
    PARTIALLY_REFUNDED = "partially_refunded"


class RefundType(str, Enum):
    """Refund type enumeration"""
    FULL = "full"
    PARTIAL = "partial"


class RefundStatus(str, Enum):
    """Refund status enumeration"""
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class NotificationStatus(str, Enum):
    """Notification delivery status"""
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"


# Orders in these states may be refunded and count towards revenue KPIs
FULFILLED_ORDER_STATUSES = (OrderStatus.PAID, OrderStatus.SHIPPED, OrderStatus.DELIVERED)


def _enum_values(enum_cls):
    return [member.value for member in enum_cls]


# =============================================================================
# CUSTOMERS & CATALOG
# =============================================================================

class Customer(Base):
    """
    Customer Table

    total_spent and total_orders are derived from the customer's orders
    and are only ever written by the stats aggregator.
    """
    __tablename__ = "customers"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    phone: Mapped[Optional[str]] = mapped_column(String(50))
    address: Mapped[Optional[str]] = mapped_column(Text)

    # Derived metrics
    total_spent: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=Decimal("0"), nullable=False)
    total_orders: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    # Audit
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    # Relationships
    orders: Mapped[List["Order"]] = relationship(back_populates="customer")

    __table_args__ = (
        Index("ix_customers_total_spent", "total_spent"),
    )


class Product(Base):
    """
    Product Table

    available = stock_quantity - reserved_quantity, never negative.
    """
    __tablename__ = "products"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    sku: Mapped[str] = mapped_column(String(50), unique=True, nullable=False)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    price: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)

    # Inventory
    stock_quantity: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    reserved_quantity: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    order_items: Mapped[List["OrderItem"]] = relationship(back_populates="product")

    @property
    def available_quantity(self) -> int:
        return self.stock_quantity - self.reserved_quantity


# =============================================================================
# ORDERS
# =============================================================================

class Order(Base):
    """
    Order Table

    total_amount is fixed at creation time. Orders are never deleted;
    cancellation is a status.
    """
    __tablename__ = "orders"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    customer_id: Mapped[int] = mapped_column(ForeignKey("customers.id"), nullable=False)
    order_number: Mapped[str] = mapped_column(String(50), unique=True, nullable=False)

    # Caller supplied idempotency key for at-least-once job delivery
    request_id: Mapped[Optional[str]] = mapped_column(String(100), unique=True)

    total_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)

    status: Mapped[OrderStatus] = mapped_column(
        SQLEnum(OrderStatus, values_callable=_enum_values, native_enum=False),
        default=OrderStatus.PENDING,
        nullable=False,
    )
    payment_status: Mapped[PaymentStatus] = mapped_column(
        SQLEnum(PaymentStatus, values_callable=_enum_values, native_enum=False),
        default=PaymentStatus.PENDING,
        nullable=False,
    )

    # Serialized orderflow.processing.schemas.PaymentData
    payment_data: Mapped[Optional[dict]] = mapped_column(JSON)
    paid_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    # Relationships
    customer: Mapped["Customer"] = relationship(back_populates="orders")
    items: Mapped[List["OrderItem"]] = relationship(back_populates="order")
    refunds: Mapped[List["Refund"]] = relationship(back_populates="order")

    __table_args__ = (
        Index("ix_orders_customer", "customer_id"),
        Index("ix_orders_status", "status"),
        Index("ix_orders_created_at", "created_at"),
    )


class OrderItem(Base):
    """
    Order Item Table

    Price snapshots taken when the order is created; never rewritten.
    """
    __tablename__ = "order_items"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    order_id: Mapped[int] = mapped_column(ForeignKey("orders.id"), nullable=False)
    product_id: Mapped[int] = mapped_column(ForeignKey("products.id"), nullable=False)

    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    unit_price: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    total_price: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    order: Mapped["Order"] = relationship(back_populates="items")
    product: Mapped["Product"] = relationship(back_populates="order_items")

    __table_args__ = (
        Index("ix_order_items_order", "order_id"),
        Index("ix_order_items_product", "product_id"),
    )


# =============================================================================
# REFUNDS
# =============================================================================

class Refund(Base):
    """
    Refund Table

    A refund is "settled" once the gateway has returned money for it:
    either completed, or still processing with a gateway transaction id
    recorded (compensations pending). Settled refunds count against the
    order's refundable amount.
    """
    __tablename__ = "refunds"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    order_id: Mapped[int] = mapped_column(ForeignKey("orders.id"), nullable=False)
    customer_id: Mapped[int] = mapped_column(ForeignKey("customers.id"), nullable=False)
    refund_number: Mapped[str] = mapped_column(String(50), unique=True, nullable=False)

    refund_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    original_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)

    type: Mapped[RefundType] = mapped_column(
        SQLEnum(RefundType, values_callable=_enum_values, native_enum=False),
        default=RefundType.FULL,
        nullable=False,
    )
    status: Mapped[RefundStatus] = mapped_column(
        SQLEnum(RefundStatus, values_callable=_enum_values, native_enum=False),
        default=RefundStatus.PENDING,
        nullable=False,
    )

    reason: Mapped[Optional[str]] = mapped_column(String(255))
    notes: Mapped[Optional[str]] = mapped_column(Text)

    # Serialized orderflow.processing.schemas.RefundGatewayData
    refund_data: Mapped[Optional[dict]] = mapped_column(JSON)
    transaction_id: Mapped[Optional[str]] = mapped_column(String(100))
    compensation_error: Mapped[Optional[str]] = mapped_column(Text)

    processed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    processed_by: Mapped[Optional[str]] = mapped_column(String(100))

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    order: Mapped["Order"] = relationship(back_populates="refunds")
    customer: Mapped["Customer"] = relationship()

    __table_args__ = (
        Index("ix_refunds_order_status", "order_id", "status"),
        Index("ix_refunds_customer_status", "customer_id", "status"),
    )

    @classmethod
    def settled_clause(cls):
        """SQL predicate matching refunds whose money has left the gateway"""
        return or_(
            cls.status == RefundStatus.COMPLETED,
            and_(cls.status == RefundStatus.PROCESSING, cls.transaction_id.is_not(None)),
        )

    @property
    def is_full_refund(self) -> bool:
        return self.type == RefundType.FULL

    @property
    def is_settled(self) -> bool:
        if self.status == RefundStatus.COMPLETED:
            return True
        return self.status == RefundStatus.PROCESSING and self.transaction_id is not None

    @property
    def refund_percentage(self) -> float:
        if not self.original_amount:
            return 0.0
        return float(self.refund_amount / self.original_amount * 100)

    def mark_processing(self) -> None:
        self.status = RefundStatus.PROCESSING
        self.processed_at = utcnow()

    def record_settlement(self, transaction_id: str, refund_data: Optional[dict]) -> None:
        """Store the gateway confirmation; compensations still pending."""
        self.transaction_id = transaction_id
        self.refund_data = refund_data
        self.compensation_error = None

    def mark_completed(self) -> None:
        self.status = RefundStatus.COMPLETED
        self.completed_at = utcnow()
        self.compensation_error = None

    def mark_failed(self, reason: Optional[str] = None) -> None:
        self.status = RefundStatus.FAILED
        if reason:
            self.notes = f"{self.notes}\nFailed: {reason}" if self.notes else f"Failed: {reason}"


# =============================================================================
# NOTIFICATIONS
# =============================================================================

class Notification(Base):
    """
    Notification Table

    One row per dispatched event, recording the rendered message and
    whether delivery succeeded.
    """
    __tablename__ = "notifications"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    order_id: Mapped[int] = mapped_column(ForeignKey("orders.id"), nullable=False)
    customer_id: Mapped[int] = mapped_column(ForeignKey("customers.id"), nullable=False)

    type: Mapped[str] = mapped_column(String(50), nullable=False)
    channel: Mapped[str] = mapped_column(String(20), nullable=False)
    status: Mapped[NotificationStatus] = mapped_column(
        SQLEnum(NotificationStatus, values_callable=_enum_values, native_enum=False),
        default=NotificationStatus.PENDING,
        nullable=False,
    )
    message: Mapped[str] = mapped_column(Text, nullable=False)

    # Serialized orderflow.processing.schemas.NotificationMetadata
    metadata_: Mapped[Optional[dict]] = mapped_column("metadata", JSON)
    sent_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    error_message: Mapped[Optional[str]] = mapped_column(Text)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    __table_args__ = (
        Index("ix_notifications_order", "order_id"),
    )

    def mark_sent(self) -> None:
        self.status = NotificationStatus.SENT
        self.sent_at = utcnow()

    def mark_failed(self, error_message: str) -> None:
        self.status = NotificationStatus.FAILED
        self.error_message = error_message
