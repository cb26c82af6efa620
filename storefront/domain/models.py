from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship
from sqlalchemy import String, ForeignKey, Integer, DateTime, JSON, Text, UniqueConstraint
from datetime import datetime, timezone
from typing import Any, Optional
import uuid

from .status import OrderStatus, PaymentStatus, FulfillmentStatus

# Timeline author used for entries written on behalf of the card processor
PAYMENT_GATEWAY_AUTHOR = "PAYMENT_GATEWAY"
SYSTEM_AUTHOR = "SYSTEM"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return uuid.uuid4().hex


class Base(DeclarativeBase):
    pass


class Address(Base):
    """Postal address snapshot; rows attached to an order are never updated."""
    __tablename__ = "addresses"
    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=_new_id)
    user_id: Mapped[str] = mapped_column(String(64), index=True)
    full_name: Mapped[str] = mapped_column(String(200))
    address_line1: Mapped[str] = mapped_column(String(255))
    address_line2: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    city: Mapped[str] = mapped_column(String(100))
    state: Mapped[str] = mapped_column(String(100))
    postal_code: Mapped[str] = mapped_column(String(20))
    country: Mapped[str] = mapped_column(String(2), default="US")
    phone: Mapped[str] = mapped_column(String(50))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)


class Order(Base):
    __tablename__ = "orders"
    __table_args__ = (UniqueConstraint("user_id", "checkout_key", name="uq_orders_user_checkout_key"),)

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=_new_id)
    order_number: Mapped[str] = mapped_column(String(50), unique=True, index=True)
    user_id: Mapped[str] = mapped_column(String(64), index=True)
    status: Mapped[str] = mapped_column(String(30), default=OrderStatus.PENDING.value)
    payment_status: Mapped[str] = mapped_column(String(30), default=PaymentStatus.PENDING.value)
    fulfillment_status: Mapped[str] = mapped_column(String(30), default=FulfillmentStatus.UNFULFILLED.value)
    # Money columns hold integer cents
    subtotal_cents: Mapped[int] = mapped_column(Integer)
    tax_cents: Mapped[int] = mapped_column(Integer)
    shipping_cents: Mapped[int] = mapped_column(Integer)
    discount_cents: Mapped[int] = mapped_column(Integer, default=0)
    total_cents: Mapped[int] = mapped_column(Integer)
    currency: Mapped[str] = mapped_column(String(3), default="USD")
    # Payment linkage, only populated when the charge was approved
    payment_method: Mapped[str] = mapped_column(String(30))
    payment_provider: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    transaction_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True, index=True)
    authorization_code: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    receipt_number: Mapped[Optional[str]] = mapped_column(String(150), nullable=True)
    card_last4: Mapped[Optional[str]] = mapped_column(String(4), nullable=True)
    checkout_key: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    shipping_address_id: Mapped[str] = mapped_column(ForeignKey("addresses.id"))
    billing_address_id: Mapped[str] = mapped_column(ForeignKey("addresses.id"))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)
    confirmed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    shipped_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    delivered_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    # Bumped on every UPDATE; a stale writer fails with StaleDataError
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    shipping_address: Mapped[Address] = relationship("Address", foreign_keys=[shipping_address_id], lazy="joined")
    billing_address: Mapped[Address] = relationship("Address", foreign_keys=[billing_address_id], lazy="joined")
    items: Mapped[list["OrderItem"]] = relationship(
        "OrderItem", back_populates="order", cascade="all, delete-orphan",
        order_by="OrderItem.id", lazy="selectin",
    )
    timeline: Mapped[list["OrderTimelineEntry"]] = relationship(
        "OrderTimelineEntry", back_populates="order", cascade="all, delete-orphan",
        order_by="OrderTimelineEntry.id", lazy="selectin",
    )

    def __repr__(self):
        return f"<Order(number={self.order_number}, status={self.status}, total_cents={self.total_cents})>"


class OrderItem(Base):
    __tablename__ = "order_items"
    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    order_id: Mapped[str] = mapped_column(ForeignKey("orders.id", ondelete="CASCADE"), index=True)
    # Store product_id without FK, the catalog lives elsewhere
    product_id: Mapped[str] = mapped_column(String(64))
    product_name_snapshot: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    quantity: Mapped[int] = mapped_column(Integer)
    unit_price_cents: Mapped[int] = mapped_column(Integer)
    order: Mapped[Order] = relationship("Order", back_populates="items")

    @property
    def line_total_cents(self) -> int:
        return self.quantity * self.unit_price_cents


class OrderTimelineEntry(Base):
    """Append-only audit record; insertion order (id) is chronological order."""
    __tablename__ = "order_timeline_entries"
    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    order_id: Mapped[str] = mapped_column(ForeignKey("orders.id", ondelete="CASCADE"), index=True)
    status: Mapped[str] = mapped_column(String(30))
    message: Mapped[str] = mapped_column(Text)
    # "metadata" is reserved on declarative classes
    details: Mapped[Optional[dict[str, Any]]] = mapped_column("metadata", JSON, nullable=True)
    author: Mapped[str] = mapped_column(String(64))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    order: Mapped[Order] = relationship("Order", back_populates="timeline")
