from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError
from datetime import datetime, timezone
from typing import Optional

from storefront.core.logging_config import get_logger
from storefront.domain.models import Order
from storefront.domain.status import (
    OrderStatus,
    PaymentStatus,
    FulfillmentStatus,
    InvalidTransition,
    ensure_transition,
    status_label,
)
from .repository import OrderRepository
from .schemas import OrderStatusUpdate

logger = get_logger(__name__)

ADMIN_ROLE = "ADMIN"

# Order status -> timestamp column stamped when the order enters it
_STATUS_TIMESTAMPS = {
    OrderStatus.CONFIRMED: "confirmed_at",
    OrderStatus.SHIPPED: "shipped_at",
    OrderStatus.DELIVERED: "delivered_at",
    OrderStatus.CANCELLED: "cancelled_at",
}

class OrderAccessDenied(Exception):
    pass

class OrderConflict(Exception):
    """Another writer changed the order between our read and our update."""

class OrderService:
    """Reads and post-checkout status changes. Totals and items are never modified."""

    def __init__(self, db: Session):
        self.db = db
        self.repo = OrderRepository(db)

    def list_for_user(self, user_id: str) -> list[Order]:
        return self.repo.list_for_user(user_id)

    def get_visible(self, order_id: str, user_id: str, role: str) -> Optional[Order]:
        order = self.repo.get(order_id)
        if order is None:
            return None
        if order.user_id != user_id and role != ADMIN_ROLE:
            raise OrderAccessDenied(order_id)
        return order

    def transition(self, order_id: str, author: str, data: OrderStatusUpdate) -> Optional[Order]:
        if data.status is None and data.payment_status is None and data.fulfillment_status is None:
            raise ValueError("At least one of status, paymentStatus or fulfillmentStatus is required")

        order = self.repo.get_for_update(order_id)
        if order is None:
            return None

        # Validate every requested axis before touching the row
        changes = []
        for field, target, enum_type in (
            ("status", data.status, OrderStatus),
            ("payment_status", data.payment_status, PaymentStatus),
            ("fulfillment_status", data.fulfillment_status, FulfillmentStatus),
        ):
            if target is None:
                continue
            current = enum_type(getattr(order, field))
            try:
                ensure_transition(current, target)
            except InvalidTransition:
                # Release the row lock
                self.db.rollback()
                raise
            changes.append((field, current, target))

        now = datetime.now(timezone.utc)
        for field, _current, target in changes:
            setattr(order, field, target.value)
        if data.status in _STATUS_TIMESTAMPS:
            setattr(order, _STATUS_TIMESTAMPS[data.status], now)

        summary = "; ".join(
            f"{status_label(field)}: {status_label(current)} -> {status_label(target)}"
            for field, current, target in changes
        )
        self.repo.append_timeline(
            order,
            status=order.status,
            message=data.message or summary,
            author=author,
            details={field: target.value for field, _current, target in changes},
        )
        try:
            self.db.commit()
        except StaleDataError:
            self.db.rollback()
            logger.warning(f"Concurrent update on order {order_id}, status change rejected")
            raise OrderConflict(order_id)
        self.db.refresh(order)
        logger.info(f"Order {order.order_number} updated: {summary}")
        return order
