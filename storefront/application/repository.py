from datetime import datetime
from typing import Any, Optional
import secrets
import string

from sqlalchemy import select
from sqlalchemy.orm import Session

from storefront.domain.models import Address, Order, OrderTimelineEntry
from .schemas import AddressInput

_ORDER_NUMBER_ALPHABET = string.ascii_uppercase + string.digits


def generate_order_number(now: datetime) -> str:
    """ORD-YYYY-XXXXXXXX with a random suffix; uniqueness is enforced by the column."""
    suffix = "".join(secrets.choice(_ORDER_NUMBER_ALPHABET) for _ in range(8))
    return f"ORD-{now.year}-{suffix}"


class OrderRepository:
    def __init__(self, db: Session):
        self.db = db

    def add_address(self, user_id: str, data: AddressInput) -> Address:
        address = Address(
            user_id=user_id,
            full_name=data.full_name.strip(),
            address_line1=data.address_line1.strip(),
            address_line2=(data.address_line2 or "").strip() or None,
            city=data.city.strip(),
            state=data.state.strip(),
            postal_code=data.postal_code.strip(),
            country=(data.country or "US").strip(),
            phone=data.phone.strip(),
        )
        self.db.add(address)
        return address

    def add_order(self, order: Order) -> Order:
        self.db.add(order)
        self.db.flush()  # assign item and timeline ids
        return order

    def get(self, order_id: str) -> Optional[Order]:
        return self.db.get(Order, order_id)

    def get_for_update(self, order_id: str) -> Optional[Order]:
        """Row-locked read that also discards any stale copy in the identity map."""
        stmt = (
            select(Order)
            .where(Order.id == order_id)
            .with_for_update(of=Order)
            .execution_options(populate_existing=True)
        )
        return self.db.execute(stmt).unique().scalar_one_or_none()

    def get_by_checkout_key(self, user_id: str, checkout_key: str) -> Optional[Order]:
        stmt = select(Order).where(Order.user_id == user_id, Order.checkout_key == checkout_key)
        return self.db.execute(stmt).unique().scalar_one_or_none()

    def list_for_user(self, user_id: str) -> list[Order]:
        stmt = select(Order).where(Order.user_id == user_id).order_by(Order.created_at.desc())
        return list(self.db.execute(stmt).unique().scalars())

    def append_timeline(
        self,
        order: Order,
        status: str,
        message: str,
        author: str,
        details: Optional[dict[str, Any]] = None,
    ) -> OrderTimelineEntry:
        entry = OrderTimelineEntry(status=status, message=message, author=author, details=details)
        order.timeline.append(entry)
        return entry
