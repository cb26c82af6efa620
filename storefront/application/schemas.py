from pydantic import BaseModel
from pydantic.alias_generators import to_camel
from datetime import datetime
from decimal import Decimal
from typing import Any, Optional

from storefront.domain.models import Order, Address
from storefront.domain.money import from_minor_units
from storefront.domain.status import OrderStatus, PaymentStatus, FulfillmentStatus

class CamelModel(BaseModel):
    class Config:
        alias_generator = to_camel
        populate_by_name = True
        from_attributes = True

# Request bodies are deliberately lenient; completeness is checked by
# validate_checkout so every problem is reported as a 400 with one message.

class AddressInput(CamelModel):
    full_name: str = ""
    address_line1: str = ""
    address_line2: Optional[str] = None
    city: str = ""
    state: str = ""
    postal_code: str = ""
    country: str = "US"
    phone: str = ""

class CheckoutItem(CamelModel):
    product_id: str = ""
    name: Optional[str] = None
    quantity: int
    price: Decimal

class CheckoutRequest(CamelModel):
    items: list[CheckoutItem] = []
    shipping_address: Optional[AddressInput] = None
    billing_address: Optional[AddressInput] = None
    payment_method: str = "CREDIT_CARD"
    card_number: str = ""
    expiry_month: str = ""
    expiry_year: str = ""
    cvv: str = ""
    cardholder_name: str = ""
    subtotal: Decimal
    tax: Decimal
    shipping: Decimal
    discount: Decimal = Decimal("0")
    total: Decimal

    def __repr__(self) -> str:
        return f"CheckoutRequest(items={len(self.items)}, total={self.total})"

class OrderStatusUpdate(CamelModel):
    status: Optional[OrderStatus] = None
    payment_status: Optional[PaymentStatus] = None
    fulfillment_status: Optional[FulfillmentStatus] = None
    message: Optional[str] = None

class AddressRead(CamelModel):
    id: str
    full_name: str
    address_line1: str
    address_line2: Optional[str] = None
    city: str
    state: str
    postal_code: str
    country: str
    phone: str

class OrderItemRead(CamelModel):
    id: int
    product_id: str
    product_name: Optional[str] = None
    quantity: int
    price: float

class TimelineEntryRead(CamelModel):
    id: int
    status: str
    message: str
    metadata: Optional[dict[str, Any]] = None
    author: str
    created_at: datetime

class OrderRead(CamelModel):
    id: str
    order_number: str
    user_id: str
    status: OrderStatus
    payment_status: PaymentStatus
    fulfillment_status: FulfillmentStatus
    subtotal: float
    tax: float
    shipping: float
    discount: float
    total: float
    currency: str
    payment_method: str
    payment_provider: Optional[str] = None
    transaction_id: Optional[str] = None
    authorization_code: Optional[str] = None
    receipt_number: Optional[str] = None
    card_last4: Optional[str] = None
    created_at: datetime
    confirmed_at: Optional[datetime] = None
    shipped_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    shipping_address: AddressRead
    billing_address: AddressRead
    items: list[OrderItemRead]
    timeline: list[TimelineEntryRead]

    @classmethod
    def from_order(cls, order: Order) -> "OrderRead":
        def money(cents: int) -> float:
            return float(from_minor_units(cents))

        def address(row: Address) -> AddressRead:
            return AddressRead(
                id=row.id,
                full_name=row.full_name,
                address_line1=row.address_line1,
                address_line2=row.address_line2,
                city=row.city,
                state=row.state,
                postal_code=row.postal_code,
                country=row.country,
                phone=row.phone,
            )

        return cls(
            id=order.id,
            order_number=order.order_number,
            user_id=order.user_id,
            status=order.status,
            payment_status=order.payment_status,
            fulfillment_status=order.fulfillment_status,
            subtotal=money(order.subtotal_cents),
            tax=money(order.tax_cents),
            shipping=money(order.shipping_cents),
            discount=money(order.discount_cents),
            total=money(order.total_cents),
            currency=order.currency,
            payment_method=order.payment_method,
            payment_provider=order.payment_provider,
            transaction_id=order.transaction_id,
            authorization_code=order.authorization_code,
            receipt_number=order.receipt_number,
            card_last4=order.card_last4,
            created_at=order.created_at,
            confirmed_at=order.confirmed_at,
            shipped_at=order.shipped_at,
            delivered_at=order.delivered_at,
            cancelled_at=order.cancelled_at,
            shipping_address=address(order.shipping_address),
            billing_address=address(order.billing_address),
            items=[
                OrderItemRead(
                    id=item.id,
                    product_id=item.product_id,
                    product_name=item.product_name_snapshot,
                    quantity=item.quantity,
                    price=money(item.unit_price_cents),
                )
                for item in order.items
            ],
            timeline=[
                TimelineEntryRead(
                    id=entry.id,
                    status=entry.status,
                    message=entry.message,
                    metadata=entry.details,
                    author=entry.author,
                    created_at=entry.created_at,
                )
                for entry in order.timeline
            ],
        )
