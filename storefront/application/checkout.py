"""
Checkout orchestration: charge the card, then record the order

Ordering is strict. The card is authorized before anything is written, and
the addresses, order, line items and timeline are written in one transaction
afterwards. The only failure that leaves money without an order is a
persistence failure after approval; it is reported as its own result and
written to the reconciliation log.
"""
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional, Union
import asyncio
import re
import uuid

from sqlalchemy.orm import Session

from storefront.core.logging_config import get_logger, RECONCILIATION_LOGGER
from storefront.domain.models import Order, OrderItem, OrderTimelineEntry, PAYMENT_GATEWAY_AUTHOR
from storefront.domain.money import (
    MAX_MINOR_UNITS,
    TOTAL_TOLERANCE_CENTS,
    Totals,
    format_amount,
    to_minor_units,
)
from storefront.domain.status import OrderStatus, PaymentStatus, FulfillmentStatus
from storefront.infrastructure.checkout_lock import CheckoutLock
from storefront.infrastructure.db import RetryPolicy, run_in_transaction
from storefront.infrastructure.gateway import (
    Approved,
    CardDetails,
    Declined,
    GatewayError,
    PaymentGateway,
    new_reference_id,
    receipt_number,
)
from .errors import (
    CheckoutError,
    CheckoutInProgress,
    OrderPersistenceFailedAfterPayment,
    PaymentDeclined,
    PaymentGatewayUnavailable,
    ValidationFailed,
)
from .repository import OrderRepository, generate_order_number
from .schemas import AddressInput, CheckoutRequest

logger = get_logger(__name__)
reconciliation_logger = get_logger(RECONCILIATION_LOGGER)

REQUIRED_ADDRESS_FIELDS = {
    "full_name": "full name",
    "address_line1": "address line 1",
    "city": "city",
    "state": "state",
    "postal_code": "postal code",
    "phone": "phone",
}
ORDER_CREATED_MESSAGE = "Order created by customer"
MAX_ITEM_QUANTITY = 10_000

CheckoutResult = Union[Order, CheckoutError]


def normalize_card_number(raw: str) -> str:
    return re.sub(r"[\s-]", "", raw or "")


def _address_problem(label: str, address: Optional[AddressInput]) -> Optional[str]:
    if address is None:
        return f"{label} address is required"
    missing = [name for field, name in REQUIRED_ADDRESS_FIELDS.items() if not (getattr(address, field) or "").strip()]
    if missing:
        return f"{label} address is missing: {', '.join(missing)}"
    return None


def checkout_totals(request: CheckoutRequest) -> Totals:
    return Totals(
        subtotal=to_minor_units(request.subtotal),
        tax=to_minor_units(request.tax),
        shipping=to_minor_units(request.shipping),
        discount=to_minor_units(request.discount),
        total=to_minor_units(request.total),
    )


def validate_checkout(request: CheckoutRequest) -> Optional[str]:
    """Return the first problem with the request, or None when it can be charged."""
    if not request.items:
        return "Order must contain at least one item"

    items_cents = 0
    for index, item in enumerate(request.items, start=1):
        if not item.product_id.strip():
            return f"Item {index} is missing a product id"
        if item.quantity < 1:
            return f"Item {index} must have a quantity of at least 1"
        if item.quantity > MAX_ITEM_QUANTITY:
            return f"Item {index} quantity exceeds the maximum of {MAX_ITEM_QUANTITY}"
        if item.price < 0:
            return f"Item {index} has a negative price"
        if to_minor_units(item.price) > MAX_MINOR_UNITS:
            return f"Item {index} price exceeds the maximum supported amount"
        items_cents += item.quantity * to_minor_units(item.price)

    for label, address in (("Shipping", request.shipping_address), ("Billing", request.billing_address)):
        problem = _address_problem(label, address)
        if problem:
            return problem

    totals = checkout_totals(request)
    negative = totals.negative_fields()
    if negative:
        return f"Amounts must not be negative: {', '.join(negative)}"
    oversized = totals.oversized_fields()
    if oversized:
        return f"Amounts exceed the maximum supported value: {', '.join(oversized)}"
    if not totals.is_consistent():
        return (
            f"Order total {format_amount(totals.total)} does not match "
            f"subtotal + tax + shipping - discount = {format_amount(totals.expected_total())}"
        )
    if abs(totals.subtotal - items_cents) > TOTAL_TOLERANCE_CENTS:
        return (
            f"Subtotal {format_amount(totals.subtotal)} does not match "
            f"the sum of the items {format_amount(items_cents)}"
        )
    if totals.total <= 0:
        return "Invalid payment amount"

    card_number = normalize_card_number(request.card_number)
    if not (card_number and request.expiry_month and request.expiry_year and request.cvv and request.cardholder_name.strip()):
        return "Missing required payment information"
    if not card_number.isdigit() or not 12 <= len(card_number) <= 19:
        return "Invalid card number"
    if not request.expiry_month.isdigit() or not 1 <= int(request.expiry_month) <= 12:
        return "Invalid expiry month"
    if not request.expiry_year.isdigit() or len(request.expiry_year) not in (2, 4):
        return "Invalid expiry year"
    if not request.cvv.isdigit() or len(request.cvv) not in (3, 4):
        return "Invalid card security code"
    return None


@dataclass(frozen=True)
class _ApprovedCharge:
    approval: Approved
    reference_id: str
    receipt_number: str
    card_last4: str
    # Fixed before the retry loop so a replayed attempt finds the row it already wrote
    order_id: str
    order_number: str


class CheckoutService:
    def __init__(
        self,
        session_factory: Callable[[], Session],
        gateway: PaymentGateway,
        retry_policy: RetryPolicy = RetryPolicy(),
        checkout_lock: Optional[CheckoutLock] = None,
        gateway_timeout: Optional[float] = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.session_factory = session_factory
        self.gateway = gateway
        self.retry_policy = retry_policy
        self.checkout_lock = checkout_lock or CheckoutLock()
        self.gateway_timeout = gateway_timeout
        self.clock = clock

    async def find_existing(self, user_id: str, checkout_key: str) -> Optional[Order]:
        return await asyncio.to_thread(self._load_by_checkout_key, user_id, checkout_key)

    def _load_by_checkout_key(self, user_id: str, checkout_key: str) -> Optional[Order]:
        session = self.session_factory()
        try:
            return OrderRepository(session).get_by_checkout_key(user_id, checkout_key)
        finally:
            session.close()

    async def create_order(
        self,
        user_id: str,
        request: CheckoutRequest,
        checkout_key: Optional[str] = None,
    ) -> CheckoutResult:
        problem = validate_checkout(request)
        if problem:
            logger.warning(f"Checkout rejected: {problem}")
            return ValidationFailed(problem)

        if not checkout_key:
            return await self._charge_and_record(user_id, request, None)

        if not self.checkout_lock.acquire(user_id, checkout_key):
            logger.warning(f"Checkout key {checkout_key} already in flight for user {user_id}")
            return CheckoutInProgress("A checkout with this idempotency key is already in progress")

        result = None
        try:
            existing = await self.find_existing(user_id, checkout_key)
            if existing is not None:
                logger.info(f"Replaying order {existing.order_number} for checkout key {checkout_key}")
                result = existing
            else:
                result = await self._charge_and_record(user_id, request, checkout_key)
            return result
        finally:
            # Keep the claim after an orphaned charge so a retry cannot charge again while
            # an operator reconciles
            if not isinstance(result, OrderPersistenceFailedAfterPayment):
                self.checkout_lock.release(user_id, checkout_key)

    async def _authorize(self, amount_cents: int, request: CheckoutRequest, reference_id: str):
        card = CardDetails(
            number=normalize_card_number(request.card_number),
            expiry_month=request.expiry_month,
            expiry_year=request.expiry_year,
            cvv=request.cvv,
            cardholder_name=request.cardholder_name.strip(),
        )
        call = self.gateway.authorize_and_capture(amount_cents, card, request.billing_address, reference_id)
        if self.gateway_timeout is None:
            return await call, card
        try:
            return await asyncio.wait_for(call, timeout=self.gateway_timeout), card
        except asyncio.TimeoutError:
            logger.error(f"Payment gateway call exceeded {self.gateway_timeout}s (refId {reference_id})")
            return GatewayError("Payment gateway timed out"), card

    async def _charge_and_record(
        self,
        user_id: str,
        request: CheckoutRequest,
        checkout_key: Optional[str],
    ) -> CheckoutResult:
        totals = checkout_totals(request)
        reference_id = new_reference_id()
        logger.info(
            f"Authorizing {format_amount(totals.total)} for user {user_id}",
            extra={'extra_fields': {'ref_id': reference_id, 'items': len(request.items)}},
        )

        result, card = await self._authorize(totals.total, request, reference_id)

        if isinstance(result, Declined):
            return PaymentDeclined(message=result.message, error_code=result.error_code)
        if isinstance(result, GatewayError):
            return PaymentGatewayUnavailable(result.description)
        if not isinstance(result, Approved):
            raise TypeError(f"Unexpected payment result {result!r}")

        charge = _ApprovedCharge(
            approval=result,
            reference_id=reference_id,
            receipt_number=receipt_number(result.transaction_id),
            card_last4=card.last4,
            order_id=uuid.uuid4().hex,
            order_number=generate_order_number(self.clock()),
        )

        try:
            # Off the event loop, retries back off with a blocking sleep
            order = await asyncio.to_thread(
                run_in_transaction,
                self.session_factory,
                lambda db: self._record_order(db, user_id, request, totals, charge, checkout_key),
                self.retry_policy,
            )
        except Exception as e:
            # Card is charged but no order exists
            reconciliation_logger.error(
                f"Order persistence failed after payment approval, transaction {result.transaction_id}",
                exc_info=True,
                extra={
                    'extra_fields': {
                        'transaction_id': result.transaction_id,
                        'authorization_code': result.authorization_code,
                        'receipt_number': charge.receipt_number,
                        'ref_id': reference_id,
                        'amount': format_amount(totals.total),
                        'user_id': user_id,
                        'checkout_key': checkout_key,
                        'error': e.__class__.__name__,
                    }
                },
            )
            return OrderPersistenceFailedAfterPayment(
                message="Payment was approved but the order could not be recorded",
                transaction_id=result.transaction_id,
                authorization_code=result.authorization_code,
                receipt_number=charge.receipt_number,
                amount_cents=totals.total,
            )

        logger.info(
            f"Order {order.order_number} confirmed",
            extra={'extra_fields': {'order_id': order.id, 'transaction_id': result.transaction_id}},
        )
        return order

    def _record_order(
        self,
        db: Session,
        user_id: str,
        request: CheckoutRequest,
        totals: Totals,
        charge: _ApprovedCharge,
        checkout_key: Optional[str],
    ) -> Order:
        repo = OrderRepository(db)
        existing = repo.get(charge.order_id)
        if existing is not None:
            logger.warning(f"Order {existing.order_number} already recorded by an earlier attempt")
            return existing

        now = self.clock()
        approval = charge.approval

        shipping_address = repo.add_address(user_id, request.shipping_address)
        billing_address = repo.add_address(user_id, request.billing_address)

        order = Order(
            id=charge.order_id,
            order_number=charge.order_number,
            user_id=user_id,
            status=OrderStatus.CONFIRMED.value,
            payment_status=PaymentStatus.AUTHORIZED.value,
            fulfillment_status=FulfillmentStatus.UNFULFILLED.value,
            subtotal_cents=totals.subtotal,
            tax_cents=totals.tax,
            shipping_cents=totals.shipping,
            discount_cents=totals.discount,
            total_cents=totals.total,
            currency="USD",
            payment_method=request.payment_method,
            payment_provider=getattr(self.gateway, "provider_name", None),
            transaction_id=approval.transaction_id,
            authorization_code=approval.authorization_code,
            receipt_number=charge.receipt_number,
            card_last4=charge.card_last4,
            checkout_key=checkout_key,
            shipping_address=shipping_address,
            billing_address=billing_address,
            created_at=now,
            updated_at=now,
            confirmed_at=now,
        )
        order.items = [
            OrderItem(
                product_id=item.product_id,
                product_name_snapshot=item.name,
                quantity=item.quantity,
                unit_price_cents=to_minor_units(item.price),
            )
            for item in request.items
        ]
        order.timeline = [
            OrderTimelineEntry(
                status=OrderStatus.PENDING.value,
                message=ORDER_CREATED_MESSAGE,
                author=user_id,
                created_at=now,
            ),
            OrderTimelineEntry(
                status=OrderStatus.CONFIRMED.value,
                message=f"Payment authorized - Transaction ID: {approval.transaction_id}",
                author=PAYMENT_GATEWAY_AUTHOR,
                details={
                    "transactionId": approval.transaction_id,
                    "authorizationCode": approval.authorization_code,
                    "receiptNumber": charge.receipt_number,
                    "referenceId": charge.reference_id,
                    "gatewayMessage": approval.gateway_message,
                },
                created_at=now,
            ),
        ]
        return repo.add_order(order)
