"""Order, payment and fulfillment status rules.

The three axes are independent. Each has a closed enum and an exhaustive
transition table; a pair missing from the table is rejected.
"""
from enum import Enum
from typing import Dict, FrozenSet, Iterable, Union


class OrderStatus(str, Enum):
    PENDING = "PENDING"
    PAYMENT_PENDING = "PAYMENT_PENDING"
    CONFIRMED = "CONFIRMED"
    PROCESSING = "PROCESSING"
    SHIPPED = "SHIPPED"
    OUT_FOR_DELIVERY = "OUT_FOR_DELIVERY"
    DELIVERED = "DELIVERED"
    CANCELLED = "CANCELLED"
    REFUNDED = "REFUNDED"
    FAILED = "FAILED"
    ON_HOLD = "ON_HOLD"


class PaymentStatus(str, Enum):
    PENDING = "PENDING"
    PENDING_REVIEW = "PENDING_REVIEW"
    AUTHORIZED = "AUTHORIZED"
    CAPTURED = "CAPTURED"
    PARTIALLY_CAPTURED = "PARTIALLY_CAPTURED"
    DECLINED = "DECLINED"
    FAILED = "FAILED"
    EXPIRED = "EXPIRED"
    CANCELLED = "CANCELLED"
    PARTIALLY_REFUNDED = "PARTIALLY_REFUNDED"
    REFUNDED = "REFUNDED"


class FulfillmentStatus(str, Enum):
    UNFULFILLED = "UNFULFILLED"
    PARTIALLY_FULFILLED = "PARTIALLY_FULFILLED"
    FULFILLED = "FULFILLED"
    RESTOCKED = "RESTOCKED"


Status = Union[OrderStatus, PaymentStatus, FulfillmentStatus]


def _table(entries: Dict[Enum, Iterable[Enum]]) -> Dict[Enum, FrozenSet[Enum]]:
    return {source: frozenset(targets) for source, targets in entries.items()}


ORDER_TRANSITIONS = _table({
    OrderStatus.PENDING: [
        OrderStatus.PAYMENT_PENDING,
        OrderStatus.CONFIRMED,
        OrderStatus.FAILED,
        OrderStatus.CANCELLED,
    ],
    OrderStatus.PAYMENT_PENDING: [OrderStatus.CONFIRMED, OrderStatus.FAILED, OrderStatus.CANCELLED],
    OrderStatus.CONFIRMED: [OrderStatus.PROCESSING, OrderStatus.ON_HOLD, OrderStatus.CANCELLED],
    OrderStatus.PROCESSING: [OrderStatus.SHIPPED, OrderStatus.ON_HOLD, OrderStatus.CANCELLED],
    OrderStatus.SHIPPED: [OrderStatus.OUT_FOR_DELIVERY, OrderStatus.DELIVERED],
    OrderStatus.OUT_FOR_DELIVERY: [OrderStatus.DELIVERED, OrderStatus.FAILED],
    OrderStatus.DELIVERED: [OrderStatus.REFUNDED],
    OrderStatus.ON_HOLD: [OrderStatus.PROCESSING, OrderStatus.CANCELLED],
    OrderStatus.FAILED: [OrderStatus.PENDING],
    OrderStatus.CANCELLED: [],
    OrderStatus.REFUNDED: [],
})

PAYMENT_TRANSITIONS = _table({
    PaymentStatus.PENDING: [
        PaymentStatus.AUTHORIZED,
        PaymentStatus.PENDING_REVIEW,
        PaymentStatus.DECLINED,
        PaymentStatus.FAILED,
        PaymentStatus.CANCELLED,
    ],
    PaymentStatus.PENDING_REVIEW: [PaymentStatus.AUTHORIZED, PaymentStatus.DECLINED],
    PaymentStatus.AUTHORIZED: [
        PaymentStatus.CAPTURED,
        PaymentStatus.PARTIALLY_CAPTURED,
        PaymentStatus.EXPIRED,
        PaymentStatus.CANCELLED,
    ],
    PaymentStatus.PARTIALLY_CAPTURED: [
        PaymentStatus.CAPTURED,
        PaymentStatus.PARTIALLY_REFUNDED,
        PaymentStatus.REFUNDED,
    ],
    PaymentStatus.CAPTURED: [PaymentStatus.PARTIALLY_REFUNDED, PaymentStatus.REFUNDED],
    PaymentStatus.PARTIALLY_REFUNDED: [PaymentStatus.REFUNDED],
    PaymentStatus.DECLINED: [],
    PaymentStatus.FAILED: [],
    PaymentStatus.EXPIRED: [],
    PaymentStatus.CANCELLED: [],
    PaymentStatus.REFUNDED: [],
})

FULFILLMENT_TRANSITIONS = _table({
    FulfillmentStatus.UNFULFILLED: [FulfillmentStatus.PARTIALLY_FULFILLED, FulfillmentStatus.FULFILLED],
    FulfillmentStatus.PARTIALLY_FULFILLED: [FulfillmentStatus.FULFILLED, FulfillmentStatus.RESTOCKED],
    FulfillmentStatus.FULFILLED: [FulfillmentStatus.RESTOCKED],
    FulfillmentStatus.RESTOCKED: [],
})

_TABLES = {
    OrderStatus: ORDER_TRANSITIONS,
    PaymentStatus: PAYMENT_TRANSITIONS,
    FulfillmentStatus: FULFILLMENT_TRANSITIONS,
}

CANCELLABLE = frozenset({
    OrderStatus.PENDING,
    OrderStatus.PAYMENT_PENDING,
    OrderStatus.CONFIRMED,
    OrderStatus.PROCESSING,
    OrderStatus.ON_HOLD,
})
REFUNDABLE_ORDER = frozenset({
    OrderStatus.CONFIRMED,
    OrderStatus.PROCESSING,
    OrderStatus.SHIPPED,
    OrderStatus.DELIVERED,
})
REFUNDABLE_PAYMENT = frozenset({
    PaymentStatus.AUTHORIZED,
    PaymentStatus.CAPTURED,
    PaymentStatus.PARTIALLY_CAPTURED,
})


class InvalidTransition(Exception):
    """Raised when a status change is not allowed by the transition table."""

    def __init__(self, current: Status, target: Status):
        self.current = current
        self.target = target
        super().__init__(
            f"Cannot move {type(current).__name__} from {current.value} to {target.value}"
        )


def next_statuses(current: Status) -> FrozenSet[Status]:
    return _TABLES[type(current)][current]


def can_transition(current: Status, target: Status) -> bool:
    if type(current) is not type(target):
        return False
    return target in next_statuses(current)


def ensure_transition(current: Status, target: Status) -> None:
    if not can_transition(current, target):
        raise InvalidTransition(current, target)


def is_terminal(status: Status) -> bool:
    return not next_statuses(status)


def can_cancel(status: OrderStatus) -> bool:
    return status in CANCELLABLE


def can_refund(status: OrderStatus, payment_status: PaymentStatus) -> bool:
    return status in REFUNDABLE_ORDER and payment_status in REFUNDABLE_PAYMENT


def status_label(status: Union[Status, str]) -> str:
    """OUT_FOR_DELIVERY -> 'Out For Delivery'"""
    raw = status.value if isinstance(status, Enum) else status
    return " ".join(word.capitalize() for word in raw.lower().split("_"))
