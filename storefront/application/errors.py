"""Expected checkout failures, returned (not raised) by the checkout service."""
from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class CheckoutError:
    message: str


@dataclass(frozen=True)
class ValidationFailed(CheckoutError):
    """Malformed or inconsistent request. Nothing was charged or written."""


@dataclass(frozen=True)
class PaymentDeclined(CheckoutError):
    """The gateway refused the card. Nothing was written."""
    error_code: str = "Unknown"


@dataclass(frozen=True)
class PaymentGatewayUnavailable(CheckoutError):
    """Timeout, transport failure or gateway misconfiguration. Safe to retry."""


@dataclass(frozen=True)
class CheckoutInProgress(CheckoutError):
    """Another request holding the same idempotency key is still running."""


@dataclass(frozen=True)
class OrderPersistenceFailedAfterPayment(CheckoutError):
    """The card was charged but the order could not be recorded.

    Carries everything an operator needs to refund the charge or re-create
    the order against the same transaction.
    """
    transaction_id: str = ""
    authorization_code: Optional[str] = None
    receipt_number: Optional[str] = None
    amount_cents: int = 0
