"""
Authorize.Net card gateway client

One operation: authorize-and-capture a charge. The result is always one of
``Approved``, ``Declined`` or ``GatewayError``; transport problems never
escape as exceptions. There are no retries here, a retried charge can be a
double charge.
"""
from dataclasses import dataclass
from typing import Any, Dict, Optional, Protocol, Union
import json
import secrets
import string
import time

import httpx

from storefront.core.logging_config import get_logger, RECONCILIATION_LOGGER
from storefront.domain.money import format_amount

logger = get_logger(__name__)
reconciliation_logger = get_logger(RECONCILIATION_LOGGER)

SANDBOX_URL = "https://apitest.authorize.net/xml/v1/request.api"
PRODUCTION_URL = "https://api.authorize.net/xml/v1/request.api"
PROVIDER_NAME = "authorize.net"

# refId is limited to 20 characters by the gateway
MAX_REFERENCE_LENGTH = 20
DUPLICATE_TRANSACTION_CODE = "11"
DUPLICATE_TRANSACTION_MESSAGE = (
    "This transaction appears to be a duplicate. Please wait a moment before "
    "trying again, or change the transaction amount."
)
# Request-level codes that mean the merchant account, not the card, is the problem
CREDENTIAL_ERROR_CODES = frozenset({"E00007", "E00008"})
HELD_FOR_REVIEW = "4"

_REFERENCE_ALPHABET = string.ascii_lowercase + string.digits


@dataclass(frozen=True)
class CardDetails:
    number: str
    expiry_month: str
    expiry_year: str
    cvv: str
    cardholder_name: str

    def __repr__(self) -> str:
        return f"CardDetails(last4={self.last4!r}, expiry={self.expiration_date!r})"

    @property
    def last4(self) -> str:
        return self.number[-4:]

    @property
    def expiration_date(self) -> str:
        year = self.expiry_year if len(self.expiry_year) == 4 else f"20{self.expiry_year[-2:]}"
        return f"{year}-{self.expiry_month.zfill(2)}"


@dataclass(frozen=True)
class Approved:
    transaction_id: str
    authorization_code: str
    gateway_message: str
    response_code: str = "1"


@dataclass(frozen=True)
class Declined:
    error_code: str
    message: str
    technical_message: Optional[str] = None


@dataclass(frozen=True)
class GatewayError:
    description: str


PaymentResult = Union[Approved, Declined, GatewayError]


class PaymentGateway(Protocol):
    """Anything that can authorize and capture a card charge."""

    provider_name: str

    async def authorize_and_capture(
        self,
        amount_cents: int,
        card: CardDetails,
        billing_address: Any,
        reference_id: str,
    ) -> PaymentResult:
        ...


def new_reference_id() -> str:
    """Per-attempt refId: last 8 digits of the ms clock plus 6 random chars (15 chars)."""
    timestamp = str(time.time_ns() // 1_000_000)[-8:]
    suffix = "".join(secrets.choice(_REFERENCE_ALPHABET) for _ in range(6))
    return f"{timestamp}-{suffix}"


def receipt_number(transaction_id: str, now_ms: Optional[int] = None) -> str:
    if now_ms is None:
        now_ms = time.time_ns() // 1_000_000
    return f"RCP-{now_ms}-{transaction_id}"


def _first(value: Any) -> Any:
    # The gateway sometimes wraps single objects in a list
    if isinstance(value, list):
        return value[0] if value else None
    return value


def parse_transaction_response(data: Dict[str, Any]) -> PaymentResult:
    """Map a decoded createTransactionResponse body to a PaymentResult."""
    if not isinstance(data, dict):
        return GatewayError("Malformed response from payment gateway")

    messages = data.get("messages") or {}
    result_code = messages.get("resultCode")
    txn = _first(data.get("transactionResponse")) or {}

    errors = txn.get("errors") or []
    if errors:
        error = _first(errors) or {}
        code = str(error.get("errorCode", "Unknown"))
        text = error.get("errorText") or "Transaction declined"
        friendly = DUPLICATE_TRANSACTION_MESSAGE if code == DUPLICATE_TRANSACTION_CODE else text
        if code == DUPLICATE_TRANSACTION_CODE:
            logger.warning("Gateway reported a duplicate transaction inside its detection window")
        return Declined(error_code=code, message=friendly, technical_message=text)

    if result_code == "Ok":
        if not txn:
            return GatewayError("No transaction response from payment gateway")
        trans_id = str(txn.get("transId") or "")
        response_code = str(txn.get("responseCode") or "")
        if response_code == "1" and trans_id and trans_id != "0":
            txn_message = _first(txn.get("messages")) or {}
            return Approved(
                transaction_id=trans_id,
                authorization_code=txn.get("authCode") or "",
                gateway_message=txn_message.get("description") or "Transaction successful",
                response_code=response_code,
            )
        if response_code == HELD_FOR_REVIEW:
            reconciliation_logger.warning(
                "Charge held for review by the gateway, no order will be recorded",
                extra={'extra_fields': {'transaction_id': trans_id, 'response_code': response_code}},
            )
            return Declined(
                error_code=HELD_FOR_REVIEW,
                message="Your payment is under review. Please contact support before retrying.",
            )
        return Declined(
            error_code=response_code or "Unknown",
            message="Transaction was not approved",
        )

    message = _first(messages.get("message")) or {}
    code = str(message.get("code") or "Unknown")
    text = message.get("text") or "Transaction failed"
    if code in CREDENTIAL_ERROR_CODES:
        logger.error(f"Payment gateway rejected merchant credentials: {code} {text}")
        return GatewayError(f"Payment gateway rejected merchant credentials ({code})")
    return Declined(error_code=code, message=text, technical_message=text)


class AuthorizeNetClient:
    """Async client for the Authorize.Net JSON API"""

    provider_name = PROVIDER_NAME

    def __init__(
        self,
        api_login_id: Optional[str],
        transaction_key: Optional[str],
        environment: str = "sandbox",
        timeout: float = 30.0,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.api_login_id = api_login_id
        self.transaction_key = transaction_key
        self.environment = environment
        self.endpoint = PRODUCTION_URL if environment == "production" else SANDBOX_URL
        self.client = http_client or httpx.AsyncClient(timeout=timeout)

    @property
    def configured(self) -> bool:
        return bool(self.api_login_id and self.transaction_key)

    def build_request(
        self,
        amount_cents: int,
        card: CardDetails,
        billing_address: Any,
        reference_id: str,
    ) -> Dict[str, Any]:
        # Key order matters, the JSON API is validated against the XML schema
        transaction: Dict[str, Any] = {
            "transactionType": "authCaptureTransaction",
            "amount": format_amount(amount_cents),
            "payment": {
                "creditCard": {
                    "cardNumber": card.number,
                    "expirationDate": card.expiration_date,
                    "cardCode": card.cvv,
                }
            },
        }
        if billing_address is not None:
            first_name, _, last_name = billing_address.full_name.strip().partition(" ")
            transaction["billTo"] = {
                "firstName": first_name,
                "lastName": last_name.strip(),
                "address": billing_address.address_line1,
                "city": billing_address.city,
                "state": billing_address.state,
                "zip": billing_address.postal_code,
                "country": billing_address.country,
                "phoneNumber": billing_address.phone,
            }
        return {
            "createTransactionRequest": {
                "merchantAuthentication": {
                    "name": self.api_login_id,
                    "transactionKey": self.transaction_key,
                },
                "refId": reference_id,
                "transactionRequest": transaction,
            }
        }

    async def authorize_and_capture(
        self,
        amount_cents: int,
        card: CardDetails,
        billing_address: Any,
        reference_id: str,
    ) -> PaymentResult:
        if amount_cents <= 0:
            raise ValueError("amount_cents must be positive")
        if len(reference_id) > MAX_REFERENCE_LENGTH:
            raise ValueError(f"reference_id longer than {MAX_REFERENCE_LENGTH} characters")
        if not self.configured:
            logger.error("Authorize.Net credentials not configured")
            return GatewayError("Payment gateway not configured")

        payload = self.build_request(amount_cents, card, billing_address, reference_id)
        logger.info(
            f"Submitting charge of {format_amount(amount_cents)} for card ending {card.last4}",
            extra={'extra_fields': {'ref_id': reference_id, 'environment': self.environment}},
        )

        try:
            response = await self.client.post(self.endpoint, json=payload)
        except httpx.TimeoutException:
            logger.error(f"Payment gateway timed out (refId {reference_id})")
            return GatewayError("Payment gateway timed out")
        except httpx.HTTPError as e:
            logger.error(f"Payment gateway request failed: {e.__class__.__name__}: {e}")
            return GatewayError("Payment gateway request failed")

        if response.status_code != 200:
            logger.error(f"Payment gateway returned HTTP {response.status_code}")
            return GatewayError(f"Payment gateway returned HTTP {response.status_code}")

        try:
            # Responses carry a UTF-8 byte order mark
            data = json.loads(response.content.decode("utf-8-sig"))
        except (UnicodeDecodeError, ValueError):
            logger.error("Payment gateway returned a malformed response")
            return GatewayError("Malformed response from payment gateway")

        result = parse_transaction_response(data)
        if isinstance(result, Approved):
            logger.info(
                "Charge approved",
                extra={'extra_fields': {'transaction_id': result.transaction_id, 'ref_id': reference_id}},
            )
        elif isinstance(result, Declined):
            logger.info(
                f"Charge declined with code {result.error_code}",
                extra={'extra_fields': {'ref_id': reference_id}},
            )
        return result

    async def close(self):
        await self.client.aclose()
