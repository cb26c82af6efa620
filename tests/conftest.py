import os

# Must be set before any storefront module builds its engine or reads settings
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["JWT_SECRET"] = "storefront-test-secret-0123456789abcdef"
os.environ.pop("REDIS_URL", None)
os.environ.pop("AUTHORIZE_NET_API_LOGIN_ID", None)
os.environ.pop("AUTHORIZE_NET_TRANSACTION_KEY", None)


import pytest

from storefront.application.schemas import CheckoutRequest
from storefront.infrastructure.db import build_engine, build_session_factory, init_models
from storefront.infrastructure.gateway import Approved

def checkout_payload(**overrides):
    """A valid camelCase checkout body: 2 x 10.00 + 2.00 tax = 22.00"""
    address = {
        "fullName": "Ada Lovelace",
        "addressLine1": "12 Analytical Way",
        "city": "London",
        "state": "LN",
        "postalCode": "10001",
        "country": "US",
        "phone": "555-0100",
    }
    payload = {
        "items": [{"productId": "p1", "name": "Widget", "quantity": 2, "price": "10.00"}],
        "shippingAddress": dict(address),
        "billingAddress": dict(address),
        "paymentMethod": "CREDIT_CARD",
        "cardNumber": "4111 1111 1111 1111",
        "expiryMonth": "12",
        "expiryYear": "2030",
        "cvv": "123",
        "cardholderName": "Ada Lovelace",
        "subtotal": "20.00",
        "tax": "2.00",
        "shipping": "0",
        "discount": "0",
        "total": "22.00",
    }
    payload.update(overrides)
    return payload

def checkout_request(**overrides) -> CheckoutRequest:
    return CheckoutRequest.model_validate(checkout_payload(**overrides))

class FakeGateway:
    """Records every call and answers with a fixed result"""

    provider_name = "authorize.net"
    configured = True

    def __init__(self, result=None):
        self.result = result or Approved(
            transaction_id="T1",
            authorization_code="AUTH01",
            gateway_message="This transaction has been approved.",
        )
        self.calls = []

    async def authorize_and_capture(self, amount_cents, card, billing_address, reference_id):
        self.calls.append({
            "amount_cents": amount_cents,
            "card": card,
            "billing_address": billing_address,
            "reference_id": reference_id,
        })
        return self.result

@pytest.fixture
def engine():
    engine = build_engine("sqlite://")
    init_models(engine)
    yield engine
    engine.dispose()

@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)

@pytest.fixture
def gateway():
    return FakeGateway()

@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()
