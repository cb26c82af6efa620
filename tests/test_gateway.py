import asyncio
import json
import re

import httpx
import pytest

from storefront.application.schemas import AddressInput
from storefront.infrastructure.gateway import (
    DUPLICATE_TRANSACTION_MESSAGE,
    SANDBOX_URL,
    PRODUCTION_URL,
    Approved,
    AuthorizeNetClient,
    CardDetails,
    Declined,
    GatewayError,
    new_reference_id,
    parse_transaction_response,
    receipt_number,
)

CARD = CardDetails(
    number="4111111111111111",
    expiry_month="3",
    expiry_year="30",
    cvv="123",
    cardholder_name="Ada Lovelace",
)
BILLING = AddressInput(
    full_name="Ada King Lovelace",
    address_line1="12 Analytical Way",
    city="London",
    state="LN",
    postal_code="10001",
    phone="555-0100",
)

APPROVED_BODY = {
    "transactionResponse": {
        "responseCode": "1",
        "authCode": "AUTH01",
        "transId": "60123456789",
        "messages": [{"code": "1", "description": "This transaction has been approved."}],
    },
    "refId": "12345678-abc123",
    "messages": {"resultCode": "Ok", "message": [{"code": "I00001", "text": "Successful."}]},
}

def declined_body(code, text):
    return {
        "transactionResponse": {
            "responseCode": "2",
            "transId": "0",
            "errors": [{"errorCode": code, "errorText": text}],
        },
        "messages": {"resultCode": "Error", "message": [{"code": "E00027", "text": "The transaction was unsuccessful."}]},
    }

def make_client(handler, **kwargs):
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return AuthorizeNetClient("login", "key", http_client=http_client, **kwargs)

def charge(client, amount_cents=2200, reference_id="12345678-abc123"):
    return asyncio.run(client.authorize_and_capture(amount_cents, CARD, BILLING, reference_id))

class TestResponseMapping:
    def test_approved(self):
        result = parse_transaction_response(APPROVED_BODY)
        assert result == Approved(
            transaction_id="60123456789",
            authorization_code="AUTH01",
            gateway_message="This transaction has been approved.",
            response_code="1",
        )

    def test_transaction_error_is_declined(self):
        result = parse_transaction_response(declined_body("2", "This transaction has been declined."))
        assert isinstance(result, Declined)
        assert result.error_code == "2"
        assert result.message == "This transaction has been declined."

    def test_duplicate_transaction_gets_friendly_message(self):
        result = parse_transaction_response(declined_body("11", "A duplicate transaction has been submitted."))
        assert isinstance(result, Declined)
        assert result.error_code == "11"
        assert result.message == DUPLICATE_TRANSACTION_MESSAGE
        assert result.technical_message == "A duplicate transaction has been submitted."

    def test_credential_errors_are_gateway_errors(self):
        body = {"messages": {"resultCode": "Error", "message": [{"code": "E00007", "text": "User authentication failed"}]}}
        result = parse_transaction_response(body)
        assert isinstance(result, GatewayError)
        assert "E00007" in result.description

    def test_other_request_errors_are_declined(self):
        body = {"messages": {"resultCode": "Error", "message": [{"code": "E00003", "text": "Invalid expiration date"}]}}
        assert parse_transaction_response(body) == Declined(
            error_code="E00003",
            message="Invalid expiration date",
            technical_message="Invalid expiration date",
        )

    def test_held_for_review_is_not_approved(self):
        body = dict(APPROVED_BODY, transactionResponse={"responseCode": "4", "transId": "60999"})
        result = parse_transaction_response(body)
        assert isinstance(result, Declined)
        assert result.error_code == "4"

    def test_ok_without_transaction_id_is_not_approved(self):
        body = dict(APPROVED_BODY, transactionResponse={"responseCode": "1", "transId": "0"})
        assert isinstance(parse_transaction_response(body), Declined)

    def test_non_object_body(self):
        assert isinstance(parse_transaction_response([]), GatewayError)

class TestAuthorizeNetClient:
    def test_builds_request_and_decodes_bom(self):
        captured = {}

        def handler(request):
            captured["url"] = str(request.url)
            captured["body"] = json.loads(request.content)
            return httpx.Response(200, content=b"\xef\xbb\xbf" + json.dumps(APPROVED_BODY).encode())

        result = charge(make_client(handler))

        assert isinstance(result, Approved)
        assert result.transaction_id == "60123456789"
        assert captured["url"] == SANDBOX_URL
        request = captured["body"]["createTransactionRequest"]
        assert request["merchantAuthentication"] == {"name": "login", "transactionKey": "key"}
        assert request["refId"] == "12345678-abc123"
        txn = request["transactionRequest"]
        assert txn["transactionType"] == "authCaptureTransaction"
        assert txn["amount"] == "22.00"
        assert txn["payment"]["creditCard"]["expirationDate"] == "2030-03"
        assert txn["billTo"]["firstName"] == "Ada"
        assert txn["billTo"]["lastName"] == "King Lovelace"

    def test_production_endpoint(self):
        client = AuthorizeNetClient("login", "key", environment="production")
        assert client.endpoint == PRODUCTION_URL

    def test_timeout_is_gateway_error(self):
        def handler(request):
            raise httpx.ReadTimeout("timed out", request=request)

        result = charge(make_client(handler))
        assert result == GatewayError("Payment gateway timed out")

    def test_transport_error_is_gateway_error(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        assert isinstance(charge(make_client(handler)), GatewayError)

    def test_http_error_status_is_gateway_error(self):
        result = charge(make_client(lambda request: httpx.Response(502, text="bad gateway")))
        assert result == GatewayError("Payment gateway returned HTTP 502")

    def test_malformed_body_is_gateway_error(self):
        result = charge(make_client(lambda request: httpx.Response(200, content=b"<html>")))
        assert isinstance(result, GatewayError)

    def test_missing_credentials_skip_the_network(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(200, json=APPROVED_BODY)

        http_client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        client = AuthorizeNetClient(None, None, http_client=http_client)

        assert not client.configured
        assert charge(client) == GatewayError("Payment gateway not configured")
        assert calls == []

    def test_rejects_long_reference(self):
        client = make_client(lambda request: httpx.Response(200, json=APPROVED_BODY))
        with pytest.raises(ValueError):
            charge(client, reference_id="x" * 21)

    def test_rejects_non_positive_amount(self):
        client = make_client(lambda request: httpx.Response(200, json=APPROVED_BODY))
        with pytest.raises(ValueError):
            charge(client, amount_cents=0)

class TestIdentifiers:
    def test_reference_ids_fit_and_differ(self):
        references = {new_reference_id() for _ in range(200)}
        assert len(references) == 200
        for reference in references:
            assert len(reference) <= 20
            assert re.fullmatch(r"\d{8}-[a-z0-9]{6}", reference)

    def test_receipt_number(self):
        assert receipt_number("60123", now_ms=1700000000000) == "RCP-1700000000000-60123"
        assert receipt_number("60123").startswith("RCP-")

    def test_card_repr_hides_number(self):
        assert "4111111111111111" not in repr(CARD)
        assert CARD.last4 == "1111"
