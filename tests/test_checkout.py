import asyncio
import logging
import time

from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError

from conftest import FakeGateway, checkout_request
from storefront.application import checkout as checkout_module
from storefront.application.checkout import CheckoutService, validate_checkout
from storefront.application.repository import OrderRepository
from storefront.application.errors import (
    CheckoutInProgress,
    OrderPersistenceFailedAfterPayment,
    PaymentDeclined,
    PaymentGatewayUnavailable,
    ValidationFailed,
)
from storefront.core.logging_config import RECONCILIATION_LOGGER
from storefront.domain.models import Address, Order, PAYMENT_GATEWAY_AUTHOR
from storefront.infrastructure.checkout_lock import CheckoutLock
from storefront.infrastructure.db import RetryPolicy, build_engine, build_session_factory
from storefront.infrastructure.gateway import Declined, GatewayError

NO_RETRY = RetryPolicy(max_attempts=1, backoff_seconds=0)

def count(db, model):
    return db.execute(select(func.count()).select_from(model)).scalar_one()

def run_checkout(service, request=None, user_id="user-1", checkout_key=None):
    return asyncio.run(service.create_order(user_id, request or checkout_request(), checkout_key=checkout_key))

class TestValidation:
    def test_valid_request(self):
        assert validate_checkout(checkout_request()) is None

    def test_total_mismatch(self):
        problem = validate_checkout(checkout_request(total="25.00"))
        assert "does not match" in problem

    def test_total_within_one_cent(self):
        assert validate_checkout(checkout_request(total="22.01")) is None

    def test_subtotal_must_match_items(self):
        problem = validate_checkout(checkout_request(subtotal="30.00", total="32.00"))
        assert "sum of the items" in problem

    def test_empty_items(self):
        assert validate_checkout(checkout_request(items=[])) == "Order must contain at least one item"

    def test_zero_quantity(self):
        request = checkout_request(items=[{"productId": "p1", "quantity": 0, "price": "10.00"}])
        assert "quantity" in validate_checkout(request)

    def test_missing_address(self):
        assert validate_checkout(checkout_request(billingAddress=None)) == "Billing address is required"

    def test_missing_address_fields(self):
        request = checkout_request(shippingAddress={"fullName": "Ada", "city": "London"})
        problem = validate_checkout(request)
        assert problem.startswith("Shipping address is missing")
        assert "postal code" in problem

    def test_negative_amount(self):
        problem = validate_checkout(checkout_request(tax="-2.00", total="18.00"))
        assert "negative" in problem

    def test_zero_total(self):
        request = checkout_request(
            items=[{"productId": "p1", "quantity": 1, "price": "0"}],
            subtotal="0", tax="0", total="0",
        )
        assert validate_checkout(request) == "Invalid payment amount"

    def test_missing_payment_information(self):
        assert validate_checkout(checkout_request(cvv="")) == "Missing required payment information"

    def test_quantity_upper_bound(self):
        request = checkout_request(
            items=[{"productId": "p1", "quantity": 10_001, "price": "0.01"}],
            subtotal="100.01", total="102.01",
        )
        assert "quantity exceeds" in validate_checkout(request)

    def test_item_price_upper_bound(self):
        request = checkout_request(
            items=[{"productId": "p1", "quantity": 1, "price": "21474836.48"}],
            subtotal="21474836.48", total="21474838.48",
        )
        assert "price exceeds" in validate_checkout(request)

    def test_total_upper_bound(self):
        request = checkout_request(
            items=[{"productId": "p1", "quantity": 2, "price": "15000000.00"}],
            subtotal="30000000.00", total="30000002.00",
        )
        assert validate_checkout(request) == "Amounts exceed the maximum supported value: subtotal, total"

    def test_bad_card_fields(self):
        assert validate_checkout(checkout_request(cardNumber="4111-abcd")) == "Invalid card number"
        assert validate_checkout(checkout_request(expiryMonth="13")) == "Invalid expiry month"
        assert validate_checkout(checkout_request(expiryYear="203")) == "Invalid expiry year"
        assert validate_checkout(checkout_request(cvv="12")) == "Invalid card security code"

class TestCreateOrder:
    def test_approved_payment_records_confirmed_order(self, session_factory, gateway, db):
        service = CheckoutService(session_factory, gateway)

        order = run_checkout(service)

        assert isinstance(order, Order)
        assert order.status == "CONFIRMED"
        assert order.payment_status == "AUTHORIZED"
        assert order.fulfillment_status == "UNFULFILLED"
        assert order.total_cents == 2200
        assert order.transaction_id == "T1"
        assert order.authorization_code == "AUTH01"
        assert order.receipt_number.startswith("RCP-") and order.receipt_number.endswith("-T1")
        assert order.payment_provider == "authorize.net"
        assert order.card_last4 == "1111"
        assert order.confirmed_at is not None
        assert order.order_number.startswith("ORD-")
        assert order.shipping_address.full_name == "Ada Lovelace"
        assert order.billing_address.id != order.shipping_address.id
        assert count(db, Order) == 1

    def test_timeline_has_customer_then_gateway_entry(self, session_factory, gateway):
        order = run_checkout(CheckoutService(session_factory, gateway))

        assert len(order.timeline) == 2
        created, authorized = order.timeline
        assert created.id < authorized.id
        assert created.status == "PENDING"
        assert created.author == "user-1"
        assert created.message == "Order created by customer"
        assert authorized.status == "CONFIRMED"
        assert authorized.author == PAYMENT_GATEWAY_AUTHOR
        assert authorized.message == "Payment authorized - Transaction ID: T1"
        assert authorized.details["transactionId"] == "T1"
        assert authorized.details["authorizationCode"] == "AUTH01"
        assert authorized.details["receiptNumber"] == order.receipt_number

    def test_items_snapshot_the_charged_price(self, session_factory, gateway):
        order = run_checkout(CheckoutService(session_factory, gateway))

        [item] = order.items
        assert item.product_id == "p1"
        assert item.product_name_snapshot == "Widget"
        assert item.quantity == 2
        assert item.unit_price_cents == 1000
        assert item.line_total_cents == 2000

    def test_gateway_called_once_with_amount_and_reference(self, session_factory, gateway):
        run_checkout(CheckoutService(session_factory, gateway))

        [call] = gateway.calls
        assert call["amount_cents"] == 2200
        assert call["card"].number == "4111111111111111"
        assert len(call["reference_id"]) <= 20

    def test_each_attempt_gets_a_fresh_reference(self, session_factory, gateway):
        service = CheckoutService(session_factory, gateway)
        run_checkout(service)
        run_checkout(service)

        first, second = gateway.calls
        assert first["reference_id"] != second["reference_id"]

    def test_declined_payment_writes_nothing(self, session_factory, db):
        gateway = FakeGateway(Declined(error_code="2", message="Card declined"))

        result = run_checkout(CheckoutService(session_factory, gateway))

        assert result == PaymentDeclined(message="Card declined", error_code="2")
        assert count(db, Order) == 0
        assert count(db, Address) == 0

    def test_gateway_error_is_unavailable(self, session_factory, db):
        gateway = FakeGateway(GatewayError("Payment gateway timed out"))

        result = run_checkout(CheckoutService(session_factory, gateway))

        assert result == PaymentGatewayUnavailable("Payment gateway timed out")
        assert count(db, Order) == 0

    def test_slow_gateway_times_out(self, session_factory):
        class SlowGateway(FakeGateway):
            async def authorize_and_capture(self, *args):
                await asyncio.sleep(1)

        service = CheckoutService(session_factory, SlowGateway(), gateway_timeout=0.05)

        assert isinstance(run_checkout(service), PaymentGatewayUnavailable)

    def test_invalid_total_never_calls_gateway(self, session_factory, gateway, db):
        result = run_checkout(CheckoutService(session_factory, gateway), checkout_request(total="25.00"))

        assert isinstance(result, ValidationFailed)
        assert gateway.calls == []
        assert count(db, Order) == 0

    def test_persistence_failure_after_payment_is_reported(self, gateway, caplog):
        # No tables, so every insert fails after the card is charged
        broken = build_session_factory(build_engine("sqlite://"))
        service = CheckoutService(broken, gateway, retry_policy=NO_RETRY)

        with caplog.at_level(logging.INFO, logger=RECONCILIATION_LOGGER):
            result = run_checkout(service)

        assert isinstance(result, OrderPersistenceFailedAfterPayment)
        assert result.transaction_id == "T1"
        assert result.authorization_code == "AUTH01"
        assert result.amount_cents == 2200
        assert len(gateway.calls) == 1

        [record] = [r for r in caplog.records if r.name == RECONCILIATION_LOGGER]
        assert record.levelno == logging.ERROR
        assert record.extra_fields["transaction_id"] == "T1"
        assert record.extra_fields["amount"] == "22.00"
        assert record.exc_info is not None

class TestCheckoutKey:
    def test_replay_returns_existing_order_without_charging(self, session_factory, gateway, db):
        service = CheckoutService(session_factory, gateway)

        first = run_checkout(service, checkout_key="cart-42")
        second = run_checkout(service, checkout_key="cart-42")

        assert isinstance(second, Order)
        assert second.id == first.id
        assert len(gateway.calls) == 1
        assert count(db, Order) == 1

    def test_key_is_scoped_per_user(self, session_factory, gateway, db):
        service = CheckoutService(session_factory, gateway)

        run_checkout(service, user_id="user-1", checkout_key="cart-42")
        run_checkout(service, user_id="user-2", checkout_key="cart-42")

        assert len(gateway.calls) == 2
        assert count(db, Order) == 2

    def test_in_flight_key_is_rejected(self, session_factory, gateway):
        lock = CheckoutLock()
        assert lock.acquire("user-1", "cart-42")
        service = CheckoutService(session_factory, gateway, checkout_lock=lock)

        result = run_checkout(service, checkout_key="cart-42")

        assert isinstance(result, CheckoutInProgress)
        assert gateway.calls == []

    def test_claim_released_after_decline(self, session_factory):
        lock = CheckoutLock()
        gateway = FakeGateway(Declined(error_code="2", message="Card declined"))
        service = CheckoutService(session_factory, gateway, checkout_lock=lock)

        run_checkout(service, checkout_key="cart-42")

        assert lock.acquire("user-1", "cart-42")

    def test_claim_kept_after_orphaned_charge(self, session_factory, gateway, monkeypatch):
        def fail_insert(self, order):
            raise OperationalError("INSERT INTO orders", {}, Exception("database is locked"))

        monkeypatch.setattr(OrderRepository, "add_order", fail_insert)
        lock = CheckoutLock()
        service = CheckoutService(session_factory, gateway, retry_policy=NO_RETRY, checkout_lock=lock)

        first = run_checkout(service, checkout_key="cart-42")
        second = run_checkout(service, checkout_key="cart-42")

        assert isinstance(first, OrderPersistenceFailedAfterPayment)
        assert isinstance(second, CheckoutInProgress)
        assert len(gateway.calls) == 1

class TestPersistenceSafety:
    def test_oversized_amount_never_reaches_gateway(self, session_factory, gateway, db):
        request = checkout_request(
            items=[{"productId": "p1", "quantity": 2, "price": "15000000.00"}],
            subtotal="30000000.00", total="30000002.00",
        )

        result = run_checkout(CheckoutService(session_factory, gateway), request)

        assert isinstance(result, ValidationFailed)
        assert gateway.calls == []
        assert count(db, Order) == 0

    def test_retry_backoff_does_not_block_the_event_loop(self, session_factory, gateway, monkeypatch):
        original_add_order = OrderRepository.add_order
        failures = []

        def flaky_insert(self, order):
            if len(failures) < 2:
                failures.append(1)
                raise OperationalError("INSERT INTO orders", {}, Exception("server closed the connection"))
            return original_add_order(self, order)

        monkeypatch.setattr(OrderRepository, "add_order", flaky_insert)
        service = CheckoutService(session_factory, gateway, retry_policy=RetryPolicy(3, 0.3))

        async def checkout_with_heartbeat():
            gaps = []
            done = asyncio.Event()

            async def heartbeat():
                last = time.monotonic()
                while not done.is_set():
                    await asyncio.sleep(0.05)
                    now = time.monotonic()
                    gaps.append(now - last)
                    last = now

            beat = asyncio.create_task(heartbeat())
            try:
                result = await service.create_order("user-1", checkout_request())
            finally:
                done.set()
                await beat
            return result, gaps

        order, gaps = asyncio.run(checkout_with_heartbeat())

        assert isinstance(order, Order)
        assert len(failures) == 2
        assert max(gaps) < 0.2

    def test_replayed_attempt_does_not_duplicate_the_order(self, session_factory, gateway, db, monkeypatch):
        real_run_in_transaction = checkout_module.run_in_transaction
        attempts = []

        def commit_then_replay(factory, work, policy):
            attempts.append(real_run_in_transaction(factory, work, policy))
            # Second attempt as if the first commit was applied but never acknowledged
            attempts.append(real_run_in_transaction(factory, work, policy))
            return attempts[-1]

        monkeypatch.setattr(checkout_module, "run_in_transaction", commit_then_replay)

        order = run_checkout(CheckoutService(session_factory, gateway))

        assert isinstance(order, Order)
        assert attempts[0].id == attempts[1].id == order.id
        assert count(db, Order) == 1
        assert count(db, Address) == 2
        assert len(gateway.calls) == 1
