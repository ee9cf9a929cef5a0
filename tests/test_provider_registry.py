"""
Unit tests for provider adapters, the registry and the payment service.
"""
import re
from datetime import datetime, timedelta
from unittest.mock import MagicMock

import pytest
from sqlalchemy import update

from conftest import OTHER_USER_ID, USER_ID, payment_log_actions
from marketplace_payments.core.exceptions import NotFoundError, PaymentValidationError, ProviderError
from marketplace_payments.core.payment_service import PaymentService
from marketplace_payments.database.models import Payment, PaymentProvider
from marketplace_payments.integrations.base import PaymentProviderAdapter
from marketplace_payments.integrations.card import to_minor_units
from marketplace_payments.integrations.registry import ProviderRegistry
from marketplace_payments.integrations.stripe_client import (
    CircuitBreaker,
    StripeError,
    StripeErrorType,
)


@pytest.fixture
def service(lifecycle, registry, test_settings) -> PaymentService:
    return PaymentService(lifecycle, registry, test_settings)


def _intent(intent_id: str = "pi_test_123", status: str = "succeeded") -> MagicMock:
    intent = MagicMock()
    intent.id = intent_id
    intent.status = status
    return intent


async def _backdate(session_factory, payment_id: str, days: int) -> None:
    async with session_factory() as session:
        await session.execute(
            update(Payment)
            .where(Payment.id == payment_id)
            .values(created_at=datetime.utcnow() - timedelta(days=days))
        )
        await session.commit()


class TestRegistry:
    """Test suite for ProviderRegistry."""

    @pytest.mark.unit
    def test_every_provider_registered(self, registry) -> None:
        for provider in ("MPESA", "STRIPE", "FLUTTERWAVE", "BANK_TRANSFER", "CASH"):
            assert provider in registry
            assert registry.get(provider).provider.value == provider

    @pytest.mark.unit
    def test_unknown_provider(self, registry) -> None:
        assert "PAYPAL" not in registry
        with pytest.raises(PaymentValidationError, match="Unsupported payment provider"):
            registry.get("PAYPAL")

    @pytest.mark.unit
    def test_typed_lookup_rejects_wrong_adapter(self, mocker) -> None:
        impostor = mocker.MagicMock(spec=PaymentProviderAdapter)
        impostor.provider = PaymentProvider.MPESA

        with pytest.raises(ProviderError, match="expected MpesaAdapter"):
            ProviderRegistry([impostor]).mpesa


class TestCircuitBreaker:
    """Test suite for the Stripe circuit breaker."""

    @pytest.mark.unit
    def test_opens_after_threshold_and_half_opens(self) -> None:
        now = [0.0]
        breaker = CircuitBreaker(failure_threshold=2, timeout=30, clock=lambda: now[0])

        breaker.on_failure()
        breaker.before_call()
        breaker.on_failure()
        assert breaker.state == "open"

        with pytest.raises(StripeError, match="Circuit breaker is open"):
            breaker.before_call()

        now[0] = 31.0
        breaker.before_call()
        assert breaker.state == "half_open"

        breaker.on_success()
        breaker.on_success()
        assert breaker.state == "closed"


class TestCreateAndProcess:
    """Test suite for PaymentService.create_and_process."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    @pytest.mark.parametrize("provider,prefix", [("CASH", "CASH"), ("BANK_TRANSFER", "BANK")])
    async def test_manual_settlement_completes(self, service, session_factory, provider, prefix) -> None:
        outcome = await service.create_and_process(
            USER_ID, {"amount": 2500, "currency": "KES", "paymentMethod": provider}
        )

        assert outcome.success
        assert outcome.payment.status == "COMPLETED"
        assert re.match(rf"^{prefix}_\d{{13}}$", outcome.transaction_id)
        assert outcome.payment.transaction_ref.startswith(f"{provider}_")
        actions = await payment_log_actions(session_factory, outcome.payment.id)
        assert actions == ["PAYMENT_CREATED", "STATUS_UPDATED", "STATUS_UPDATED"]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_stripe_success_stores_intent_id(self, service, stripe_client) -> None:
        stripe_client.create_payment_intent.return_value = _intent()

        outcome = await service.create_and_process(
            USER_ID,
            {"amount": 49.99, "currency": "USD", "paymentMethod": "STRIPE"},
        )

        assert outcome.payment.status == "COMPLETED"
        assert outcome.payment.transaction_ref == "pi_test_123"
        kwargs = stripe_client.create_payment_intent.call_args.kwargs
        assert kwargs["amount_minor"] == 4999
        assert kwargs["idempotency_key"] == f"payment-{outcome.payment.id}"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_stripe_error_fails_payment(self, service, stripe_client) -> None:
        stripe_client.create_payment_intent.side_effect = StripeError(
            "Your card was declined.", StripeErrorType.PERMANENT
        )

        outcome = await service.create_and_process(
            USER_ID, {"amount": 20, "currency": "USD", "paymentMethod": "STRIPE"}
        )

        assert not outcome.success
        assert outcome.error == "Your card was declined."
        assert outcome.payment.status == "FAILED"
        assert outcome.payment.transaction_ref.startswith("STRIPE_")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unexpected_adapter_error_fails_payment(self, service, stripe_client) -> None:
        stripe_client.create_payment_intent.side_effect = RuntimeError("boom")

        outcome = await service.create_and_process(
            USER_ID, {"amount": 20, "currency": "USD", "paymentMethod": "STRIPE"}
        )

        assert outcome.payment.status == "FAILED"
        assert outcome.error == "boom"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_flutterwave_stays_processing_with_checkout_link(
        self, service, session_factory
    ) -> None:
        outcome = await service.create_and_process(
            USER_ID, {"amount": 3000, "currency": "KES", "paymentMethod": "FLUTTERWAVE"}
        )

        assert outcome.success
        assert outcome.payment.status == "PROCESSING"
        assert outcome.details["checkoutLink"].startswith("https://checkout.flutterwave.com")
        assert "PROVIDER_INITIATED" in await payment_log_actions(session_factory, outcome.payment.id)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_mpesa_routes_to_stk_push(self, service) -> None:
        outcome = await service.create_and_process(
            USER_ID,
            {"amount": 100, "currency": "KES", "paymentMethod": "MPESA", "phoneNumber": "0712345678"},
        )

        assert outcome.payment.status == "PROCESSING"
        assert outcome.details["checkoutRequestId"] == "ws_CO_TEST_1"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unknown_provider_writes_nothing(self, service, lifecycle) -> None:
        with pytest.raises(PaymentValidationError):
            await service.create_and_process(USER_ID, {"amount": 100, "paymentMethod": "PAYPAL"})

        payments, _ = await lifecycle.list_by_owner(USER_ID)
        assert payments == []


class TestRefunds:
    """Test suite for PaymentService.refund."""

    async def _completed(self, service, method: str = "CASH"):
        outcome = await service.create_and_process(
            USER_ID, {"amount": 1200, "currency": "KES", "paymentMethod": method}
        )
        return outcome.payment

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_refund_inside_window(self, service) -> None:
        payment = await self._completed(service)

        outcome = await service.refund(payment.id, USER_ID, "Tenant cancelled the booking")

        assert outcome.success
        assert outcome.payment.status == "REFUNDED"
        assert outcome.transaction_id.startswith("REFUND_CASH_")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_refund_outside_window(self, service, session_factory) -> None:
        payment = await self._completed(service)
        await _backdate(session_factory, payment.id, days=31)

        with pytest.raises(PaymentValidationError, match="outside refund window"):
            await service.refund(payment.id, USER_ID, "Tenant cancelled the booking")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_refund_twice(self, service) -> None:
        payment = await self._completed(service)
        await service.refund(payment.id, USER_ID, "Tenant cancelled the booking")

        with pytest.raises(NotFoundError, match="not eligible for refund"):
            await service.refund(payment.id, USER_ID, "Tenant cancelled the booking")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_refund_foreign_payment(self, service) -> None:
        payment = await self._completed(service)

        with pytest.raises(NotFoundError, match="not eligible for refund"):
            await service.refund(payment.id, OTHER_USER_ID, "Tenant cancelled the booking")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_provider_refund_failure_keeps_payment_completed(
        self, service, stripe_client, lifecycle, session_factory
    ) -> None:
        stripe_client.create_payment_intent.return_value = _intent()
        stripe_client.create_refund.side_effect = StripeError(
            "Charge already refunded", StripeErrorType.PERMANENT
        )
        payment = await self._completed(service, "STRIPE")

        outcome = await service.refund(payment.id, USER_ID, "Tenant cancelled the booking")

        assert not outcome.success
        assert (await lifecycle.get_by_id(payment.id)).status == "COMPLETED"
        assert "REFUND_FAILED" in await payment_log_actions(session_factory, payment.id)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_mpesa_refund_is_queued_reversal(self, service) -> None:
        outcome = await service.create_and_process(
            USER_ID,
            {"amount": 100, "currency": "KES", "paymentMethod": "MPESA", "phoneNumber": "0712345678"},
        )
        await service.handle_mpesa_callback(
            {
                "Body": {
                    "stkCallback": {
                        "MerchantRequestID": "29115-1",
                        "CheckoutRequestID": "ws_CO_TEST_1",
                        "ResultCode": 0,
                        "ResultDesc": "The service request is processed successfully.",
                    }
                }
            }
        )

        refund = await service.refund(outcome.payment.id, USER_ID, "Duplicate payment made")

        assert refund.success
        assert refund.transaction_id.startswith("REFUND_MPESA_")


class TestFlutterwaveVerification:
    """Test suite for Flutterwave verification."""

    async def _processing(self, service):
        outcome = await service.create_and_process(
            USER_ID, {"amount": 3000, "currency": "KES", "paymentMethod": "FLUTTERWAVE"}
        )
        return outcome.payment

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_successful_verification_completes(self, service, fake_flutterwave) -> None:
        payment = await self._processing(service)
        fake_flutterwave.verify_data = {
            "id": 4455,
            "status": "successful",
            "amount": 3000,
            "currency": "KES",
        }

        outcome = await service.verify_flutterwave(USER_ID, payment.transaction_ref, "4455")

        assert outcome.success
        assert outcome.payment.status == "COMPLETED"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_amount_mismatch_fails(self, service, fake_flutterwave) -> None:
        payment = await self._processing(service)
        fake_flutterwave.verify_data = {
            "id": 4455,
            "status": "successful",
            "amount": 30,
            "currency": "KES",
        }

        outcome = await service.verify_flutterwave(USER_ID, payment.transaction_ref)

        assert outcome.payment.status == "FAILED"
        assert outcome.error == "Amount or currency mismatch"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_pending_verification_leaves_processing(self, service) -> None:
        payment = await self._processing(service)

        outcome = await service.verify_flutterwave(USER_ID, payment.transaction_ref)

        assert not outcome.success
        assert outcome.payment.status == "PROCESSING"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_foreign_reference(self, service) -> None:
        payment = await self._processing(service)

        with pytest.raises(NotFoundError):
            await service.verify_flutterwave(OTHER_USER_ID, payment.transaction_ref)


@pytest.mark.unit
def test_to_minor_units() -> None:
    assert to_minor_units(49.99) == 4999
    assert to_minor_units("1200.5") == 120050
