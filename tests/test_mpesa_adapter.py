"""
Unit tests for the M-Pesa STK Push flow.
"""
import base64
import json
from datetime import datetime

import pytest

from conftest import USER_ID, callback_payload, payment_log_actions
from marketplace_payments.core.exceptions import PaymentValidationError, ProviderError
from marketplace_payments.core.payment_service import PaymentService
from marketplace_payments.integrations.mpesa import normalize_phone_number, parse_callback
from marketplace_payments.integrations.mpesa_client import daraja_timestamp, stk_password, whole_units


@pytest.fixture
def service(lifecycle, registry, test_settings) -> PaymentService:
    return PaymentService(lifecycle, registry, test_settings)


async def _initiate(service, amount=100, phone="0712345678"):
    return await service.initiate_stk_push(
        USER_ID, {"amount": amount, "phoneNumber": phone, "currency": "KES"}
    )


def _callback_with_metadata(metadata):
    return {
        "Body": {
            "stkCallback": {
                "CheckoutRequestID": "ws_CO_TEST_1",
                "ResultCode": 0,
                "CallbackMetadata": metadata,
            }
        }
    }


class TestPhoneNumbers:
    """Test suite for phone number normalisation."""

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "raw",
        ["0712345678", "+254712345678", "254712345678", "712345678", "0712 345 678"],
    )
    def test_accepted_formats(self, raw) -> None:
        assert normalize_phone_number(raw) == "254712345678"

    @pytest.mark.unit
    @pytest.mark.parametrize("raw", ["07123", "0712345678999", "abc", "+1 415 555 0100"])
    def test_rejected_formats(self, raw) -> None:
        with pytest.raises(PaymentValidationError, match="Invalid phone number format"):
            normalize_phone_number(raw)

    @pytest.mark.unit
    def test_missing_phone(self) -> None:
        with pytest.raises(PaymentValidationError, match="Phone number is required"):
            normalize_phone_number(None)


class TestDarajaClient:
    """Test suite for the Daraja API client."""

    @pytest.mark.unit
    def test_password_and_timestamp(self) -> None:
        timestamp = daraja_timestamp(datetime(2024, 12, 19, 10, 21, 15))
        assert timestamp == "20241219102115"
        decoded = base64.b64decode(stk_password("174379", "passkey", timestamp)).decode()
        assert decoded == "174379passkey20241219102115"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_token_is_cached(self, daraja_client, fake_daraja) -> None:
        first = await daraja_client.get_access_token()
        second = await daraja_client.get_access_token()

        assert first == second == "test-token"
        assert fake_daraja.token_requests == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_stk_push_request_body(self, daraja_client, fake_daraja) -> None:
        data = await daraja_client.stk_push("254712345678", 99.6, "Kilimani", "Payment for Kilimani")

        assert data["CheckoutRequestID"] == "ws_CO_TEST_1"
        body = fake_daraja.stk_push_bodies()[0]
        assert body["Amount"] == 100
        assert body["PartyA"] == body["PhoneNumber"] == "254712345678"
        assert body["PartyB"] == body["BusinessShortCode"] == "174379"
        assert body["TransactionType"] == "CustomerPayBillOnline"
        assert body["CallBackURL"] == "https://marketplace.test/payments/mpesa-callback"

    @pytest.mark.unit
    @pytest.mark.parametrize("amount,expected", [(10.5, 11), (11.5, 12), (10.49, 10), ("99.6", 100)])
    def test_amounts_round_half_up(self, amount, expected) -> None:
        assert whole_units(amount) == expected

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_missing_credentials(self, test_settings, daraja_client) -> None:
        daraja_client.settings = test_settings.model_copy(update={"mpesa_consumer_key": None})

        with pytest.raises(ProviderError, match="M-Pesa consumer key not configured"):
            await daraja_client.get_access_token()


class TestStkPush:
    """Test suite for STK initiation."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_initiate_moves_payment_to_processing(self, service, fake_daraja) -> None:
        outcome = await _initiate(service)

        assert outcome.success
        assert outcome.payment.status == "PROCESSING"
        assert outcome.payment.transaction_ref == "ws_CO_TEST_1"
        assert outcome.details["customerMessage"].startswith("Success")
        assert fake_daraja.stk_push_bodies()[0]["AccountReference"].startswith("Payment_")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_invalid_phone_writes_nothing(self, service, lifecycle) -> None:
        with pytest.raises(PaymentValidationError):
            await _initiate(service, phone="12")

        payments, _ = await lifecycle.list_by_owner(USER_ID)
        assert payments == []

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_gateway_rejection_fails_payment(self, service, fake_daraja) -> None:
        fake_daraja.stk_push_error = (400, {"errorMessage": "Invalid PhoneNumber"})

        outcome = await _initiate(service)

        assert not outcome.success
        assert outcome.payment.status == "FAILED"
        assert "Invalid PhoneNumber" in outcome.error

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_half_shilling_is_charged_up(self, service, fake_daraja) -> None:
        await _initiate(service, amount=10.5)

        assert fake_daraja.stk_push_bodies()[0]["Amount"] == 11


class TestCallbacks:
    """Test suite for STK callback reconciliation."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_success_callback_completes_payment(self, service, lifecycle) -> None:
        outcome = await _initiate(service)

        result = await service.handle_mpesa_callback(callback_payload("ws_CO_TEST_1"))

        assert result == {"success": True, "paymentId": outcome.payment.id, "status": "completed"}
        payment = await lifecycle.get_by_id(outcome.payment.id)
        assert payment.status == "COMPLETED"
        details = json.loads(payment.logs[0].details)
        assert details["mpesaReceiptNumber"] == "NLJ7RT61SV"
        assert details["newStatus"] == "COMPLETED"
        received = next(
            json.loads(log.details) for log in payment.logs if log.action == "MPESA_CALLBACK_RECEIVED"
        )
        assert received["callbackMetadata"]["Item"][1] == {
            "Name": "MpesaReceiptNumber",
            "Value": "NLJ7RT61SV",
        }

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_failure_callback_fails_payment(self, service, lifecycle) -> None:
        outcome = await _initiate(service)

        result = await service.handle_mpesa_callback(callback_payload("ws_CO_TEST_1", result_code=1032))

        assert result["status"] == "failed"
        assert result["error"] == "Request cancelled by user"
        payment = await lifecycle.get_by_id(outcome.payment.id)
        assert payment.status == "FAILED"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_duplicate_callback_is_acknowledged_once(
        self, service, lifecycle, session_factory
    ) -> None:
        outcome = await _initiate(service)

        await service.handle_mpesa_callback(callback_payload("ws_CO_TEST_1"))
        duplicate = await service.handle_mpesa_callback(callback_payload("ws_CO_TEST_1", result_code=1))

        assert duplicate["status"] == "duplicate"
        payment = await lifecycle.get_by_id(outcome.payment.id)
        assert payment.status == "COMPLETED"
        actions = await payment_log_actions(session_factory, payment.id)
        assert actions.count("MPESA_CALLBACK_RECEIVED") == 2
        assert actions.count("STATUS_UPDATED") == 2

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unknown_checkout_request(self, service) -> None:
        result = await service.handle_mpesa_callback(callback_payload("ws_CO_UNKNOWN"))

        assert result["success"] is False
        assert result["error"] == "Payment not found"

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "payload",
        [
            {},
            {"Body": {}},
            {"Body": {"stkCallback": {"ResultCode": 0}}},
            [],
            "nope",
            _callback_with_metadata([{"Name": "Amount"}]),
            _callback_with_metadata("Amount=100"),
            _callback_with_metadata({"Item": "Amount"}),
        ],
    )
    def test_malformed_envelope(self, payload) -> None:
        with pytest.raises(PaymentValidationError, match="Invalid M-Pesa callback payload"):
            parse_callback(payload)


class TestStatusQuery:
    """Test suite for STK status queries used by the sweeper."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_pending_query_returns_none(self, service, registry) -> None:
        outcome = await _initiate(service)
        assert await registry.mpesa.query_status(outcome.payment) is None

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_completed_query(self, service, registry, fake_daraja) -> None:
        outcome = await _initiate(service)
        fake_daraja.stk_query_response = (
            200,
            {"ResultCode": "0", "ResultDesc": "The service request is processed successfully."},
        )

        result = await registry.mpesa.query_status(outcome.payment)

        assert result.status.value == "COMPLETED"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_cancelled_query(self, service, registry, fake_daraja) -> None:
        outcome = await _initiate(service)
        fake_daraja.stk_query_response = (
            200,
            {"ResultCode": "1032", "ResultDesc": "Request cancelled by user"},
        )

        result = await registry.mpesa.query_status(outcome.payment)

        assert result.status.value == "FAILED"
        assert result.error == "Request cancelled by user"
