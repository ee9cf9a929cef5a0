"""
M-Pesa STK Push adapter.

Initiation moves a PENDING payment to PROCESSING (or FAILED); the Daraja
callback and the processing sweeper are the only paths to a terminal state.
"""
import re
import time
from typing import Any, Dict, List, Mapping, Optional

import httpx
import structlog

from marketplace_payments.core.exceptions import PaymentError, PaymentValidationError
from marketplace_payments.core.lifecycle import PaymentLifecycleManager
from marketplace_payments.database.models import Payment, PaymentProvider, PaymentStatus
from marketplace_payments.integrations.base import (
    PaymentProviderAdapter,
    ProviderResult,
    epoch_millis,
)
from marketplace_payments.integrations.mpesa_client import DarajaClient
from marketplace_payments.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

PHONE_PATTERN = re.compile(r"^254[0-9]{9}$")

# Daraja's "request is still being processed" error code for STK queries.
STK_QUERY_PENDING_CODE = "500.001.1001"

CALLBACK_METADATA_FIELDS = {
    "Amount": "amount",
    "MpesaReceiptNumber": "mpesaReceiptNumber",
    "TransactionDate": "transactionDate",
    "PhoneNumber": "phoneNumber",
}


def normalize_phone_number(phone_number: Optional[str]) -> str:
    """
    Normalise a Kenyan mobile number to 2547XXXXXXXX form.

    Raises:
        PaymentValidationError: If the result is not 254 followed by 9 digits
    """
    if not phone_number:
        raise PaymentValidationError("Phone number is required for M-Pesa payment")

    formatted = re.sub(r"\s+", "", str(phone_number))
    if formatted.startswith("+"):
        formatted = formatted[1:]
    if formatted.startswith("0"):
        formatted = "254" + formatted[1:]
    if not formatted.startswith("254"):
        formatted = "254" + formatted

    if not PHONE_PATTERN.match(formatted):
        raise PaymentValidationError("Invalid phone number format")
    return formatted


def parse_callback(payload: Any) -> Dict[str, Any]:
    """
    Extract the stkCallback envelope.

    Raises:
        PaymentValidationError: If the envelope is structurally invalid
    """
    try:
        callback = payload["Body"]["stkCallback"]
        checkout_request_id = callback["CheckoutRequestID"]
        result_code = int(callback["ResultCode"])
    except (KeyError, TypeError, ValueError):
        raise PaymentValidationError("Invalid M-Pesa callback payload")

    if not checkout_request_id:
        raise PaymentValidationError("Invalid M-Pesa callback payload")

    metadata = callback.get("CallbackMetadata")
    if metadata is not None and not isinstance(metadata, Mapping):
        raise PaymentValidationError("Invalid M-Pesa callback payload")
    items = (metadata or {}).get("Item") or []
    if not isinstance(items, list):
        raise PaymentValidationError("Invalid M-Pesa callback payload")

    return {
        "merchantRequestId": callback.get("MerchantRequestID"),
        "checkoutRequestId": checkout_request_id,
        "resultCode": result_code,
        "resultDesc": callback.get("ResultDesc"),
        "callbackMetadata": metadata,
        "items": items,
    }


def _metadata(items: List[Mapping[str, Any]]) -> Dict[str, Any]:
    values = {item.get("Name"): item.get("Value") for item in items if isinstance(item, Mapping)}
    return {
        key: values.get(name)
        for name, key in CALLBACK_METADATA_FIELDS.items()
    }


class MpesaAdapter(PaymentProviderAdapter):
    """Lipa Na M-Pesa Online (STK Push) adapter."""

    provider = PaymentProvider.MPESA
    is_async = True
    stores_provider_reference = True

    def __init__(self, lifecycle: PaymentLifecycleManager, client: DarajaClient):
        """
        Initialize M-Pesa adapter.

        Args:
            lifecycle: Lifecycle manager used for status transitions
            client: Daraja API client
        """
        self.lifecycle = lifecycle
        self.client = client

    async def process(self, payment: Payment, **kwargs: Any) -> ProviderResult:
        """
        Send the STK prompt without touching payment state.

        Keyword Args:
            phone_number: Customer phone number (any accepted format)
            property_details: Optional mapping with a `title`
        """
        try:
            phone = normalize_phone_number(kwargs.get("phone_number"))
            property_details = kwargs.get("property_details") or {}
            reference = property_details.get("title") or f"Payment_{payment.id[-8:]}"
            data = await self.client.stk_push(
                phone_number=phone,
                amount=payment.amount,
                account_reference=reference,
                transaction_desc=f"Payment for {reference}",
            )
        except PaymentError as e:
            return ProviderResult(success=False, error=e.message)

        if not data.get("CheckoutRequestID"):
            return ProviderResult(success=False, error="STK Push failed: missing CheckoutRequestID")

        return ProviderResult(
            success=True,
            transaction_id=data["CheckoutRequestID"],
            details={
                "checkoutRequestId": data["CheckoutRequestID"],
                "merchantRequestId": data.get("MerchantRequestID"),
                "responseCode": data.get("ResponseCode"),
                "responseDescription": data.get("ResponseDescription"),
                "customerMessage": data.get("CustomerMessage"),
                "phoneNumber": phone,
            },
        )

    async def initiate(
        self,
        payment: Payment,
        phone_number: Optional[str],
        property_details: Optional[Mapping[str, Any]] = None,
    ) -> Dict[str, Any]:
        """
        Initiate an STK Push for a PENDING payment.

        Never raises: failures move the payment to FAILED and come back as
        ``{"success": False, "error": ...}``.
        """
        try:
            result = await self.process(
                payment, phone_number=phone_number, property_details=property_details
            )
        except Exception as e:
            logger.exception("mpesa_initiate_unexpected_error", payment_id=payment.id)
            result = ProviderResult(success=False, error=f"STK Push failed: {e}")

        if not result.success:
            await self._fail(payment, result.error)
            return {"success": False, "paymentId": payment.id, "error": result.error}

        try:
            updated = await self.lifecycle.transition(
                payment.id,
                PaymentStatus.PENDING.value,
                PaymentStatus.PROCESSING.value,
                result.to_log(),
                transaction_ref=result.transaction_id,
            )
        except PaymentError as e:
            logger.error("mpesa_initiate_transition_failed", payment_id=payment.id, error=e.message)
            await self._fail(payment, e.message)
            return {"success": False, "paymentId": payment.id, "error": e.message}

        if updated is None:
            return {
                "success": False,
                "paymentId": payment.id,
                "error": "Payment is no longer pending",
            }

        logger.info(
            "mpesa_stk_push_initiated",
            payment_id=payment.id,
            checkout_request_id=result.transaction_id,
        )
        return {
            "success": True,
            "paymentId": payment.id,
            "payment": updated,
            "checkoutRequestId": result.details["checkoutRequestId"],
            "merchantRequestId": result.details["merchantRequestId"],
            "responseCode": result.details["responseCode"],
            "responseDescription": result.details["responseDescription"],
            "customerMessage": result.details["customerMessage"],
        }

    async def _fail(self, payment: Payment, error: Optional[str]) -> None:
        try:
            await self.lifecycle.transition(
                payment.id,
                PaymentStatus.PENDING.value,
                PaymentStatus.FAILED.value,
                {"error": error},
            )
        except PaymentError as e:
            logger.error("mpesa_fail_transition_failed", payment_id=payment.id, error=e.message)
        logger.warning("mpesa_stk_push_failed", payment_id=payment.id, error=error)

    async def handle_callback(self, payload: Any) -> Dict[str, Any]:
        """
        Reconcile a Daraja STK callback with its payment.

        Duplicate deliveries are acknowledged without re-applying the
        terminal transition.

        Raises:
            PaymentValidationError: If the callback envelope is malformed
        """
        try:
            callback = parse_callback(payload)
        except PaymentValidationError:
            metrics.record_mpesa_callback("malformed")
            raise

        checkout_request_id = callback["checkoutRequestId"]
        payment = await self.lifecycle.find_by_transaction_ref(
            checkout_request_id, PaymentProvider.MPESA.value
        )
        if payment is None:
            metrics.record_mpesa_callback("not_found")
            logger.warning(
                "mpesa_callback_payment_not_found",
                checkout_request_id=checkout_request_id,
                merchant_request_id=callback["merchantRequestId"],
            )
            return {
                "success": False,
                "error": "Payment not found",
                "checkoutRequestId": checkout_request_id,
            }

        await self.lifecycle.log_action(
            payment.id,
            "MPESA_CALLBACK_RECEIVED",
            {
                "merchantRequestId": callback["merchantRequestId"],
                "checkoutRequestId": checkout_request_id,
                "resultCode": callback["resultCode"],
                "resultDesc": callback["resultDesc"],
                "callbackMetadata": callback["callbackMetadata"],
            },
        )

        if callback["resultCode"] == 0:
            outcome = "completed"
            updated = await self.lifecycle.transition(
                payment.id,
                PaymentStatus.PROCESSING.value,
                PaymentStatus.COMPLETED.value,
                _metadata(callback["items"]),
            )
        else:
            outcome = "failed"
            updated = await self.lifecycle.transition(
                payment.id,
                PaymentStatus.PROCESSING.value,
                PaymentStatus.FAILED.value,
                {
                    "resultCode": callback["resultCode"],
                    "resultDesc": callback["resultDesc"],
                    "failureReason": callback["resultDesc"],
                },
            )

        if updated is None:
            metrics.record_mpesa_callback("duplicate")
            logger.info(
                "mpesa_callback_duplicate",
                payment_id=payment.id,
                current_status=payment.status,
            )
            return {
                "success": True,
                "paymentId": payment.id,
                "status": "duplicate",
                "duplicate": True,
            }

        metrics.record_mpesa_callback(outcome)
        logger.info("mpesa_callback_processed", payment_id=payment.id, outcome=outcome)
        response: Dict[str, Any] = {"success": True, "paymentId": payment.id, "status": outcome}
        if outcome == "failed":
            response["error"] = callback["resultDesc"]
        return response

    async def refund(self, payment: Payment) -> ProviderResult:
        """
        Queue an M-Pesa reversal.

        Reversals need a certificate-encrypted SecurityCredential, so the
        refund is recorded for manual processing.
        """
        logger.info("mpesa_reversal_queued", payment_id=payment.id)
        return ProviderResult(
            success=True,
            transaction_id=f"REFUND_MPESA_{epoch_millis()}",
            details={"note": "Reversal queued for manual processing"},
        )

    async def query_status(self, payment: Payment) -> Optional[ProviderResult]:
        """
        Ask Daraja for the outcome of a PROCESSING STK request.

        Returns None while Daraja still reports the request as in progress
        or when the query itself fails.
        """
        started = time.perf_counter()
        try:
            response = await self.client.stk_query(payment.transaction_ref)
            data = response.json()
        except (httpx.HTTPError, ValueError, PaymentError) as e:
            metrics.record_provider_call("MPESA", "stk_query", "failed", time.perf_counter() - started)
            logger.warning("mpesa_stk_query_failed", payment_id=payment.id, error=str(e))
            return None

        metrics.record_provider_call(
            "MPESA",
            "stk_query",
            "failed" if response.is_error else "success",
            time.perf_counter() - started,
        )
        if response.is_error or "ResultCode" not in data:
            if data.get("errorCode") != STK_QUERY_PENDING_CODE:
                logger.warning(
                    "mpesa_stk_query_rejected",
                    payment_id=payment.id,
                    status_code=response.status_code,
                    error_code=data.get("errorCode"),
                )
            return None

        result_code = str(data["ResultCode"])
        details = {"resultCode": result_code, "resultDesc": data.get("ResultDesc"), "source": "stk_query"}
        if result_code == "0":
            return ProviderResult(
                success=True,
                transaction_id=payment.transaction_ref,
                status=PaymentStatus.COMPLETED,
                details=details,
            )
        return ProviderResult(
            success=False,
            error=data.get("ResultDesc"),
            status=PaymentStatus.FAILED,
            details={**details, "failureReason": data.get("ResultDesc")},
        )

    async def aclose(self) -> None:
        await self.client.aclose()
