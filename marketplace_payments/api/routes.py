"""
API routes for marketplace payments.
"""
from typing import Any, Dict, Optional

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response, status
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from marketplace_payments.container import Container
from marketplace_payments.core.exceptions import PaymentValidationError
from marketplace_payments.core.payment_service import PaymentOutcome
from marketplace_payments.database.models import PaymentProvider, PaymentStatus
from marketplace_payments.security.context import RequestContext
from marketplace_payments.security.events import SecurityEventType

from .dependencies import (
    build_request_context,
    get_container,
    get_current_user_id,
    payment_security,
    refund_security,
    require_admin,
    stk_push_security,
)
from .schemas import (
    CreatePaymentRequest,
    HealthCheckResponse,
    PaginationResponse,
    RefundRequest,
    StkPushRequest,
    SweepResponse,
    VerifyFlutterwaveRequest,
    serialize_payment,
)

logger = structlog.get_logger(__name__)

# Create routers
payment_router = APIRouter(prefix="/payments", tags=["payments"])
admin_router = APIRouter(prefix="/admin", tags=["admin"])
monitoring_router = APIRouter(tags=["monitoring"])

CALLBACK_ACK = {"ResultCode": 0, "ResultDesc": "Accepted"}
MAX_PAGE_SIZE = 100


def _payment_summary(outcome: PaymentOutcome) -> Dict[str, Any]:
    payment = outcome.payment
    return {
        "paymentId": payment.id,
        "amount": float(payment.amount),
        "currency": payment.currency,
        "paymentMethod": payment.provider,
        "transactionRef": payment.transaction_ref,
        "status": payment.status,
    }


@payment_router.post(
    "",
    summary="Create a payment",
    description="Create a payment and process it through the chosen provider",
)
async def create_payment(
    body: CreatePaymentRequest,
    response: Response,
    ctx: RequestContext = Depends(payment_security),
    container: Container = Depends(get_container),
) -> Dict[str, Any]:
    """
    Create and process a payment.

    Synchronous providers settle before the response; MPESA and
    Flutterwave payments come back PROCESSING.
    """
    logger.info(
        "api_create_payment_request",
        user_id=ctx.user_id,
        amount=body.amount,
        currency=body.currency,
        payment_method=body.payment_method,
    )
    outcome = await container.payments.create_and_process(
        ctx.user_id, body.model_dump(by_alias=True, exclude_none=True)
    )
    events = container.security_events
    is_mpesa = body.payment_method == PaymentProvider.MPESA.value
    summary = _payment_summary(outcome)

    await events.log(SecurityEventType.PAYMENT_CREATED, details=summary, **ctx.event_fields())

    if not outcome.success:
        await events.log(
            SecurityEventType.STK_PUSH_FAILED if is_mpesa else SecurityEventType.PAYMENT_FAILED,
            details={**summary, "error": outcome.error},
            **ctx.event_fields(),
        )
        logger.warning("api_create_payment_failed", payment_id=outcome.payment.id, error=outcome.error)
        response.status_code = status.HTTP_400_BAD_REQUEST
        return {
            "status": "error",
            "message": "Payment failed",
            "error": outcome.error,
            "data": serialize_payment(outcome.payment),
        }

    await events.log(
        SecurityEventType.STK_PUSH_INITIATED if is_mpesa else SecurityEventType.PAYMENT_SUCCESSFUL,
        details={**summary, "transactionId": outcome.transaction_id},
        **ctx.event_fields(),
    )
    if outcome.payment.status == PaymentStatus.COMPLETED.value:
        message = "Payment processed successfully"
    elif is_mpesa:
        message = "STK Push initiated successfully"
    else:
        message = "Payment initiated successfully"

    return {
        "status": "success",
        "message": message,
        "data": serialize_payment(
            outcome.payment,
            transactionId=outcome.transaction_id,
            checkoutRequestId=outcome.details.get("checkoutRequestId"),
            customerMessage=outcome.details.get("customerMessage"),
            checkoutLink=outcome.details.get("checkoutLink"),
        ),
    }


@payment_router.post(
    "/stk-push",
    summary="Initiate M-Pesa STK Push",
    description="Send an M-Pesa payment prompt to the customer's phone",
)
async def initiate_stk_push(
    body: StkPushRequest,
    response: Response,
    ctx: RequestContext = Depends(stk_push_security),
    container: Container = Depends(get_container),
) -> Dict[str, Any]:
    """Create an MPESA payment and send the STK prompt."""
    outcome = await container.payments.initiate_stk_push(
        ctx.user_id, body.model_dump(by_alias=True, exclude_none=True)
    )
    summary = _payment_summary(outcome)

    if not outcome.success:
        await container.security_events.log(
            SecurityEventType.STK_PUSH_FAILED,
            details={**summary, "error": outcome.error},
            **ctx.event_fields(),
        )
        response.status_code = status.HTTP_400_BAD_REQUEST
        return {
            "status": "error",
            "message": "Failed to initiate STK Push",
            "error": outcome.error,
        }

    await container.security_events.log(
        SecurityEventType.STK_PUSH_INITIATED,
        details={**summary, "checkoutRequestId": outcome.details.get("checkoutRequestId")},
        **ctx.event_fields(),
    )
    return {
        "status": "success",
        "message": "STK Push initiated successfully",
        "data": {
            "paymentId": outcome.payment.id,
            "checkoutRequestId": outcome.details.get("checkoutRequestId"),
            "customerMessage": outcome.details.get("customerMessage"),
        },
    }


@payment_router.post(
    "/mpesa-callback",
    summary="M-Pesa STK callback",
    description="Public endpoint receiving Daraja STK Push results",
)
async def mpesa_callback(
    request: Request,
    container: Container = Depends(get_container),
) -> Dict[str, Any]:
    """
    Reconcile an STK Push result.

    Daraja always gets the same acknowledgement once the envelope parses.
    """
    try:
        payload = await request.json()
    except ValueError:
        raise PaymentValidationError("Invalid M-Pesa callback payload")

    result = await container.payments.handle_mpesa_callback(payload)
    if not result["success"] and "paymentId" not in result:
        ctx = await build_request_context(request, None, container.settings)
        await container.security_events.log(
            SecurityEventType.CALLBACK_PAYMENT_NOT_FOUND,
            details={"checkoutRequestId": result.get("checkoutRequestId")},
            **ctx.event_fields(),
        )
    return CALLBACK_ACK


@payment_router.post(
    "/verify-flutterwave",
    summary="Verify Flutterwave payment",
    description="Verify a Flutterwave hosted checkout by its tx_ref",
)
async def verify_flutterwave(
    body: VerifyFlutterwaveRequest,
    response: Response,
    ctx: RequestContext = Depends(payment_security),
    container: Container = Depends(get_container),
) -> Dict[str, Any]:
    """Settle a PROCESSING Flutterwave payment from its verification result."""
    transaction_id = str(body.transaction_id) if body.transaction_id is not None else None
    outcome = await container.payments.verify_flutterwave(ctx.user_id, body.tx_ref, transaction_id)
    payment = outcome.payment
    data = {"paymentId": payment.id, "status": payment.status}

    if outcome.details.get("alreadySettled") is None and payment.status in (
        PaymentStatus.COMPLETED.value,
        PaymentStatus.FAILED.value,
    ):
        await container.security_events.log(
            SecurityEventType.PAYMENT_SUCCESSFUL
            if outcome.success
            else SecurityEventType.PAYMENT_FAILED,
            details={**_payment_summary(outcome), "error": outcome.error},
            **ctx.event_fields(),
        )

    if not outcome.success:
        response.status_code = status.HTTP_400_BAD_REQUEST
        return {
            "status": "error",
            "message": "Payment verification failed",
            "error": outcome.error,
            "data": data,
        }
    return {"status": "success", "message": "Payment verified successfully", "data": data}


@payment_router.get(
    "",
    summary="List payments",
    description="Page through the caller's payments, newest first",
)
async def list_payments(
    page: int = Query(default=1),
    limit: int = Query(default=10),
    payment_status: Optional[str] = Query(default=None, alias="status"),
    payment_method: Optional[str] = Query(default=None, alias="paymentMethod"),
    user_id: str = Depends(get_current_user_id),
    container: Container = Depends(get_container),
) -> Dict[str, Any]:
    """List the caller's payments."""
    page = max(page, 1)
    limit = min(max(limit, 1), MAX_PAGE_SIZE)
    payments, page_info = await container.lifecycle.list_by_owner(
        user_id,
        page=page,
        page_size=limit,
        status=payment_status,
        provider=payment_method,
    )
    return {
        "status": "success",
        "data": [serialize_payment(payment) for payment in payments],
        "pagination": PaginationResponse.from_page(page_info).to_response(),
    }


@payment_router.get(
    "/stats/overview",
    summary="Payment statistics",
    description="Totals and success rate over the caller's payments",
)
async def payment_stats(
    user_id: str = Depends(get_current_user_id),
    container: Container = Depends(get_container),
) -> Dict[str, Any]:
    """Aggregate statistics for the caller."""
    return {"status": "success", "data": await container.lifecycle.stats_for_owner(user_id)}


@payment_router.get(
    "/{payment_id}",
    summary="Get payment",
    description="Retrieve one of the caller's payments with its audit log",
)
async def get_payment(
    payment_id: str,
    user_id: str = Depends(get_current_user_id),
    container: Container = Depends(get_container),
) -> Dict[str, Any]:
    """Get a payment by ID; foreign payments are reported as missing."""
    payment = await container.lifecycle.get_by_id(payment_id, owner_id=user_id)
    return {"status": "success", "data": serialize_payment(payment)}


@payment_router.post(
    "/{payment_id}/refund",
    summary="Refund a payment",
    description="Refund a completed payment inside the refund window",
)
async def refund_payment(
    payment_id: str,
    body: RefundRequest,
    response: Response,
    ctx: RequestContext = Depends(refund_security),
    container: Container = Depends(get_container),
) -> Dict[str, Any]:
    """Refund one of the caller's COMPLETED payments."""
    logger.info("api_refund_request", payment_id=payment_id, user_id=ctx.user_id)
    outcome = await container.payments.refund(payment_id, ctx.user_id, body.reason)
    details = {
        "paymentId": payment_id,
        "amount": float(outcome.payment.amount),
        "paymentMethod": outcome.payment.provider,
        "reason": body.reason,
    }

    if not outcome.success:
        await container.security_events.log(
            SecurityEventType.REFUND_FAILED,
            details={**details, "error": outcome.error},
            **ctx.event_fields(),
        )
        response.status_code = status.HTTP_400_BAD_REQUEST
        return {"status": "error", "message": "Refund failed", "error": outcome.error}

    await container.security_events.log(
        SecurityEventType.REFUND_SUCCESSFUL,
        details={**details, "refundTransactionId": outcome.transaction_id},
        **ctx.event_fields(),
    )
    return {
        "status": "success",
        "message": "Refund processed successfully",
        "data": {
            "paymentId": payment_id,
            "refundAmount": float(outcome.payment.amount),
            "refundTransactionId": outcome.transaction_id,
        },
    }


@admin_router.post(
    "/sweep-processing",
    response_model=SweepResponse,
    summary="Sweep stuck payments",
    description="Resolve payments stuck in PROCESSING past the timeout",
)
async def sweep_processing(
    user_id: str = Depends(require_admin),
    container: Container = Depends(get_container),
) -> Dict[str, Any]:
    """Run one processing sweep now."""
    logger.info("api_sweep_requested", user_id=user_id)
    return await container.sweeper.sweep_once()


@monitoring_router.get(
    "/health",
    response_model=HealthCheckResponse,
    summary="Health check",
    description="Check overall system health",
)
async def health(container: Container = Depends(get_container)) -> Dict[str, Any]:
    """Health check endpoint for monitoring."""
    return await container.health.check_all()


@monitoring_router.get(
    "/health/live",
    response_model=HealthCheckResponse,
    summary="Liveness probe",
    description="Kubernetes liveness probe endpoint",
)
async def liveness(container: Container = Depends(get_container)) -> Dict[str, Any]:
    """Liveness probe endpoint."""
    return await container.health.liveness()


@monitoring_router.get(
    "/health/ready",
    response_model=HealthCheckResponse,
    summary="Readiness probe",
    description="Kubernetes readiness probe endpoint",
)
async def readiness(container: Container = Depends(get_container)) -> Dict[str, Any]:
    """Readiness probe endpoint."""
    result = await container.health.readiness()
    if result["status"] != "healthy":
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=result)
    return result


@monitoring_router.get(
    "/metrics",
    summary="Prometheus metrics",
    description="Expose Prometheus metrics",
    include_in_schema=False,
)
async def prometheus_metrics() -> Response:
    """Expose Prometheus metrics."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
