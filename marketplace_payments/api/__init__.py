"""FastAPI application and routes."""
from .main import create_app
from .schemas import (
    CreatePaymentRequest,
    PaymentResponse,
    RefundRequest,
    StkPushRequest,
    VerifyFlutterwaveRequest,
    serialize_payment,
)

__all__ = [
    "create_app",
    "CreatePaymentRequest",
    "PaymentResponse",
    "RefundRequest",
    "StkPushRequest",
    "VerifyFlutterwaveRequest",
    "serialize_payment",
]
