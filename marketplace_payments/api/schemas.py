"""
Pydantic schemas for API request/response models.

Field names on the wire are camelCase to match the marketplace frontend.
"""
import json
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel
from sqlalchemy import inspect

from marketplace_payments.database.models import Payment, PaymentLog, Property, User

PaymentMethod = Literal["MPESA", "STRIPE", "FLUTTERWAVE", "BANK_TRANSFER", "CASH"]
CurrencyCode = Literal["KES", "USD"]


class ApiModel(BaseModel):
    """Base model with camelCase aliases."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_response(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json", exclude_none=True)


class CreatePaymentRequest(ApiModel):
    """Request schema for creating a payment."""

    amount: float = Field(..., gt=0, description="Payment amount in major units")
    currency: CurrencyCode = Field(default="KES", description="Currency code")
    payment_method: PaymentMethod = Field(..., description="Payment provider")
    property_id: Optional[str] = Field(default=None, description="Property being paid for")
    description: Optional[str] = Field(default=None, max_length=500)
    phone_number: Optional[str] = Field(
        default=None, description="M-Pesa phone number (MPESA only)"
    )
    property_details: Optional[Dict[str, Any]] = Field(default=None)

    model_config = ConfigDict(
        json_schema_extra={
            "examples": [
                {
                    "amount": 2500,
                    "currency": "KES",
                    "paymentMethod": "BANK_TRANSFER",
                    "propertyId": "0b6f2b7e-3c1d-4a55-9d2e-5f0c1f3e8a11",
                    "description": "Booking deposit",
                }
            ]
        }
    )


class StkPushRequest(ApiModel):
    """Request schema for an M-Pesa STK Push."""

    amount: float = Field(..., gt=0)
    phone_number: str = Field(..., min_length=9, max_length=16)
    currency: CurrencyCode = Field(default="KES")
    property_id: Optional[str] = Field(default=None)
    property_details: Optional[Dict[str, Any]] = Field(default=None)
    description: Optional[str] = Field(default=None, max_length=500)

    model_config = ConfigDict(
        json_schema_extra={
            "examples": [
                {"amount": 100, "phoneNumber": "0712345678", "propertyId": None}
            ]
        }
    )


class RefundRequest(ApiModel):
    """Request schema for refunding a payment."""

    reason: str = Field(..., description="Refund reason (10-500 characters)")

    @field_validator("reason")
    @classmethod
    def validate_reason(cls, v: str) -> str:
        """Validate trimmed reason length."""
        v = v.strip()
        if not 10 <= len(v) <= 500:
            raise ValueError("Refund reason must be between 10 and 500 characters")
        return v


class VerifyFlutterwaveRequest(ApiModel):
    """Request schema for verifying a Flutterwave checkout."""

    tx_ref: str = Field(..., min_length=1, alias="tx_ref")
    transaction_id: Optional[Union[int, str]] = Field(default=None, alias="transaction_id")

    model_config = ConfigDict(populate_by_name=True)


class UserSummary(ApiModel):
    id: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None

    @classmethod
    def from_user(cls, user: User) -> "UserSummary":
        return cls(
            id=user.id,
            first_name=user.first_name,
            last_name=user.last_name,
            email=user.email,
            phone=user.phone,
        )


class PropertySummary(ApiModel):
    id: str
    title: str
    price: Optional[float] = None
    currency: Optional[str] = None

    @classmethod
    def from_property(cls, prop: Property) -> "PropertySummary":
        return cls(
            id=prop.id,
            title=prop.title,
            price=float(prop.price) if prop.price is not None else None,
            currency=prop.currency,
        )


class PaymentLogEntry(ApiModel):
    id: int
    action: str
    details: Any = None
    timestamp: datetime

    @classmethod
    def from_log(cls, log: PaymentLog) -> "PaymentLogEntry":
        try:
            details = json.loads(log.details) if log.details else {}
        except ValueError:
            details = {"raw": log.details}
        return cls(id=log.id, action=log.action, details=details, timestamp=log.timestamp)


class PaymentResponse(ApiModel):
    """Payment as returned to its owner."""

    id: str
    transaction_ref: str
    user_id: str
    property_id: Optional[str] = None
    amount: float
    currency: str
    payment_method: str
    status: str
    description: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    user: Optional[UserSummary] = None
    property: Optional[PropertySummary] = None
    logs: Optional[List[PaymentLogEntry]] = None

    @classmethod
    def from_payment(cls, payment: Payment) -> "PaymentResponse":
        """
        Build the response from an ORM payment.

        Relationships that were not eager-loaded are left out.
        """
        unloaded = inspect(payment).unloaded
        user = None
        if "user" not in unloaded and payment.user is not None:
            user = UserSummary.from_user(payment.user)
        prop = None
        if "property" not in unloaded and payment.property is not None:
            prop = PropertySummary.from_property(payment.property)
        logs = None
        if "logs" not in unloaded:
            logs = [PaymentLogEntry.from_log(log) for log in payment.logs]

        return cls(
            id=payment.id,
            transaction_ref=payment.transaction_ref,
            user_id=payment.user_id,
            property_id=payment.property_id,
            amount=float(payment.amount),
            currency=payment.currency,
            payment_method=payment.provider,
            status=payment.status,
            description=payment.description,
            created_at=payment.created_at,
            updated_at=payment.updated_at,
            user=user,
            property=prop,
            logs=logs,
        )


def serialize_payment(payment: Payment, **extra: Any) -> Dict[str, Any]:
    """Render a payment as a camelCase dict, merged with `extra` fields."""
    body = PaymentResponse.from_payment(payment).to_response()
    body.update({key: value for key, value in extra.items() if value is not None})
    return body


class PaginationResponse(ApiModel):
    total_docs: int
    limit: int
    total_pages: int
    page: int
    has_prev_page: bool
    has_next_page: bool
    prev_page: Optional[int] = None
    next_page: Optional[int] = None

    @classmethod
    def from_page(cls, page_info: Dict[str, int]) -> "PaginationResponse":
        page = page_info["page"]
        total_pages = page_info["totalPages"]
        return cls(
            total_docs=page_info["total"],
            limit=page_info["pageSize"],
            total_pages=total_pages,
            page=page,
            has_prev_page=page > 1,
            has_next_page=page < total_pages,
            prev_page=page - 1 if page > 1 else None,
            next_page=page + 1 if page < total_pages else None,
        )

    def to_response(self) -> Dict[str, Any]:
        # prevPage/nextPage are explicit nulls on the boundaries
        return self.model_dump(by_alias=True, mode="json")


class SweepResponse(BaseModel):
    """Response schema for a manual processing sweep."""

    checked: int
    completed: int
    failed: int
    expired: int
    pending: int


class HealthCheckResponse(BaseModel):
    """Response schema for health checks."""

    status: str = Field(..., description="Overall health status")
    checks: Optional[Dict[str, Any]] = Field(default=None, description="Individual checks")
    message: Optional[str] = Field(default=None, description="Status message")
