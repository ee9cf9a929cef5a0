"""SQLAlchemy database models for the marketplace payment core."""
import uuid
from datetime import datetime
from enum import Enum
from typing import List, Optional

from sqlalchemy import (
    BigInteger,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

# SQLite only auto-increments INTEGER PRIMARY KEY columns.
BigIntPK = BigInteger().with_variant(Integer, "sqlite")


class PaymentStatus(str, Enum):
    """Payment lifecycle states."""

    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"
    REFUNDED = "REFUNDED"


class PaymentProvider(str, Enum):
    """Supported payment gateways."""

    MPESA = "MPESA"
    STRIPE = "STRIPE"
    FLUTTERWAVE = "FLUTTERWAVE"
    BANK_TRANSFER = "BANK_TRANSFER"
    CASH = "CASH"


class Currency(str, Enum):
    """Supported settlement currencies."""

    KES = "KES"
    USD = "USD"


def _in_list(column: str, enum_cls: type) -> str:
    values = ", ".join(f"'{member.value}'" for member in enum_cls)
    return f"{column} IN ({values})"


def _new_id() -> str:
    return str(uuid.uuid4())


class Base(DeclarativeBase):
    """Base class for all database models."""

    pass


class User(Base):
    """
    Read-only mirror of the marketplace users table.

    Owned by the accounts service; the payment core only reads it to
    validate ownership and hydrate owner summaries.
    """

    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    first_name: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    last_name: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    phone: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)

    def __repr__(self) -> str:
        """String representation of User."""
        return f"<User(id={self.id}, email={self.email})>"


class Property(Base):
    """Read-only mirror of the marketplace property listings table."""

    __tablename__ = "properties"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    price: Mapped[Optional[float]] = mapped_column(Numeric(14, 2), nullable=True)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default=Currency.KES.value)

    def __repr__(self) -> str:
        """String representation of Property."""
        return f"<Property(id={self.id}, title={self.title})>"


class Payment(Base):
    """
    Payment records table.

    A single money-movement intent. Created and mutated exclusively by the
    lifecycle manager; `transaction_ref` is the gateway correlation key and
    is unique per provider.
    """

    __tablename__ = "payments"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    user_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("users.id"), nullable=False, index=True
    )
    property_id: Mapped[Optional[str]] = mapped_column(
        String(36), ForeignKey("properties.id"), nullable=True
    )
    amount = mapped_column(Numeric(14, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default=Currency.KES.value)
    provider: Mapped[str] = mapped_column(String(32), nullable=False)
    transaction_ref: Mapped[str] = mapped_column(String(128), nullable=False)
    status: Mapped[str] = mapped_column(
        String(16), nullable=False, default=PaymentStatus.PENDING.value, index=True
    )
    description: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(), nullable=False, default=datetime.utcnow, index=True
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(),
        nullable=False,
        default=datetime.utcnow,
        onupdate=datetime.utcnow,
    )

    user: Mapped[User] = relationship(lazy="raise")
    property: Mapped[Optional[Property]] = relationship(lazy="raise")
    logs: Mapped[List["PaymentLog"]] = relationship(
        back_populates="payment",
        lazy="raise",
        order_by="(PaymentLog.timestamp.desc(), PaymentLog.id.desc())",
    )

    __table_args__ = (
        CheckConstraint("amount > 0", name="positive_amount"),
        CheckConstraint(_in_list("status", PaymentStatus), name="valid_status"),
        CheckConstraint(_in_list("currency", Currency), name="valid_currency"),
        CheckConstraint(_in_list("provider", PaymentProvider), name="valid_provider"),
        UniqueConstraint("provider", "transaction_ref", name="uq_payments_provider_ref"),
        Index("idx_payments_user_status", "user_id", "status"),
        Index("idx_payments_status_updated", "status", "updated_at"),
    )

    def __repr__(self) -> str:
        """String representation of Payment."""
        return (
            f"<Payment(id={self.id}, user_id={self.user_id}, "
            f"amount={self.amount}, provider={self.provider}, status={self.status})>"
        )


class PaymentLog(Base):
    """
    Payment audit trail table.

    Append-only; rows are never updated once written.
    """

    __tablename__ = "payment_logs"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    payment_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("payments.id"), nullable=False, index=True
    )
    action: Mapped[str] = mapped_column(String(100), nullable=False)
    details: Mapped[str] = mapped_column(Text, nullable=False, default="{}")
    timestamp: Mapped[datetime] = mapped_column(
        DateTime(), nullable=False, default=datetime.utcnow, index=True
    )

    payment: Mapped[Payment] = relationship(back_populates="logs", lazy="raise")

    def __repr__(self) -> str:
        """String representation of PaymentLog."""
        return f"<PaymentLog(id={self.id}, payment_id={self.payment_id}, action={self.action})>"


class SecurityLog(Base):
    """Severity-classified security audit events. Never mutated."""

    __tablename__ = "security_logs"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    type: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    user_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True, index=True)
    ip_address: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    user_agent: Mapped[Optional[str]] = mapped_column(String(512), nullable=True)
    endpoint: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    method: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)
    details: Mapped[str] = mapped_column(Text, nullable=False, default="{}")
    severity: Mapped[str] = mapped_column(String(16), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(), nullable=False, default=datetime.utcnow, index=True
    )

    __table_args__ = (
        CheckConstraint(
            "severity IN ('LOW', 'MEDIUM', 'HIGH', 'CRITICAL')", name="valid_severity"
        ),
    )

    def __repr__(self) -> str:
        """String representation of SecurityLog."""
        return f"<SecurityLog(id={self.id}, type={self.type}, severity={self.severity})>"


class BlockedIP(Base):
    """IP denylist maintained by administrators."""

    __tablename__ = "blocked_ips"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    ip_address: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    reason: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(), nullable=False, default=datetime.utcnow
    )

    def __repr__(self) -> str:
        """String representation of BlockedIP."""
        return f"<BlockedIP(ip_address={self.ip_address})>"
