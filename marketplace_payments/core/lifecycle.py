"""
Payment lifecycle manager.

Owns every write to the payments table:
1. Validate and persist new PENDING payments
2. Guard status changes with the transition table
3. Apply compare-and-swap transitions for callback reconciliation
4. Append audit entries to the payment log (best-effort)
"""
import json
import math
import random
import string
import time
from datetime import datetime, timedelta
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Mapping, Optional, Tuple

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import selectinload

from marketplace_payments.core.exceptions import (
    InvalidTransitionError,
    NotFoundError,
    PaymentError,
    PaymentValidationError,
)
from marketplace_payments.database.connection import get_session_factory
from marketplace_payments.database.models import (
    Currency,
    Payment,
    PaymentLog,
    PaymentProvider,
    PaymentStatus,
    Property,
    User,
)
from marketplace_payments.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

ALLOWED_TRANSITIONS: Dict[PaymentStatus, frozenset] = {
    PaymentStatus.PENDING: frozenset(
        {
            PaymentStatus.PROCESSING,
            PaymentStatus.COMPLETED,
            PaymentStatus.FAILED,
            PaymentStatus.CANCELLED,
        }
    ),
    PaymentStatus.PROCESSING: frozenset(
        {PaymentStatus.COMPLETED, PaymentStatus.FAILED, PaymentStatus.CANCELLED}
    ),
    PaymentStatus.COMPLETED: frozenset({PaymentStatus.REFUNDED}),
    PaymentStatus.FAILED: frozenset(),
    PaymentStatus.CANCELLED: frozenset(),
    PaymentStatus.REFUNDED: frozenset(),
}

_REF_ALPHABET = string.digits + string.ascii_uppercase


def generate_transaction_ref(provider: str) -> str:
    """
    Generate a provider-scoped transaction reference.

    Format: ``{PROVIDER}_{epochMillis}_{9 upper-case base-36 chars}``.
    """
    suffix = "".join(random.choices(_REF_ALPHABET, k=9))
    return f"{provider}_{int(time.time() * 1000)}_{suffix}"


def can_transition(current: str, target: str) -> bool:
    """Check whether moving from `current` to `target` is allowed."""
    current_status = PaymentStatus(current)
    target_status = PaymentStatus(target)
    if current_status == target_status:
        return True
    return target_status in ALLOWED_TRANSITIONS[current_status]


def _coerce_amount(value: Any) -> Decimal:
    if isinstance(value, bool) or value is None:
        raise PaymentValidationError("Valid amount is required")
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise PaymentValidationError("Valid amount is required")
    if not amount.is_finite() or amount <= 0:
        raise PaymentValidationError("Valid amount is required")
    return amount.quantize(Decimal("0.01"))


def _payment_query(with_logs: bool = False):
    options = [selectinload(Payment.user), selectinload(Payment.property)]
    if with_logs:
        options.append(selectinload(Payment.logs))
    return select(Payment).options(*options)


class PaymentLifecycleManager:
    """
    Payment state machine over the record store.

    Every public operation opens its own session and commits before
    returning, so callers never share a transaction with the manager.
    """

    def __init__(
        self, session_factory: Optional[async_sessionmaker[AsyncSession]] = None
    ):
        """
        Initialize lifecycle manager.

        Args:
            session_factory: Optional session factory (defaults to the global one)
        """
        self.session_factory = session_factory or get_session_factory()

    @staticmethod
    def validate(data: Mapping[str, Any]) -> Dict[str, Any]:
        """
        Validate new-payment data without touching the store.

        Args:
            data: Raw payment fields (user_id, amount, provider, currency, ...)

        Returns:
            Dict[str, Any]: Normalised fields ready for persistence

        Raises:
            PaymentValidationError: If any field is invalid
        """
        user_id = data.get("user_id")
        if not user_id:
            raise PaymentValidationError("User ID is required")

        amount = _coerce_amount(data.get("amount"))

        provider = data.get("provider")
        if provider not in {p.value for p in PaymentProvider}:
            raise PaymentValidationError("Valid payment provider is required")

        currency = data.get("currency") or Currency.KES.value
        if currency not in {c.value for c in Currency}:
            raise PaymentValidationError("Invalid currency")

        return {
            "user_id": str(user_id),
            "property_id": data.get("property_id"),
            "amount": amount,
            "currency": currency,
            "provider": provider,
            "transaction_ref": data.get("transaction_ref") or generate_transaction_ref(provider),
            "description": data.get("description"),
        }

    async def create(self, data: Mapping[str, Any]) -> Payment:
        """
        Persist a new PENDING payment.

        Args:
            data: Payment fields; see `validate`

        Returns:
            Payment: Hydrated payment with owner and property summaries

        Raises:
            PaymentValidationError: If validation fails (nothing written)
            NotFoundError: If the owner or property does not exist
            PaymentError: If the store rejects the record
        """
        fields = self.validate(data)

        async with self.session_factory() as session:
            if await session.get(User, fields["user_id"]) is None:
                raise NotFoundError("User not found")
            if fields["property_id"] and await session.get(Property, fields["property_id"]) is None:
                raise NotFoundError("Property not found")

            payment = Payment(status=PaymentStatus.PENDING.value, **fields)
            session.add(payment)
            try:
                await session.commit()
            except IntegrityError as e:
                await session.rollback()
                logger.error(
                    "payment_create_rejected",
                    provider=fields["provider"],
                    transaction_ref=fields["transaction_ref"],
                    error=str(e.orig),
                )
                raise PaymentError("Failed to create payment") from e
            payment_id = payment.id

        metrics.record_payment_created(fields["provider"], fields["currency"], float(fields["amount"]))
        logger.info(
            "payment_created",
            payment_id=payment_id,
            user_id=fields["user_id"],
            provider=fields["provider"],
            amount=str(fields["amount"]),
            currency=fields["currency"],
        )
        await self.log_action(
            payment_id,
            "PAYMENT_CREATED",
            {
                "amount": fields["amount"],
                "currency": fields["currency"],
                "provider": fields["provider"],
            },
        )
        return await self.get_by_id(payment_id)

    async def update_status(
        self,
        payment_id: str,
        new_status: str,
        details: Optional[Dict[str, Any]] = None,
        transaction_ref: Optional[str] = None,
    ) -> Payment:
        """
        Move a payment to `new_status`, guarded by the transition table.

        Re-applying the current status is allowed and still logged.

        Raises:
            NotFoundError: If the payment does not exist
            InvalidTransitionError: If the move is forbidden
        """
        async with self.session_factory() as session:
            payment = (
                await session.execute(
                    select(Payment).where(Payment.id == payment_id).with_for_update()
                )
            ).scalar_one_or_none()
            if payment is None:
                raise NotFoundError("Payment not found")

            old_status = payment.status
            if not can_transition(old_status, new_status):
                raise InvalidTransitionError(old_status, new_status)

            payment.status = PaymentStatus(new_status).value
            payment.updated_at = datetime.utcnow()
            if transaction_ref:
                payment.transaction_ref = transaction_ref
            await self._commit(session, payment_id)

        await self._after_transition(payment_id, old_status, new_status, details)
        return await self.get_by_id(payment_id)

    async def transition(
        self,
        payment_id: str,
        expected: str,
        new_status: str,
        details: Optional[Dict[str, Any]] = None,
        transaction_ref: Optional[str] = None,
    ) -> Optional[Payment]:
        """
        Atomically move a payment from `expected` to `new_status`.

        Returns:
            Optional[Payment]: The updated payment, or None when the current
            status was not `expected` (duplicate or lost race)

        Raises:
            InvalidTransitionError: If `expected -> new_status` is forbidden
        """
        if not can_transition(expected, new_status):
            raise InvalidTransitionError(expected, new_status)

        values: Dict[str, Any] = {
            "status": PaymentStatus(new_status).value,
            "updated_at": datetime.utcnow(),
        }
        if transaction_ref:
            values["transaction_ref"] = transaction_ref

        async with self.session_factory() as session:
            result = await session.execute(
                update(Payment)
                .where(Payment.id == payment_id, Payment.status == PaymentStatus(expected).value)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                await session.rollback()
                logger.info(
                    "payment_transition_skipped",
                    payment_id=payment_id,
                    expected=expected,
                    new_status=new_status,
                )
                return None
            await self._commit(session, payment_id)

        await self._after_transition(payment_id, expected, new_status, details)
        return await self.get_by_id(payment_id)

    async def _commit(self, session: AsyncSession, payment_id: str) -> None:
        try:
            await session.commit()
        except IntegrityError as e:
            await session.rollback()
            logger.error("payment_update_rejected", payment_id=payment_id, error=str(e.orig))
            raise PaymentError("Failed to update payment status") from e

    async def _after_transition(
        self,
        payment_id: str,
        old_status: str,
        new_status: str,
        details: Optional[Dict[str, Any]],
    ) -> None:
        metrics.record_transition(old_status, new_status)
        logger.info(
            "payment_status_updated",
            payment_id=payment_id,
            old_status=old_status,
            new_status=new_status,
        )
        await self.log_action(
            payment_id,
            "STATUS_UPDATED",
            {"oldStatus": old_status, "newStatus": new_status, **(details or {})},
        )

    async def get_by_id(self, payment_id: str, owner_id: Optional[str] = None) -> Payment:
        """
        Load a hydrated payment (owner, property, logs newest-first).

        Args:
            payment_id: Payment ID
            owner_id: When given, only a payment owned by this user matches

        Raises:
            NotFoundError: If no matching payment exists
        """
        query = _payment_query(with_logs=True).where(Payment.id == payment_id)
        if owner_id is not None:
            query = query.where(Payment.user_id == owner_id)

        async with self.session_factory() as session:
            payment = (await session.execute(query)).scalar_one_or_none()

        if payment is None:
            raise NotFoundError("Payment not found")
        return payment

    async def find_by_transaction_ref(
        self, transaction_ref: str, provider: str
    ) -> Optional[Payment]:
        """Look up a payment by its gateway reference."""
        query = _payment_query().where(
            Payment.transaction_ref == transaction_ref,
            Payment.provider == provider,
        )
        async with self.session_factory() as session:
            return (await session.execute(query)).scalar_one_or_none()

    async def list_by_owner(
        self,
        owner_id: str,
        page: int = 1,
        page_size: int = 10,
        status: Optional[str] = None,
        provider: Optional[str] = None,
    ) -> Tuple[List[Payment], Dict[str, int]]:
        """
        Page through a user's payments, newest first.

        Returns:
            Tuple of (payments, {page, pageSize, total, totalPages})
        """
        conditions = [Payment.user_id == owner_id]
        if status:
            conditions.append(Payment.status == status)
        if provider:
            conditions.append(Payment.provider == provider)

        async with self.session_factory() as session:
            total = (
                await session.execute(select(func.count(Payment.id)).where(*conditions))
            ).scalar_one()
            payments = (
                await session.execute(
                    _payment_query()
                    .where(*conditions)
                    .order_by(Payment.created_at.desc(), Payment.id.desc())
                    .offset((page - 1) * page_size)
                    .limit(page_size)
                )
            ).scalars().all()

        return list(payments), {
            "page": page,
            "pageSize": page_size,
            "total": total,
            "totalPages": math.ceil(total / page_size) if page_size else 0,
        }

    async def log_action(
        self,
        payment_id: str,
        action: str,
        details: Optional[Dict[str, Any]] = None,
    ) -> Optional[PaymentLog]:
        """
        Append an audit entry for a payment.

        Best-effort: written in its own session; failures are logged and
        dropped so they never affect the payment flow.
        """
        try:
            async with self.session_factory() as session:
                entry = PaymentLog(
                    payment_id=payment_id,
                    action=action,
                    details=json.dumps(details or {}, default=str),
                    timestamp=datetime.utcnow(),
                )
                session.add(entry)
                await session.commit()
                return entry
        except (SQLAlchemyError, TypeError, ValueError) as e:
            logger.error(
                "payment_log_write_failed",
                payment_id=payment_id,
                action=action,
                error=str(e),
            )
            return None

    async def count_recent(self, user_id: str, status: str, since: datetime) -> int:
        """Count a user's payments in `status` created at or after `since`."""
        async with self.session_factory() as session:
            return (
                await session.execute(
                    select(func.count(Payment.id)).where(
                        Payment.user_id == user_id,
                        Payment.status == status,
                        Payment.created_at >= since,
                    )
                )
            ).scalar_one()

    async def stats_for_owner(self, owner_id: str) -> Dict[str, Any]:
        """Aggregate payment statistics for one user."""
        completed = PaymentStatus.COMPLETED.value
        failed = PaymentStatus.FAILED.value
        async with self.session_factory() as session:
            total = (
                await session.execute(
                    select(func.count(Payment.id)).where(Payment.user_id == owner_id)
                )
            ).scalar_one()
            total_amount, successful = (
                await session.execute(
                    select(func.sum(Payment.amount), func.count(Payment.id)).where(
                        Payment.user_id == owner_id, Payment.status == completed
                    )
                )
            ).one()
            failed_count = (
                await session.execute(
                    select(func.count(Payment.id)).where(
                        Payment.user_id == owner_id, Payment.status == failed
                    )
                )
            ).scalar_one()

        return {
            "totalPayments": total,
            "totalAmount": float(total_amount or 0),
            "successfulPayments": successful,
            "failedPayments": failed_count,
            "successRate": round(successful / total * 100, 1) if total else 0,
        }

    async def find_stale_processing(
        self, older_than: timedelta, limit: int = 100, now: Optional[datetime] = None
    ) -> List[Payment]:
        """Payments stuck in PROCESSING since before `now - older_than`."""
        cutoff = (now or datetime.utcnow()) - older_than
        async with self.session_factory() as session:
            result = await session.execute(
                select(Payment)
                .where(
                    Payment.status == PaymentStatus.PROCESSING.value,
                    Payment.updated_at < cutoff,
                )
                .order_by(Payment.updated_at.asc())
                .limit(limit)
            )
            return list(result.scalars().all())
