"""
Unit tests for the payment lifecycle manager.
"""
import asyncio
import re
from datetime import datetime, timedelta
from decimal import Decimal

import pytest
from sqlalchemy import update

from conftest import OTHER_USER_ID, PROPERTY_ID, USER_ID, payment_log_actions
from marketplace_payments.core.exceptions import (
    InvalidTransitionError,
    NotFoundError,
    PaymentValidationError,
)
from marketplace_payments.core.lifecycle import (
    PaymentLifecycleManager,
    can_transition,
    generate_transaction_ref,
)
from marketplace_payments.database.models import Payment


def _new_payment(**overrides):
    data = {"user_id": USER_ID, "amount": 1500, "provider": "CASH", "currency": "KES"}
    data.update(overrides)
    return data


class TestValidation:
    """Test suite for new-payment validation."""

    @pytest.mark.unit
    def test_validate_defaults_currency_and_generates_ref(self) -> None:
        fields = PaymentLifecycleManager.validate(
            {"user_id": USER_ID, "amount": "2500.5", "provider": "BANK_TRANSFER"}
        )
        assert fields["currency"] == "KES"
        assert fields["amount"] == Decimal("2500.50")
        assert re.match(r"^BANK_TRANSFER_\d{13}_[0-9A-Z]{9}$", fields["transaction_ref"])

    @pytest.mark.unit
    @pytest.mark.parametrize("amount", [None, 0, -5, "abc", True, float("nan")])
    def test_validate_rejects_bad_amounts(self, amount) -> None:
        with pytest.raises(PaymentValidationError, match="Valid amount is required"):
            PaymentLifecycleManager.validate(_new_payment(amount=amount))

    @pytest.mark.unit
    def test_validate_requires_user(self) -> None:
        with pytest.raises(PaymentValidationError, match="User ID is required"):
            PaymentLifecycleManager.validate(_new_payment(user_id=None))

    @pytest.mark.unit
    def test_validate_rejects_unknown_provider(self) -> None:
        with pytest.raises(PaymentValidationError, match="Valid payment provider is required"):
            PaymentLifecycleManager.validate(_new_payment(provider="PAYPAL"))

    @pytest.mark.unit
    def test_validate_rejects_unknown_currency(self) -> None:
        with pytest.raises(PaymentValidationError, match="Invalid currency"):
            PaymentLifecycleManager.validate(_new_payment(currency="EUR"))

    @pytest.mark.unit
    def test_transaction_refs_are_unique(self) -> None:
        refs = {generate_transaction_ref("MPESA") for _ in range(200)}
        assert len(refs) == 200

    @pytest.mark.unit
    def test_transition_table(self) -> None:
        assert can_transition("PENDING", "PROCESSING")
        assert can_transition("PROCESSING", "COMPLETED")
        assert can_transition("COMPLETED", "REFUNDED")
        assert can_transition("FAILED", "FAILED")
        assert not can_transition("FAILED", "COMPLETED")
        assert not can_transition("REFUNDED", "COMPLETED")
        assert not can_transition("PENDING", "REFUNDED")


class TestLifecycle:
    """Test suite for persisted lifecycle operations."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_create_persists_pending_payment(self, lifecycle, session_factory) -> None:
        payment = await lifecycle.create(_new_payment(property_id=PROPERTY_ID))

        assert payment.status == "PENDING"
        assert payment.user.email == "amina@example.com"
        assert payment.property.title == "Kilimani 2BR Apartment"
        assert await payment_log_actions(session_factory, payment.id) == ["PAYMENT_CREATED"]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_create_with_invalid_data_writes_nothing(self, lifecycle) -> None:
        with pytest.raises(PaymentValidationError):
            await lifecycle.create(_new_payment(amount=-1))

        payments, page = await lifecycle.list_by_owner(USER_ID)
        assert payments == []
        assert page["total"] == 0

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_create_for_unknown_property(self, lifecycle) -> None:
        with pytest.raises(NotFoundError, match="Property not found"):
            await lifecycle.create(_new_payment(property_id="missing"))

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_update_status_logs_old_and_new(self, lifecycle, session_factory) -> None:
        payment = await lifecycle.create(_new_payment())
        updated = await lifecycle.update_status(payment.id, "PROCESSING", {"note": "sent"})

        assert updated.status == "PROCESSING"
        assert updated.logs[0].action == "STATUS_UPDATED"
        assert '"oldStatus": "PENDING"' in updated.logs[0].details
        assert '"newStatus": "PROCESSING"' in updated.logs[0].details

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_update_status_rejects_leaving_terminal_state(self, lifecycle) -> None:
        payment = await lifecycle.create(_new_payment())
        await lifecycle.update_status(payment.id, "FAILED")

        with pytest.raises(InvalidTransitionError):
            await lifecycle.update_status(payment.id, "COMPLETED")

        current = await lifecycle.get_by_id(payment.id)
        assert current.status == "FAILED"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_update_status_unknown_payment(self, lifecycle) -> None:
        with pytest.raises(NotFoundError):
            await lifecycle.update_status("missing", "PROCESSING")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_transition_is_compare_and_swap(self, lifecycle) -> None:
        payment = await lifecycle.create(_new_payment())

        assert await lifecycle.transition(payment.id, "PENDING", "PROCESSING") is not None
        assert await lifecycle.transition(payment.id, "PENDING", "PROCESSING") is None

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_transition_can_replace_reference(self, lifecycle) -> None:
        payment = await lifecycle.create(_new_payment(provider="MPESA"))
        updated = await lifecycle.transition(
            payment.id, "PENDING", "PROCESSING", transaction_ref="ws_CO_123"
        )

        assert updated.transaction_ref == "ws_CO_123"
        found = await lifecycle.find_by_transaction_ref("ws_CO_123", "MPESA")
        assert found.id == payment.id

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_concurrent_transitions_apply_once(self, lifecycle, session_factory) -> None:
        payment = await lifecycle.create(_new_payment(provider="MPESA"))
        await lifecycle.transition(payment.id, "PENDING", "PROCESSING")

        results = await asyncio.gather(
            *[lifecycle.transition(payment.id, "PROCESSING", "COMPLETED") for _ in range(5)]
        )

        assert sum(1 for r in results if r is not None) == 1
        actions = await payment_log_actions(session_factory, payment.id)
        assert actions.count("STATUS_UPDATED") == 2

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_get_by_id_hides_foreign_payments(self, lifecycle) -> None:
        payment = await lifecycle.create(_new_payment())

        with pytest.raises(NotFoundError, match="Payment not found"):
            await lifecycle.get_by_id(payment.id, owner_id=OTHER_USER_ID)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_list_by_owner_paginates_newest_first(self, lifecycle) -> None:
        created = [await lifecycle.create(_new_payment(amount=100 + i)) for i in range(3)]
        await lifecycle.create(_new_payment(user_id=OTHER_USER_ID))

        first_page, page = await lifecycle.list_by_owner(USER_ID, page=1, page_size=2)
        second_page, _ = await lifecycle.list_by_owner(USER_ID, page=2, page_size=2)

        assert page == {"page": 1, "pageSize": 2, "total": 3, "totalPages": 2}
        assert [p.id for p in first_page + second_page] == [p.id for p in reversed(created)]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_list_by_owner_filters(self, lifecycle) -> None:
        cash = await lifecycle.create(_new_payment())
        bank = await lifecycle.create(_new_payment(provider="BANK_TRANSFER"))
        await lifecycle.update_status(bank.id, "COMPLETED")

        by_provider, _ = await lifecycle.list_by_owner(USER_ID, provider="CASH")
        by_status, _ = await lifecycle.list_by_owner(USER_ID, status="COMPLETED")

        assert [p.id for p in by_provider] == [cash.id]
        assert [p.id for p in by_status] == [bank.id]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_stats_for_owner(self, lifecycle) -> None:
        for amount, status in ((1000, "COMPLETED"), (2500, "COMPLETED"), (400, "FAILED")):
            payment = await lifecycle.create(_new_payment(amount=amount))
            await lifecycle.update_status(payment.id, status)

        stats = await lifecycle.stats_for_owner(USER_ID)

        assert stats == {
            "totalPayments": 3,
            "totalAmount": 3500.0,
            "successfulPayments": 2,
            "failedPayments": 1,
            "successRate": 66.7,
        }

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_stats_for_owner_without_payments(self, lifecycle) -> None:
        stats = await lifecycle.stats_for_owner(OTHER_USER_ID)
        assert stats["totalPayments"] == 0
        assert stats["successRate"] == 0

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_find_stale_processing(self, lifecycle, session_factory) -> None:
        stale = await lifecycle.create(_new_payment(provider="MPESA"))
        fresh = await lifecycle.create(_new_payment(provider="MPESA"))
        for payment in (stale, fresh):
            await lifecycle.transition(payment.id, "PENDING", "PROCESSING")

        async with session_factory() as session:
            await session.execute(
                update(Payment)
                .where(Payment.id == stale.id)
                .values(updated_at=datetime.utcnow() - timedelta(minutes=30))
            )
            await session.commit()

        found = await lifecycle.find_stale_processing(timedelta(minutes=5))
        assert [p.id for p in found] == [stale.id]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_count_recent(self, lifecycle) -> None:
        payment = await lifecycle.create(_new_payment())
        await lifecycle.update_status(payment.id, "FAILED")

        since = datetime.utcnow() - timedelta(hours=1)
        assert await lifecycle.count_recent(USER_ID, "FAILED", since) == 1
        assert await lifecycle.count_recent(USER_ID, "COMPLETED", since) == 0
