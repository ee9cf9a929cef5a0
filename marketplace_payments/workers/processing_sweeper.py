"""
Resolution of payments stuck in PROCESSING.

A payment whose callback never arrives is queried at its provider; one
that is still unresolved after the expiry window is failed with reason
PROCESSING_TIMEOUT.
"""
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional

import structlog

from marketplace_payments.config import Settings, get_settings
from marketplace_payments.core.exceptions import PaymentError
from marketplace_payments.core.payment_service import PaymentService
from marketplace_payments.database.models import Payment, PaymentStatus
from marketplace_payments.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

TIMEOUT_REASON = "PROCESSING_TIMEOUT"


class ProcessingSweeper:
    """Queries providers for stale PROCESSING payments and expires the rest."""

    def __init__(
        self,
        payments: PaymentService,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = datetime.utcnow,
    ):
        """
        Initialize sweeper.

        Args:
            payments: Payment service used to settle query results
            settings: Optional settings (defaults to the cached instance)
            clock: Naive-UTC time source
        """
        self.payments = payments
        self.lifecycle = payments.lifecycle
        self.registry = payments.registry
        self.settings = settings or get_settings()
        self.clock = clock

    @property
    def timeout(self) -> timedelta:
        return timedelta(minutes=self.settings.processing_timeout_minutes)

    @property
    def expiry(self) -> timedelta:
        return timedelta(minutes=self.settings.processing_expiry_minutes)

    async def sweep_once(self) -> Dict[str, int]:
        """
        Run one sweep pass.

        Returns:
            Dict[str, int]: Counts per outcome (checked, completed, failed,
            expired, pending)
        """
        now = self.clock()
        stale = await self.lifecycle.find_stale_processing(
            self.timeout, limit=self.settings.sweep_batch_size, now=now
        )
        counts = {"checked": 0, "completed": 0, "failed": 0, "expired": 0, "pending": 0}

        for payment in stale:
            counts["checked"] += 1
            try:
                outcome = await self._resolve(payment, now)
            except PaymentError as e:
                logger.error("processing_sweep_payment_error", payment_id=payment.id, error=e.message)
                outcome = "pending"
            counts[outcome] += 1

        metrics.record_sweep({k: v for k, v in counts.items() if k != "checked"})
        logger.info("processing_sweep_completed", **counts)
        return counts

    async def _resolve(self, payment: Payment, now: datetime) -> str:
        adapter = self.registry.get(payment.provider)
        try:
            result = await adapter.query_status(payment)
        except Exception:
            logger.exception("processing_sweep_query_failed", payment_id=payment.id)
            result = None

        if result is not None and result.status is not None:
            outcome = await self.payments.settle(payment, result)
            if outcome.payment.status == PaymentStatus.COMPLETED.value:
                return "completed"
            if outcome.payment.status == PaymentStatus.FAILED.value:
                return "failed"
            return "pending"

        if now - payment.updated_at < self.expiry:
            return "pending"

        expired = await self.lifecycle.transition(
            payment.id,
            PaymentStatus.PROCESSING.value,
            PaymentStatus.FAILED.value,
            {
                "reason": TIMEOUT_REASON,
                "failureReason": "No provider confirmation before the processing window expired",
                "processingSince": payment.updated_at,
            },
        )
        if expired is None:
            return "pending"
        logger.warning("processing_payment_expired", payment_id=payment.id, provider=payment.provider)
        return "expired"
