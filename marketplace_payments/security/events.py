"""
Severity-classified security audit trail.

Every event is emitted to the structured log and persisted to the
security_logs table. Persistence is best-effort: a store failure is logged
and never breaks the request that triggered the event.
"""
import json
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from marketplace_payments.database.connection import get_session_factory
from marketplace_payments.database.models import SecurityLog
from marketplace_payments.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


class Severity(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


class SecurityEventType(str, Enum):
    """Security and operational event types written to the audit trail."""

    RATE_LIMIT_EXCEEDED = "RATE_LIMIT_EXCEEDED"
    SUSPICIOUS_AMOUNT = "SUSPICIOUS_AMOUNT"
    REPEATED_FAILED_PAYMENTS = "REPEATED_FAILED_PAYMENTS"
    BLOCKED_IP_ACCESS = "BLOCKED_IP_ACCESS"
    SUSPICIOUS_IP = "SUSPICIOUS_IP"
    ROUND_NUMBER_AMOUNT = "ROUND_NUMBER_AMOUNT"
    RAPID_SUCCESSIVE_PAYMENTS = "RAPID_SUCCESSIVE_PAYMENTS"
    SUSPICIOUS_SMALL_AMOUNT = "SUSPICIOUS_SMALL_AMOUNT"
    PAYMENT_CREATED = "PAYMENT_CREATED"
    PAYMENT_SUCCESSFUL = "PAYMENT_SUCCESSFUL"
    PAYMENT_FAILED = "PAYMENT_FAILED"
    STK_PUSH_INITIATED = "STK_PUSH_INITIATED"
    STK_PUSH_FAILED = "STK_PUSH_FAILED"
    REFUND_SUCCESSFUL = "REFUND_SUCCESSFUL"
    REFUND_FAILED = "REFUND_FAILED"
    CALLBACK_PAYMENT_NOT_FOUND = "CALLBACK_PAYMENT_NOT_FOUND"


SEVERITY_MAP: Dict[SecurityEventType, Severity] = {
    SecurityEventType.RATE_LIMIT_EXCEEDED: Severity.MEDIUM,
    SecurityEventType.SUSPICIOUS_AMOUNT: Severity.HIGH,
    SecurityEventType.REPEATED_FAILED_PAYMENTS: Severity.HIGH,
    SecurityEventType.BLOCKED_IP_ACCESS: Severity.CRITICAL,
    SecurityEventType.SUSPICIOUS_IP: Severity.MEDIUM,
    SecurityEventType.ROUND_NUMBER_AMOUNT: Severity.LOW,
    SecurityEventType.RAPID_SUCCESSIVE_PAYMENTS: Severity.MEDIUM,
    SecurityEventType.SUSPICIOUS_SMALL_AMOUNT: Severity.LOW,
    SecurityEventType.PAYMENT_CREATED: Severity.LOW,
    SecurityEventType.PAYMENT_SUCCESSFUL: Severity.LOW,
    SecurityEventType.PAYMENT_FAILED: Severity.MEDIUM,
    SecurityEventType.STK_PUSH_INITIATED: Severity.LOW,
    SecurityEventType.STK_PUSH_FAILED: Severity.MEDIUM,
    SecurityEventType.REFUND_SUCCESSFUL: Severity.LOW,
    SecurityEventType.REFUND_FAILED: Severity.MEDIUM,
    SecurityEventType.CALLBACK_PAYMENT_NOT_FOUND: Severity.MEDIUM,
}

_LOG_METHOD = {
    Severity.LOW: "info",
    Severity.MEDIUM: "warning",
    Severity.HIGH: "error",
    Severity.CRITICAL: "critical",
}


def severity_for(event_type: str) -> Severity:
    """Severity of an event type; unknown types are LOW."""
    try:
        return SEVERITY_MAP[SecurityEventType(event_type)]
    except ValueError:
        return Severity.LOW


class SecurityEventLogger:
    """Writes security events to the structured log and the security_logs table."""

    def __init__(self, session_factory: Optional[async_sessionmaker[AsyncSession]] = None):
        self.session_factory = session_factory or get_session_factory()

    async def log(
        self,
        event_type: str,
        *,
        user_id: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        endpoint: Optional[str] = None,
        method: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> Optional[SecurityLog]:
        """
        Record one security event.

        Args:
            event_type: A SecurityEventType value (free-form types are accepted)
            user_id: Authenticated caller, if any
            ip_address: Client IP
            user_agent: Client user agent
            endpoint: Request path
            method: HTTP method
            details: Event-specific context

        Returns:
            Optional[SecurityLog]: The persisted row, or None if the write failed
        """
        event_type = str(getattr(event_type, "value", event_type))
        severity = severity_for(event_type)
        details = details or {}

        metrics.record_security_event(event_type, severity.value)
        getattr(logger, _LOG_METHOD[severity])(
            "security_event",
            event_type=event_type,
            severity=severity.value,
            user_id=user_id,
            ip_address=ip_address,
            endpoint=endpoint,
            method=method,
            **{f"detail_{key}": value for key, value in details.items()},
        )

        try:
            async with self.session_factory() as session:
                entry = SecurityLog(
                    type=event_type,
                    user_id=user_id,
                    ip_address=ip_address,
                    user_agent=user_agent,
                    endpoint=endpoint,
                    method=method,
                    details=json.dumps(details, default=str),
                    severity=severity.value,
                    created_at=datetime.utcnow(),
                )
                session.add(entry)
                await session.commit()
                return entry
        except (SQLAlchemyError, TypeError, ValueError) as e:
            logger.error("security_log_write_failed", event_type=event_type, error=str(e))
            return None
