"""IP blocklist and suspicious-range checks."""
from typing import List, Optional

import structlog
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from marketplace_payments.config import Settings, get_settings
from marketplace_payments.core.exceptions import SecurityPolicyError
from marketplace_payments.database.connection import get_session_factory
from marketplace_payments.database.models import BlockedIP
from marketplace_payments.security.context import RequestContext
from marketplace_payments.security.events import SecurityEventLogger, SecurityEventType

logger = structlog.get_logger(__name__)

PRIVATE_PREFIXES = ("10.", "172.", "192.168.")


class IPPolicyGate:
    """
    Rejects blocklisted IPs; flags private and suspicious ranges without blocking.

    Lookup failures fail open.
    """

    name = "ip_policy"

    def __init__(
        self,
        events: SecurityEventLogger,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        settings: Optional[Settings] = None,
    ):
        self.events = events
        self.session_factory = session_factory or get_session_factory()
        self.settings = settings or get_settings()

    @property
    def suspicious_ranges(self) -> List[str]:
        return self.settings.get_suspicious_ip_ranges()

    def is_suspicious(self, ip_address: Optional[str]) -> bool:
        """Private-network or configured suspicious prefix."""
        if not ip_address:
            return False
        return ip_address.startswith(PRIVATE_PREFIXES) or any(
            ip_address.startswith(prefix) for prefix in self.suspicious_ranges
        )

    async def find_block(self, ip_address: str) -> Optional[BlockedIP]:
        async with self.session_factory() as session:
            return (
                await session.execute(select(BlockedIP).where(BlockedIP.ip_address == ip_address))
            ).scalar_one_or_none()

    async def __call__(self, ctx: RequestContext) -> None:
        if not ctx.ip_address:
            return

        try:
            blocked = await self.find_block(ctx.ip_address)
        except SQLAlchemyError as e:
            logger.error("ip_blocklist_lookup_failed", ip_address=ctx.ip_address, error=str(e))
            return

        if blocked is not None:
            await self.events.log(
                SecurityEventType.BLOCKED_IP_ACCESS,
                details={"blockedSince": blocked.created_at, "reason": blocked.reason},
                **ctx.event_fields(),
            )
            raise SecurityPolicyError(
                "Access denied from this IP address.",
                error_code="ip_blocked",
                http_status=403,
            )

        if self.is_suspicious(ctx.ip_address):
            await self.events.log(
                SecurityEventType.SUSPICIOUS_IP,
                details={"reason": "Potential VPN/Proxy"},
                **ctx.event_fields(),
            )
