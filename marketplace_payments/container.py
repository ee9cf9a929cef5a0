"""Wiring of the long-lived payment core components."""
from dataclasses import dataclass
from typing import Optional

import redis.asyncio as aioredis
import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from marketplace_payments.config import Settings, get_settings
from marketplace_payments.core.lifecycle import PaymentLifecycleManager
from marketplace_payments.core.payment_service import PaymentService
from marketplace_payments.database.connection import get_session_factory
from marketplace_payments.integrations.registry import ProviderRegistry
from marketplace_payments.monitoring.health import HealthCheck
from marketplace_payments.security.events import SecurityEventLogger
from marketplace_payments.security.pipeline import SecurityPipelines
from marketplace_payments.security.rate_limiter import (
    InMemoryRateLimitStore,
    RateLimitStore,
    RedisRateLimitStore,
)
from marketplace_payments.workers.processing_sweeper import ProcessingSweeper

logger = structlog.get_logger(__name__)


@dataclass
class Container:
    """Components shared by the API and the background workers."""

    settings: Settings
    session_factory: async_sessionmaker[AsyncSession]
    lifecycle: PaymentLifecycleManager
    registry: ProviderRegistry
    payments: PaymentService
    security_events: SecurityEventLogger
    pipelines: SecurityPipelines
    sweeper: ProcessingSweeper
    health: HealthCheck
    redis_client: Optional[aioredis.Redis] = None

    async def aclose(self) -> None:
        """Release provider HTTP clients and the Redis connection."""
        await self.registry.aclose()
        if self.redis_client is not None:
            await self.redis_client.aclose()


def build_container(
    settings: Optional[Settings] = None,
    session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
    registry: Optional[ProviderRegistry] = None,
    rate_limit_store: Optional[RateLimitStore] = None,
    redis_client: Optional[aioredis.Redis] = None,
) -> Container:
    """
    Build the component graph.

    Args:
        settings: Optional settings (defaults to the cached instance)
        session_factory: Optional session factory (defaults to the global one)
        registry: Optional prebuilt provider registry
        rate_limit_store: Optional rate-limit store; Redis when `redis_url` is set,
            otherwise in-process
        redis_client: Optional Redis client

    Returns:
        Container: Wired components
    """
    settings = settings or get_settings()
    session_factory = session_factory or get_session_factory()

    if rate_limit_store is None:
        if redis_client is None and settings.redis_url:
            redis_client = aioredis.from_url(
                settings.redis_url, encoding="utf-8", decode_responses=True
            )
        rate_limit_store = (
            RedisRateLimitStore(redis_client) if redis_client is not None else InMemoryRateLimitStore()
        )

    lifecycle = PaymentLifecycleManager(session_factory)
    registry = registry or ProviderRegistry.build(lifecycle, settings)
    payments = PaymentService(lifecycle, registry, settings)
    security_events = SecurityEventLogger(session_factory)

    logger.info(
        "container_built",
        rate_limit_store=type(rate_limit_store).__name__,
        mpesa_environment=settings.mpesa_environment,
    )
    return Container(
        settings=settings,
        session_factory=session_factory,
        lifecycle=lifecycle,
        registry=registry,
        payments=payments,
        security_events=security_events,
        pipelines=SecurityPipelines(lifecycle, security_events, rate_limit_store, settings),
        sweeper=ProcessingSweeper(payments, settings),
        health=HealthCheck(session_factory, redis_client),
        redis_client=redis_client,
    )
