"""
Pytest configuration and fixtures.
"""
import json
from typing import Any, AsyncGenerator, Dict, List, Optional, Tuple
from unittest.mock import AsyncMock

import httpx
import pytest
import pytest_asyncio
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from marketplace_payments.api.main import create_app
from marketplace_payments.config import Settings
from marketplace_payments.container import Container, build_container
from marketplace_payments.core.lifecycle import PaymentLifecycleManager
from marketplace_payments.database.connection import create_session_factory, init_db
from marketplace_payments.database.models import PaymentLog, Property, SecurityLog, User
from marketplace_payments.integrations.flutterwave import FlutterwaveAdapter
from marketplace_payments.integrations.mpesa_client import (
    STK_PUSH_PATH,
    STK_QUERY_PATH,
    DarajaClient,
)
from marketplace_payments.integrations.registry import ProviderRegistry
from marketplace_payments.integrations.stripe_client import StripeClient
from marketplace_payments.security.rate_limiter import InMemoryRateLimitStore

USER_ID = "5b0e8f1c-2f4a-4c1e-9a77-000000000001"
OTHER_USER_ID = "5b0e8f1c-2f4a-4c1e-9a77-000000000002"
PROPERTY_ID = "7d3c2a10-8e55-4b0f-b1a2-000000000001"
ADMIN_USER_ID = "5b0e8f1c-2f4a-4c1e-9a77-0000000000ad"


class FakeDaraja:
    """In-process stand-in for the Daraja API, served through httpx.MockTransport."""

    def __init__(self) -> None:
        self.requests: List[httpx.Request] = []
        self.stk_push_error: Optional[Tuple[int, Dict[str, Any]]] = None
        self.stk_query_response: Tuple[int, Dict[str, Any]] = (
            500,
            {"errorCode": "500.001.1001", "errorMessage": "The transaction is being processed"},
        )
        self.token_requests = 0
        self._counter = 0

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        if path == "/oauth/v1/generate":
            self.token_requests += 1
            return httpx.Response(200, json={"access_token": "test-token", "expires_in": "3599"})
        if path == STK_PUSH_PATH:
            if self.stk_push_error is not None:
                status_code, body = self.stk_push_error
                return httpx.Response(status_code, json=body)
            self._counter += 1
            return httpx.Response(
                200,
                json={
                    "MerchantRequestID": f"29115-{self._counter}",
                    "CheckoutRequestID": f"ws_CO_TEST_{self._counter}",
                    "ResponseCode": "0",
                    "ResponseDescription": "Success. Request accepted for processing",
                    "CustomerMessage": "Success. Request accepted for processing",
                },
            )
        if path == STK_QUERY_PATH:
            status_code, body = self.stk_query_response
            return httpx.Response(status_code, json=body)
        return httpx.Response(404, json={"errorMessage": "not found"})

    def stk_push_bodies(self) -> List[Dict[str, Any]]:
        return [json.loads(r.content) for r in self.requests if r.url.path == STK_PUSH_PATH]


class FakeFlutterwave:
    """Stand-in for the Flutterwave v3 API."""

    def __init__(self) -> None:
        self.requests: List[httpx.Request] = []
        self.verify_data: Dict[str, Any] = {"status": "pending"}

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        if path == "/v3/payments":
            return httpx.Response(
                200,
                json={
                    "status": "success",
                    "data": {"link": "https://checkout.flutterwave.com/v3/hosted/pay/test"},
                },
            )
        if path == "/v3/transactions/verify_by_reference":
            return httpx.Response(200, json={"status": "success", "data": self.verify_data})
        if path.endswith("/refund"):
            return httpx.Response(200, json={"status": "success", "data": {"id": 9911}})
        return httpx.Response(404, json={"status": "error", "message": "not found"})


def callback_payload(checkout_request_id: str, result_code: int = 0) -> Dict[str, Any]:
    """Build a Daraja STK callback body."""
    callback: Dict[str, Any] = {
        "MerchantRequestID": "29115-1",
        "CheckoutRequestID": checkout_request_id,
        "ResultCode": result_code,
        "ResultDesc": "The service request is processed successfully."
        if result_code == 0
        else "Request cancelled by user",
    }
    if result_code == 0:
        callback["CallbackMetadata"] = {
            "Item": [
                {"Name": "Amount", "Value": 100},
                {"Name": "MpesaReceiptNumber", "Value": "NLJ7RT61SV"},
                {"Name": "TransactionDate", "Value": 20241219102115},
                {"Name": "PhoneNumber", "Value": 254712345678},
            ]
        }
    return {"Body": {"stkCallback": callback}}


@pytest.fixture
def test_settings(tmp_path: Any) -> Settings:
    """Create test settings."""
    return Settings(
        _env_file=None,
        database_url=f"sqlite+aiosqlite:///{tmp_path}/payments_test.db",
        app_name="marketplace-payments-test",
        app_env="test",
        log_level="DEBUG",
        mpesa_consumer_key="consumer-key",
        mpesa_consumer_secret="consumer-secret",
        mpesa_passkey="passkey",
        mpesa_callback_url="https://marketplace.test/payments/mpesa-callback",
        stripe_secret_key="sk_test_fake_key_for_testing",
        flutterwave_secret_key="FLWSECK_TEST-fake",
        flutterwave_redirect_url="https://marketplace.test/payments/complete",
        admin_user_ids=ADMIN_USER_ID,
    )


@pytest_asyncio.fixture
async def engine(test_settings: Settings) -> AsyncGenerator[AsyncEngine, Any]:
    """Create a throwaway SQLite database with the full schema."""
    engine = create_async_engine(test_settings.database_url)
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return create_session_factory(engine)


@pytest_asyncio.fixture
async def seeded(session_factory: async_sessionmaker[AsyncSession]) -> None:
    """Two users and one property."""
    async with session_factory() as session:
        session.add_all(
            [
                User(
                    id=USER_ID,
                    first_name="Amina",
                    last_name="Otieno",
                    email="amina@example.com",
                    phone="254712345678",
                ),
                User(id=OTHER_USER_ID, first_name="Brian", email="brian@example.com"),
                Property(id=PROPERTY_ID, title="Kilimani 2BR Apartment", price=85000, currency="KES"),
            ]
        )
        await session.commit()


@pytest.fixture
def lifecycle(
    session_factory: async_sessionmaker[AsyncSession], seeded: None
) -> PaymentLifecycleManager:
    return PaymentLifecycleManager(session_factory)


@pytest.fixture
def fake_daraja() -> FakeDaraja:
    return FakeDaraja()


@pytest.fixture
def fake_flutterwave() -> FakeFlutterwave:
    return FakeFlutterwave()


@pytest.fixture
def daraja_client(test_settings: Settings, fake_daraja: FakeDaraja) -> DarajaClient:
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(fake_daraja.handler))
    return DarajaClient(test_settings, http_client=http_client)


@pytest.fixture
def stripe_client() -> AsyncMock:
    return AsyncMock(spec=StripeClient)


@pytest.fixture
def registry(
    lifecycle: PaymentLifecycleManager,
    test_settings: Settings,
    daraja_client: DarajaClient,
    stripe_client: AsyncMock,
    fake_flutterwave: FakeFlutterwave,
) -> ProviderRegistry:
    flutterwave = FlutterwaveAdapter(
        test_settings,
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(fake_flutterwave.handler)),
    )
    return ProviderRegistry.build(
        lifecycle,
        test_settings,
        daraja_client=daraja_client,
        stripe_client=stripe_client,
        flutterwave=flutterwave,
    )


@pytest_asyncio.fixture
async def container(
    test_settings: Settings,
    session_factory: async_sessionmaker[AsyncSession],
    registry: ProviderRegistry,
) -> AsyncGenerator[Container, Any]:
    container = build_container(
        test_settings,
        session_factory=session_factory,
        registry=registry,
        rate_limit_store=InMemoryRateLimitStore(),
    )
    yield container
    await container.aclose()


@pytest_asyncio.fixture
async def client(container: Container) -> AsyncGenerator[httpx.AsyncClient, Any]:
    """Create test HTTP client authenticated as USER_ID."""
    app = create_app(container)
    async with httpx.AsyncClient(
        transport=httpx.ASGITransport(app=app),
        base_url="http://test",
        headers={"X-User-ID": USER_ID},
    ) as ac:
        yield ac


async def security_event_types(
    session_factory: async_sessionmaker[AsyncSession],
) -> List[str]:
    async with session_factory() as session:
        rows = await session.execute(select(SecurityLog.type).order_by(SecurityLog.id))
        return list(rows.scalars().all())


async def payment_log_actions(
    session_factory: async_sessionmaker[AsyncSession], payment_id: str
) -> List[str]:
    async with session_factory() as session:
        rows = await session.execute(
            select(PaymentLog.action)
            .where(PaymentLog.payment_id == payment_id)
            .order_by(PaymentLog.id)
        )
        return list(rows.scalars().all())
