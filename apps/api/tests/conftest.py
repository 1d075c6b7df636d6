import os
import sys
from datetime import datetime, timezone
from decimal import Decimal
from pathlib import Path

import httpx
import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool


def _configure_path() -> None:
    src_path = Path(__file__).resolve().parents[1] / "src"
    if src_path.exists():
        sys.path.insert(0, str(src_path))


_configure_path()
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("TRACING_ENABLED", "false")

from pointsweep_api import models  # noqa: E402,F401
from pointsweep_api.api.dependencies.services import get_http_client  # noqa: E402
from pointsweep_api.app import create_app  # noqa: E402
from pointsweep_api.db.base import Base  # noqa: E402
from pointsweep_api.db.session import get_session_factory  # noqa: E402
from pointsweep_api.models import Broker, Merchant, MemberStockPick, Wallet  # noqa: E402
from pointsweep_api.observability.pipeline import get_pipeline_store  # noqa: E402
from pointsweep_api.services.market_calendar import MarketCalendar  # noqa: E402
from pointsweep_api.services.notifications.delivery import NotificationDelivery  # noqa: E402

# Wednesday 11:00 in New York; the market is open.
MARKET_OPEN_AT = datetime(2026, 10, 14, 15, 0, tzinfo=timezone.utc)
# Saturday.
WEEKEND_AT = datetime(2026, 10, 17, 15, 0, tzinfo=timezone.utc)

BROKER_URLS = {
    "Alpaca": "https://alpaca.test/webhooks/orders",
    "Robinhood": "https://robinhood.test/webhooks/orders",
    "Schwab": "https://schwab.test/webhooks/orders",
}
MERCHANT_URL = "https://merchant-one.test/settlements"


class RecordingBroker:
    """Mock transport standing in for every broker and merchant endpoint."""

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self.failing_hosts: set[str] = set()
        self.timeout_hosts: set[str] = set()

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        host = request.url.host
        if host in self.timeout_hosts:
            raise httpx.ReadTimeout("timed out", request=request)
        if host in self.failing_hosts:
            return httpx.Response(503, json={"error": "unavailable"})
        return httpx.Response(200, json={"broker_batch_id": f"BRK-{host.split('.')[0].upper()}-{len(self.requests)}"})

    def to(self, host: str) -> list[httpx.Request]:
        return [request for request in self.requests if request.url.host == host]


@pytest.fixture(autouse=True)
def reset_pipeline_store():
    get_pipeline_store().reset()
    yield
    get_pipeline_store().reset()


@pytest_asyncio.fixture
async def session_factory():
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        future=True,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    factory = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)

    try:
        yield factory
    finally:
        await engine.dispose()


@pytest.fixture
def broker_endpoint() -> RecordingBroker:
    return RecordingBroker()


@pytest_asyncio.fixture
async def http_client(broker_endpoint):
    async with httpx.AsyncClient(transport=httpx.MockTransport(broker_endpoint)) as client:
        yield client


@pytest.fixture
def calendar() -> MarketCalendar:
    return MarketCalendar()


@pytest.fixture
def delivery(session_factory, http_client) -> NotificationDelivery:
    return NotificationDelivery(session_factory, http_client=http_client, clock=lambda: MARKET_OPEN_AT)


@pytest_asyncio.fixture
async def app_with_db(session_factory, http_client):
    app = create_app()
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    app.dependency_overrides[get_http_client] = lambda: http_client

    try:
        yield app, session_factory
    finally:
        app.dependency_overrides.clear()


@pytest_asyncio.fixture
async def api_client(app_with_db):
    app, _ = app_with_db
    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as client:
        yield client


async def seed_counterparties(session_factory, *, brokers=("Alpaca", "Robinhood", "Schwab")) -> None:
    async with session_factory() as session:
        session.add(
            Merchant(
                merchant_id="M1",
                merchant_name="Merchant One",
                conversion_rate=Decimal("0.01"),
                webhook_url=MERCHANT_URL,
                webhook_secret="merchant-secret",
            )
        )
        for name in brokers:
            session.add(
                Broker(
                    broker_id=name.lower(),
                    broker_name=name,
                    webhook_url=BROKER_URLS.get(name),
                    webhook_secret=f"{name.lower()}-secret",
                    api_key=f"{name.lower()}-key",
                    is_active=True,
                )
            )
        await session.commit()


async def seed_member(
    session_factory,
    member_id: str,
    *,
    broker: str | None = "Alpaca",
    merchant_id: str = "M1",
    points: int = 2000,
    cash_balance: str = "20.00",
    symbols=("AAPL",),
    allocations=None,
    sweep_percentage: int = 100,
    enrolled: bool = True,
    **wallet_fields,
) -> None:
    async with session_factory() as session:
        session.add(
            Wallet(
                member_id=member_id,
                merchant_id=merchant_id,
                points=points,
                cash_balance=Decimal(cash_balance),
                sweep_enrolled=enrolled,
                sweep_percentage=sweep_percentage,
                broker=broker,
                **wallet_fields,
            )
        )
        for index, symbol in enumerate(symbols):
            session.add(
                MemberStockPick(
                    member_id=member_id,
                    symbol=symbol,
                    allocation_pct=Decimal(str(allocations[index])) if allocations else None,
                    is_active=True,
                )
            )
        await session.commit()
