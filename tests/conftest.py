import asyncio
import base64
import sys
from datetime import date, datetime, time, timedelta, timezone
from pathlib import Path
from types import SimpleNamespace

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

import pytest
import sqlalchemy as sa
from fastapi.testclient import TestClient
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from servicebook.domain.admin_audit import db_models as admin_audit_db_models  # noqa: F401
from servicebook.domain.bookings import db_models as booking_db_models
from servicebook.domain.bookings.slots import service_timezone
from servicebook.domain.config import db_models as config_db_models  # noqa: F401
from servicebook.domain.config.service import config_provider
from servicebook.domain.ops import db_models as ops_db_models  # noqa: F401
from servicebook.domain.outbox import db_models as outbox_db_models  # noqa: F401
from servicebook.domain.payments import db_models as payment_db_models
from servicebook.domain.workers import db_models as worker_db_models
from servicebook.infra.db import Base, get_db_session
from servicebook.main import app
from servicebook.settings import settings

AREA_ID = 1
CLEANING_SERVICE_ID = 1
PLUMBING_SERVICE_ID = 2
CLEANING_PRICE = 100_000
PLUMBING_PRICE = 50_000
CUSTOMER = "cust-1"
CUSTOMER_WALLET = 200_000
WORKER_ONE = 1
WORKER_TWO = 2

# 08:30 in Asia/Kolkata on a Monday
FIXED_NOW = datetime(2030, 1, 7, 3, 0, tzinfo=timezone.utc)


def local_start(day: date, hour: int, minute: int = 0) -> datetime:
    """Wall-clock time in the service timezone, as aware UTC."""

    return datetime.combine(day, time(hour, minute), tzinfo=service_timezone()).astimezone(timezone.utc)


def fixed_start(days_ahead: int = 1, hour: int = 10, minute: int = 0) -> datetime:
    return local_start(FIXED_NOW.date() + timedelta(days=days_ahead), hour, minute)


def upcoming_start(days_ahead: int = 1, hour: int = 10, minute: int = 0) -> datetime:
    """A start relative to the real clock, for API calls that read the time themselves."""

    today = datetime.now(tz=timezone.utc).astimezone(service_timezone()).date()
    return local_start(today + timedelta(days=days_ahead), hour, minute)


def customer_headers(subject: str = CUSTOMER) -> dict[str, str]:
    return {"X-User-Sub": subject, "X-User-Roles": "customer"}


def worker_headers(subject: str) -> dict[str, str]:
    return {"X-User-Sub": subject, "X-User-Roles": "worker"}


def basic_auth(username: str, password: str) -> dict[str, str]:
    token = base64.b64encode(f"{username}:{password}".encode()).decode()
    return {"Authorization": f"Basic {token}"}


async def _seed(conn) -> None:
    await conn.execute(sa.insert(booking_db_models.ServiceArea).values(area_id=AREA_ID, name="Central"))
    await conn.execute(
        sa.insert(booking_db_models.Service),
        [
            {
                "service_id": CLEANING_SERVICE_ID,
                "name": "Deep cleaning",
                "duration_minutes": 120,
                "price_cents": CLEANING_PRICE,
                "deposit_percent": None,
            },
            {
                "service_id": PLUMBING_SERVICE_ID,
                "name": "Plumbing visit",
                "duration_minutes": 60,
                "price_cents": PLUMBING_PRICE,
                "deposit_percent": 30,
            },
        ],
    )
    await conn.execute(
        sa.insert(worker_db_models.Worker),
        [
            {
                "worker_id": WORKER_ONE,
                "user_sub": "worker-1",
                "area_id": AREA_ID,
                "name": "Asha",
                "phone": "+91 98000 00001",
                "rating": 4.8,
            },
            {
                "worker_id": WORKER_TWO,
                "user_sub": "worker-2",
                "area_id": AREA_ID,
                "name": "Ravi",
                "phone": "+91 98000 00002",
                "rating": 4.5,
            },
        ],
    )
    await conn.execute(
        sa.insert(worker_db_models.WorkerSkill),
        [
            {"worker_id": worker_id, "service_id": service_id}
            for worker_id in (WORKER_ONE, WORKER_TWO)
            for service_id in (CLEANING_SERVICE_ID, PLUMBING_SERVICE_ID)
        ],
    )
    await conn.execute(
        sa.insert(payment_db_models.Wallet).values(
            customer_id=CUSTOMER, balance_cents=CUSTOMER_WALLET, currency=settings.payment_currency
        )
    )


@pytest.fixture(scope="session")
def anyio_backend():
    return "asyncio"


@pytest.fixture(scope="session")
def test_engine():
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    async def init_models() -> None:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    asyncio.run(init_models())
    yield engine
    asyncio.run(engine.dispose())


@pytest.fixture(scope="session")
def async_session_maker(test_engine):
    return async_sessionmaker(test_engine, expire_on_commit=False)


@pytest.fixture(autouse=True)
def restore_settings():
    saved = {
        name: getattr(settings, name)
        for name in (
            "admin_basic_username",
            "admin_basic_password",
            "dispatcher_basic_username",
            "dispatcher_basic_password",
            "accountant_basic_username",
            "accountant_basic_password",
            "viewer_basic_username",
            "viewer_basic_password",
            "stripe_secret_key",
            "stripe_webhook_secret",
            "metrics_enabled",
            "metrics_token",
            "job_heartbeat_required",
            "job_heartbeat_ttl_seconds",
            "config_cache_ttl_seconds",
            "testing",
        )
    }
    settings.testing = True
    yield
    for name, value in saved.items():
        setattr(settings, name, value)


@pytest.fixture(autouse=True)
def clean_database(test_engine):
    async def truncate_tables() -> None:
        async with test_engine.begin() as conn:
            for table in reversed(Base.metadata.sorted_tables):
                await conn.execute(table.delete())
            await _seed(conn)

    asyncio.run(truncate_tables())
    config_provider.invalidate()
    rate_limiter = getattr(app.state, "rate_limiter", None)
    if rate_limiter is not None:
        asyncio.run(rate_limiter.reset())
    app.state.stripe_client = None
    yield
    config_provider.invalidate()


@pytest.fixture()
def admin_credentials():
    settings.admin_basic_username = "admin"
    settings.admin_basic_password = "secret"
    settings.dispatcher_basic_username = "dispatcher"
    settings.dispatcher_basic_password = "dispatch"
    settings.accountant_basic_username = "accountant"
    settings.accountant_basic_password = "ledger"
    settings.viewer_basic_username = "viewer"
    settings.viewer_basic_password = "view"
    return SimpleNamespace(
        admin=basic_auth("admin", "secret"),
        dispatcher=basic_auth("dispatcher", "dispatch"),
        accountant=basic_auth("accountant", "ledger"),
        viewer=basic_auth("viewer", "view"),
    )


class StubStripe:
    """Records gateway calls; tests script the webhook event and checkout lookups."""

    def __init__(self) -> None:
        self.checkouts: list[dict] = []
        self.refunds: list[dict] = []
        self.sessions: dict[str, dict] = {}
        self.event: dict | None = None
        self.fail_refunds = False

    def create_checkout_session(self, **kwargs):
        session_id = f"cs_test_{len(self.checkouts) + 1}"
        self.checkouts.append({"id": session_id, **kwargs})
        return SimpleNamespace(id=session_id, url=f"https://stripe.test/{session_id}")

    def retrieve_checkout_session(self, session_id: str):
        return self.sessions.get(session_id, {"id": session_id, "payment_status": "unpaid"})

    def create_refund(self, **kwargs):
        if self.fail_refunds:
            raise RuntimeError("stripe unavailable")
        refund_id = f"re_test_{len(self.refunds) + 1}"
        self.refunds.append({"id": refund_id, **kwargs})
        return {"id": refund_id}

    def verify_webhook(self, payload: bytes, signature: str | None):
        return self.event


@pytest.fixture()
def stripe_stub():
    stub = StubStripe()
    app.state.stripe_client = stub
    yield stub
    app.state.stripe_client = None


@pytest.fixture()
def session_factory(async_session_maker):
    return async_session_maker


@pytest.fixture()
def client(async_session_maker):
    async def override_db_session():
        async with async_session_maker() as session:
            yield session

    app.dependency_overrides[get_db_session] = override_db_session
    original_factory = getattr(app.state, "db_session_factory", None)
    app.state.db_session_factory = async_session_maker
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()
    app.state.db_session_factory = original_factory
