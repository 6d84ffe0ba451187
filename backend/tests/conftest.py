import asyncio
import os
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///./test.db")
os.environ.setdefault("PAYMENT_GATEWAY_MODE", "memory")
os.environ.setdefault("TESTING", "true")
os.environ.setdefault("TAX_MODE", "off")

import pytest
from fastapi.testclient import TestClient
from opentelemetry.sdk.trace import TracerProvider
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from detailing.domain.bookings import db_models as booking_db_models  # noqa: F401
from detailing.domain.bookings.cancellation_policy import CancellationFeeSchedule
from detailing.domain.bookings.schemas import Caller, CallerRole, CreateBookingRequest, GuestContact
from detailing.domain.bookings.service import BookingLifecycleController
from detailing.domain.bookings.store import InMemoryBookingStore, SqlBookingStore
from detailing.domain.notifications import db_models as notification_db_models  # noqa: F401
from detailing.domain.pricing.catalog import load_pricing_catalog
from detailing.domain.pricing.models import ServiceAddress, Vehicle
from detailing.domain.pricing.tax import ZeroTaxQuoter
from detailing.infra.db import Base
from detailing.infra.memory_gateway import InMemoryPaymentGateway
from detailing.main import create_app
from detailing.services import build_app_services
from detailing.settings import settings

@pytest.fixture(scope="session")
def anyio_backend():
    return "asyncio"


CUSTOMER = Caller(role=CallerRole.customer, id="cust-1")
OTHER_CUSTOMER = Caller(role=CallerRole.customer, id="cust-2")
GUEST = Caller(role=CallerRole.guest, id="guest@example.com")
WORKER = Caller(role=CallerRole.worker, id="worker-1")
OTHER_WORKER = Caller(role=CallerRole.worker, id="worker-2")
ADMIN = Caller(role=CallerRole.admin, id="ops")

CIVIC_INTERIOR_CENTS = 17500
START = datetime(2026, 3, 14, 15, 0, tzinfo=timezone.utc)


class FrozenClock:
    def __init__(self, start: datetime = START) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class RecordingNotifier:
    def __init__(self, *, fail: bool = False) -> None:
        self.fail = fail
        self.events: list[tuple[str, str]] = []

    async def notify(self, event, booking) -> None:  # noqa: ANN001
        if self.fail:
            raise RuntimeError("outbox unavailable")
        self.events.append((event.value, booking.booking_id))


def booking_request(**overrides) -> CreateBookingRequest:
    payload = {
        "service_type": "interior-detail",
        "vehicle": Vehicle(make="Honda", model="Civic", year=2019),
        "add_ons": [],
        "condition": "normal",
        "service_address": ServiceAddress(line1="1 Market St", city="San Francisco", state="CA", postal_code="94105"),
        "payment_method": "pm_card_visa",
    }
    payload.update(overrides)
    return CreateBookingRequest(**payload)


def guest_booking_request(**overrides) -> CreateBookingRequest:
    return booking_request(
        guest=GuestContact(name="Sam Guest", email="guest@example.com", phone="415-555-0100"),
        **overrides,
    )


@pytest.fixture(scope="session")
def test_engine():
    db_path = Path("test.db")
    if db_path.exists():
        db_path.unlink()
    # Separate connections per checkout so concurrent writers really race.
    engine = create_async_engine(
        "sqlite+aiosqlite:///./test.db",
        connect_args={"timeout": 30},
        poolclass=NullPool,
    )

    async def init_models() -> None:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    asyncio.run(init_models())
    yield engine
    asyncio.run(engine.dispose())
    if db_path.exists():
        db_path.unlink()


@pytest.fixture(scope="session")
def async_session_maker(test_engine):
    return async_sessionmaker(test_engine, expire_on_commit=False)


@pytest.fixture(autouse=True)
def clean_database(test_engine):
    async def truncate_tables() -> None:
        async with test_engine.begin() as conn:
            for table in reversed(Base.metadata.sorted_tables):
                await conn.execute(table.delete())

    asyncio.run(truncate_tables())
    yield


@pytest.fixture(autouse=True)
def restore_settings():
    original_admin_username = settings.admin_basic_username
    original_admin_password = settings.admin_basic_password
    original_metrics_enabled = settings.metrics_enabled
    original_metrics_token = settings.metrics_token
    original_app_env = settings.app_env
    original_fee_schedule = settings.cancellation_fee_schedule_raw
    original_decline_fee = settings.adjustment_decline_fee_cents
    yield
    settings.admin_basic_username = original_admin_username
    settings.admin_basic_password = original_admin_password
    settings.metrics_enabled = original_metrics_enabled
    settings.metrics_token = original_metrics_token
    settings.app_env = original_app_env
    settings.cancellation_fee_schedule_raw = original_fee_schedule
    settings.adjustment_decline_fee_cents = original_decline_fee


@pytest.fixture()
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture()
def gateway() -> InMemoryPaymentGateway:
    return InMemoryPaymentGateway(min_amount_cents=settings.gateway_min_amount_cents)


@pytest.fixture(scope="session")
def catalog():
    return load_pricing_catalog(settings.pricing_catalog_path)


@pytest.fixture()
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture()
def sql_store(async_session_maker) -> SqlBookingStore:
    return SqlBookingStore(async_session_maker)


@pytest.fixture()
def memory_store() -> InMemoryBookingStore:
    return InMemoryBookingStore()


@pytest.fixture()
def make_controller(sql_store, gateway, catalog, notifier, clock):
    def _make(**overrides) -> BookingLifecycleController:
        kwargs = {
            "store": sql_store,
            "gateway": gateway,
            "catalog": catalog,
            "tax_quoter": ZeroTaxQuoter(),
            "notifier": notifier,
            "fee_schedule": CancellationFeeSchedule.from_config(settings.cancellation_fee_schedule),
            "decline_fee_cents": settings.adjustment_decline_fee_cents,
            "min_amount_cents": settings.gateway_min_amount_cents,
            "currency": settings.currency,
            "clock": clock,
        }
        kwargs.update(overrides)
        return BookingLifecycleController(**kwargs)

    return _make


@pytest.fixture()
def controller(make_controller) -> BookingLifecycleController:
    return make_controller()


@pytest.fixture()
def app(async_session_maker, gateway, clock):
    services = build_app_services(
        settings,
        session_factory=async_session_maker,
        gateway=gateway,
        clock=clock,
    )
    return create_app(settings, services=services, tracer_provider=TracerProvider())


@pytest.fixture()
def client(app):
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture()
def client_no_raise(app):
    """Test client that returns HTTP responses instead of raising server exceptions."""
    with TestClient(app, raise_server_exceptions=False) as test_client:
        yield test_client
