# tests/conftest.py

import os

# Must be set before boothpay builds its module-level engine.
os.environ["DATABASE_URL"] = "sqlite://"

from dataclasses import replace
from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import select
from sqlalchemy.orm import sessionmaker

from boothpay.config import Settings
from boothpay.domain.state_machine import BookingStatus
from boothpay.infrastructure.db.models import Base, Booking, Event, Voucher
from boothpay.infrastructure.db.session import build_engine
from boothpay.infrastructure.gateway.midtrans import (
    GatewaySession,
    GatewayTransactionNotFoundError,
    MidtransGateway,
    OrderIdConflictError,
)

SERVER_KEY = "SB-Mid-server-test"
ADMIN_KEY = "admin-key"
CRON_KEY = "cron-key"


# ---------------------
# Test doubles
# ---------------------

class FakeGateway(MidtransGateway):
    """
    In-memory gateway. Snapshots are configured per order id; an
    exception instance stored as a snapshot is raised on fetch.
    """

    def __init__(self):
        super().__init__(server_key=SERVER_KEY)
        self.snapshots = {}
        self.conflict_orders = set()
        self.create_error = None
        self.create_calls = []
        self.fetch_calls = []

    def create_session(self, order_id, amount, customer, **options):
        self.create_calls.append(
            {"order_id": order_id, "amount": amount, "customer": customer, **options}
        )
        if order_id in self.conflict_orders:
            raise OrderIdConflictError("Order ID has been utilized", 409, {})
        if self.create_error is not None:
            raise self.create_error
        n = len(self.create_calls)
        return GatewaySession(
            token=f"snap-{order_id}-{n}",
            redirect_url=f"https://app.sandbox.midtrans.com/snap/v4/redirection/{order_id}-{n}",
            order_id=order_id,
        )

    def fetch_status(self, order_id):
        self.fetch_calls.append(order_id)
        snapshot = self.snapshots.get(order_id)
        if snapshot is None:
            raise GatewayTransactionNotFoundError("Transaction doesn't exist.", 404, {})
        if isinstance(snapshot, Exception):
            raise snapshot
        return dict(snapshot)


class RecordingNotifier:

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.notices = []

    def booth_paid(self, notice):
        self.notices.append(notice)
        if self.fail:
            raise RuntimeError("SMTP down")


def gateway_snapshot(order_id, transaction_status="settlement", gross=100000, payment_type="qris", **extra):
    snapshot = {
        "order_id": order_id,
        "status_code": "200",
        "transaction_status": transaction_status,
        "payment_type": payment_type,
        "fraud_status": "accept",
    }
    if gross is not None:
        snapshot["gross_amount"] = f"{gross}.00"
    snapshot.update(extra)
    return snapshot


@pytest.fixture
def make_snapshot():
    return gateway_snapshot


# ---------------------
# Database
# ---------------------

@pytest.fixture
def session_factory(tmp_path):
    engine = build_engine(f"sqlite:///{tmp_path / 'boothpay.db'}")
    Base.metadata.create_all(bind=engine)
    factory = sessionmaker(bind=engine, autoflush=False, autocommit=False)
    yield factory
    engine.dispose()


@pytest.fixture
def settings():
    return Settings(
        database_url="sqlite://",
        midtrans_server_key=SERVER_KEY,
        admin_api_key=ADMIN_KEY,
        cron_secret=CRON_KEY,
        amount_tolerance=2,
    )


@pytest.fixture
def passthrough_settings(settings):
    return replace(settings, fee_passthrough=True, fees=Settings.from_env().fees)


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def seed(session_factory):
    """Creates an event with one booking and returns their identifiers."""

    def _seed(
        quota=10,
        sold=0,
        amount=100000,
        published=True,
        status=BookingStatus.PENDING,
        voucher_code=None,
        event_id=None,
        created_minutes_ago=0,
        email="rep@example.com",
    ):
        with session_factory() as db:
            if event_id is None:
                event = Event(
                    title="Study Abroad Expo",
                    location="Jakarta",
                    is_published=published,
                    booth_price=amount,
                    booth_quota=quota,
                    booth_sold_count=sold,
                )
                db.add(event)
                db.flush()
                event_id = event.id
            booking = Booking(
                order_id=f"OSS-TEST-{os.urandom(4).hex().upper()}",
                event_id=event_id,
                amount=amount,
                voucher_code=voucher_code,
                status=status,
                rep_name="Rep",
                campus_name="Campus",
                email=email,
                created_at=datetime.now(timezone.utc) - timedelta(minutes=created_minutes_ago),
            )
            db.add(booking)
            db.commit()
            return {"event_id": event_id, "booking_id": booking.id, "order_id": booking.order_id}

    return _seed


@pytest.fixture
def add_voucher(session_factory):
    def _add(code, used_count=0, max_uses=None, is_active=True):
        with session_factory() as db:
            db.add(Voucher(code=code, used_count=used_count, max_uses=max_uses, is_active=is_active))
            db.commit()

    return _add


@pytest.fixture
def load(session_factory):
    """Fresh read of a row, detached from any test session."""

    def _load(model, **criteria):
        with session_factory() as db:
            stmt = select(model).filter_by(**criteria)
            result = db.execute(stmt)
            if model is Booking:
                result = result.unique()
            return result.scalar_one_or_none()

    return _load


# ---------------------
# API
# ---------------------

@pytest.fixture
def client(session_factory, gateway, notifier, settings):
    from boothpay.main import app
    from boothpay.api.routes.routes import (
        get_gateway,
        get_notifier,
        get_session_factory,
    )
    from boothpay.config import get_settings

    app.dependency_overrides[get_session_factory] = lambda: session_factory
    app.dependency_overrides[get_gateway] = lambda: gateway
    app.dependency_overrides[get_notifier] = lambda: notifier
    app.dependency_overrides[get_settings] = lambda: settings

    # Not entered as a context manager: startup would touch the real database.
    yield TestClient(app)

    app.dependency_overrides.clear()

