import os
import tempfile

_db_dir = tempfile.mkdtemp(prefix="shipments-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{os.path.join(_db_dir, 'shipments.db')}"
os.environ["RUN_MIGRATIONS"] = "false"
os.environ["SCHEDULER_ENABLED"] = "false"
os.environ["RATE_LIMIT_BACKEND"] = "memory"
os.environ["CARRIER_ADAPTER"] = "fake"
os.environ["JWT_SECRET"] = "test-secret"
os.environ["CRON_SECRET"] = "cron-secret"
os.environ.pop("NOTIFICATION_URL", None)

from datetime import timedelta

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import update

from app.application.rate_limiter import RateLimiter, set_rate_limiter
from app.application.schemas import BookingRequest
from app.application.service import ShipmentService
from app.domain.models import Base, Shipment, utcnow
from app.infrastructure import db as database
from app.infrastructure.carrier import FakeCarrier, reset_carrier, set_carrier
from app.infrastructure.notifications import set_notifier
from app.main import app

from support import ADMIN, CUSTOMER, RecordingNotifier, booking_payload, headers_for


@pytest.fixture(autouse=True)
def fresh_state():
    Base.metadata.drop_all(database.engine)
    Base.metadata.create_all(database.engine)
    set_rate_limiter(RateLimiter())
    yield
    reset_carrier()
    set_rate_limiter(None)
    set_notifier(None)


@pytest.fixture
def carrier():
    fake = FakeCarrier()
    set_carrier(fake)
    return fake


@pytest.fixture
def notifier():
    recording = RecordingNotifier()
    set_notifier(recording)
    return recording


@pytest.fixture
def db(carrier, notifier):
    session = database.SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def client(carrier, notifier):
    return TestClient(app)


@pytest.fixture
def customer_headers():
    return headers_for(CUSTOMER)


@pytest.fixture
def admin_headers():
    return headers_for(ADMIN)


@pytest.fixture
def book(db):
    """Book a shipment through the service and return it."""
    counter = {"n": 0}

    def _book(actor=CUSTOMER, **overrides):
        counter["n"] += 1
        overrides.setdefault("booking_reference_id", f"REF-{counter['n']:04d}")
        shipment, _ = ShipmentService(db).book(actor, BookingRequest(**booking_payload(**overrides)))
        return shipment

    return _book


@pytest.fixture
def age_shipment(db):
    """Move a shipment's updated_at back by ``hours``."""

    def _age(shipment_id, hours):
        db.execute(
            update(Shipment)
            .where(Shipment.id == shipment_id)
            .values(updated_at=utcnow() - timedelta(hours=hours))
        )
        db.commit()

    return _age
