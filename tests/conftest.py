import os
import tempfile
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

_DB_DIR = tempfile.mkdtemp(prefix="shortlet-engine-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{os.path.join(_DB_DIR, 'engine.db')}"
os.environ["ADMIN_ACTOR_IDS"] = "admin-1"
for _key in ("STRIPE_SECRET_KEY", "PAYSTACK_SECRET_KEY", "RAZORPAY_KEY_ID", "RAZORPAY_KEY_SECRET"):
    os.environ[_key] = ""

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

from shortlet_engine.api.routes.routes import (  # noqa: E402
    get_app_settings,
    get_clock,
    get_notification_sender,
    get_provider_registry,
)
from shortlet_engine.application.reconciliation_service import ReconciliationService  # noqa: E402
from shortlet_engine.application.side_effects import SideEffectDispatcher  # noqa: E402
from shortlet_engine.config import get_settings  # noqa: E402
from shortlet_engine.domain.exceptions import ProviderTimeoutError  # noqa: E402
from shortlet_engine.domain.state_machine import PaymentStatus  # noqa: E402
from shortlet_engine.domain.values import (  # noqa: E402
    BookingMode,
    ProviderCheckout,
    ProviderNotification,
)
from shortlet_engine.infrastructure.db.models import Base  # noqa: E402
from shortlet_engine.infrastructure.db.session import SessionLocal, engine  # noqa: E402
from shortlet_engine.infrastructure.providers.base import (  # noqa: E402
    PaymentProviderAdapter,
    classify_status,
)
from shortlet_engine.infrastructure.providers.registry import ProviderRegistry  # noqa: E402
from shortlet_engine.infrastructure.repositories.unit_repository import UnitRepository  # noqa: E402
from shortlet_engine.main import app  # noqa: E402


class FrozenClock:
    def __init__(self, start: datetime):
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> None:
        self.current += timedelta(**kwargs)


class FakeProvider(PaymentProviderAdapter):
    """In-memory provider; tests script its answers per reference."""

    name = "fakepay"

    def __init__(self):
        self.initialize_status = PaymentStatus.INITIATED
        self.fail_initialize = False
        self.verify_results = {}
        self.verify_calls = []
        self.initialized = []

    def initialize(self, *, reference, amount_minor, currency, context):
        self.initialized.append(reference)
        if self.fail_initialize:
            raise ProviderTimeoutError(f"fakepay timed out for {reference}")
        return ProviderCheckout(
            payload={"reference": reference, "amount": amount_minor},
            redirect_url=f"https://pay.example/{reference}",
            status=self.initialize_status,
            tx_id=f"tx_{reference}",
        )

    def verify(self, *, reference, tx_id, payload):
        self.verify_calls.append(reference)
        result = self.verify_results.get(reference)
        if isinstance(result, Exception):
            raise result
        if result is None:
            return ProviderNotification(
                provider=self.name,
                reference=reference,
                status=PaymentStatus.INITIATED,
            )
        return result

    def parse_notification(self, raw):
        return ProviderNotification(
            provider=self.name,
            reference=raw["reference"],
            status=classify_status(raw.get("status")),
            payload=raw,
            tx_id=raw.get("id"),
            amount_minor=raw.get("amount"),
            currency=raw.get("currency"),
        )

    def verify_signature(self, body, headers):
        return headers.get("x-fake-signature") == "ok"


class WorkerDied(BaseException):
    """Stands in for a process killed mid-send."""


class RecordingSender:
    def __init__(self):
        self.sent = []
        self.fail = False
        self.die = False

    def send(self, event_kind, audience, recipient_id, payload):
        if self.die:
            raise WorkerDied()
        if self.fail:
            raise ConnectionError("transport down")
        self.sent.append((event_kind, audience, recipient_id, payload["booking_id"]))


@pytest.fixture(autouse=True)
def database():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield


@pytest.fixture
def db():
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def clock():
    return FrozenClock(datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc))


@pytest.fixture
def settings():
    return replace(get_settings(), admin_actor_ids=frozenset({"admin-1"}))


@pytest.fixture
def fake_provider():
    return FakeProvider()


@pytest.fixture
def providers(fake_provider):
    return ProviderRegistry([fake_provider])


@pytest.fixture
def sender():
    return RecordingSender()


@pytest.fixture
def services(db, settings, clock, providers, sender):
    dispatcher = SideEffectDispatcher(db, sender, clock, settings)
    reconciliation = ReconciliationService(db, providers, settings, clock, dispatcher)
    return SimpleNamespace(
        dispatcher=dispatcher,
        reconciliation=reconciliation,
        payments=reconciliation.payment_service,
        bookings=reconciliation.booking_service,
    )


@pytest.fixture
def make_unit(db):
    def _make(unit_id="U1", **overrides):
        fields = {
            "host_id": "host-1",
            "title": "Lekki loft",
            "currency": "NGN",
            "booking_mode": BookingMode.INSTANT,
            "nightly_price_minor": 40000,
            "cleaning_fee_minor": 0,
            "min_nights": 1,
        }
        fields.update(overrides)
        unit = UnitRepository(db).upsert(unit_id, **fields)
        db.commit()
        return unit

    return _make


@pytest.fixture
def client(clock, settings, providers, sender):
    app.dependency_overrides[get_clock] = lambda: clock
    app.dependency_overrides[get_app_settings] = lambda: settings
    app.dependency_overrides[get_provider_registry] = lambda: providers
    app.dependency_overrides[get_notification_sender] = lambda: sender
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()
