import os
from datetime import datetime, timedelta
from decimal import Decimal

# Set before importing the app: database.py builds its engine at import time
os.environ["DATABASE_URL"] = "sqlite:///:memory:"
os.environ["YUKASSA_MODE"] = "test"

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from auth import get_or_create_user  # noqa: E402
from config import Settings, get_settings  # noqa: E402
from database import create_db_engine, get_db, init_db  # noqa: E402
from errors import UpstreamUnavailable  # noqa: E402
from models import Payment, PaymentStatus, SubscriptionStatus, SubscriptionType  # noqa: E402
from payment_gateway import GatewayPayment  # noqa: E402
from periods import PeriodClock  # noqa: E402

FIXED_NOW = datetime(2025, 3, 10, 12, 0)


class FakeNow:
    """Callable clock source that tests can move forward"""

    def __init__(self, moment: datetime):
        self.moment = moment

    def __call__(self):
        return self.moment

    def advance(self, **kwargs):
        self.moment += timedelta(**kwargs)


class FakeGateway:
    """In-memory stand-in for YooKassaClient"""

    def __init__(self):
        self.payments = {}
        self.created = []
        self.fetches = []
        self.unavailable = False
        self._seq = 0

    def create_payment(self, amount, currency, description, return_url, metadata, idempotence_key):
        if self.unavailable:
            raise UpstreamUnavailable("gateway down")
        self._seq += 1
        payment = GatewayPayment(
            id=f"yk-{self._seq}",
            status=PaymentStatus.pending,
            amount=Decimal(amount),
            currency=currency,
            confirmation_url=f"https://yoomoney.ru/checkout/yk-{self._seq}",
            metadata=metadata,
        )
        self.payments[payment.id] = payment
        self.created.append({
            "amount": amount, "description": description, "return_url": return_url,
            "metadata": metadata, "idempotence_key": idempotence_key,
        })
        return payment

    def get_payment(self, payment_id):
        self.fetches.append(payment_id)
        if self.unavailable:
            raise UpstreamUnavailable("gateway down")
        return self.payments[payment_id]

    def set_status(self, payment_id, status, payment_method=None):
        current = self.payments[payment_id]
        self.payments[payment_id] = current.model_copy(
            update={"status": PaymentStatus(status), "payment_method": payment_method}
        )


class FakeNotifier:
    def __init__(self, fail_for=()):
        self.sent = []
        self.fail_for = set(fail_for)

    async def send_reminder(self, telegram_id, habit_name):
        if habit_name in self.fail_for:
            return False
        self.sent.append((telegram_id, habit_name))
        return True


@pytest.fixture
def engine():
    engine = create_db_engine("sqlite://", poolclass=StaticPool)
    init_db(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def db(engine):
    session = sessionmaker(bind=engine, autoflush=False)()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def now():
    return FakeNow(FIXED_NOW)


@pytest.fixture
def clock(now):
    return PeriodClock(period_length_minutes=1440, now=now)


@pytest.fixture
def settings():
    return Settings(
        database_url="sqlite://",
        yookassa_shop_id="123456",
        yookassa_secret_key="test_secret",
        webapp_url="https://app.example.com",
        payment_polling_enabled=False,
        cron_secret="cron-secret",
    )


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def notifier():
    return FakeNotifier()


@pytest.fixture
def user(db):
    return get_or_create_user(db, 111)


@pytest.fixture
def make_premium(db, clock):
    def _make(user, days_left=10):
        user.subscription_type = SubscriptionType.premium.value
        user.subscription_status = SubscriptionStatus.active.value
        user.subscription_started_at = clock.now() - timedelta(days=20)
        user.subscription_expires_at = clock.now() + timedelta(days=days_left)
        db.commit()
        return user
    return _make


@pytest.fixture
def make_payment(db, clock, gateway):
    """Local payment row already known to the fake gateway"""
    def _make(user, plan_id="month", status="pending", created_at=None, metadata=None):
        remote = gateway.create_payment(
            Decimal("99"), "RUB", "test", "https://app.example.com", {"planId": plan_id}, "key",
        )
        if status != "pending":
            gateway.set_status(remote.id, status)
        payment = Payment(
            user_id=user.id,
            yookassa_id=remote.id,
            amount=Decimal("99"),
            status=PaymentStatus.pending.value,
            confirmation_url=remote.confirmation_url,
            metadata_json=metadata if metadata is not None else f'{{"planId": "{plan_id}"}}',
            created_at=created_at or clock.now(),
        )
        db.add(payment)
        db.commit()
        return payment
    return _make


@pytest.fixture
def client(db, clock, settings, gateway, notifier):
    import main

    app = main.app
    app.dependency_overrides[get_db] = lambda: db
    app.dependency_overrides[get_settings] = lambda: settings
    app.dependency_overrides[main.get_clock] = lambda: clock
    app.dependency_overrides[main.get_gateway] = lambda: gateway
    app.dependency_overrides[main.get_notifier] = lambda: notifier
    app.dependency_overrides[main.get_session_factory] = lambda: (lambda: db)
    yield TestClient(app)
    app.dependency_overrides = {}
