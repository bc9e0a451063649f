import hashlib
import hmac
import json
import os
import time
from datetime import datetime, timezone

# Settings are read at import time; configure them before importing clinicdesk.
os.environ.setdefault("DATABASE_URL", "sqlite+pysqlite:///:memory:")
os.environ.setdefault("JWT_SECRET", "test_jwt_secret")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test")
os.environ.setdefault("INTERNAL_API_TOKEN", "internal-test-token")

import pytest
import stripe
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from clinicdesk.core import config as app_config
from clinicdesk.core.base import Base
from clinicdesk.core.database import get_db
from clinicdesk.dependencies.billing import get_billing_client
from clinicdesk.models import Clinic, Profile, SignupIntent, SignupIntentStatus
from clinicdesk.services.billing import BillingClient

PERIOD_END = 1_893_456_000  # 2030-01-01T00:00:00Z


class FakeStripe:
    """
    Stand-in for the ``stripe`` module: in-memory subscriptions, real webhook
    signature verification.
    """

    Webhook = stripe.Webhook

    def __init__(self):
        self.subscriptions: dict[str, dict] = {}
        self.retrieved: list[str] = []
        self.canceled: list[str] = []
        self.fail_with: Exception | None = None

        fake = self

        class _SubscriptionAPI:
            def retrieve(self, subscription_id):
                fake.retrieved.append(subscription_id)
                if fake.fail_with is not None:
                    raise fake.fail_with
                if subscription_id not in fake.subscriptions:
                    raise RuntimeError(f"No such subscription: {subscription_id}")
                return dict(fake.subscriptions[subscription_id])

            def cancel(self, subscription_id):
                fake.canceled.append(subscription_id)
                fake.subscriptions[subscription_id]["status"] = "canceled"
                return dict(fake.subscriptions[subscription_id])

            def list(self, customer, status="all", limit=100):  # noqa: A002
                return {"data": [s for s in fake.subscriptions.values() if s.get("customer") == customer]}

        self.Subscription = _SubscriptionAPI()

    def add_subscription(
        self,
        subscription_id: str,
        *,
        customer: str,
        status: str = "active",
        current_period_end: int | None = PERIOD_END,
        metadata: dict | None = None,
    ) -> dict:
        obj = {
            "id": subscription_id,
            "object": "subscription",
            "customer": customer,
            "status": status,
            "current_period_end": current_period_end,
            "metadata": metadata or {},
        }
        self.subscriptions[subscription_id] = obj
        return obj


def sign_payload(payload: bytes, secret: str = "whsec_test") -> str:
    timestamp = int(time.time())
    signed = f"{timestamp}.{payload.decode('utf-8')}".encode("utf-8")
    signature = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


def checkout_session(
    session_id: str = "cs_test_1",
    *,
    customer: str = "cus_1",
    subscription: str | None = "sub_1",
    **metadata,
) -> dict:
    return {
        "id": session_id,
        "object": "checkout.session",
        "customer": customer,
        "subscription": subscription,
        "customer_email": "owner@clinic.test",
        "customer_details": {"name": "Dra. Ana", "email": "owner@clinic.test"},
        "payment_status": "paid",
        "status": "complete",
        "metadata": metadata,
    }


def stripe_event(event_id: str, event_type: str, obj: dict) -> dict:
    return {"id": event_id, "object": "event", "type": event_type, "data": {"object": obj}}


@pytest.fixture(scope="session")
def db_engine():
    # In-memory SQLite for fast, isolated tests.
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    return engine


@pytest.fixture()
def db_session(db_engine):
    # The in-memory DB persists across tests with StaticPool; reset schema per test.
    Base.metadata.drop_all(bind=db_engine)
    Base.metadata.create_all(bind=db_engine)

    TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=db_engine)
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture(autouse=True)
def _reset_mutable_settings():
    """Tests tweak the process-global settings object; restore it afterwards."""
    keys = [
        "STRIPE_WEBHOOK_SECRET",
        "INTERNAL_API_TOKEN",
        "PROVISIONING_DEFAULT_PLAN",
        "WEBHOOK_PROCESSING_LEASE_SECONDS",
    ]
    original = {k: getattr(app_config.settings, k) for k in keys}
    try:
        yield
    finally:
        for k, v in original.items():
            setattr(app_config.settings, k, v)


@pytest.fixture()
def fake_stripe():
    return FakeStripe()


@pytest.fixture()
def billing(fake_stripe):
    return BillingClient(stripe_client=fake_stripe)


@pytest.fixture()
def app(db_session, billing):
    import clinicdesk.main as main

    fastapi_app = main.app

    def override_get_db():
        yield db_session

    fastapi_app.dependency_overrides[get_db] = override_get_db
    fastapi_app.dependency_overrides[get_billing_client] = lambda: billing
    yield fastapi_app
    fastapi_app.dependency_overrides.clear()


@pytest.fixture()
def client(app):
    with TestClient(app) as c:
        yield c


@pytest.fixture()
def signup_intent(db_session):
    """A verified signup intent waiting for checkout."""

    def _make(**overrides) -> SignupIntent:
        values = {
            "email": "owner@clinic.test",
            "user_id": "user_owner",
            "clinic_name": "Clinica Sorriso",
            "admin_name": "Ana Souza",
            "whatsapp_number": "+5511999990000",
            "phone_e164": "+5511999990000",
            "phone_verified_at": datetime(2026, 9, 1, tzinfo=timezone.utc),
            "cpf_hash": "cpfhash123",
            "plan": "monthly",
            "status": SignupIntentStatus.CHECKOUT_STARTED.value,
        }
        values.update(overrides)
        intent = SignupIntent(**values)
        db_session.add(intent)
        db_session.commit()
        db_session.refresh(intent)
        return intent

    return _make


@pytest.fixture()
def clinic_admin(db_session):
    """An existing clinic with its admin profile."""

    def _make(user_id: str = "user_admin", *, role: str = "admin", customer_id: str | None = None) -> Clinic:
        clinic = Clinic(name=f"Clinic of {user_id}", owner_user_id=user_id)
        db_session.add(clinic)
        db_session.flush()
        db_session.add(
            Profile(
                user_id=user_id,
                clinic_id=clinic.id,
                full_name=user_id,
                role=role,
                stripe_customer_id=customer_id,
            )
        )
        db_session.commit()
        db_session.refresh(clinic)
        return clinic

    return _make


def to_json_bytes(event: dict) -> bytes:
    return json.dumps(event).encode("utf-8")
