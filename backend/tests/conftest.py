"""Shared fixtures: in-memory database, injected settings and a controllable clock."""
import hashlib
import hmac
import json
import os
import time
from datetime import timedelta

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

# Must be set before the app modules are imported
os.environ["RATE_LIMIT_DISABLED"] = "1"
os.environ["BCRYPT_ROUNDS"] = "4"
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("SESSION_SWEEP_INTERVAL_SECONDS", "0")

from app.core.auth import get_clock
from app.core.clock import utc_now
from app.core.config import Settings, get_settings
from app.core.security import get_password_hash
from app.database import Base, get_db
from app.main import app
from app.models.user import User

SQLALCHEMY_DATABASE_URL = "sqlite:///:memory:"

engine = create_engine(
    SQLALCHEMY_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

WEBHOOK_SECRET = "whsec_test_secret"

TEST_SETTINGS = Settings(
    environment="test",
    jwt_secret="test-jwt-secret",
    bcrypt_rounds=4,
    stripe_secret_key=None,
    stripe_webhook_secret=None,
    session_sweep_interval_seconds=0,
)


class FakeClock:
    """Callable clock that tests move forward explicitly."""

    def __init__(self):
        self.now = utc_now()

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)


def override_get_db():
    """Override database dependency for tests."""
    try:
        db = TestingSessionLocal()
        yield db
    finally:
        db.close()


@pytest.fixture
def settings():
    return TEST_SETTINGS


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def db_session():
    """Fresh schema per test and a session for direct assertions."""
    Base.metadata.create_all(bind=engine)
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def client(db_session, settings, clock):
    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_settings] = lambda: settings
    app.dependency_overrides[get_clock] = lambda: clock
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def make_user(db_session):
    """Factory creating users directly in the database."""
    def _make_user(email="a@x.com", stripe_customer_id=None, password="secret123", name="Ana"):
        user = User(
            email=email,
            hashed_password=get_password_hash(password),
            name=name,
            company_name="Acme",
            stripe_customer_id=stripe_customer_id,
        )
        db_session.add(user)
        db_session.commit()
        db_session.refresh(user)
        return user
    return _make_user


@pytest.fixture
def registered(client):
    """Register a@x.com through the API and return the response body."""
    response = client.post(
        "/api/auth/register",
        json={"email": "a@x.com", "password": "secret123", "name": "Ana", "company_name": "Acme"},
    )
    assert response.status_code == 201
    return response.json()


@pytest.fixture
def auth_headers(registered):
    return {"Authorization": f"Bearer {registered['token']}"}


def make_event(event_type, obj, event_id=None, created=None):
    """Build a Stripe-style event envelope."""
    event = {"object": "event", "type": event_type, "data": {"object": obj}}
    if event_id is not None:
        event["id"] = event_id
    if created is not None:
        event["created"] = created
    return event


def subscription_object(
    subscription_id="sub_1",
    customer="cus_1",
    status="trialing",
    plan_type="pro",
    cancel_at_period_end=False,
    period_start=1760000000,
    period_end=1762592000,
    trial_end=None,
):
    return {
        "id": subscription_id,
        "object": "subscription",
        "customer": customer,
        "status": status,
        "metadata": {"plan_type": plan_type},
        "current_period_start": period_start,
        "current_period_end": period_end,
        "cancel_at_period_end": cancel_at_period_end,
        "trial_end": trial_end,
    }


def stripe_signature(payload: str, secret: str = WEBHOOK_SECRET, timestamp: int | None = None) -> str:
    """Compute a Stripe-Signature header value for ``payload``."""
    timestamp = timestamp or int(time.time())
    signed_payload = f"{timestamp}.{payload}".encode("utf-8")
    signature = hmac.new(secret.encode("utf-8"), signed_payload, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


def event_payload(event) -> str:
    return json.dumps(event, separators=(",", ":"))
