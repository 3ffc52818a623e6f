import json
import os
import sys
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import UTC, datetime, timedelta
from types import ModuleType

import pytest
from fastapi.testclient import TestClient
from jose import jwt
from sqlalchemy import DateTime, create_engine
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, sessionmaker
from sqlalchemy.pool import StaticPool

# Create a test engine BEFORE any app imports
_test_engine = create_engine(
    "sqlite+pysqlite:///:memory:",
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)


class TestBase(DeclarativeBase):
    pass


_TestSessionLocal = sessionmaker(bind=_test_engine, autoflush=False, autocommit=False)


class TimestampMixin:
    """Mixin that adds created_at / updated_at columns to any model."""

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(UTC),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(UTC),
        onupdate=lambda: datetime.now(UTC),
    )


@contextmanager
def _session_scope() -> Iterator[Session]:
    session = _TestSessionLocal()
    try:
        yield session
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


mock_db_module = ModuleType("app.db")
mock_db_module.Base = TestBase
mock_db_module.TimestampMixin = TimestampMixin
mock_db_module.SessionLocal = _TestSessionLocal
mock_db_module.get_engine = lambda: _test_engine
mock_db_module.session_scope = _session_scope

# Also mock app.config to prevent .env loading
mock_config_module = ModuleType("app.config")

PAYMENT_SECRET = "whsec_test_payments"
IDENTITY_SECRET = "whsec_test_identity"
ADMIN_SUBJECT = "user_admin"


class MockSettings:
    database_url = "sqlite+pysqlite:///:memory:"
    redis_url = "redis://localhost:6379/0"
    db_pool_size = 5
    db_max_overflow = 10
    db_pool_timeout = 30
    db_pool_recycle = 1800
    polar_access_token = "polar_test_token"
    polar_webhook_secret = PAYMENT_SECRET
    polar_server = "sandbox"
    polar_timeout_seconds = 5.0
    polar_max_retries = 3
    polar_backoff_seconds = 0.0
    identity_webhook_secret = IDENTITY_SECRET
    admin_subjects = ADMIN_SUBJECT
    webhook_processing_timeout_seconds = 5.0
    circuit_breaker_threshold = 3
    circuit_breaker_cooldown_seconds = 300
    sync_batch_size = 100
    retention_days = 90
    job_lock_ttl_seconds = 900
    usage_failure_policy = "mark_processed"
    usage_max_attempts = 3
    usage_batch_size = 100
    alert_failed_webhooks_threshold = 5
    alert_email = ""
    smtp_host = "smtp.test"
    smtp_port = 587
    smtp_username = ""
    smtp_password = ""
    smtp_use_tls = True
    smtp_use_ssl = False
    smtp_from_email = "Billing Sync <billing@example.com>"
    smtp_timeout_seconds = 5.0
    cors_origins = ""


mock_config_module.settings = MockSettings()
mock_config_module.Settings = MockSettings
mock_config_module.validate_settings = lambda s: []
mock_config_module.POLAR_SERVERS = {
    "sandbox": "https://sandbox-api.polar.sh",
    "production": "https://api.polar.sh",
}
mock_config_module.USAGE_FAILURE_POLICIES = ("mark_processed", "retry")

# Insert mocks before any app imports
sys.modules["app.config"] = mock_config_module
sys.modules["app.db"] = mock_db_module

os.environ["JWT_SECRET"] = "test-secret"
os.environ["JWT_ALGORITHM"] = "HS256"

# Now import the models - they'll use our mocked db module
from app.models.billing import (  # noqa: E402
    Customer,
    Subscription,
    SubscriptionStatus,
)
from app.models.user import User  # noqa: E402

TestBase.metadata.create_all(_test_engine)

Base = TestBase


@pytest.fixture(scope="session")
def engine():
    return _test_engine


@pytest.fixture(autouse=True)
def _clean_tables(engine):
    yield
    with engine.begin() as conn:
        for table in reversed(TestBase.metadata.sorted_tables):
            conn.execute(table.delete())


@pytest.fixture()
def db_session(engine):
    """Create a database session for testing.

    Uses the same connection as the StaticPool engine to ensure
    all operations see the same data.
    """
    Session = sessionmaker(bind=engine, autoflush=False, autocommit=False)
    session = Session()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def settings():
    return mock_config_module.settings


# ============ FastAPI Test Client Fixtures ============


@pytest.fixture()
def client(db_session):
    """Create a test client with database dependency override."""
    from app.api.deps import get_db as api_get_db
    from app.main import app

    def override_get_db():
        yield db_session

    app.dependency_overrides[api_get_db] = override_get_db

    with TestClient(app, raise_server_exceptions=False) as test_client:
        yield test_client

    app.dependency_overrides.clear()


def _create_access_token(subject: str) -> str:
    """Create a JWT access token for testing."""
    secret = os.getenv("JWT_SECRET", "test-secret")
    algorithm = os.getenv("JWT_ALGORITHM", "HS256")
    now = datetime.now(UTC)
    payload = {
        "sub": subject,
        "exp": int((now + timedelta(minutes=15)).timestamp()),
        "iat": int(now.timestamp()),
    }
    return jwt.encode(payload, secret, algorithm=algorithm)


@pytest.fixture()
def user(db_session):
    user = User(
        external_id=f"user_{uuid.uuid4().hex[:12]}",
        email=f"test-{uuid.uuid4().hex[:8]}@example.com",
        name="Test User",
        is_active=True,
    )
    db_session.add(user)
    db_session.commit()
    db_session.refresh(user)
    return user


@pytest.fixture()
def auth_headers(user):
    return {"Authorization": f"Bearer {_create_access_token(user.external_id)}"}


@pytest.fixture()
def admin_headers():
    return {"Authorization": f"Bearer {_create_access_token(ADMIN_SUBJECT)}"}


# ============ Webhook helpers ============


def signed_request(
    payload: dict | bytes,
    secret: str = PAYMENT_SECRET,
    header: str = "webhook-signature",
):
    """Serialized body plus a header carrying its HMAC-SHA256 signature."""
    from app.services.billing.webhooks import compute_signature

    body = payload if isinstance(payload, bytes) else json.dumps(payload).encode("utf-8")
    return body, {header: compute_signature(secret, body), "Content-Type": "application/json"}


@pytest.fixture()
def post_payment_webhook(client):
    def _post(payload: dict):
        body, headers = signed_request(payload)
        return client.post("/webhook/payments", content=body, headers=headers)

    return _post


@pytest.fixture()
def post_identity_webhook(client):
    def _post(payload: dict):
        body, headers = signed_request(
            payload, secret=IDENTITY_SECRET, header="x-identity-signature"
        )
        return client.post("/webhook/identity", content=body, headers=headers)

    return _post


# ============ Billing Fixtures ============


@pytest.fixture()
def billing_customer(db_session, user):
    customer = Customer(
        user_id=user.id,
        email=user.email,
        external_id=f"cus_{uuid.uuid4().hex[:10]}",
        is_active=True,
    )
    db_session.add(customer)
    db_session.commit()
    db_session.refresh(customer)
    return customer


@pytest.fixture()
def billing_subscription(db_session, billing_customer):
    now = datetime.now(UTC)
    sub = Subscription(
        customer_id=billing_customer.id,
        external_id=f"sub_{uuid.uuid4().hex[:10]}",
        product_external_id="prod_premium",
        status=SubscriptionStatus.active,
        current_period_start=now - timedelta(days=5),
        current_period_end=now + timedelta(days=25),
        cancel_at_period_end=False,
        metadata_={"product_slug": "premium"},
    )
    db_session.add(sub)
    db_session.commit()
    db_session.refresh(sub)
    return sub


@pytest.fixture()
def sign_payload():
    return signed_request
