"""Pytest configuration for shopsync tests

WHAT: Provides shared fixtures for HTTP endpoint, worker and service tests
WHY: Ensures consistent test setup, database isolation, and fake Redis/Shopify
REFERENCES:
    - shopsync/main.py: FastAPI application
    - shopsync/database.py: Database configuration
    - shopsync/workers/arq_enqueue.py: Queue helpers replaced by FakeArqPool
"""

import os
import sys
from pathlib import Path
from typing import Generator, List, Optional
from uuid import uuid4

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

# Ensure repo root is in path
REPO_ROOT = Path(__file__).resolve().parents[2]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from shopsync.tests.fakes import SHOP_DOMAIN, WEBHOOK_SECRET, FakeArqPool  # noqa: E402

# Set test environment
os.environ.setdefault("JWT_SECRET", "test-jwt-secret")
# Must be URL-safe base64-encoded 32-byte string (shopsync.security validates at import time)
os.environ.setdefault("TOKEN_ENCRYPTION_KEY", "MDAwMDAwMDAwMDAwMDAwMDAwMDAwMDAwMDAwMDAwMDA=")
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379")
os.environ["SHOPIFY_WEBHOOK_SECRET"] = WEBHOOK_SECRET
os.environ.setdefault("NOTIFICATION_RELAY_ENABLED", "false")
os.environ.setdefault("RECONCILE_BRAND_DELAY_SECONDS", "0")


# ============================================================================
# Database Fixtures
# ============================================================================

@pytest.fixture
def test_db_engine():
    """Create in-memory test database engine shared across sessions."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    from shopsync.database import Base
    Base.metadata.create_all(bind=engine)

    yield engine

    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def session_factory(test_db_engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=test_db_engine)


@pytest.fixture
def test_db_session(session_factory) -> Generator[Session, None, None]:
    """Create test database session with rollback."""
    session = session_factory()
    yield session
    session.rollback()
    session.close()


@pytest.fixture
def worker_db(monkeypatch, session_factory):
    """Point the ARQ worker at the test database."""
    from shopsync.workers import arq_worker

    monkeypatch.setattr(arq_worker, "SessionLocal", session_factory)
    return session_factory


# ============================================================================
# Queue / Shopify Fixtures
# ============================================================================

@pytest.fixture
def fake_pool(monkeypatch):
    """Replace the shared ARQ pool used by API handlers."""
    from shopsync.workers import arq_enqueue

    pool = FakeArqPool()
    monkeypatch.setattr(arq_enqueue, "_arq_pool", pool)
    return pool


@pytest.fixture
def order_factory():
    """Build Shopify order JSON."""

    def make_order(
        order_id: int = 1001,
        created_at: str = "2024-03-01T10:15:00+05:30",
        total_price: str = "100.00",
        refunds: Optional[List[dict]] = None,
        **extra,
    ) -> dict:
        order = {
            "id": order_id,
            "created_at": created_at,
            "total_price": total_price,
            "currency": "INR",
            "financial_status": "paid",
            "cancelled_at": None,
            "refunds": refunds or [],
        }
        order.update(extra)
        return order

    return make_order


# ============================================================================
# Model Fixtures
# ============================================================================

@pytest.fixture
def test_brand(test_db_session):
    """Create a Shopify-connected brand."""
    from shopsync.models import Brand
    from shopsync.security import encrypt_secret

    brand = Brand(
        id=uuid4(),
        name="Acme Store",
        shopify_domain=SHOP_DOMAIN,
        shopify_access_token_enc=encrypt_secret("shpat_test", context=SHOP_DOMAIN),
        timezone="Asia/Kolkata",
    )
    test_db_session.add(brand)
    test_db_session.commit()
    test_db_session.refresh(brand)
    return brand


@pytest.fixture
def test_user(test_db_session, test_brand):
    """Create a password user who is a member of test_brand."""
    from shopsync.models import LoginMethodEnum, User

    user = User(
        id=uuid4(),
        username="owner",
        email="owner@example.com",
        method=LoginMethodEnum.password,
        brands=[test_brand],
    )
    test_db_session.add(user)
    test_db_session.commit()
    test_db_session.refresh(user)
    return user


# ============================================================================
# Application & Client Fixtures
# ============================================================================

@pytest.fixture
def app(test_db_session):
    """Create FastAPI test application."""
    from shopsync.main import create_app
    from shopsync.database import get_db

    test_app = create_app()

    def override_get_db():
        yield test_db_session

    test_app.dependency_overrides[get_db] = override_get_db
    return test_app


@pytest.fixture
def client(app) -> TestClient:
    """Create TestClient for HTTP testing."""
    return TestClient(app)


@pytest.fixture
def auth_token(test_user):
    from shopsync.security import create_access_token

    return create_access_token(test_user.email)


@pytest.fixture
def auth_client(client, auth_token) -> TestClient:
    """TestClient carrying the session cookie of test_user."""
    client.cookies.set("access_token", auth_token)
    return client
