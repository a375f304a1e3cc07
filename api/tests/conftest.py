"""Pytest configuration and fixtures."""

import os

# Settings are read at import time; configure the test environment first.
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("RATE_LIMIT_STORAGE_URI", "memory://")
os.environ.setdefault("ENCRYPTION_KEY", "MDAwMDAwMDAwMDAwMDAwMDAwMDAwMDAwMDAwMDAwMDA=")
os.environ.setdefault("PROVIDER_WEBHOOK_SECRET", "test-webhook-secret-0123456789")
os.environ.setdefault("PROVIDER_API_KEY", "test_api_key")
os.environ.setdefault("OPERATOR_API_TOKEN", "operator-token")
os.environ.setdefault("WEBHOOK_RATE_LIMIT", "1000/minute")

import uuid  # noqa: E402

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402
from sqlalchemy import create_engine  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from moneytree.core.database import Base, get_db  # noqa: E402
from moneytree.core.deps import get_dispatcher  # noqa: E402
from moneytree.main import app  # noqa: E402
from moneytree.services import connections as connection_store  # noqa: E402
from moneytree.services.dispatcher import SyncDispatcher  # noqa: E402
from tests.fakes import FakeRedis, RecordingTask  # noqa: E402


@pytest.fixture(name="db")
def db_fixture():
    """Create an in-memory SQLite database for testing."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)

    TestingSessionLocal = sessionmaker(
        autocommit=False, autoflush=False, expire_on_commit=False, bind=engine
    )
    session = TestingSessionLocal()

    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def connection(db):
    conn = connection_store.create_connection(
        db,
        user_id=uuid.uuid4(),
        institution_id=uuid.uuid4(),
        credentials={"access_token": "token_abc"},
        provider_enrollment_id="enr_123",
        provider_user_id="usr_123",
    )
    db.commit()
    return conn


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def task():
    return RecordingTask()


@pytest.fixture
def dispatcher(fake_redis, task):
    return SyncDispatcher(fake_redis, task)


@pytest.fixture(name="client")
def client_fixture(db, dispatcher):
    """Create a test client with the test database and an in-memory dispatcher."""

    def override_get_db():
        try:
            yield db
        finally:
            pass

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_dispatcher] = lambda: dispatcher
    client = TestClient(app)
    yield client
    app.dependency_overrides.clear()
