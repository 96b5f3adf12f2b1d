"""Pytest configuration and fixtures."""

import itertools
import os
from collections.abc import Sequence

import httpx
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from src.database import Base, get_db
from src.main import app
from src.models.enums import DeliveryError
from src.models.user import User
from src.services.dispatch import DispatchEngine
from src.services.push_gateway import Outcome, PushGateway, PushMessage, get_push_gateway
from src.services.token_registry import TokenRegistry


class AuthHeaders(dict):
    """Dict subclass that also stores user_id and email."""

    def __init__(self, *args, user_id: int | None = None, email: str | None = None, **kwargs):
        super().__init__(*args, **kwargs)
        self.user_id = user_id
        self.email = email


class FakePushGateway(PushGateway):
    """Gateway double that records every chunk and answers with scripted outcomes.

    Addresses are accepted unless a failure reason was set with ``fail``.
    Chunks whose index is in ``failing_chunks`` raise a transport error.
    """

    def __init__(self, max_batch_size: int = 100):
        self.max_batch_size = max_batch_size
        self.chunks: list[list[PushMessage]] = []
        self.reasons: dict[str, DeliveryError] = {}
        self.failing_chunks: set[int] = set()
        self.raise_on_submit: Exception | None = None

    def fail(self, address: str, reason: DeliveryError) -> None:
        self.reasons[address] = reason

    def submit_chunk(self, messages: Sequence[PushMessage]) -> list[Outcome]:
        index = len(self.chunks)
        self.chunks.append(list(messages))
        if self.raise_on_submit is not None:
            raise self.raise_on_submit
        if index in self.failing_chunks:
            raise httpx.ConnectError("gateway unreachable")
        return [
            Outcome.rejected(message.to, self.reasons[message.to])
            if message.to in self.reasons
            else Outcome.accepted(message.to, f"receipt-{message.to}")
            for message in messages
        ]

    @property
    def messages(self) -> list[PushMessage]:
        return [message for chunk in self.chunks for message in chunk]

    @property
    def call_count(self) -> int:
        return len(self.chunks)


# Use test database - PostgreSQL in Docker, SQLite locally
if os.getenv("DATABASE_URL"):
    # Running in Docker - use PostgreSQL test database
    SQLALCHEMY_DATABASE_URL = os.getenv("DATABASE_URL").replace(
        "/push_dispatch", "/push_dispatch_test"
    )
else:
    # Running locally - use SQLite
    SQLALCHEMY_DATABASE_URL = "sqlite:///./test.db"

connect_args = {"check_same_thread": False} if "sqlite" in SQLALCHEMY_DATABASE_URL else {}
engine = create_engine(SQLALCHEMY_DATABASE_URL, connect_args=connect_args)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture(scope="session", autouse=True)
def setup_test_database():
    """Create test database schema once at the start of the test session."""
    if "postgresql" in SQLALCHEMY_DATABASE_URL:
        # For PostgreSQL, create the test database
        from sqlalchemy_utils import create_database, database_exists

        # Create test database if it doesn't exist
        if not database_exists(SQLALCHEMY_DATABASE_URL):
            create_database(SQLALCHEMY_DATABASE_URL)

    Base.metadata.create_all(bind=engine)
    yield
    # Don't drop database - just leave it for next run (each test cleans up after itself)


@pytest.fixture(scope="function", autouse=True)
def db():
    """Create a fresh database session for each test with cleanup."""
    session = TestingSessionLocal()

    yield session

    # Clean up all data after test
    session.rollback()
    for table in reversed(Base.metadata.sorted_tables):
        session.execute(table.delete())
    session.commit()
    session.close()


@pytest.fixture
def session_factory():
    """Session factory bound to the test database, for code that opens its own sessions."""
    return TestingSessionLocal


@pytest.fixture
def make_gateway():
    """Factory for scriptable gateways with a custom chunk size."""
    return FakePushGateway


@pytest.fixture
def gateway():
    """Scriptable push gateway."""
    return FakePushGateway()


@pytest.fixture
def registry(db):
    """Token registry bound to the test session."""
    return TokenRegistry(db)


@pytest.fixture
def dispatch_engine(registry, gateway):
    """Dispatch engine wired to the test registry and fake gateway."""
    return DispatchEngine(registry, gateway)


@pytest.fixture
def add_token(registry):
    """Factory that registers a token with a fresh, valid address."""
    counter = itertools.count(1)

    def _add(user_id: str = "user-1", device_type: str = "ios", address: str | None = None, **info):
        address = address or f"ExponentPushToken[device-{next(counter)}]"
        return registry.upsert_token(user_id, address, device_type, info)

    return _add


@pytest.fixture(scope="function")
def client(db, gateway):
    """Create a test client with database and gateway overrides."""

    def override_get_db():
        try:
            yield db
        finally:
            pass

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_push_gateway] = lambda: gateway
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def _register(client, email: str) -> AuthHeaders:
    response = client.post(
        "/api/v1/auth/register",
        json={"email": email, "password": "testpass123", "name": "Test User"},
    )
    assert response.status_code == 201
    data = response.json()
    token = data["access_token"]
    user_id = data["user"]["id"]

    return AuthHeaders({"Authorization": f"Bearer {token}"}, user_id=user_id, email=email)


@pytest.fixture
def auth_headers(client):
    """Create a user and return auth headers with user info."""
    return _register(client, "test@example.com")


@pytest.fixture
def admin_headers(client, db):
    """Create an admin user and return auth headers with user info."""
    headers = _register(client, "admin@example.com")
    db.query(User).filter(User.id == headers.user_id).update({User.is_admin: True})
    db.commit()
    return headers
