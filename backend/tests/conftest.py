"""Pytest configuration and fixtures."""

import os
import pytest
from typing import Generator
from cryptography.fernet import Fernet
from fastapi.testclient import TestClient
from dotenv import load_dotenv

# Load .env file
load_dotenv()

# Set test environment before importing app
os.environ["APP_ENV"] = "testing"
os.environ["ENABLE_CRON_JOBS"] = "false"
os.environ.setdefault("SUPABASE_URL", "http://localhost:54321")
os.environ.setdefault("SUPABASE_SECRET_KEY", "test-secret-key")
os.environ.setdefault("SUPABASE_PUBLISHABLE_KEY", "test-publishable-key")
os.environ.setdefault("SUPABASE_SERVICE_ROLE_KEY", "test-service-role-key")
os.environ.setdefault("ENCRYPTION_KEY", Fernet.generate_key().decode())
os.environ.setdefault("SCHEDULER_TOKEN", "test-scheduler-token")

from fakes import FIXED_NOW, USER_ID, InMemoryDatabase  # noqa: E402


@pytest.fixture(autouse=True)
def clear_settings_cache():
    """Settings are cached; let tests that patch the environment see fresh values."""
    from app.config import get_settings

    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def db() -> InMemoryDatabase:
    """Empty in-memory database with one user."""
    database = InMemoryDatabase()
    database.create_user({"id": USER_ID, "email": "owner@example.com"})
    return database


@pytest.fixture
def frozen_db() -> InMemoryDatabase:
    """In-memory database whose clock is pinned to FIXED_NOW."""
    clock = {"now": FIXED_NOW}
    database = InMemoryDatabase(clock=lambda: clock["now"])
    database.clock_state = clock
    database.create_user({"id": USER_ID, "email": "owner@example.com"})
    return database


def _encrypt(value: str) -> str:
    from app.config import get_settings
    from app.utils.encryption import encrypt_token

    encrypted = encrypt_token(value)
    # Fixtures run before the test body patches the environment; don't leave
    # a settings instance cached from fixture setup.
    get_settings.cache_clear()
    return encrypted


@pytest.fixture
def stripe_connection(db) -> dict:
    return db.add_connection("stripe", {
        "id": "conn-stripe",
        "user_id": USER_ID,
        "account_name": "Stripe Main",
        "environment": "live",
        "currency": "USD",
        "api_key": _encrypt("sk_test_123"),
        "stripe_account_id": "acct_123",
        "last_synced_at": None,
    })


@pytest.fixture
def paypal_connection(db) -> dict:
    return db.add_connection("paypal", {
        "id": "conn-paypal",
        "user_id": USER_ID,
        "account_name": "PayPal Business",
        "environment": "sandbox",
        "currency": "USD",
        "client_id": "client-abc",
        "client_secret": _encrypt("secret-abc"),
        "merchant_id": "MERCHANT1",
        "last_synced_at": None,
    })


@pytest.fixture
def wise_connection(db) -> dict:
    return db.add_connection("wise", {
        "id": "conn-wise",
        "user_id": USER_ID,
        "account_name": "Wise EUR",
        "environment": "live",
        "currency": "EUR",
        "api_token": _encrypt("wise-token"),
        "profile_id": "12345",
        "balance_id": "67890",
        "last_synced_at": None,
    })


@pytest.fixture(scope="session")
def app():
    """Create test application."""
    from app.main import app
    return app


@pytest.fixture
def client(app, db) -> Generator:
    """Test client wired to the in-memory database and a fixed user."""
    from app.dependencies import get_admin_database, get_current_user

    app.dependency_overrides[get_admin_database] = lambda: db
    app.dependency_overrides[get_current_user] = lambda: {"id": USER_ID, "email": "owner@example.com"}
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


@pytest.fixture
def auth_headers():
    """Any bearer token passes; get_current_user is overridden."""
    return {"Authorization": "Bearer test-user-token"}


@pytest.fixture
def scheduler_headers():
    return {"Authorization": f"Bearer {os.environ['SCHEDULER_TOKEN']}"}
