import pytest
from fastapi.testclient import TestClient

from app.core.permissions import CUSTOMER, MERCHANT, Principal, get_current_principal
from tests.fakes import CUSTOMER_EMAIL, CUSTOMER_ID, MERCHANT_ID, OTHER_MERCHANT_ID, FakeSupabase


@pytest.fixture
def fake_db(monkeypatch):
    db = FakeSupabase()
    monkeypatch.setattr("database.connection.get_supabase_client", lambda: db)
    return db


@pytest.fixture(autouse=True)
def no_redis(monkeypatch):
    """Rate limiting falls back to ledger counts unless a test opts in to Redis."""
    monkeypatch.setattr("app.services.rate_limit.is_redis_available", lambda: False)


@pytest.fixture
def seeded_db(fake_db):
    fake_db.add_merchant(MERCHANT_ID)
    fake_db.add_merchant(OTHER_MERCHANT_ID)
    fake_db.add_profile()
    fake_db.add_card()
    return fake_db


@pytest.fixture
def merchant():
    return Principal(id=MERCHANT_ID, role=MERCHANT, email="owner@beanthere.example")


@pytest.fixture
def other_merchant():
    return Principal(id=OTHER_MERCHANT_ID, role=MERCHANT, email="owner@elsewhere.example")


@pytest.fixture
def customer():
    return Principal(id=CUSTOMER_ID, role=CUSTOMER, email=CUSTOMER_EMAIL)


@pytest.fixture
def api_app():
    from app.main import create_app

    return create_app()


@pytest.fixture
def client_as(api_app):
    """Return a TestClient authenticated as the given principal."""

    def _client(principal: Principal) -> TestClient:
        api_app.dependency_overrides[get_current_principal] = lambda: principal
        return TestClient(api_app)

    yield _client
    api_app.dependency_overrides.clear()
