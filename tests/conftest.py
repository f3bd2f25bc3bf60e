from datetime import timedelta

import pytest
from fastapi.testclient import TestClient

import models  # noqa: F401  registers the tables on Base.metadata
from app import app, get_services, Services
from config import Settings
from database import Store
from models import utcnow


@pytest.fixture
def settings(tmp_path):
    return Settings(
        database_url=f"sqlite:///{tmp_path / 'ledger.db'}",
        base_url="http://testserver",
        session_secret="test-secret",
        session_ttl_seconds=600,
        store_timeout_seconds=5.0,
        store_retry_attempts=10,
        store_retry_backoff=0.01,
        log_level="DEBUG",
    )


@pytest.fixture
def services(settings):
    store = Store(settings)
    store.create_all()
    svc = Services(settings, store=store)
    yield svc
    store.dispose()


@pytest.fixture
def identity(services):
    return services.identity


@pytest.fixture
def farms(services):
    return services.farms


@pytest.fixture
def ledger(services):
    return services.ledger


@pytest.fixture
def messages(services):
    return services.messages


@pytest.fixture
def farmer(identity):
    return identity.register_user("farmer@coffee.ug", "Farmer", "pw-farmer-1", "farmer")


@pytest.fixture
def buyer(identity):
    return identity.register_user("buyer@coffee.ug", "Buyer", "pw-buyer-1", "buyer")


@pytest.fixture
def open_listing(ledger, farmer):
    """Listing(quantity=10, price=5): value 50, already published."""
    listing = ledger.create_listing(farmer.id, "Arabica AA", 10, 5, "washed")
    return ledger.publish_listing(listing.id)


@pytest.fixture
def paid_transaction(ledger, open_listing, buyer):
    txn = ledger.place_transaction(open_listing.id, 20, buyer_id=buyer.id)
    ledger.confirm_transaction(txn.id)
    return ledger.mark_paid(txn.id)


@pytest.fixture
def eta():
    return utcnow() + timedelta(days=3)


@pytest.fixture
def client(services):
    app.dependency_overrides[get_services] = lambda: services
    yield TestClient(app)
    app.dependency_overrides.clear()
