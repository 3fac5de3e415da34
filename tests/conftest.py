from __future__ import annotations

from pathlib import Path

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, delete
from sqlalchemy.orm import sessionmaker

import settlement.persistence.pg as pg
from settlement.core.config import get_settings
from settlement.integrations.mailer import LogNotifier
from settlement.integrations.payments import FakePaymentGateway
from settlement.ledger.store import SqlDocumentStore
from settlement.persistence.models import Base, DocumentModel
from settlement.services import SettlementServices


@pytest.fixture(scope="session")
def test_db_path(tmp_path_factory: pytest.TempPathFactory) -> Path:
    return tmp_path_factory.mktemp("db") / "test.sqlite"


@pytest.fixture(scope="session", autouse=True)
def configure_test_engine(test_db_path: Path):
    settings = get_settings()
    settings.document_backend = "sql"
    settings.payment_backend = "fake"
    settings.notification_backend = "log"

    engine = create_engine(
        f"sqlite+pysqlite:///{test_db_path}",
        future=True,
        connect_args={"check_same_thread": False},
    )
    TestSessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)

    pg.engine = engine
    pg.SessionLocal = TestSessionLocal

    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def clean_documents(configure_test_engine):
    with pg.session_scope() as s:
        s.execute(delete(DocumentModel))
    yield


@pytest.fixture()
def store() -> SqlDocumentStore:
    return SqlDocumentStore()


@pytest.fixture()
def gateway() -> FakePaymentGateway:
    return FakePaymentGateway()


@pytest.fixture()
def notifier() -> LogNotifier:
    return LogNotifier()


@pytest.fixture()
def services(store, gateway, notifier) -> SettlementServices:
    return SettlementServices.build(store=store, gateway=gateway, notifier=notifier, settings=get_settings())


@pytest.fixture()
def client(services):
    from settlement.api.utils import request_services
    from settlement.main import app

    app.dependency_overrides[request_services] = lambda: services
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


@pytest.fixture()
def auth_headers():
    settings = get_settings()
    return {
        "admin": {"X-API-Key": settings.admin_api_key},
        "support": {"X-API-Key": settings.support_api_key},
        "system": {"X-API-Key": settings.system_api_key},
    }


@pytest.fixture()
def seed(store):
    """Catalog with one artist of each payout state, a merch supplier and a vinyl seller."""
    store.set(
        "artists",
        "artist-connected",
        {
            "artistName": "Connected Artist",
            "email": "connected@example.com",
            "stripeConnectId": "acct_connected",
            "stripeConnectStatus": "active",
            "totalEarnings": 0,
            "pendingBalance": 0,
        },
    )
    store.set(
        "artists",
        "artist-unconnected",
        {"artistName": "Unconnected Artist", "email": "unconnected@example.com", "totalEarnings": 0, "pendingBalance": 0},
    )
    store.set(
        "artists",
        "artist-paypal",
        {
            "artistName": "Batch Artist",
            "email": "batch@example.com",
            "paypalEmail": "batch-payouts@example.com",
            "payoutMethod": "paypal",
            "totalEarnings": 0,
            "pendingBalance": 0,
        },
    )
    store.set(
        "merch-suppliers",
        "supplier-1",
        {
            "name": "Print Shop",
            "email": "supplier@example.com",
            "stripeConnectId": "acct_supplier",
            "stripeConnectStatus": "active",
            "totalEarnings": 0,
            "pendingBalance": 0,
        },
    )
    store.set(
        "users",
        "seller-1",
        {
            "displayName": "Crate Digger",
            "email": "seller@example.com",
            "stripeConnectId": "acct_seller",
            "stripeConnectStatus": "active",
            "totalEarnings": 0,
            "pendingBalance": 0,
            "orderCount": 0,
        },
    )
    store.set("users", "buyer-1", {"email": "buyer@example.com", "orderCount": 2})
    store.set(
        "releases",
        "release-connected",
        {
            "artistId": "artist-connected",
            "artistName": "Connected Artist",
            "releaseName": "First Light",
            "coverArtUrl": "https://cdn.example.com/first-light.jpg",
            "vinylStock": 10,
            "vinylSold": 0,
            "tracks": [
                {"id": "t1", "trackName": "Opening", "mp3Url": "https://cdn.example.com/t1.mp3"},
                {"id": "t2", "trackName": "Closing", "mp3Url": "https://cdn.example.com/t2.mp3"},
            ],
        },
    )
    store.set(
        "releases",
        "release-unconnected",
        {"artistId": "artist-unconnected", "releaseName": "Quiet Room", "artwork": {"cover": "https://cdn.example.com/q.jpg"}},
    )
    store.set("releases", "release-paypal", {"artistId": "artist-paypal", "releaseName": "Night Bus"})
    store.set(
        "merch",
        "tee-1",
        {
            "supplierId": "supplier-1",
            "sku": "TEE-1",
            "variantStock": {
                "m_black": {"stock": 3, "sold": 0},
                "l_black": {"stock": 0, "sold": 5},
            },
        },
    )
    store.set("vinylListings", "listing-1", {"sellerId": "seller-1", "status": "active", "price": 25.0})
    return store


@pytest.fixture()
def customer() -> dict:
    return {"email": "buyer@example.com", "firstName": "Sam", "lastName": "Buyer", "userId": "buyer-1"}
