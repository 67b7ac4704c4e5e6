"""
Shared fixtures: in-memory SQLite per test, a fake Shopify webhook registry, signed requests.
"""
import json
import os

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("ENV", "TEST")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.config import settings
from app.database import Base, get_db
from app.models import Integration, IntegrationStatus, IntegrationType, Organization
from app.services.credentials import encrypt_token
from app.services.webhook_signature import compute_webhook_hmac

from tests.fakes import CRON_SECRET, TEST_BASE_URL, TEST_SECRET, TEST_SHOP, FakeWebhookRegistry


@pytest.fixture(autouse=True)
def app_settings(monkeypatch):
    monkeypatch.setattr(settings, "SHOPIFY_WEBHOOK_SECRET", TEST_SECRET)
    monkeypatch.setattr(settings, "SHOPIFY_API_SECRET", "")
    monkeypatch.setattr(settings, "WEBHOOK_BASE_URL", TEST_BASE_URL)
    monkeypatch.setattr(settings, "CRON_SECRET", CRON_SECRET)
    monkeypatch.setattr(settings, "WEBHOOK_MAX_CONSECUTIVE_FAILURES", 3)
    return settings


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    # pysqlite's own transaction handling breaks SAVEPOINT; let SQLAlchemy emit BEGIN
    @event.listens_for(engine, "connect")
    def do_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def do_begin(conn):
        conn.exec_driver_sql("BEGIN")

    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db_session(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def organization(db_session):
    org = Organization(id="org_1", name="Test Org")
    db_session.add(org)
    db_session.commit()
    return org


@pytest.fixture
def integration(db_session, organization):
    integration = Integration(
        id="int_1",
        organization_id=organization.id,
        type=IntegrationType.SHOPIFY,
        status=IntegrationStatus.CONNECTED,
        name="Test Store",
        shop_domain=TEST_SHOP,
        access_token=encrypt_token("shpat_test_token"),
        shop_info={"domain": TEST_SHOP, "email": "owner@example.com"},
    )
    db_session.add(integration)
    db_session.commit()
    return integration


@pytest.fixture
def fake_registry():
    return FakeWebhookRegistry()


@pytest.fixture
def client(db_session):
    from main import app

    def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture
def operator_headers():
    return {"Authorization": f"Bearer {CRON_SECRET}"}


@pytest.fixture
def signed_request():
    """Build (body, headers) for a Shopify webhook signed with the test secret."""

    def _build(payload, topic="orders/create", shop=TEST_SHOP, secret=TEST_SECRET, webhook_id=None):
        body = payload if isinstance(payload, bytes) else json.dumps(payload).encode()
        headers = {
            "Content-Type": "application/json",
            "X-Shopify-Hmac-Sha256": compute_webhook_hmac(body, secret),
            "X-Shopify-Shop-Domain": shop,
            "X-Shopify-Topic": topic,
        }
        if webhook_id:
            headers["X-Shopify-Webhook-Id"] = webhook_id
        return body, headers

    return _build
