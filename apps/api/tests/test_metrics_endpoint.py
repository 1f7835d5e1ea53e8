from __future__ import annotations

from collections.abc import Generator

import pytest
from fastapi import Request
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from crm_api.core.auth import AuthUser, get_current_user as auth_get_current_user
from crm_api.core.config import get_settings
from crm_api.core.database import Base, get_db
from crm_api.crm.api import get_crm_auth_context
from crm_api.crm.models import CRMContact, CRMLead
from crm_api.main import app
from crm_api.platform.security.context import AuthContext


@pytest.fixture()
def db_session() -> Generator[Session, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def configure_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("METRICS_ENABLED", "true")
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture()
def metrics_roles() -> list[str]:
    return ["system.metrics.read"]


@pytest.fixture()
def client(db_session: Session, metrics_roles: list[str]) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_auth_context(request: Request) -> AuthContext:
        return AuthContext(
            user_id="metrics-user",
            correlation_id="metrics-corr-1",
            permissions=["crm.leads.read", "crm.contacts.read", "crm.contacts.enrich"],
        )

    def override_auth_user() -> AuthUser:
        return AuthUser(sub="metrics-admin", roles=metrics_roles)

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_crm_auth_context] = override_auth_context
    app.dependency_overrides[auth_get_current_user] = override_auth_user

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()


def test_metrics_endpoint_exposes_http_and_crm_metrics(client: TestClient, db_session: Session) -> None:
    health = client.get("/health")
    assert health.status_code == 200
    assert health.json()["status"] == "ok"

    lead = CRMLead(full_name="Jane Smith", email="jane@acme.com", phone="+1 555 0100", company_name="Metrics Corp")
    contact = CRMContact(first_name="Jane", last_name="Smith", email="jane@acme.com")
    db_session.add_all([lead, contact])
    db_session.commit()

    matches = client.get(f"/api/crm/leads/{lead.id}/contact-matches")
    assert matches.status_code == 200

    enrich = client.post(
        f"/api/crm/contacts/{contact.id}/enrich",
        json={"lead_id": str(lead.id), "selected_fields": ["phone", "email", "companyName"]},
    )
    assert enrich.status_code == 200

    metrics = client.get("/metrics")
    assert metrics.status_code == 200
    body = metrics.text

    assert "http_requests_total" in body
    assert "http_request_duration_seconds" in body
    assert "crm_match_searches_total" in body
    assert "crm_match_score_bucket" in body
    assert "crm_enrichment_fields_total" in body
    assert "crm_companies_created_total" in body

    assert 'path="/health"' in body
    assert 'path="/api/crm/leads/{id}/contact-matches"' in body
    assert 'direction="lead_to_contact"' in body
    assert 'outcome="added"' in body
    assert 'outcome="already_set"' in body


@pytest.mark.parametrize("metrics_roles", [["crm.contacts.read"]])
def test_metrics_requires_metrics_role(client: TestClient) -> None:
    response = client.get("/metrics")
    assert response.status_code == 403


def test_metrics_disabled_returns_not_found(client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("METRICS_ENABLED", "false")
    get_settings.cache_clear()

    response = client.get("/metrics")
    assert response.status_code == 404
