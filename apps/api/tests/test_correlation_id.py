from __future__ import annotations

import uuid
from collections.abc import Generator

import pytest
from fastapi import Request
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from crm_api import audit, events
from crm_api.core.config import get_settings
from crm_api.core.database import Base, get_db
from crm_api.crm.api import get_crm_auth_context
from crm_api.crm.models import CRMContact, CRMLead
from crm_api.main import app
from crm_api.platform.security.context import AuthContext


ALL_PERMISSIONS = [
    "crm.leads.read",
    "crm.contacts.read",
    "crm.contacts.enrich",
]


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
def clear_stubs() -> Generator[None, None, None]:
    audit.audit_entries.clear()
    events.published_events.clear()
    get_settings.cache_clear()
    yield
    audit.audit_entries.clear()
    events.published_events.clear()
    get_settings.cache_clear()


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_auth_context(request: Request) -> AuthContext:
        return AuthContext(
            user_id="user-1",
            correlation_id=getattr(request.state, "correlation_id", None),
            permissions=ALL_PERMISSIONS,
        )

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_crm_auth_context] = override_auth_context
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def _enrich(client: TestClient, db_session: Session, correlation_id: str) -> None:
    lead = CRMLead(full_name="Jane Smith", phone="+1 555 0100", company_name="Corr Corp")
    contact = CRMContact(first_name="Jane", last_name="Smith")
    db_session.add_all([lead, contact])
    db_session.commit()

    response = client.post(
        f"/api/crm/contacts/{contact.id}/enrich",
        json={"lead_id": str(lead.id), "selected_fields": ["phone", "companyName"]},
        headers={"X-Correlation-Id": correlation_id},
    )
    assert response.status_code == 200


def test_generated_correlation_id_returned_in_header_and_error_envelope(client: TestClient) -> None:
    response = client.get(f"/api/crm/leads/{uuid.uuid4()}/contact-matches")
    assert response.status_code == 404
    header_value = response.headers.get("x-correlation-id")
    assert header_value
    body = response.json()
    assert body["correlation_id"] == header_value


def test_correlation_id_respected_when_provided(client: TestClient) -> None:
    response = client.get(f"/api/crm/contacts/{uuid.uuid4()}/lead-matches", headers={"X-Correlation-Id": "abc-123"})
    assert response.status_code == 404
    assert response.headers.get("x-correlation-id") == "abc-123"
    request_id = response.headers.get("x-request-id")
    assert request_id and request_id != "abc-123"
    assert response.json()["correlation_id"] == "abc-123"


def test_audit_uses_request_correlation_id(client: TestClient, db_session: Session) -> None:
    _enrich(client, db_session, "corr-audit-1")

    contact_audits = [entry for entry in audit.audit_entries if entry.get("entity_type") == "crm.contact"]
    assert contact_audits
    assert contact_audits[-1]["correlation_id"] == "corr-audit-1"

    company_audits = [entry for entry in audit.audit_entries if entry.get("entity_type") == "crm.company"]
    assert company_audits
    assert company_audits[-1]["correlation_id"] == "corr-audit-1"


def test_event_envelopes_include_correlation_id(client: TestClient, db_session: Session) -> None:
    _enrich(client, db_session, "corr-event-1")

    tracked = [
        item
        for item in events.published_events
        if item.get("event_type") in {"crm.contact.enriched", "crm.company.created"}
    ]
    assert len(tracked) == 2
    assert all(item.get("correlation_id") == "corr-event-1" for item in tracked)


def test_unsafe_correlation_header_is_replaced(client: TestClient) -> None:
    response = client.get(f"/api/crm/leads/{uuid.uuid4()}/contact-matches", headers={"X-Correlation-Id": "x" * 300})
    assert response.status_code == 404
    header_value = response.headers.get("x-correlation-id")
    assert header_value and header_value != "x" * 300
    assert response.json()["correlation_id"] == header_value
