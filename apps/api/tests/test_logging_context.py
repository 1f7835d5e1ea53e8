from __future__ import annotations

import json
import logging
import uuid
from collections.abc import Generator

import pytest
from fastapi import Request
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from crm_api.context import correlation_scope, resolve_correlation_id
from crm_api.core.config import get_settings
from crm_api.core.database import Base, get_db
from crm_api.crm.api import get_crm_auth_context
from crm_api.crm.models import CRMContact, CRMLead
from crm_api.logging import JsonLogFormatter
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
def setup_env() -> Generator[None, None, None]:
    get_settings.cache_clear()
    yield
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


def test_logs_include_correlation_id_for_http(client: TestClient, caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.INFO)

    response = client.get(f"/api/crm/leads/{uuid.uuid4()}/contact-matches", headers={"X-Correlation-Id": "abc-123"})
    assert response.status_code == 404

    records = [record for record in caplog.records if record.name == "crm_api.request" and record.getMessage() == "http.request"]
    assert records
    assert any(
        getattr(record, "correlation_id", None) == "abc-123"
        and getattr(record, "method", None) == "GET"
        and getattr(record, "path", None) == "/api/crm/leads/{id}/contact-matches"
        and getattr(record, "status_code", None) == 404
        and isinstance(getattr(record, "duration_ms", None), float)
        for record in records
    )


def test_logs_include_matching_context(
    client: TestClient,
    db_session: Session,
    caplog: pytest.LogCaptureFixture,
) -> None:
    caplog.set_level(logging.INFO)

    lead = CRMLead(full_name="Jane Smith", email="jane@acme.com")
    db_session.add_all([lead, CRMContact(first_name="Jane", last_name="Smith", email="jane@acme.com")])
    db_session.commit()

    response = client.get(f"/api/crm/leads/{lead.id}/contact-matches", headers={"X-Correlation-Id": "abc-456"})
    assert response.status_code == 200

    records = [record for record in caplog.records if record.name == "crm_api.crm.matching"]
    assert any(
        record.getMessage() == "crm.matching.completed"
        and getattr(record, "lead_id", None) == str(lead.id)
        and getattr(record, "candidates", None) == 1
        and getattr(record, "matches", None) == 1
        and getattr(record, "correlation_id", None) == "abc-456"
        for record in records
    )


def test_logs_include_enrichment_context(
    client: TestClient,
    db_session: Session,
    caplog: pytest.LogCaptureFixture,
) -> None:
    caplog.set_level(logging.INFO)

    lead = CRMLead(full_name="Jane Smith", phone="+1 555 0100")
    contact = CRMContact(first_name="Jane", last_name="Smith")
    db_session.add_all([lead, contact])
    db_session.commit()

    response = client.post(
        f"/api/crm/contacts/{contact.id}/enrich",
        json={"lead_id": str(lead.id), "selected_fields": ["phone", "email"]},
        headers={"X-Correlation-Id": "abc-789"},
    )
    assert response.status_code == 200

    records = [record for record in caplog.records if record.name == "crm_api.crm.enrichment"]
    assert any(
        record.getMessage() == "crm.contact.enriched"
        and getattr(record, "contact_id", None) == str(contact.id)
        and getattr(record, "fields_requested", None) == 2
        and getattr(record, "fields_applied", None) == 1
        and getattr(record, "company_created", None) is False
        and getattr(record, "correlation_id", None) == "abc-789"
        for record in records
    )


def test_json_formatter_keeps_known_fields_only() -> None:
    with correlation_scope("fmt-1"):
        record = logging.getLogger("crm_api.test").makeRecord(
            "crm_api.test",
            logging.INFO,
            __file__,
            1,
            "crm.matching.completed",
            None,
            None,
            extra={"matches": 3, "secret": "hidden"},
        )

    payload = json.loads(JsonLogFormatter().format(record))
    assert payload["msg"] == "crm.matching.completed"
    assert payload["correlation_id"] == "fmt-1"
    assert payload["fields"] == {"matches": 3}


def test_resolve_correlation_id_keeps_header_safe_values() -> None:
    assert resolve_correlation_id("  abc-123  ") == "abc-123"
    assert resolve_correlation_id("trace:42.a_b") == "trace:42.a_b"


@pytest.mark.parametrize("candidate", [None, "", "has spaces", "x" * 200, "bad\nline"])
def test_resolve_correlation_id_replaces_unsafe_values(candidate: str | None) -> None:
    resolved = resolve_correlation_id(candidate)
    assert resolved != candidate
    assert uuid.UUID(resolved)
