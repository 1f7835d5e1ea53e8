from __future__ import annotations

from collections.abc import Generator

import pytest
from sqlalchemy import create_engine, event, func, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from crm_api import audit, events
from crm_api.core.database import Base
from crm_api.crm.models import CRMCompany
from crm_api.crm.repositories import CompanyRepository
from crm_api.crm.service import CompanyResolver, PendingEffects


@pytest.fixture()
def db_session() -> Generator[Session, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    # pysqlite issues its own BEGIN and COMMITs on SAVEPOINT release; let
    # SQLAlchemy own the transaction so nested rollbacks behave as on Postgres.
    @event.listens_for(engine, "connect")
    def _disable_pysqlite_begin(dbapi_connection, connection_record):  # type: ignore[no-untyped-def]
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _emit_begin(conn):  # type: ignore[no-untyped-def]
        conn.exec_driver_sql("BEGIN")

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
    yield
    audit.audit_entries.clear()
    events.published_events.clear()


def _company_count(session: Session) -> int:
    return session.scalar(select(func.count()).select_from(CRMCompany)) or 0


@pytest.mark.parametrize("name", ["", "   ", None])
def test_blank_company_name_resolves_to_nothing(db_session: Session, name: str | None) -> None:
    assert CompanyResolver().find_or_create_company(db_session, name, {}) is None
    assert _company_count(db_session) == 0


def test_creates_company_from_metadata(db_session: Session) -> None:
    resolution = CompanyResolver().find_or_create_company(
        db_session,
        "  Acme   Corp ",
        {
            "industry": "software",
            "website": "https://www.acme.com",
            "size": "51-200",
            "description": "Widgets",
            "linkedin_url": "https://linkedin.com/company/acme",
        },
        actor_user_id="user-1",
    )
    db_session.commit()

    assert resolution is not None
    assert resolution.is_new_record is True
    company = resolution.company
    assert company.name == "Acme Corp"
    assert company.name_normalized == "acme corp"
    assert company.industry == "software"
    assert company.size == "medium"
    assert company.domain == "acme.com"
    assert company.description == "Widgets"

    company_audits = [entry for entry in audit.audit_entries if entry["entity_type"] == "crm.company"]
    assert company_audits and company_audits[-1]["actor_user_id"] == "user-1"
    created_events = [item for item in events.published_events if item["event_type"] == "crm.company.created"]
    assert created_events[-1]["payload"]["name"] == "Acme Corp"


def test_same_name_in_any_case_reuses_company(db_session: Session) -> None:
    resolver = CompanyResolver()
    first = resolver.find_or_create_company(db_session, "Acme Corp", {})
    db_session.commit()
    second = resolver.find_or_create_company(db_session, "ACME corp", {"industry": "ignored"})
    db_session.commit()

    assert first is not None and second is not None
    assert first.is_new_record is True
    assert second.is_new_record is False
    assert second.company.id == first.company.id
    assert second.company.industry is None
    assert _company_count(db_session) == 1


def test_concurrent_insert_falls_back_to_existing_row(db_session: Session, monkeypatch: pytest.MonkeyPatch) -> None:
    repository = CompanyRepository()
    existing = repository.create(db_session, {"name": "Acme Corp"})
    db_session.commit()

    original_find = repository.find_by_name
    calls: list[str] = []

    def find_after_race(session: Session, name: str) -> CRMCompany | None:
        calls.append(name)
        if len(calls) == 1:
            return None
        return original_find(session, name)

    monkeypatch.setattr(repository, "find_by_name", find_after_race)

    resolution = CompanyResolver(company_repository=repository).find_or_create_company(db_session, "acme corp", {})
    db_session.commit()

    assert resolution is not None
    assert resolution.is_new_record is False
    assert resolution.company.id == existing.id
    assert len(calls) == 2
    assert _company_count(db_session) == 1
    assert not [item for item in events.published_events if item["event_type"] == "crm.company.created"]


def test_creation_side_effects_wait_for_flush(db_session: Session) -> None:
    effects = PendingEffects()
    resolution = CompanyResolver().find_or_create_company(db_session, "Globex", {}, effects=effects)

    assert resolution is not None and resolution.is_new_record is True
    assert audit.audit_entries == []
    assert events.published_events == []

    db_session.commit()
    effects.flush()

    assert [entry["action"] for entry in audit.audit_entries] == ["create"]
    assert audit.audit_entries[0]["entity_id"] == str(resolution.company.id)
    assert [item["event_type"] for item in events.published_events] == ["crm.company.created"]
    assert effects.actions == []


def test_savepoint_rollback_leaves_no_company(db_session: Session) -> None:
    CompanyResolver().find_or_create_company(db_session, "Initech", {}, effects=PendingEffects())
    db_session.rollback()

    assert _company_count(db_session) == 0
