from __future__ import annotations

import uuid
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session, selectinload

from crm_api.crm.models import CRMCompany, CRMContact, CRMLead, normalize_company_name


class LeadRepository:
    resource = "crm.lead"

    def get(self, session: Session, lead_id: uuid.UUID) -> CRMLead | None:
        return session.scalar(select(CRMLead).where(CRMLead.id == lead_id, CRMLead.deleted_at.is_(None)))

    def list_pending(self, session: Session) -> list[CRMLead]:
        stmt = (
            select(CRMLead)
            .where(CRMLead.status == "pending_review", CRMLead.deleted_at.is_(None))
            .order_by(CRMLead.created_at.asc(), CRMLead.id.asc())
        )
        return list(session.scalars(stmt).all())


class ContactRepository:
    resource = "crm.contact"

    def get(self, session: Session, contact_id: uuid.UUID) -> CRMContact | None:
        return session.scalar(
            select(CRMContact)
            .options(selectinload(CRMContact.company))
            .where(CRMContact.id == contact_id, CRMContact.deleted_at.is_(None))
        )

    def list_all(self, session: Session) -> list[CRMContact]:
        stmt = (
            select(CRMContact)
            .options(selectinload(CRMContact.company))
            .where(CRMContact.deleted_at.is_(None))
            .order_by(CRMContact.created_at.asc(), CRMContact.id.asc())
        )
        return list(session.scalars(stmt).all())

    def apply_patch(
        self,
        session: Session,
        contact: CRMContact,
        *,
        columns: dict[str, Any],
        custom_fields: dict[str, Any],
    ) -> CRMContact:
        for attribute, value in columns.items():
            setattr(contact, attribute, value)
        if custom_fields:
            # JSON columns only track reassignment, so always hand over a new dict.
            merged = dict(contact.custom_fields or {})
            merged.update(custom_fields)
            contact.custom_fields = merged
        contact.row_version = (contact.row_version or 0) + 1
        session.add(contact)
        session.flush()
        return contact


class CompanyRepository:
    resource = "crm.company"

    def find_by_name(self, session: Session, name: str) -> CRMCompany | None:
        return session.scalar(select(CRMCompany).where(CRMCompany.name_normalized == normalize_company_name(name)))

    def create(self, session: Session, data: dict[str, Any]) -> CRMCompany:
        company = CRMCompany(**data, name_normalized=normalize_company_name(data["name"]))
        session.add(company)
        session.flush()
        return company
