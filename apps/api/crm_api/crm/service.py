from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from functools import partial
from typing import Any

from fastapi import HTTPException, status
from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from crm_api import audit, events
from crm_api.core.config import get_settings
from crm_api.crm.field_mappings import (
    FIELD_MAPPINGS,
    ColumnTarget,
    FieldMapping,
    derive_company_size,
    derive_domain,
    is_empty_value,
    lead_company_metadata,
    summarize_value,
)
from crm_api.crm.matching import DEFAULT_RESULT_LIMIT, DEFAULT_SCORE_THRESHOLD, rank_matches, score_match
from crm_api.crm.models import CRMCompany, CRMContact, CRMLead, utcnow
from crm_api.crm.repositories import CompanyRepository, ContactRepository, LeadRepository
from crm_api.crm.schemas import (
    ContactEnrichRequest,
    ContactMatchesRead,
    ContactMatchRead,
    ContactRead,
    EnrichmentPreviewField,
    EnrichmentPreviewRead,
    EnrichmentResultRead,
    LeadMatchesRead,
    LeadMatchRead,
    LeadRead,
)
from crm_api.metrics import observe_company_created, observe_enrichment_field, observe_match_search
from crm_api.platform.security.context import AuthContext


logger = logging.getLogger("crm_api.crm.matching")
enrichment_logger = logging.getLogger("crm_api.crm.enrichment")
tracer = trace.get_tracer("crm_api.crm.enrichment")


def _contact_snapshot(contact: CRMContact) -> dict[str, Any]:
    return {
        "company_id": str(contact.company_id) if contact.company_id else None,
        "email": contact.email,
        "phone": contact.phone,
        "job_title": contact.job_title,
        "seniority_level": contact.seniority_level,
        "linkedin_url": contact.linkedin_url,
        "twitter_handle": contact.twitter_handle,
        "custom_fields": dict(contact.custom_fields or {}),
        "notes": contact.notes,
    }


@dataclass(slots=True)
class PendingEffects:
    """Audit entries, events and metrics held back until the unit of work commits."""

    actions: list[Callable[[], Any]] = field(default_factory=list)

    def defer(self, action: Callable[[], Any]) -> None:
        self.actions.append(action)

    def flush(self) -> None:
        actions, self.actions = self.actions, []
        for action in actions:
            action()


@dataclass(slots=True)
class CompanyResolution:
    company: CRMCompany
    is_new_record: bool


@dataclass(slots=True)
class CompanyResolver:
    company_repository: CompanyRepository = CompanyRepository()

    def find_or_create_company(
        self,
        session: Session,
        company_name: str | None,
        metadata: dict[str, Any] | None = None,
        *,
        actor_user_id: str = "system",
        effects: PendingEffects | None = None,
    ) -> CompanyResolution | None:
        """Return the company named ``company_name`` (case-insensitive), creating it if needed.

        The insert runs inside a SAVEPOINT. A concurrent insert of the same
        normalized name surfaces as an ``IntegrityError``; the savepoint is
        rolled back and the row that won is returned instead.

        The audit entry, `crm.company.created` event and metric are queued on
        ``effects`` when given, so the caller emits them after its commit.
        Without ``effects`` they run immediately.
        """
        if not isinstance(company_name, str) or not company_name.strip():
            return None
        name = " ".join(company_name.split())

        existing = self.company_repository.find_by_name(session, name)
        if existing is not None:
            return CompanyResolution(company=existing, is_new_record=False)

        data = self._build_company_data(name, metadata or {})
        try:
            with session.begin_nested():
                company = self.company_repository.create(session, data)
        except IntegrityError:
            winner = self.company_repository.find_by_name(session, name)
            if winner is None:
                raise
            return CompanyResolution(company=winner, is_new_record=False)

        pending = effects if effects is not None else PendingEffects()
        pending.defer(
            partial(
                audit.record,
                actor_user_id=actor_user_id,
                entity_type="crm.company",
                entity_id=str(company.id),
                action="create",
                before=None,
                after={key: value for key, value in data.items() if value is not None},
            )
        )
        pending.defer(
            partial(
                events.publish,
                {
                    "event_id": str(uuid.uuid4()),
                    "event_type": "crm.company.created",
                    "occurred_at": utcnow().isoformat(),
                    "actor_user_id": actor_user_id,
                    "payload": {"company_id": str(company.id), "name": company.name},
                },
            )
        )
        pending.defer(observe_company_created)
        if effects is None:
            pending.flush()
        return CompanyResolution(company=company, is_new_record=True)

    @staticmethod
    def _build_company_data(name: str, metadata: dict[str, Any]) -> dict[str, Any]:
        website = metadata.get("website")
        return {
            "name": name,
            "industry": metadata.get("industry"),
            "size": derive_company_size(metadata.get("size")),
            "website": website,
            "domain": derive_domain(website),
            "description": metadata.get("description"),
            "linkedin_url": metadata.get("linkedin_url"),
        }


@dataclass(slots=True)
class LeadMatchingService:
    lead_repository: LeadRepository = LeadRepository()
    contact_repository: ContactRepository = ContactRepository()
    score_threshold: int | None = None
    result_limit: int | None = None

    def __post_init__(self) -> None:
        if self.score_threshold is not None and not DEFAULT_SCORE_THRESHOLD <= self.score_threshold <= 100:
            raise ValueError(f"score_threshold must be between {DEFAULT_SCORE_THRESHOLD} and 100")
        if self.result_limit is not None and not 1 <= self.result_limit <= DEFAULT_RESULT_LIMIT:
            raise ValueError(f"result_limit must be between 1 and {DEFAULT_RESULT_LIMIT}")

    def _limits(self) -> tuple[int, int]:
        settings = get_settings()
        threshold = self.score_threshold if self.score_threshold is not None else settings.match_score_threshold
        limit = self.result_limit if self.result_limit is not None else settings.match_result_limit
        return threshold, limit

    def find_matches_for_lead(self, session: Session, ctx: AuthContext, lead_id: uuid.UUID) -> LeadMatchesRead:
        lead = self.lead_repository.get(session, lead_id)
        if lead is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="lead not found")

        contacts = self.contact_repository.list_all(session)
        threshold, limit = self._limits()
        results = rank_matches(contacts, lambda contact: score_match(lead, contact), threshold=threshold, limit=limit)

        observe_match_search("lead_to_contact", [item.score for item in results])
        logger.info(
            "crm.matching.completed",
            extra={
                "direction": "lead_to_contact",
                "lead_id": str(lead.id),
                "candidates": len(contacts),
                "matches": len(results),
            },
        )
        return LeadMatchesRead(
            lead_id=lead.id,
            matches=[
                ContactMatchRead(contact=ContactRead.model_validate(item.entity), score=item.score, reasons=item.reasons)
                for item in results
            ],
        )

    def find_matches_for_contact(self, session: Session, ctx: AuthContext, contact_id: uuid.UUID) -> ContactMatchesRead:
        contact = self.contact_repository.get(session, contact_id)
        if contact is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="contact not found")

        leads = self.lead_repository.list_pending(session)
        threshold, limit = self._limits()
        results = rank_matches(leads, lambda lead: score_match(lead, contact), threshold=threshold, limit=limit)

        observe_match_search("contact_to_lead", [item.score for item in results])
        logger.info(
            "crm.matching.completed",
            extra={
                "direction": "contact_to_lead",
                "contact_id": str(contact.id),
                "candidates": len(leads),
                "matches": len(results),
            },
        )
        return ContactMatchesRead(
            contact_id=contact.id,
            matches=[
                LeadMatchRead(lead=LeadRead.model_validate(item.entity), score=item.score, reasons=item.reasons)
                for item in results
            ],
        )


@dataclass(slots=True)
class _EnrichmentPatch:
    columns: dict[str, Any] = field(default_factory=dict)
    custom_fields: dict[str, Any] = field(default_factory=dict)

    def current_value(self, contact: CRMContact, mapping: FieldMapping) -> Any:
        target = mapping.target
        if isinstance(target, ColumnTarget):
            if target.attribute in self.columns:
                return self.columns[target.attribute]
        elif target.key in self.custom_fields:
            return self.custom_fields[target.key]
        return target.read(contact)

    def write(self, mapping: FieldMapping, value: Any) -> None:
        target = mapping.target
        if isinstance(target, ColumnTarget):
            self.columns[target.attribute] = value
        else:
            self.custom_fields[target.key] = value

    def __bool__(self) -> bool:
        return bool(self.columns or self.custom_fields)


@dataclass(slots=True)
class _EnrichmentOutcome:
    contact: CRMContact
    log: list[str]
    outcomes: list[str]
    fields_applied: int
    company_created: bool


@dataclass(slots=True)
class ContactEnrichmentService:
    lead_repository: LeadRepository = LeadRepository()
    contact_repository: ContactRepository = ContactRepository()
    company_resolver: CompanyResolver = field(default_factory=CompanyResolver)

    def _load(self, session: Session, contact_id: uuid.UUID, lead_id: uuid.UUID) -> tuple[CRMContact, CRMLead]:
        contact = self.contact_repository.get(session, contact_id)
        if contact is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="contact not found")
        lead = self.lead_repository.get(session, lead_id)
        if lead is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="lead not found")
        return contact, lead

    def preview_enrichment(
        self,
        session: Session,
        ctx: AuthContext,
        contact_id: uuid.UUID,
        lead_id: uuid.UUID,
    ) -> EnrichmentPreviewRead:
        contact, lead = self._load(session, contact_id, lead_id)

        available: list[EnrichmentPreviewField] = []
        for mapping in FIELD_MAPPINGS.values():
            value = mapping.extract(lead)
            if is_empty_value(value) or not is_empty_value(mapping.target.read(contact)):
                continue
            available.append(
                EnrichmentPreviewField(field=mapping.name, label=mapping.label, value=value, summary=summarize_value(value))
            )
        return EnrichmentPreviewRead(contact_id=contact.id, lead_id=lead.id, available_fields=available)

    def enrich_contact(
        self,
        session: Session,
        ctx: AuthContext,
        contact_id: uuid.UUID,
        dto: ContactEnrichRequest,
    ) -> EnrichmentResultRead:
        with tracer.start_as_current_span("crm.contact.enrich") as span:
            span.set_attribute("contact_id", str(contact_id))
            span.set_attribute("lead_id", str(dto.lead_id))
            span.set_attribute("correlation_id", ctx.correlation_id or "")
            effects = PendingEffects()
            try:
                outcome = self._apply(session, ctx, contact_id, dto, effects)
                session.commit()
            except Exception as exc:
                session.rollback()
                span.set_status(Status(StatusCode.ERROR, str(exc)))
                enrichment_logger.warning(
                    "crm.contact.enrich_failed",
                    extra={"contact_id": str(contact_id), "lead_id": str(dto.lead_id), "error": str(exc)},
                )
                raise

        effects.flush()
        for item in outcome.outcomes:
            observe_enrichment_field(item)
        enrichment_logger.info(
            "crm.contact.enriched",
            extra={
                "contact_id": str(contact_id),
                "lead_id": str(dto.lead_id),
                "fields_requested": len(dto.selected_fields),
                "fields_applied": outcome.fields_applied,
                "company_created": outcome.company_created,
            },
        )

        session.refresh(outcome.contact)
        return EnrichmentResultRead(
            contact=ContactRead.model_validate(outcome.contact),
            enrichment_log=outcome.log,
            fields_enriched=len(dto.selected_fields),
            fields_applied=outcome.fields_applied,
            company_created=outcome.company_created,
        )

    def _apply(
        self,
        session: Session,
        ctx: AuthContext,
        contact_id: uuid.UUID,
        dto: ContactEnrichRequest,
        effects: PendingEffects,
    ) -> _EnrichmentOutcome:
        contact, lead = self._load(session, contact_id, dto.lead_id)
        before = _contact_snapshot(contact)

        patch = _EnrichmentPatch()
        log: list[str] = []
        outcomes: list[str] = []
        fields_applied = 0

        for field_name in dto.selected_fields:
            mapping = FIELD_MAPPINGS.get(field_name)
            if mapping is None:
                log.append(f"{field_name}: skipped: unsupported field")
                outcomes.append("unsupported")
                continue

            value = mapping.extract(lead)
            if is_empty_value(value):
                log.append(f"{field_name}: skipped: no data available")
                outcomes.append("no_data")
                continue

            if not is_empty_value(patch.current_value(contact, mapping)):
                log.append(f"{field_name}: skipped: already has data")
                outcomes.append("already_set")
                continue

            patch.write(mapping, value)
            fields_applied += 1
            log.append(f"{field_name}: added: {summarize_value(value)}")
            outcomes.append("added")

        company_created = False
        if "companyName" in dto.selected_fields and contact.company_id is None:
            resolution = self.company_resolver.find_or_create_company(
                session,
                FIELD_MAPPINGS["companyName"].extract(lead),
                lead_company_metadata(lead),
                actor_user_id=ctx.user_id,
                effects=effects,
            )
            if resolution is not None:
                patch.columns["company_id"] = resolution.company.id
                company_created = resolution.is_new_record

        if fields_applied:
            block = f"[Lead enrichment {utcnow().isoformat()}] from lead {lead.id}: " + ", ".join(log)
            patch.columns["notes"] = f"{contact.notes}\n\n{block}" if contact.notes else block

        if patch:
            self.contact_repository.apply_patch(
                session,
                contact,
                columns=patch.columns,
                custom_fields=patch.custom_fields,
            )
            after = _contact_snapshot(contact)
            effects.defer(
                partial(
                    audit.record,
                    actor_user_id=ctx.user_id,
                    entity_type="crm.contact",
                    entity_id=str(contact.id),
                    action="enrich",
                    before=before,
                    after=after,
                    correlation_id=ctx.correlation_id,
                )
            )
            effects.defer(
                partial(
                    events.publish,
                    {
                        "event_id": str(uuid.uuid4()),
                        "event_type": "crm.contact.enriched",
                        "occurred_at": utcnow().isoformat(),
                        "actor_user_id": ctx.user_id,
                        "correlation_id": ctx.correlation_id,
                        "payload": {
                            "contact_id": str(contact.id),
                            "lead_id": str(lead.id),
                            "fields_applied": fields_applied,
                            "company_id": after["company_id"],
                            "company_created": company_created,
                        },
                    },
                )
            )

        return _EnrichmentOutcome(
            contact=contact,
            log=log,
            outcomes=outcomes,
            fields_applied=fields_applied,
            company_created=company_created,
        )
