from __future__ import annotations

import uuid
from dataclasses import dataclass
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from crm_api.context import get_correlation_id
from crm_api.core.auth import AuthUser, get_current_user as get_auth_user
from crm_api.core.database import get_db
from crm_api.crm.schemas import (
    ContactEnrichRequest,
    ContactMatchesRead,
    EnrichmentPreviewRead,
    EnrichmentResultRead,
    LeadMatchesRead,
)
from crm_api.crm.service import ContactEnrichmentService, LeadMatchingService
from crm_api.platform.security.context import AuthContext
from crm_api.platform.security.errors import AuthorizationError
from crm_api.platform.security.permissions import require_permission

leads_router = APIRouter(prefix="/api/crm", tags=["crm.leads"])
contacts_router = APIRouter(prefix="/api/crm", tags=["crm.contacts"])
matching_service = LeadMatchingService()
enrichment_service = ContactEnrichmentService()


@dataclass
class ErrorEnvelope:
    code: str
    message: str
    details: Any
    correlation_id: str | None


def error_response(
    request: Request,
    *,
    status_code: int,
    code: str,
    message: str,
    details: Any = None,
) -> JSONResponse:
    correlation_id = get_correlation_id() or getattr(getattr(request.state, "context", None), "correlation_id", None)
    payload = ErrorEnvelope(
        code=code,
        message=message,
        details=details,
        correlation_id=correlation_id,
    )
    return JSONResponse(status_code=status_code, content=payload.__dict__)


def get_crm_auth_context(request: Request, auth_user: AuthUser = Depends(get_auth_user)) -> AuthContext:
    correlation_id = get_correlation_id() or getattr(getattr(request.state, "context", None), "correlation_id", None)
    roles = [str(item) for item in auth_user.roles]
    normalized = {item.lower() for item in roles}

    return AuthContext(
        user_id=auth_user.sub,
        correlation_id=correlation_id,
        is_super_admin=("admin" in normalized or "system.admin" in normalized),
        roles=roles,
        permissions=roles,
    )


def _failure(request: Request, exc: AuthorizationError | HTTPException, code: str) -> JSONResponse:
    if isinstance(exc, AuthorizationError):
        return error_response(
            request,
            status_code=status.HTTP_403_FORBIDDEN,
            code=code,
            message=str(exc),
            details=str(exc),
        )
    return error_response(
        request,
        status_code=exc.status_code,
        code=code,
        message=str(exc.detail),
        details=exc.detail,
    )


@leads_router.get("/leads/{lead_id}/contact-matches", response_model=LeadMatchesRead)
def get_lead_contact_matches(
    request: Request,
    lead_id: uuid.UUID,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_crm_auth_context),
) -> LeadMatchesRead | JSONResponse:
    try:
        require_permission(ctx, "crm.leads.read")
        return matching_service.find_matches_for_lead(db, ctx, lead_id)
    except (AuthorizationError, HTTPException) as exc:
        return _failure(request, exc, "crm_lead_matches_failed")


@contacts_router.get("/contacts/{contact_id}/lead-matches", response_model=ContactMatchesRead)
def get_contact_lead_matches(
    request: Request,
    contact_id: uuid.UUID,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_crm_auth_context),
) -> ContactMatchesRead | JSONResponse:
    try:
        require_permission(ctx, "crm.contacts.read")
        return matching_service.find_matches_for_contact(db, ctx, contact_id)
    except (AuthorizationError, HTTPException) as exc:
        return _failure(request, exc, "crm_contact_matches_failed")


@contacts_router.get("/contacts/{contact_id}/enrichment-preview", response_model=EnrichmentPreviewRead)
def get_contact_enrichment_preview(
    request: Request,
    contact_id: uuid.UUID,
    lead_id: uuid.UUID = Query(),
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_crm_auth_context),
) -> EnrichmentPreviewRead | JSONResponse:
    try:
        require_permission(ctx, "crm.contacts.read")
        return enrichment_service.preview_enrichment(db, ctx, contact_id, lead_id)
    except (AuthorizationError, HTTPException) as exc:
        return _failure(request, exc, "crm_contact_enrichment_preview_failed")


@contacts_router.post("/contacts/{contact_id}/enrich", response_model=EnrichmentResultRead)
def enrich_contact(
    request: Request,
    contact_id: uuid.UUID,
    payload: ContactEnrichRequest,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_crm_auth_context),
) -> EnrichmentResultRead | JSONResponse:
    try:
        require_permission(ctx, "crm.contacts.enrich")
        return enrichment_service.enrich_contact(db, ctx, contact_id, payload)
    except (AuthorizationError, HTTPException) as exc:
        return _failure(request, exc, "crm_contact_enrich_failed")
