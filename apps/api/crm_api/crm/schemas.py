from __future__ import annotations

from datetime import datetime
from typing import Any, Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator


CompanySize = Literal["startup", "small", "medium", "large", "enterprise"]
SeniorityLevel = Literal["entry", "mid", "senior", "director", "vp", "c_level"]
LeadStatus = Literal["pending_review", "added_to_crm", "rejected", "duplicate"]


class CompanyRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    industry: str | None
    size: CompanySize | None
    website: str | None
    domain: str | None
    description: str | None
    linkedin_url: str | None
    created_at: datetime


class ContactRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    company_id: UUID | None
    first_name: str
    last_name: str
    email: str | None
    phone: str | None
    job_title: str | None
    seniority_level: SeniorityLevel | None
    linkedin_url: str | None
    twitter_handle: str | None
    lead_score: int
    custom_fields: dict[str, Any] = Field(default_factory=dict)
    notes: str | None
    company: CompanyRead | None = None
    created_at: datetime
    updated_at: datetime
    row_version: int

    @field_validator("custom_fields", mode="before")
    @classmethod
    def _default_custom_fields(cls, value: Any) -> Any:
        return {} if value is None else value


class LeadRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    pdl_profile_id: str | None
    full_name: str | None
    job_title: str | None
    company_name: str | None
    email: str | None
    phone: str | None
    linkedin_url: str | None
    location: str | None
    industry: str | None
    skills: list[str] | None
    status: LeadStatus
    lead_score: int
    created_at: datetime


class ContactMatchRead(BaseModel):
    contact: ContactRead
    score: int = Field(ge=0, le=100)
    reasons: list[str]


class LeadMatchRead(BaseModel):
    lead: LeadRead
    score: int = Field(ge=0, le=100)
    reasons: list[str]


class LeadMatchesRead(BaseModel):
    lead_id: UUID
    matches: list[ContactMatchRead]


class ContactMatchesRead(BaseModel):
    contact_id: UUID
    matches: list[LeadMatchRead]


class ContactEnrichRequest(BaseModel):
    lead_id: UUID
    selected_fields: list[str] = Field(min_length=1)


class EnrichmentResultRead(BaseModel):
    contact: ContactRead
    enrichment_log: list[str]
    fields_enriched: int
    fields_applied: int
    company_created: bool


class EnrichmentPreviewField(BaseModel):
    field: str
    label: str
    value: Any
    summary: str


class EnrichmentPreviewRead(BaseModel):
    contact_id: UUID
    lead_id: UUID
    available_fields: list[EnrichmentPreviewField]
