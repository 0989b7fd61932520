from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field, field_validator


class CallProvider(StrEnum):
    fireflies = "fireflies"
    zoom = "zoom"
    fathom = "fathom"
    claap = "claap"
    firefiles = "firefiles"


class ResolvedBy(StrEnum):
    exact_email_match = "exact_email_match"
    domain_fallback = "domain_fallback"
    webhook_owner_fallback = "webhook_owner_fallback"


class MatchType(StrEnum):
    external_id = "external_id"
    composite = "composite"
    none = "none"


class IntakeAction(StrEnum):
    skipped = "skipped"
    created = "created"


class WebhookStatus(StrEnum):
    created = "created"
    skipped = "skipped"
    ignored = "ignored"


class IntakeState(StrEnum):
    received = "received"
    resolving = "resolving"
    matching = "matching"
    skipped = "skipped"
    created = "created"


class CallRecordStatus(StrEnum):
    pending = "pending"
    evaluated = "evaluated"
    archived = "archived"


class CandidateCall(BaseModel):
    organization_id: str
    source: CallProvider
    sales_rep_id: str | None = None
    scheduled_start_time: datetime
    external_ids: dict[str, str] = Field(default_factory=dict)
    title: str | None = None
    participant_emails: list[str] = Field(default_factory=list)
    participant_names: list[str] = Field(default_factory=list)
    sales_rep_email: str | None = None
    sales_rep_name: str | None = None
    host_name: str | None = None
    scheduled_end_time: datetime | None = None
    duration_minutes: float | None = None
    transcript: str | None = None
    recording_url: str | None = None
    share_url: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator("scheduled_start_time", "scheduled_end_time")
    @classmethod
    def ensure_timezone(cls, value: datetime | None) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)

    @field_validator("external_ids", mode="before")
    @classmethod
    def drop_blank_external_ids(cls, value: Any) -> dict[str, str]:
        if not value:
            return {}
        cleaned: dict[str, str] = {}
        for provider, external_id in dict(value).items():
            if external_id is None:
                continue
            normalized_id = str(external_id).strip()
            if normalized_id:
                cleaned[str(provider)] = normalized_id
        return cleaned

    @field_validator("title", "sales_rep_email", "sales_rep_name", "host_name", mode="before")
    @classmethod
    def blank_to_none(cls, value: Any) -> str | None:
        if value is None:
            return None
        text = str(value).strip()
        return text or None

    @field_validator("participant_emails", mode="before")
    @classmethod
    def normalize_participant_emails(cls, value: Any) -> list[str]:
        emails: list[str] = []
        for raw_email in value or []:
            if not isinstance(raw_email, str):
                continue
            email = raw_email.strip().lower()
            if email and email not in emails:
                emails.append(email)
        return emails

    @field_validator("participant_names", mode="before")
    @classmethod
    def normalize_participant_names(cls, value: Any) -> list[str]:
        names: list[str] = []
        seen: set[str] = set()
        for raw_name in value or []:
            if not isinstance(raw_name, str):
                continue
            name = " ".join(raw_name.split())
            if not name or name.casefold() in seen:
                continue
            seen.add(name.casefold())
            names.append(name)
        return names


class ResolutionResult(BaseModel):
    user: dict[str, Any] | None = None
    resolved_by: ResolvedBy


class DuplicateCheckResult(BaseModel):
    is_duplicate: bool
    match_type: MatchType = MatchType.none
    existing_call_id: str | None = None
    message: str


class IntakeOutcome(BaseModel):
    action: IntakeAction
    call_id: str | None = None
    detail: str
    match_type: MatchType = MatchType.none
    resolved_by: ResolvedBy | None = None
    sales_rep_id: str | None = None


class CallWebhookResult(BaseModel):
    action: IntakeAction
    call_record_id: str | None = None
    detail: str
    match_type: MatchType = MatchType.none
    resolved_by: ResolvedBy | None = None
    sales_rep_id: str | None = None
    external_id: str | None = None


class CallWebhookResponse(BaseModel):
    success: bool = True
    status: WebhookStatus
    provider: CallProvider
    processed: int
    created: int
    skipped: int
    results: list[CallWebhookResult]
