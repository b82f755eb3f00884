"""Pydantic request and response schemas for the eLogbook API.

Every mutating request carries a mandatory `reason`: the attributed
justification recorded on the audit record.

Resources:
- Session       — login by username
- UserAccount   — provisioning and personnel search
- LogbookTemplate — template create, update and read
- LogbookEntry  — entry submission and listing
- AuditRecord   — audit trail query
"""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from gxp_elogbook.core.models import (
    AuditAction,
    AuditRecord,
    ColumnDraft,
    ColumnDefinition,
    EntityType,
    LogbookEntry,
    LogbookTemplate,
    TemplateDraft,
    TemplateStatus,
    UserAccount,
    UserRole,
)

# ---------------------------------------------------------------------------
# Sessions and users
# ---------------------------------------------------------------------------


class LoginRequest(BaseModel):
    """Request body for opening a session."""

    username: str = Field(min_length=1, description="Username (case-insensitive)")


class ActorResponse(BaseModel):
    """The identity of the logged-in user. Send `id` as X-User-Id on later calls."""

    id: str
    username: str
    full_name: str
    role: UserRole


class UserCreateRequest(BaseModel):
    """Request body for provisioning a user account."""

    username: str = Field(min_length=1, max_length=255)
    full_name: str = Field(min_length=1, max_length=255)
    role: UserRole = "STANDARD"
    reason: str = Field(description="Regulatory or operational need for this account")


class UserResponse(BaseModel):
    """Response schema for a user account."""

    id: str
    username: str
    full_name: str
    role: UserRole
    created_at: datetime

    @classmethod
    def from_account(cls, account: UserAccount) -> "UserResponse":
        return cls(**account.model_dump())


# ---------------------------------------------------------------------------
# Templates
# ---------------------------------------------------------------------------


class TemplateWriteRequest(BaseModel):
    """Request body for creating or updating a logbook template.

    For updates, send the full column list, including the system-managed
    columns exactly as returned by GET /templates/{id}.
    """

    name: str = Field(min_length=1, max_length=255)
    description: str = ""
    status: TemplateStatus = "DRAFT"
    columns: list[ColumnDraft] = Field(default_factory=list)
    reason: str = Field(description="Justification for creating or changing the template")

    def to_draft(self) -> TemplateDraft:
        return TemplateDraft(
            name=self.name,
            description=self.description,
            status=self.status,
            columns=tuple(self.columns),
        )


class TemplateResponse(BaseModel):
    """Response schema for a logbook template."""

    id: str
    name: str
    description: str
    status: TemplateStatus
    columns: list[ColumnDefinition]
    created_at: datetime
    created_by: str

    @classmethod
    def from_template(cls, template: LogbookTemplate) -> "TemplateResponse":
        return cls(
            id=template.id,
            name=template.name,
            description=template.description,
            status=template.status,
            columns=list(template.columns),
            created_at=template.created_at,
            created_by=template.created_by,
        )


class TemplateCommitResponse(BaseModel):
    """A committed template version and its audit record id."""

    template: TemplateResponse
    audit_record_id: str


# ---------------------------------------------------------------------------
# Entries
# ---------------------------------------------------------------------------


class EntrySubmitRequest(BaseModel):
    """Request body for submitting an entry. Values are keyed by column key."""

    values: dict[str, Any] = Field(default_factory=dict)
    reason: str = Field(description="Justification for the entry")


class EntryResponse(BaseModel):
    """Response schema for a logbook entry. Values are flattened to plain JSON."""

    id: str
    template_id: str
    values: dict[str, Any]
    created_at: datetime
    created_by: str
    status: str
    reason: str

    @classmethod
    def from_entry(cls, entry: LogbookEntry) -> "EntryResponse":
        dumped = entry.model_dump(mode="json")
        return cls(
            id=entry.id,
            template_id=entry.template_id,
            values={key: cell["value"] for key, cell in dumped["values"].items()},
            created_at=entry.created_at,
            created_by=entry.created_by,
            status=entry.status,
            reason=entry.reason,
        )


class EntryCommitResponse(BaseModel):
    """A committed entry and its audit record id."""

    entry: EntryResponse
    audit_record_id: str


# ---------------------------------------------------------------------------
# Audit trail
# ---------------------------------------------------------------------------


class AuditRecordResponse(BaseModel):
    """Response schema for an immutable audit record."""

    sequence: int
    id: str
    entity_type: EntityType
    entity_id: str
    action: AuditAction
    old_value: dict[str, Any] | None
    new_value: dict[str, Any] | None
    author_id: str
    author_name: str
    timestamp: datetime
    justification: str

    @classmethod
    def from_record(cls, record: AuditRecord) -> "AuditRecordResponse":
        return cls(
            sequence=record.sequence,
            id=record.id,
            entity_type=record.entity_type,
            entity_id=record.entity_id,
            action=record.action,
            old_value=record.old_value,
            new_value=record.new_value,
            author_id=record.author_id,
            author_name=record.author_name,
            timestamp=record.timestamp,
            justification=record.justification,
        )
