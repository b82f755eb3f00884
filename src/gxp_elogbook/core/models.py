"""Immutable domain model for the eLogbook ledger.

Every type here is a frozen pydantic model. Stores hold entities as canonical
JSON text and rehydrate them on read, so a value obtained from the store or the
ledger never shares state with what is persisted.

Regulated entities:
- UserAccount      — attributable identity (ADMIN or STANDARD role)
- LogbookTemplate  — schema definition: ordered ColumnDefinitions
- LogbookEntry     — regulated data record; values are tagged CellValues

Ledger:
- PendingAuditRecord — audit record staged by the pipeline, before sequencing
- AuditRecord        — persisted, sequenced, append-only audit record

Inputs:
- Actor        — identity supplied by the identity collaborator
- UserDraft, TemplateDraft, ColumnDraft, EntryDraft — proposed new states
"""

from __future__ import annotations

import json
import re
from datetime import datetime
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field

UserRole = Literal["ADMIN", "STANDARD"]
ColumnType = Literal["TEXT", "NUMBER", "DATE", "DROPDOWN", "BOOLEAN"]
TemplateStatus = Literal["DRAFT", "ACTIVE", "INACTIVE"]
EntryStatus = Literal["SUBMITTED", "SIGNED", "DELETED"]
EntityType = Literal["USER", "LOGBOOK_TEMPLATE", "ENTRY"]
AuditAction = Literal["CREATE", "UPDATE", "DELETE", "VIEW_REPORT", "LOGIN"]

# Human-readable labels, searched by the audit trail free-text filter
ENTITY_TYPE_LABELS: dict[str, str] = {
    "USER": "User",
    "LOGBOOK_TEMPLATE": "Logbook Template",
    "ENTRY": "Entry",
}

SYSTEM_TIME_COLUMN_KEY = "recorded_at"

_WHITESPACE = re.compile(r"\s+")


def derive_column_key(label: str) -> str:
    """Derive a column key from its display label.

    Args:
        label: The column display label.

    Returns:
        The label stripped, lower-cased, with whitespace runs replaced by "_".
    """
    return _WHITESPACE.sub("_", label.strip().lower())


def normalize_username(username: str) -> str:
    """Return the case-normalized form of a username."""
    return username.strip().lower()


# ---------------------------------------------------------------------------
# Identity
# ---------------------------------------------------------------------------


class Actor(BaseModel):
    """The acting user, as supplied by the identity collaborator.

    Attributes:
        id: Stable user identifier.
        username: Login name.
        full_name: Display name recorded on audit records.
        role: ADMIN or STANDARD.
    """

    model_config = ConfigDict(frozen=True)

    id: str
    username: str
    full_name: str
    role: UserRole

    @property
    def is_admin(self) -> bool:
        return self.role == "ADMIN"


class UserAccount(BaseModel):
    """Attributable user identity. Immutable once created."""

    model_config = ConfigDict(frozen=True)

    id: str
    username: str
    full_name: str
    role: UserRole
    created_at: datetime

    def as_actor(self) -> Actor:
        """Return the identity view of this account."""
        return Actor(id=self.id, username=self.username, full_name=self.full_name, role=self.role)


# ---------------------------------------------------------------------------
# Templates
# ---------------------------------------------------------------------------


class ColumnDefinition(BaseModel):
    """A single field of a logbook template.

    Attributes:
        id: Column identifier, unique within the template.
        label: Display label.
        key: Normalized key used in entry values, unique within the template.
        type: Declared value type.
        is_mandatory: Whether entries must supply a non-empty value.
        options: Selectable values (DROPDOWN only).
        display_order: Rendering and export position.
        group: Optional name clustering related columns.
        is_system_managed: Injected and filled by the write pipeline; end users
            can neither alter nor remove it.
    """

    model_config = ConfigDict(frozen=True)

    id: str
    label: str
    key: str
    type: ColumnType
    is_mandatory: bool = False
    options: tuple[str, ...] = ()
    display_order: int = 0
    group: str | None = None
    is_system_managed: bool = False

    def to_draft(self) -> ColumnDraft:
        return ColumnDraft(**self.model_dump())


class LogbookTemplate(BaseModel):
    """Schema definition for a logbook. Columns are kept in display order."""

    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    description: str = ""
    status: TemplateStatus
    columns: tuple[ColumnDefinition, ...]
    created_at: datetime
    created_by: str

    def column(self, key: str) -> ColumnDefinition | None:
        """Return the column with the given key, or None."""
        for column in self.columns:
            if column.key == key:
                return column
        return None

    @property
    def system_columns(self) -> tuple[ColumnDefinition, ...]:
        return tuple(c for c in self.columns if c.is_system_managed)


# ---------------------------------------------------------------------------
# Entries — tagged cell values
# ---------------------------------------------------------------------------


class TextValue(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: Literal["TEXT"] = "TEXT"
    value: str


class NumberValue(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: Literal["NUMBER"] = "NUMBER"
    value: float


class DateValue(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: Literal["DATE"] = "DATE"
    value: datetime


class BoolValue(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: Literal["BOOLEAN"] = "BOOLEAN"
    value: bool


class OptionValue(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: Literal["DROPDOWN"] = "DROPDOWN"
    value: str


CellValue = Annotated[
    Union[TextValue, NumberValue, DateValue, BoolValue, OptionValue],
    Field(discriminator="type"),
]


class LogbookEntry(BaseModel):
    """Regulated data record captured against a template.

    Attributes:
        id: Entry identifier.
        template_id: Owning LogbookTemplate id.
        values: Column key to tagged value. Keys of empty optional columns
            are absent.
        created_at: Commit time (UTC).
        created_by: Author user id.
        status: SUBMITTED on creation.
        reason: Mandatory justification given at submission.
    """

    model_config = ConfigDict(frozen=True)

    id: str
    template_id: str
    values: dict[str, CellValue]
    created_at: datetime
    created_by: str
    status: EntryStatus = "SUBMITTED"
    reason: str = Field(min_length=1)


Entity = Union[UserAccount, LogbookTemplate, LogbookEntry]

ENTITY_MODELS: dict[str, type[BaseModel]] = {
    "USER": UserAccount,
    "LOGBOOK_TEMPLATE": LogbookTemplate,
    "ENTRY": LogbookEntry,
}


def entity_type_of(entity: Entity) -> EntityType:
    """Return the entity type tag for a regulated entity instance."""
    if isinstance(entity, UserAccount):
        return "USER"
    if isinstance(entity, LogbookTemplate):
        return "LOGBOOK_TEMPLATE"
    return "ENTRY"


# ---------------------------------------------------------------------------
# Audit ledger
# ---------------------------------------------------------------------------


class PendingAuditRecord(BaseModel):
    """Audit record staged by the write pipeline, not yet sequenced.

    Snapshots are canonical compact JSON text. old_snapshot is None for
    CREATE and LOGIN; new_snapshot is None only for audit events that carry
    no state.
    """

    model_config = ConfigDict(frozen=True)

    id: str
    entity_type: EntityType
    entity_id: str
    action: AuditAction
    old_snapshot: str | None = None
    new_snapshot: str | None = None
    author_id: str
    author_name: str
    timestamp: datetime
    justification: str = Field(min_length=1)

    @property
    def old_value(self) -> dict[str, Any] | None:
        """Prior state as a freshly parsed dict (None for CREATE/LOGIN)."""
        return json.loads(self.old_snapshot) if self.old_snapshot is not None else None

    @property
    def new_value(self) -> dict[str, Any] | None:
        """New state as a freshly parsed dict."""
        return json.loads(self.new_snapshot) if self.new_snapshot is not None else None

    @property
    def entity_type_label(self) -> str:
        return ENTITY_TYPE_LABELS[self.entity_type]


class AuditRecord(PendingAuditRecord):
    """Persisted audit record. Never modified or removed once written.

    Attributes:
        sequence: Store-assigned insertion sequence; unique and never reused.
    """

    sequence: int


# ---------------------------------------------------------------------------
# Proposed states (pipeline inputs)
# ---------------------------------------------------------------------------


class UserDraft(BaseModel):
    """Proposed new user account."""

    model_config = ConfigDict(frozen=True)

    username: str
    full_name: str
    role: UserRole = "STANDARD"


class ColumnDraft(BaseModel):
    """Proposed column definition. Missing id, key and order are derived."""

    model_config = ConfigDict(frozen=True)

    id: str | None = None
    label: str
    key: str | None = None
    type: ColumnType = "TEXT"
    is_mandatory: bool = False
    options: tuple[str, ...] = ()
    display_order: int | None = None
    group: str | None = None
    is_system_managed: bool = False


class TemplateDraft(BaseModel):
    """Proposed template state. For updates, carry the full column list."""

    model_config = ConfigDict(frozen=True)

    name: str
    description: str = ""
    status: TemplateStatus = "DRAFT"
    columns: tuple[ColumnDraft, ...] = ()

    @classmethod
    def from_template(cls, template: LogbookTemplate) -> TemplateDraft:
        """Start an edit from the current version of a template."""
        return cls(
            name=template.name,
            description=template.description,
            status=template.status,
            columns=tuple(column.to_draft() for column in template.columns),
        )


class EntryDraft(BaseModel):
    """Proposed entry. Values are raw inputs or CellValues, keyed by column key."""

    model_config = ConfigDict(frozen=True)

    template_id: str
    values: dict[str, Any] = Field(default_factory=dict)


class CommitResult(BaseModel):
    """Outcome of a successful commit: the committed entity and its audit record id."""

    model_config = ConfigDict(frozen=True)

    entity: Entity
    audit_record_id: str
