"""SQLAlchemy ORM tables for the SQL Record Store.

All tables use the `elog_` prefix.

Tables:
- UserRow         — elog_users
- TemplateRow     — elog_templates
- EntryRow        — elog_entries
- AuditRecordRow  — elog_audit_records (IMMUTABLE, append-only)

Entity rows keep the canonical JSON snapshot in `payload` and copy a few
fields into indexed columns for lookup. The payload is the source of truth.

IMPORTANT: elog_audit_records has NO UPDATE or DELETE path. The ORM refuses
flushes that would update or delete an AuditRecordRow, and on SQLite the
table is created with triggers that abort any UPDATE or DELETE statement.
"""

from datetime import datetime

from sqlalchemy import DDL, DateTime, Integer, String, Text, event
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from gxp_elogbook.errors import InvariantViolationError


class Base(DeclarativeBase):
    """Declarative base for eLogbook tables."""


class UserRow(Base):
    """Persisted UserAccount."""

    __tablename__ = "elog_users"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    username: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
        unique=True,
        comment="Case-normalized username",
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    payload: Mapped[str] = mapped_column(Text, nullable=False, comment="Canonical JSON snapshot")


class TemplateRow(Base):
    """Persisted LogbookTemplate (current version only; history lives in the ledger)."""

    __tablename__ = "elog_templates"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    payload: Mapped[str] = mapped_column(Text, nullable=False, comment="Canonical JSON snapshot")


class EntryRow(Base):
    """Persisted LogbookEntry."""

    __tablename__ = "elog_entries"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    template_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    payload: Mapped[str] = mapped_column(Text, nullable=False, comment="Canonical JSON snapshot")


class AuditRecordRow(Base):
    """Immutable audit record.

    `sequence` is the insertion order. AUTOINCREMENT guarantees a sequence
    number is never reused, even after the highest row is gone.
    """

    __tablename__ = "elog_audit_records"
    __table_args__ = ({"sqlite_autoincrement": True},)

    sequence: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    id: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    entity_type: Mapped[str] = mapped_column(String(32), nullable=False)
    entity_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    action: Mapped[str] = mapped_column(String(20), nullable=False)
    old_snapshot: Mapped[str | None] = mapped_column(Text, nullable=True)
    new_snapshot: Mapped[str | None] = mapped_column(Text, nullable=True)
    author_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    author_name: Mapped[str] = mapped_column(String(255), nullable=False)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    justification: Mapped[str] = mapped_column(Text, nullable=False)


@event.listens_for(AuditRecordRow, "before_update")
def _reject_audit_update(mapper: object, connection: object, target: AuditRecordRow) -> None:
    raise InvariantViolationError(
        "Audit records are append-only and cannot be modified",
        resource="AuditRecord",
        resource_id=target.id,
    )


@event.listens_for(AuditRecordRow, "before_delete")
def _reject_audit_delete(mapper: object, connection: object, target: AuditRecordRow) -> None:
    raise InvariantViolationError(
        "Audit records are append-only and cannot be deleted",
        resource="AuditRecord",
        resource_id=target.id,
    )


for _statement in (
    "CREATE TRIGGER elog_audit_records_no_update BEFORE UPDATE ON elog_audit_records "
    "BEGIN SELECT RAISE(ABORT, 'audit records are append-only'); END",
    "CREATE TRIGGER elog_audit_records_no_delete BEFORE DELETE ON elog_audit_records "
    "BEGIN SELECT RAISE(ABORT, 'audit records are append-only'); END",
):
    event.listen(
        AuditRecordRow.__table__,
        "after_create",
        DDL(_statement).execute_if(dialect="sqlite"),
    )
