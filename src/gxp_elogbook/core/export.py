"""Export encoder: deterministic CSV for audit records and logbook entries.

Every field is quoted and internal quotes are doubled, so no value can
terminate a field or a row early. Object-valued fields (audit snapshots) are
rendered as canonical compact JSON before quoting. The output is a pure
function of (rows, column order): the same input always yields the same text.
"""

from __future__ import annotations

import csv
import io
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from pydantic import BaseModel

from gxp_elogbook.core.models import AuditRecord, LogbookEntry, LogbookTemplate
from gxp_elogbook.core.snapshots import canonical_json


@dataclass(frozen=True)
class ExportColumn:
    """One output column.

    Attributes:
        key: Row field read for this column.
        label: Header text.
    """

    key: str
    label: str


AUDIT_COLUMNS: tuple[ExportColumn, ...] = (
    ExportColumn("sequence", "Sequence"),
    ExportColumn("id", "Audit ID"),
    ExportColumn("timestamp", "Timestamp"),
    ExportColumn("author_id", "User ID"),
    ExportColumn("author_name", "User"),
    ExportColumn("action", "Action"),
    ExportColumn("entity_type", "Entity Type"),
    ExportColumn("entity_id", "Entity ID"),
    ExportColumn("justification", "Reason"),
    ExportColumn("old_value", "Old Value"),
    ExportColumn("new_value", "New Value"),
)

ENTRY_METADATA_COLUMNS: tuple[ExportColumn, ...] = (
    ExportColumn("id", "Entry ID"),
    ExportColumn("created_at", "Created At"),
    ExportColumn("created_by", "Created By"),
    ExportColumn("status", "Status"),
    ExportColumn("reason", "Reason"),
)


def render_field(value: Any) -> str:
    """Render one value as text, before quoting.

    Args:
        value: Any row value.

    Returns:
        "" for None, "true"/"false" for booleans, ISO 8601 for datetimes,
        canonical JSON for dicts, lists and models, repr() for floats,
        str() otherwise.
    """
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, float):
        return repr(value)
    if isinstance(value, BaseModel):
        return canonical_json(value.model_dump(mode="json"))
    if isinstance(value, (dict, list, tuple)):
        return canonical_json(value)
    return str(value)


def encode(rows: Sequence[Mapping[str, Any]], columns: Sequence[ExportColumn]) -> str:
    """Encode rows as CSV in the given column order.

    Args:
        rows: Mappings of field key to value. Missing keys render empty.
        columns: Output columns, in order.

    Returns:
        CSV text with a header row, every field quoted, CRLF line endings.
    """
    buffer = io.StringIO()
    writer = csv.writer(buffer, quoting=csv.QUOTE_ALL, doublequote=True, lineterminator="\r\n")
    writer.writerow([column.label for column in columns])
    for row in rows:
        writer.writerow([render_field(row.get(column.key)) for column in columns])
    return buffer.getvalue()


def _audit_row(record: AuditRecord) -> dict[str, Any]:
    return {
        "sequence": record.sequence,
        "id": record.id,
        "timestamp": record.timestamp,
        "author_id": record.author_id,
        "author_name": record.author_name,
        "action": record.action,
        "entity_type": record.entity_type,
        "entity_id": record.entity_id,
        "justification": record.justification,
        "old_value": record.old_value,
        "new_value": record.new_value,
    }


def encode_audit_records(records: Sequence[AuditRecord]) -> str:
    """Encode audit records with the fixed audit schema, in the given order."""
    return encode([_audit_row(record) for record in records], AUDIT_COLUMNS)


def entry_columns(template: LogbookTemplate) -> tuple[ExportColumn, ...]:
    """Return entry export columns: metadata, then template columns in display order."""
    value_columns = tuple(
        ExportColumn(f"values.{column.key}", column.label)
        for column in sorted(template.columns, key=lambda column: column.display_order)
    )
    return ENTRY_METADATA_COLUMNS + value_columns


def _entry_row(entry: LogbookEntry) -> dict[str, Any]:
    row: dict[str, Any] = {
        "id": entry.id,
        "created_at": entry.created_at,
        "created_by": entry.created_by,
        "status": entry.status,
        "reason": entry.reason,
    }
    for key, cell in entry.values.items():
        row[f"values.{key}"] = cell.value
    return row


def encode_entries(entries: Sequence[LogbookEntry], template: LogbookTemplate) -> str:
    """Encode a template's entries, in the given order."""
    return encode([_entry_row(entry) for entry in entries], entry_columns(template))
