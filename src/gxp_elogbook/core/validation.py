"""Entity construction and validation used by the write pipeline.

Each builder turns a proposed draft into the immutable entity that will be
committed, or raises before anything is written:
- build_template  — column normalization, system-managed column protection
- build_entry_values — tagged-value coercion and mandatory-field completeness
- build_user      — username normalization
"""

from __future__ import annotations

import math
from collections.abc import Mapping
from datetime import UTC, date, datetime
from typing import Any

from gxp_elogbook.core.models import (
    SYSTEM_TIME_COLUMN_KEY,
    BoolValue,
    CellValue,
    ColumnDefinition,
    DateValue,
    LogbookTemplate,
    NumberValue,
    OptionValue,
    TemplateDraft,
    TextValue,
    UserAccount,
    UserDraft,
    derive_column_key,
    normalize_username,
)
from gxp_elogbook.core.snapshots import new_id
from gxp_elogbook.errors import InvariantViolationError, ValidationError

_CELL_TYPES = (TextValue, NumberValue, DateValue, BoolValue, OptionValue)


def system_time_column() -> ColumnDefinition:
    """Return the capture-time column the pipeline injects into every template."""
    return ColumnDefinition(
        id=f"col_{SYSTEM_TIME_COLUMN_KEY}",
        label="Recorded At",
        key=SYSTEM_TIME_COLUMN_KEY,
        type="DATE",
        is_mandatory=False,
        display_order=0,
        group="System",
        is_system_managed=True,
    )


# ---------------------------------------------------------------------------
# Templates
# ---------------------------------------------------------------------------


def _build_columns(draft: TemplateDraft, skip_system_key: bool) -> list[ColumnDefinition]:
    columns: list[ColumnDefinition] = []
    for index, column_draft in enumerate(draft.columns):
        if skip_system_key and column_draft.is_system_managed:
            continue

        field_prefix = f"columns[{index}]"
        label = column_draft.label.strip()
        if not label:
            raise ValidationError("Column label is required", field=f"{field_prefix}.label")

        key = column_draft.key.strip() if column_draft.key else derive_column_key(label)
        if not key:
            raise ValidationError("Column key is required", field=f"{field_prefix}.key")

        options = tuple(option.strip() for option in column_draft.options)
        if options and column_draft.type != "DROPDOWN":
            raise ValidationError(
                f"Options are only allowed on DROPDOWN columns (column '{key}')",
                field=f"{field_prefix}.options",
            )
        if any(not option for option in options):
            raise ValidationError(
                f"Dropdown options must be non-empty strings (column '{key}')",
                field=f"{field_prefix}.options",
            )

        group = column_draft.group.strip() if column_draft.group else ""

        columns.append(
            ColumnDefinition(
                id=column_draft.id or new_id("col"),
                label=label,
                key=key,
                type=column_draft.type,
                is_mandatory=column_draft.is_mandatory,
                options=options,
                display_order=(
                    column_draft.display_order if column_draft.display_order is not None else index + 1
                ),
                group=group or None,
                is_system_managed=column_draft.is_system_managed,
            )
        )
    return columns


def _check_system_columns_preserved(prior: LogbookTemplate, columns: list[ColumnDefinition]) -> None:
    by_id = {column.id: column for column in columns}
    prior_ids = {column.id for column in prior.system_columns}

    for prior_column in prior.system_columns:
        proposed = by_id.get(prior_column.id)
        if proposed is None:
            raise InvariantViolationError(
                f"System-managed column '{prior_column.key}' cannot be removed",
                field=prior_column.key,
                resource="LogbookTemplate",
                resource_id=prior.id,
            )
        if proposed != prior_column:
            raise InvariantViolationError(
                f"System-managed column '{prior_column.key}' cannot be altered",
                field=prior_column.key,
                resource="LogbookTemplate",
                resource_id=prior.id,
            )

    for column in columns:
        if column.is_system_managed and column.id not in prior_ids:
            raise InvariantViolationError(
                f"Column '{column.key}' cannot be marked system-managed by a template edit",
                field=column.key,
                resource="LogbookTemplate",
                resource_id=prior.id,
            )


def build_template(
    draft: TemplateDraft,
    *,
    template_id: str,
    prior: LogbookTemplate | None,
    author_id: str,
    now: datetime,
) -> LogbookTemplate:
    """Validate a template draft and build the version to commit.

    On creation the system-managed capture-time column is injected; any
    system-managed column in the draft is replaced by it, since only the
    pipeline may define those. On update, every system-managed column of the
    prior version must be carried over unchanged and no new ones may appear.

    Args:
        draft: Proposed template state.
        template_id: Id of the template (new or existing).
        prior: Current version for updates, None for creation.
        author_id: Acting user id (recorded as creator on creation).
        now: Commit time.

    Returns:
        The LogbookTemplate to commit, columns sorted by display order.

    Raises:
        ValidationError: Bad name, labels, keys, ids or options.
        InvariantViolationError: System-managed column removed, altered or added.
    """
    name = draft.name.strip()
    if not name:
        raise ValidationError("Template name is required", field="name")

    if prior is None:
        columns = [system_time_column(), *_build_columns(draft, skip_system_key=True)]
    else:
        columns = _build_columns(draft, skip_system_key=False)
        _check_system_columns_preserved(prior, columns)

    if not any(not column.is_system_managed for column in columns):
        raise ValidationError("A template needs at least one user-defined column", field="columns")

    seen_keys: set[str] = set()
    seen_ids: set[str] = set()
    for column in columns:
        if column.key in seen_keys:
            raise ValidationError(f"Duplicate column key '{column.key}'", field=column.key)
        if column.id in seen_ids:
            raise ValidationError(f"Duplicate column id '{column.id}'", field=column.key)
        seen_keys.add(column.key)
        seen_ids.add(column.id)

    # sorted() is stable, so equal display orders keep their list order
    ordered = tuple(sorted(columns, key=lambda column: column.display_order))

    return LogbookTemplate(
        id=template_id,
        name=name,
        description=draft.description.strip(),
        status=draft.status,
        columns=ordered,
        created_at=prior.created_at if prior is not None else now,
        created_by=prior.created_by if prior is not None else author_id,
    )


# ---------------------------------------------------------------------------
# Entries
# ---------------------------------------------------------------------------


def _mismatch(column: ColumnDefinition, raw: Any) -> ValidationError:
    return ValidationError(
        f"{column.label} expects a {column.type} value, got {type(raw).__name__}",
        field=column.key,
    )


def _as_aware(value: datetime) -> datetime:
    return value.replace(tzinfo=UTC) if value.tzinfo is None else value


def coerce_cell(column: ColumnDefinition, raw: Any) -> CellValue | None:
    """Coerce a raw input value to the column's tagged value type.

    Empty inputs (None, blank strings) coerce to None so the caller can
    apply the mandatory rule. Numeric strings are accepted for NUMBER and
    ISO 8601 strings for DATE, since form inputs arrive as text.

    Args:
        column: The target column definition.
        raw: Raw input, or an already tagged CellValue.

    Returns:
        The tagged value, or None if the input is empty.

    Raises:
        ValidationError: If the value does not match the column type, or a
            DROPDOWN value is not one of the column's options.
    """
    if raw is None:
        return None

    if isinstance(raw, _CELL_TYPES):
        if raw.type != column.type:
            raise _mismatch(column, raw)
        if isinstance(raw, (TextValue, OptionValue)) and not raw.value.strip():
            return None
        raw = raw.value

    if isinstance(raw, str) and not raw.strip():
        return None

    if column.type == "TEXT":
        if not isinstance(raw, str):
            raise _mismatch(column, raw)
        return TextValue(value=raw)

    if column.type == "NUMBER":
        if isinstance(raw, bool):
            raise _mismatch(column, raw)
        if isinstance(raw, str):
            try:
                number = float(raw.strip())
            except ValueError:
                raise ValidationError(f"{column.label} must be a number", field=column.key) from None
        elif isinstance(raw, (int, float)):
            number = float(raw)
        else:
            raise _mismatch(column, raw)
        if not math.isfinite(number):
            raise ValidationError(f"{column.label} must be a finite number", field=column.key)
        return NumberValue(value=number)

    if column.type == "DATE":
        if isinstance(raw, datetime):
            return DateValue(value=_as_aware(raw))
        if isinstance(raw, date):
            return DateValue(value=datetime(raw.year, raw.month, raw.day, tzinfo=UTC))
        if isinstance(raw, str):
            try:
                return DateValue(value=_as_aware(datetime.fromisoformat(raw.strip())))
            except ValueError:
                raise ValidationError(
                    f"{column.label} must be an ISO 8601 date", field=column.key
                ) from None
        raise _mismatch(column, raw)

    if column.type == "BOOLEAN":
        if not isinstance(raw, bool):
            raise _mismatch(column, raw)
        return BoolValue(value=raw)

    # DROPDOWN
    if not isinstance(raw, str):
        raise _mismatch(column, raw)
    if column.options and raw not in column.options:
        raise ValidationError(
            f"{column.label} must be one of: {', '.join(column.options)}",
            field=column.key,
        )
    return OptionValue(value=raw)


def build_entry_values(
    template: LogbookTemplate,
    raw_values: Mapping[str, Any],
    *,
    recorded_at: datetime,
) -> dict[str, CellValue]:
    """Validate submitted values against a template and build the value map.

    Args:
        template: The owning template.
        raw_values: Submitted values keyed by column key.
        recorded_at: Commit time, written into the system capture column.

    Returns:
        Tagged values keyed by column key. Empty optional columns are omitted.

    Raises:
        ValidationError: Unknown key, value for a system-managed column, type
            mismatch, or missing mandatory value (naming the first missing key
            in display order).
    """
    for key in raw_values:
        column = template.column(key)
        if column is None:
            raise ValidationError(f"Unknown field '{key}' for this logbook", field=key)
        if column.is_system_managed:
            raise ValidationError(f"Field '{key}' is system-managed and cannot be supplied", field=key)

    values: dict[str, CellValue] = {}
    for column in template.columns:
        if column.is_system_managed:
            if column.type == "DATE":
                values[column.key] = DateValue(value=recorded_at)
            continue

        cell = coerce_cell(column, raw_values.get(column.key))
        if cell is None:
            if column.is_mandatory:
                raise ValidationError(f"{column.label} is required", field=column.key)
            continue
        values[column.key] = cell

    return values


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------


def build_user(draft: UserDraft, *, user_id: str, now: datetime) -> UserAccount:
    """Validate a user draft and build the account to commit.

    Uniqueness of the username is checked by the pipeline against the store.

    Raises:
        ValidationError: Empty or malformed username, empty full name.
    """
    username = normalize_username(draft.username)
    if not username:
        raise ValidationError("Username is required", field="username")
    if any(character.isspace() for character in username):
        raise ValidationError("Username cannot contain whitespace", field="username")

    full_name = draft.full_name.strip()
    if not full_name:
        raise ValidationError("Full name is required", field="full_name")

    return UserAccount(id=user_id, username=username, full_name=full_name, role=draft.role, created_at=now)
