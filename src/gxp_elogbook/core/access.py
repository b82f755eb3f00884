"""Access control and filtering rules for audit and report reads.

- can_view:        two-role visibility (ADMIN sees all, STANDARD sees own)
- matches_search:  case-insensitive free-text filter
- ExportWindow:    validated, bounded date range for exports
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

from gxp_elogbook.core.models import Actor, PendingAuditRecord
from gxp_elogbook.errors import ValidationError

DEFAULT_MAX_SPAN_DAYS = 31


def can_view(requester: Actor, record: PendingAuditRecord) -> bool:
    """Return True if the requester may see the audit record."""
    return requester.role == "ADMIN" or record.author_id == requester.id


def matches_search(record: PendingAuditRecord, term: str | None) -> bool:
    """Match a term against author name, entity-type label or justification.

    A blank or missing term matches everything.
    """
    if not term or not term.strip():
        return True
    needle = term.strip().lower()
    return (
        needle in record.author_name.lower()
        or needle in record.entity_type_label.lower()
        or needle in record.entity_type.lower()
        or needle in record.justification.lower()
    )


def _as_utc(value: datetime) -> datetime:
    return value.replace(tzinfo=UTC) if value.tzinfo is None else value.astimezone(UTC)


@dataclass(frozen=True)
class ExportWindow:
    """Inclusive date range bounding an export.

    Construct through from_bounds(), which enforces the hard caps.

    Attributes:
        start: Lower bound (UTC, inclusive).
        end: Upper bound (UTC, inclusive).
    """

    start: datetime
    end: datetime

    @classmethod
    def from_bounds(
        cls,
        start: datetime | None,
        end: datetime | None,
        *,
        now: datetime | None = None,
        max_span_days: int = DEFAULT_MAX_SPAN_DAYS,
    ) -> ExportWindow | None:
        """Validate export bounds.

        Args:
            start: Lower bound, or None.
            end: Upper bound, or None.
            now: Current time; defaults to datetime.now(UTC).
            max_span_days: Longest allowed span.

        Returns:
            The window, or None when neither bound is given.

        Raises:
            ValidationError: Only one bound supplied ("range required"),
                end before start, a bound in the future, or a span longer
                than max_span_days.
        """
        if start is None and end is None:
            return None
        if start is None or end is None:
            raise ValidationError("Date range required: supply both start and end", field="range")

        start = _as_utc(start)
        end = _as_utc(end)
        current = _as_utc(now) if now is not None else datetime.now(UTC)

        if end < start:
            raise ValidationError("End of range is before its start", field="end")
        if start > current:
            raise ValidationError("Start of range is in the future", field="start")
        if end > current:
            raise ValidationError("End of range is in the future", field="end")
        if end - start > timedelta(days=max_span_days):
            raise ValidationError(
                f"Date range cannot exceed {max_span_days} days",
                field="range",
            )
        return cls(start=start, end=end)

    def contains(self, moment: datetime) -> bool:
        return self.start <= _as_utc(moment) <= self.end

    def describe(self) -> str:
        return f"{self.start.isoformat()} to {self.end.isoformat()}"
