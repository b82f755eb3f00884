"""Service facade used by UI and report collaborators.

ELogbookService wires the write pipeline, the audit ledger, the record
queries and the export encoder together:
- users:     bootstrap, login, provisioning, personnel search
- templates: create, update, read
- entries:   submit, list per template
- audit:     role-filtered trail, entity history, exports

All mutations go through VersionedWritePipeline. All reads go through
AuditLedger or RecordQueries. The facade contains no framework code; the
HTTP layer in api/router.py is a thin wrapper over it.
"""

from __future__ import annotations

from collections.abc import Callable, Mapping
from datetime import UTC, datetime
from typing import Any, cast

from gxp_elogbook.core.access import DEFAULT_MAX_SPAN_DAYS, ExportWindow, can_view
from gxp_elogbook.core.export import encode_audit_records, encode_entries
from gxp_elogbook.core.interfaces import IRecordStore
from gxp_elogbook.core.ledger import AuditLedger
from gxp_elogbook.core.models import (
    Actor,
    AuditRecord,
    CommitResult,
    EntryDraft,
    LogbookEntry,
    LogbookTemplate,
    TemplateDraft,
    TemplateStatus,
    UserAccount,
    UserDraft,
    UserRole,
)
from gxp_elogbook.core.pipeline import VersionedWritePipeline
from gxp_elogbook.core.queries import RecordQueries
from gxp_elogbook.errors import UnauthenticatedError, ValidationError
from gxp_elogbook.observability import get_logger

logger = get_logger(__name__)


def _require_actor(actor: Actor | None) -> Actor:
    if actor is None:
        raise UnauthenticatedError()
    return actor


class ELogbookService:
    """Entry point for every eLogbook operation.

    Args:
        store: The Record Store.
        max_span_days: Hard cap on export window spans.
        clock: Returns the current UTC time. Injected for tests.
    """

    def __init__(
        self,
        store: IRecordStore,
        max_span_days: int = DEFAULT_MAX_SPAN_DAYS,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        """Initialize the service and its collaborators.

        Args:
            store: The Record Store shared by pipeline, ledger and queries.
            max_span_days: Longest allowed export window.
            clock: Optional time source; defaults to datetime.now(UTC).
        """
        self._clock = clock or (lambda: datetime.now(UTC))
        self._max_span_days = max_span_days
        self.pipeline = VersionedWritePipeline(store, clock=self._clock)
        self.ledger = AuditLedger(store)
        self.queries = RecordQueries(store)

    def export_window(self, start: datetime | None, end: datetime | None) -> ExportWindow | None:
        """Validate optional bounds against the configured caps."""
        return ExportWindow.from_bounds(start, end, now=self._clock(), max_span_days=self._max_span_days)

    def _required_window(self, start: datetime | None, end: datetime | None) -> ExportWindow:
        window = self.export_window(start, end)
        if window is None:
            raise ValidationError("Date range required for exports", field="range")
        return window

    # ------------------------------------------------------------------
    # Users and sessions
    # ------------------------------------------------------------------

    async def bootstrap(self, username: str, full_name: str) -> UserAccount | None:
        """Create the first administrator if the user store is empty."""
        return await self.pipeline.bootstrap_administrator(username, full_name)

    async def login(self, username: str) -> Actor:
        """Resolve a username to an identity and record the LOGIN.

        Raises:
            UnauthenticatedError: If no account has this username.
        """
        account = await self.queries.find_user(username)
        if account is None:
            logger.warning("Login refused for unknown username")
            raise UnauthenticatedError("Unknown username")
        actor = account.as_actor()
        await self.pipeline.record_login(actor)
        return actor

    async def resolve_actor(self, user_id: str | None) -> Actor | None:
        """Identity lookup for a session user id."""
        return await self.queries.resolve_actor(user_id)

    async def provision_user(
        self,
        actor: Actor | None,
        username: str,
        full_name: str,
        role: UserRole,
        reason: str,
    ) -> UserAccount:
        """Create a user account (administrators only)."""
        result = await self.pipeline.commit_change(
            "USER",
            None,
            UserDraft(username=username, full_name=full_name, role=role),
            reason,
            actor,
        )
        return cast(UserAccount, result.entity)

    async def list_users(self, actor: Actor | None, search: str | None = None) -> list[UserAccount]:
        _require_actor(actor)
        return await self.queries.list_users(search)

    # ------------------------------------------------------------------
    # Templates
    # ------------------------------------------------------------------

    async def create_template(self, actor: Actor | None, draft: TemplateDraft, reason: str) -> CommitResult:
        """Create a logbook template (administrators only)."""
        return await self.pipeline.commit_change("LOGBOOK_TEMPLATE", None, draft, reason, actor)

    async def update_template(
        self,
        actor: Actor | None,
        template_id: str,
        draft: TemplateDraft,
        reason: str,
    ) -> CommitResult:
        """Replace a template with a new version (administrators only)."""
        return await self.pipeline.commit_change("LOGBOOK_TEMPLATE", template_id, draft, reason, actor)

    async def get_template(self, actor: Actor | None, template_id: str) -> LogbookTemplate:
        _require_actor(actor)
        return await self.queries.get_template(template_id)

    async def list_templates(
        self,
        actor: Actor | None,
        status: TemplateStatus | None = None,
    ) -> list[LogbookTemplate]:
        _require_actor(actor)
        return await self.queries.list_templates(status)

    # ------------------------------------------------------------------
    # Entries
    # ------------------------------------------------------------------

    async def submit_entry(
        self,
        actor: Actor | None,
        template_id: str,
        values: Mapping[str, Any],
        reason: str,
    ) -> CommitResult:
        """Submit a regulated entry against an active template."""
        return await self.pipeline.commit_change(
            "ENTRY",
            None,
            EntryDraft(template_id=template_id, values=dict(values)),
            reason,
            actor,
        )

    async def list_entries(
        self,
        actor: Actor | None,
        template_id: str,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> list[LogbookEntry]:
        _require_actor(actor)
        return await self.queries.list_entries(template_id, self.export_window(start, end))

    async def export_entries(
        self,
        actor: Actor | None,
        template_id: str,
        start: datetime | None,
        end: datetime | None,
    ) -> str:
        """Export a template's entries within a bounded window as CSV.

        Records a VIEW_REPORT audit record for the template.

        Raises:
            ValidationError: Missing or invalid window.
            NotFoundError: Unknown template.
        """
        requester = _require_actor(actor)
        window = self._required_window(start, end)
        template = await self.queries.get_template(template_id)
        entries = await self.queries.list_entries(template_id, window)
        text = encode_entries(entries, template)
        await self.pipeline.record_report_view(
            requester,
            "LOGBOOK_TEMPLATE",
            template.id,
            f"Exported {len(entries)} entries of '{template.name}' for {window.describe()}",
        )
        return text

    # ------------------------------------------------------------------
    # Audit trail
    # ------------------------------------------------------------------

    async def audit_trail(
        self,
        actor: Actor | None,
        search: str | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> list[AuditRecord]:
        """Return the audit records visible to the actor, newest first."""
        window = self.export_window(start, end)
        return await self.ledger.list_visible_to(actor, window=window, search=search)

    async def entity_history(self, actor: Actor | None, entity_id: str) -> list[AuditRecord]:
        """Return one entity's audit history, limited to what the actor may see."""
        requester = _require_actor(actor)
        return [record for record in await self.ledger.list_for_entity(entity_id) if can_view(requester, record)]

    async def export_audit_trail(
        self,
        actor: Actor | None,
        start: datetime | None,
        end: datetime | None,
        search: str | None = None,
    ) -> str:
        """Export the visible audit trail within a bounded window as CSV.

        Records a VIEW_REPORT audit record against the requesting user.

        Raises:
            ValidationError: Missing or invalid window.
        """
        requester = _require_actor(actor)
        window = self._required_window(start, end)
        records = await self.ledger.list_visible_to(requester, window=window, search=search)
        text = encode_audit_records(records)
        await self.pipeline.record_report_view(
            requester,
            "USER",
            requester.id,
            f"Exported {len(records)} audit records for {window.describe()}",
        )
        return text
