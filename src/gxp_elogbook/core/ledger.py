"""Audit Ledger read side.

The ledger is append-only: records are written exclusively by the
VersionedWritePipeline through IRecordStore.commit(). This class only reads.
Enumeration is newest first, ordered by insertion sequence rather than
timestamp, since timestamps can collide for rapid successive writes.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

from gxp_elogbook.core.access import ExportWindow, can_view, matches_search
from gxp_elogbook.core.interfaces import IRecordStore
from gxp_elogbook.core.models import Actor, AuditRecord
from gxp_elogbook.errors import UnauthenticatedError


def _newest_first(records: list[AuditRecord]) -> list[AuditRecord]:
    return sorted(records, key=lambda record: record.sequence, reverse=True)


class AuditLedger:
    """Ordered, role-filtered reads over the audit ledger.

    Args:
        store: The Record Store holding the ledger.
    """

    def __init__(self, store: IRecordStore) -> None:
        self._store = store

    async def list_for_entity(self, entity_id: str) -> list[AuditRecord]:
        """Return every audit record of one entity, newest first."""
        return _newest_first(await self._store.list_audit_for_entity(entity_id))

    async def list_visible_to(
        self,
        user: Actor | None,
        window: ExportWindow | None = None,
        search: str | None = None,
    ) -> list[AuditRecord]:
        """Return the audit records a user may see, newest first.

        This is the only read path for audit history offered to UI and report
        collaborators.

        Args:
            user: The requesting user.
            window: Optional validated date window (inclusive).
            search: Optional free-text filter.

        Returns:
            Visible records matching the filters, newest first.

        Raises:
            UnauthenticatedError: If user is None.
        """
        if user is None:
            raise UnauthenticatedError()
        records = [
            record
            for record in await self._store.list_audit_records()
            if can_view(user, record)
            and matches_search(record, search)
            and (window is None or window.contains(record.timestamp))
        ]
        return _newest_first(records)

    async def snapshot_at(self, entity_id: str, at: datetime) -> dict[str, Any] | None:
        """Reconstruct an entity's state as of a past instant.

        Args:
            entity_id: The entity to reconstruct.
            at: The instant (inclusive).

        Returns:
            The new state of the last CREATE/UPDATE at or before `at`, or
            None if the entity did not exist yet.
        """
        if at.tzinfo is None:
            at = at.replace(tzinfo=UTC)
        state: dict[str, Any] | None = None
        for record in await self._store.list_audit_for_entity(entity_id):
            if record.timestamp <= at and record.action in ("CREATE", "UPDATE"):
                state = record.new_value
        return state
