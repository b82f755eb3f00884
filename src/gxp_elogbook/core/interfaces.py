"""Abstract interfaces (Protocol classes) for the eLogbook ledger.

The write pipeline, ledger and query layer depend on these protocols, never
on a concrete backend, so the same logic runs against the in-process store
and the SQL store.

Protocols defined:
- IRecordStore
- IIdentityProvider
"""

from typing import Protocol

from gxp_elogbook.core.models import (
    Actor,
    AuditRecord,
    Entity,
    EntityType,
    PendingAuditRecord,
)


class IRecordStore(Protocol):
    """Current-state collections plus the append-only audit ledger.

    Exposes id-keyed lookup and one write operation. There is no delete and
    no way to modify an audit record once appended.
    """

    async def get(self, entity_type: EntityType, entity_id: str) -> Entity | None:
        """Return the current value of an entity, or None if it does not exist.

        Args:
            entity_type: USER, LOGBOOK_TEMPLATE or ENTRY.
            entity_id: The entity identifier.

        Returns:
            A freshly rehydrated entity, or None.

        Raises:
            StorageUnavailableError: If the backing medium cannot be reached.
        """
        ...

    async def list_entities(self, entity_type: EntityType) -> list[Entity]:
        """Return every entity of a type, in creation order.

        Raises:
            StorageUnavailableError: If the backing medium cannot be reached.
        """
        ...

    async def commit(self, entity: Entity | None, audit: PendingAuditRecord) -> AuditRecord:
        """Insert or replace an entity and append its audit record atomically.

        Either both writes become visible or neither does. The call returns
        only after the writes are durably persisted by the backend.

        Args:
            entity: New entity state, or None for audit-only events
                (LOGIN, VIEW_REPORT).
            audit: The staged audit record paired with the write.

        Returns:
            The persisted AuditRecord with its insertion sequence.

        Raises:
            StorageUnavailableError: If the backing medium cannot be reached.
                Nothing is written in that case.
            ConflictError: If the audit id is already in the ledger or a stored
                row constraint rejects the entity. Nothing is written.
        """
        ...

    async def list_audit_records(self) -> list[AuditRecord]:
        """Return the whole ledger in insertion order (oldest first)."""
        ...

    async def list_audit_for_entity(self, entity_id: str) -> list[AuditRecord]:
        """Return the ledger records of one entity in insertion order."""
        ...


class IIdentityProvider(Protocol):
    """Identity collaborator: resolves the user behind the current session."""

    async def current_user(self) -> Actor | None:
        """Return the acting user, or None if the session is unauthenticated."""
        ...
