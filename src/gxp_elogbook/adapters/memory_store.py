"""In-process Record Store.

Holds the users, templates and entries collections keyed by id, plus the
append-only audit ledger ordered by insertion sequence. Entities are stored as
canonical JSON text and rehydrated on every read, so a caller holding a
returned entity can never reach the stored state.

Not durable: state lives only as long as the process. Use SqlRecordStore for
anything that must survive a restart.
"""

from __future__ import annotations

import asyncio

from gxp_elogbook.core.models import (
    ENTITY_MODELS,
    AuditRecord,
    Entity,
    EntityType,
    PendingAuditRecord,
    entity_type_of,
)
from gxp_elogbook.core.snapshots import snapshot
from gxp_elogbook.errors import ConflictError


class InMemoryRecordStore:
    """Process-local implementation of IRecordStore.

    The commit path performs no await between the entity write and the audit
    append, so both become visible to other tasks at once.
    """

    def __init__(self) -> None:
        """Initialize empty collections and an empty ledger."""
        # { entity_type: { entity_id: canonical JSON } } in insertion order
        self._entities: dict[str, dict[str, str]] = {kind: {} for kind in ENTITY_MODELS}
        self._ledger: list[AuditRecord] = []
        self._audit_ids: set[str] = set()
        self._append_lock = asyncio.Lock()

    async def get(self, entity_type: EntityType, entity_id: str) -> Entity | None:
        """Return a rehydrated copy of an entity, or None."""
        raw = self._entities[entity_type].get(entity_id)
        if raw is None:
            return None
        return ENTITY_MODELS[entity_type].model_validate_json(raw)  # type: ignore[return-value]

    async def list_entities(self, entity_type: EntityType) -> list[Entity]:
        """Return rehydrated copies of every entity of a type, in creation order."""
        model = ENTITY_MODELS[entity_type]
        return [model.model_validate_json(raw) for raw in self._entities[entity_type].values()]  # type: ignore[misc]

    async def commit(self, entity: Entity | None, audit: PendingAuditRecord) -> AuditRecord:
        """Write the entity and append the sequenced audit record as one step.

        Args:
            entity: New entity state, or None for audit-only events.
            audit: The staged audit record.

        Returns:
            The appended AuditRecord.

        Raises:
            ConflictError: If the audit id is already in the ledger. Nothing
                is written.
        """
        serialized = snapshot(entity) if entity is not None else None
        async with self._append_lock:
            if audit.id in self._audit_ids:
                raise ConflictError(f"Audit record '{audit.id}' already exists")
            record = AuditRecord(**audit.model_dump(), sequence=len(self._ledger) + 1)
            if entity is not None and serialized is not None:
                self._entities[entity_type_of(entity)][entity.id] = serialized
            self._ledger.append(record)
            self._audit_ids.add(record.id)
        return record

    async def list_audit_records(self) -> list[AuditRecord]:
        """Return the ledger in insertion order."""
        return list(self._ledger)

    async def list_audit_for_entity(self, entity_id: str) -> list[AuditRecord]:
        """Return one entity's ledger records in insertion order."""
        return [record for record in self._ledger if record.entity_id == entity_id]

    def count(self, entity_type: EntityType) -> int:
        """Return the number of stored entities of a type."""
        return len(self._entities[entity_type])
