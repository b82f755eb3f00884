"""SQL Record Store — SQLAlchemy async backend for entities and the audit ledger.

Entities and audit records live in the same database so an entity write and
its audit append commit in ONE transaction: either both are visible or
neither is. commit() returns only after the database commit has succeeded.

The audit table is insert-only. This store exposes no update or delete for
audit records; tables.py additionally rejects ORM updates/deletes and, on
SQLite, installs triggers that abort UPDATE/DELETE statements. In production
on a server database, the connecting role should hold only INSERT and SELECT
grants on elog_audit_records.

Key exports:
- create_store_engine(...)  — build an async engine for a database URL
- SqlRecordStore            — IRecordStore implementation
"""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from datetime import UTC, datetime
from typing import cast

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from gxp_elogbook.adapters.tables import AuditRecordRow, Base, EntryRow, TemplateRow, UserRow
from gxp_elogbook.core.models import (
    ENTITY_MODELS,
    AuditRecord,
    Entity,
    EntityType,
    LogbookEntry,
    LogbookTemplate,
    PendingAuditRecord,
    UserAccount,
    entity_type_of,
)
from gxp_elogbook.core.snapshots import snapshot
from gxp_elogbook.errors import ConflictError, StorageUnavailableError
from gxp_elogbook.observability import get_logger

logger = get_logger(__name__)

_ROW_TYPES: dict[str, type[UserRow] | type[TemplateRow] | type[EntryRow]] = {
    "USER": UserRow,
    "LOGBOOK_TEMPLATE": TemplateRow,
    "ENTRY": EntryRow,
}


def create_store_engine(database_url: str, echo: bool = False) -> AsyncEngine:
    """Create the async engine backing a SqlRecordStore.

    In-memory SQLite URLs get a StaticPool so every session shares the one
    connection that holds the database.

    Args:
        database_url: SQLAlchemy async URL, e.g. sqlite+aiosqlite:///./elogbook.db
            or postgresql+asyncpg://...
        echo: Echo SQL statements. Statements carry regulated snapshots.

    Returns:
        The configured AsyncEngine.
    """
    if database_url.startswith("sqlite"):
        if database_url.endswith("://") or ":memory:" in database_url:
            return create_async_engine(database_url, echo=echo, poolclass=StaticPool)
        return create_async_engine(database_url, echo=echo)
    return create_async_engine(database_url, echo=echo, pool_pre_ping=True)


@contextmanager
def _storage_guard(operation: str) -> Iterator[None]:
    """Translate driver failures into ELogbookError subclasses.

    Connectivity failures become StorageUnavailableError; constraint
    violations (a reused primary key, a duplicate username) become
    ConflictError.
    """
    try:
        yield
    except IntegrityError as exc:
        logger.warning("Record store rejected a conflicting write", operation=operation)
        raise ConflictError(f"Record store rejected a conflicting write during {operation}") from exc
    except (OperationalError, InterfaceError) as exc:
        logger.error("Record store unavailable", operation=operation, error=type(exc).__name__)
        raise StorageUnavailableError(f"Record store unavailable during {operation}") from exc


def _as_utc(value: datetime) -> datetime:
    # SQLite returns naive datetimes; everything is written in UTC
    return value.replace(tzinfo=UTC) if value.tzinfo is None else value.astimezone(UTC)


def _to_row(entity: Entity, payload: str) -> UserRow | TemplateRow | EntryRow:
    if isinstance(entity, UserAccount):
        return UserRow(
            id=entity.id,
            username=entity.username,
            created_at=_as_utc(entity.created_at),
            payload=payload,
        )
    if isinstance(entity, LogbookTemplate):
        return TemplateRow(
            id=entity.id,
            status=entity.status,
            created_at=_as_utc(entity.created_at),
            payload=payload,
        )
    entry = cast(LogbookEntry, entity)
    return EntryRow(
        id=entry.id,
        template_id=entry.template_id,
        created_at=_as_utc(entry.created_at),
        payload=payload,
    )


def _to_record(row: AuditRecordRow) -> AuditRecord:
    return AuditRecord(
        sequence=row.sequence,
        id=row.id,
        entity_type=row.entity_type,  # type: ignore[arg-type]
        entity_id=row.entity_id,
        action=row.action,  # type: ignore[arg-type]
        old_snapshot=row.old_snapshot,
        new_snapshot=row.new_snapshot,
        author_id=row.author_id,
        author_name=row.author_name,
        timestamp=_as_utc(row.timestamp),
        justification=row.justification,
    )


class SqlRecordStore:
    """IRecordStore backed by a SQL database through SQLAlchemy async.

    Args:
        engine: The async engine, typically from create_store_engine().
    """

    def __init__(self, engine: AsyncEngine) -> None:
        """Initialize the store with an engine and build its session factory.

        Args:
            engine: A SQLAlchemy AsyncEngine.
        """
        self._engine = engine
        self._session_factory = async_sessionmaker(
            bind=engine,
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )

    @classmethod
    def from_url(cls, database_url: str, echo: bool = False) -> SqlRecordStore:
        """Build a store for a database URL."""
        return cls(create_store_engine(database_url, echo=echo))

    @property
    def session_factory(self) -> async_sessionmaker[AsyncSession]:
        return self._session_factory

    async def init(self) -> None:
        """Create the tables (and SQLite audit triggers) if they do not exist.

        Raises:
            StorageUnavailableError: If the database cannot be reached.
        """
        logger.info("Initializing record store schema", dialect=self._engine.dialect.name)
        with _storage_guard("init"):
            async with self._engine.begin() as connection:
                await connection.run_sync(Base.metadata.create_all)

    async def close(self) -> None:
        """Dispose the engine. No further operations are possible afterwards."""
        logger.info("Disposing record store engine")
        await self._engine.dispose()

    async def get(self, entity_type: EntityType, entity_id: str) -> Entity | None:
        """Return the current value of an entity, or None."""
        row_type = _ROW_TYPES[entity_type]
        with _storage_guard("get"):
            async with self._session_factory() as session:
                row = await session.get(row_type, entity_id)
        if row is None:
            return None
        return ENTITY_MODELS[entity_type].model_validate_json(row.payload)  # type: ignore[return-value]

    async def list_entities(self, entity_type: EntityType) -> list[Entity]:
        """Return every entity of a type ordered by creation time."""
        row_type = _ROW_TYPES[entity_type]
        stmt = select(row_type.payload).order_by(row_type.created_at.asc(), row_type.id.asc())
        with _storage_guard("list_entities"):
            async with self._session_factory() as session:
                result = await session.execute(stmt)
                payloads = list(result.scalars().all())
        model = ENTITY_MODELS[entity_type]
        return [model.model_validate_json(payload) for payload in payloads]  # type: ignore[misc]

    async def commit(self, entity: Entity | None, audit: PendingAuditRecord) -> AuditRecord:
        """Upsert the entity and insert the audit record in one transaction.

        Args:
            entity: New entity state, or None for audit-only events.
            audit: The staged audit record.

        Returns:
            The persisted AuditRecord carrying its AUTOINCREMENT sequence.

        Raises:
            StorageUnavailableError: If the database cannot be reached. The
                transaction is rolled back; nothing is written.
            ConflictError: If a row constraint rejects the write. The
                transaction is rolled back; nothing is written.
        """
        audit_row = AuditRecordRow(
            id=audit.id,
            entity_type=audit.entity_type,
            entity_id=audit.entity_id,
            action=audit.action,
            old_snapshot=audit.old_snapshot,
            new_snapshot=audit.new_snapshot,
            author_id=audit.author_id,
            author_name=audit.author_name,
            timestamp=_as_utc(audit.timestamp),
            justification=audit.justification,
        )

        with _storage_guard("commit"):
            async with self._session_factory() as session:
                async with session.begin():
                    if entity is not None:
                        await session.merge(_to_row(entity, snapshot(entity)))
                    session.add(audit_row)
                    await session.flush()
                    sequence = audit_row.sequence

        logger.debug(
            "Audit record persisted",
            audit_id=audit.id,
            sequence=sequence,
            entity_type=entity_type_of(entity) if entity is not None else audit.entity_type,
        )
        return AuditRecord(**audit.model_dump(), sequence=sequence)

    async def list_audit_records(self) -> list[AuditRecord]:
        """Return the ledger in insertion order."""
        stmt = select(AuditRecordRow).order_by(AuditRecordRow.sequence.asc())
        with _storage_guard("list_audit_records"):
            async with self._session_factory() as session:
                result = await session.execute(stmt)
                rows = list(result.scalars().all())
        return [_to_record(row) for row in rows]

    async def list_audit_for_entity(self, entity_id: str) -> list[AuditRecord]:
        """Return one entity's ledger records in insertion order."""
        stmt = (
            select(AuditRecordRow)
            .where(AuditRecordRow.entity_id == entity_id)
            .order_by(AuditRecordRow.sequence.asc())
        )
        with _storage_guard("list_audit_for_entity"):
            async with self._session_factory() as session:
                result = await session.execute(stmt)
                rows = list(result.scalars().all())
        return [_to_record(row) for row in rows]
