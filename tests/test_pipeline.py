"""Tests for the VersionedWritePipeline.

Covers:
- Atomic pairing of every committed change with exactly one audit record
- Rejections leave the store and the ledger untouched
- Role checks, justification and identity requirements
- System-managed column injection and protection
- Serialization of concurrent commits
"""

import asyncio
from collections.abc import AsyncIterator
from pathlib import Path

import pytest

from gxp_elogbook.adapters.memory_store import InMemoryRecordStore
from gxp_elogbook.adapters.sql_store import SqlRecordStore
from gxp_elogbook.core.interfaces import IRecordStore
from gxp_elogbook.core.models import (
    Actor,
    AuditRecord,
    Entity,
    EntityType,
    EntryDraft,
    LogbookEntry,
    LogbookTemplate,
    PendingAuditRecord,
    TemplateDraft,
    UserDraft,
)
from gxp_elogbook.core.pipeline import KeyedLock, VersionedWritePipeline
from gxp_elogbook.core.services import ELogbookService
from gxp_elogbook.errors import (
    InvariantViolationError,
    NotFoundError,
    PermissionDeniedError,
    StorageUnavailableError,
    UnauthenticatedError,
    ValidationError,
)

VALID_VALUES = {"batch_number": "B-1001", "temperature": 21.5}


class YieldingRecordStore(InMemoryRecordStore):
    """In-memory store that yields to the event loop on every read, like a real driver."""

    async def get(self, entity_type: EntityType, entity_id: str) -> Entity | None:
        await asyncio.sleep(0)
        return await super().get(entity_type, entity_id)

    async def list_entities(self, entity_type: EntityType) -> list[Entity]:
        await asyncio.sleep(0)
        return await super().list_entities(entity_type)


class FlakyStore(InMemoryRecordStore):
    """In-memory store whose commit fails, as if the disk were gone, once switched off."""

    def __init__(self) -> None:
        super().__init__()
        self.available = True

    async def commit(self, entity: Entity | None, audit: PendingAuditRecord) -> AuditRecord:
        if not self.available:
            raise StorageUnavailableError("Record store unavailable during commit")
        return await super().commit(entity, audit)


class TestTemplateCommits:
    """Template creation and versioned updates."""

    async def test_create_injects_system_time_column_first(self, active_template: LogbookTemplate) -> None:
        """The capture-time column is added at the front and flagged system-managed."""
        first = active_template.columns[0]
        assert first.key == "recorded_at"
        assert first.type == "DATE"
        assert first.is_system_managed is True
        assert [c.key for c in active_template.columns[1:]] == [
            "batch_number",
            "temperature",
            "cleaned",
            "room",
            "comment",
        ]

    async def test_create_records_create_audit_without_old_value(
        self,
        service: ELogbookService,
        active_template: LogbookTemplate,
        admin: Actor,
    ) -> None:
        """CREATE carries the full new state and no prior state."""
        history = await service.ledger.list_for_entity(active_template.id)
        assert len(history) == 1
        record = history[0]
        assert record.action == "CREATE"
        assert record.old_value is None
        assert record.new_value is not None
        assert record.new_value["name"] == "Cleaning Log"
        assert record.author_id == admin.id
        assert record.author_name == "Ada Admin"
        assert record.justification == "New cleaning SOP rev 3"

    async def test_update_records_prior_and_new_state(
        self,
        service: ELogbookService,
        active_template: LogbookTemplate,
        admin: Actor,
    ) -> None:
        """An update writes an UPDATE record whose old value is the prior version."""
        draft = TemplateDraft.from_template(active_template).model_copy(update={"name": "Cleaning Log v2"})
        result = await service.update_template(admin, active_template.id, draft, "Renamed per CAPA-12")

        assert isinstance(result.entity, LogbookTemplate)
        assert result.entity.name == "Cleaning Log v2"
        assert result.entity.created_at == active_template.created_at

        history = await service.ledger.list_for_entity(active_template.id)
        assert [r.action for r in history] == ["UPDATE", "CREATE"]
        assert history[0].old_value == history[1].new_value
        assert history[0].new_value is not None
        assert history[0].new_value["name"] == "Cleaning Log v2"

    async def test_removing_system_column_is_rejected(
        self,
        service: ELogbookService,
        store: InMemoryRecordStore,
        active_template: LogbookTemplate,
        admin: Actor,
    ) -> None:
        """Dropping the system-managed column raises and nothing is written."""
        draft = TemplateDraft.from_template(active_template)
        draft = draft.model_copy(update={"columns": draft.columns[1:]})
        ledger_before = await store.list_audit_records()

        with pytest.raises(InvariantViolationError) as exc_info:
            await service.update_template(admin, active_template.id, draft, "Tidy up columns")

        assert exc_info.value.field == "recorded_at"
        assert await store.list_audit_records() == ledger_before
        assert await store.get("LOGBOOK_TEMPLATE", active_template.id) == active_template

    async def test_altering_system_column_is_rejected(
        self,
        service: ELogbookService,
        active_template: LogbookTemplate,
        admin: Actor,
    ) -> None:
        """Relabelling the system-managed column is an invariant violation."""
        draft = TemplateDraft.from_template(active_template)
        altered = draft.columns[0].model_copy(update={"label": "Captured"})
        draft = draft.model_copy(update={"columns": (altered, *draft.columns[1:])})

        with pytest.raises(InvariantViolationError):
            await service.update_template(admin, active_template.id, draft, "Relabel")

    async def test_update_of_unknown_template_is_not_found(
        self,
        service: ELogbookService,
        template_draft: TemplateDraft,
        admin: Actor,
    ) -> None:
        with pytest.raises(NotFoundError):
            await service.update_template(admin, "lb_missing", template_draft, "Edit")

    async def test_standard_user_cannot_change_templates(
        self,
        service: ELogbookService,
        store: InMemoryRecordStore,
        active_template: LogbookTemplate,
        operator: Actor,
    ) -> None:
        """STANDARD users get PermissionDeniedError and the template stays unchanged."""
        ledger_before = await store.list_audit_records()
        draft = TemplateDraft.from_template(active_template).model_copy(update={"name": "Hijacked"})

        with pytest.raises(PermissionDeniedError):
            await service.update_template(operator, active_template.id, draft, "I want to")

        assert await store.list_audit_records() == ledger_before
        current = await store.get("LOGBOOK_TEMPLATE", active_template.id)
        assert isinstance(current, LogbookTemplate)
        assert current.name == "Cleaning Log"


class TestEntryCommits:
    """Entry submission against templates."""

    async def test_submit_entry_fills_system_time(
        self,
        service: ELogbookService,
        active_template: LogbookTemplate,
        operator: Actor,
        clock,
    ) -> None:
        """The capture column is written by the pipeline with the commit time."""
        result = await service.submit_entry(operator, active_template.id, VALID_VALUES, "Shift 1 cleaning")

        entry = result.entity
        assert isinstance(entry, LogbookEntry)
        assert entry.values["recorded_at"].value == clock.now
        assert entry.values["batch_number"].value == "B-1001"
        assert entry.values["temperature"].value == 21.5
        assert "comment" not in entry.values
        assert entry.created_by == operator.id
        assert entry.status == "SUBMITTED"

        history = await service.ledger.list_for_entity(entry.id)
        assert len(history) == 1
        assert history[0].id == result.audit_record_id
        assert history[0].action == "CREATE"

    async def test_missing_mandatory_value_names_the_column(
        self,
        service: ELogbookService,
        store: InMemoryRecordStore,
        active_template: LogbookTemplate,
        operator: Actor,
    ) -> None:
        """A blank mandatory value fails with the column's key and label; no write occurs."""
        ledger_before = await store.list_audit_records()

        with pytest.raises(ValidationError) as exc_info:
            await service.submit_entry(
                operator,
                active_template.id,
                {"batch_number": "  ", "temperature": 20},
                "Shift 1 cleaning",
            )

        assert exc_info.value.field == "batch_number"
        assert exc_info.value.message == "Batch Number is required"
        assert store.count("ENTRY") == 0
        assert await store.list_audit_records() == ledger_before

    async def test_wrong_type_is_rejected(
        self,
        service: ELogbookService,
        active_template: LogbookTemplate,
        operator: Actor,
    ) -> None:
        with pytest.raises(ValidationError) as exc_info:
            await service.submit_entry(
                operator,
                active_template.id,
                {**VALID_VALUES, "cleaned": "yes"},
                "Shift 1 cleaning",
            )
        assert exc_info.value.field == "cleaned"

    async def test_dropdown_value_must_be_an_option(
        self,
        service: ELogbookService,
        active_template: LogbookTemplate,
        operator: Actor,
    ) -> None:
        with pytest.raises(ValidationError) as exc_info:
            await service.submit_entry(
                operator,
                active_template.id,
                {**VALID_VALUES, "room": "C"},
                "Shift 1 cleaning",
            )
        assert exc_info.value.field == "room"

    async def test_system_column_cannot_be_supplied(
        self,
        service: ELogbookService,
        active_template: LogbookTemplate,
        operator: Actor,
    ) -> None:
        with pytest.raises(ValidationError) as exc_info:
            await service.submit_entry(
                operator,
                active_template.id,
                {**VALID_VALUES, "recorded_at": "2020-01-01T00:00:00+00:00"},
                "Backdating attempt",
            )
        assert exc_info.value.field == "recorded_at"

    async def test_draft_template_does_not_accept_entries(
        self,
        service: ELogbookService,
        template_draft: TemplateDraft,
        admin: Actor,
        operator: Actor,
    ) -> None:
        draft = template_draft.model_copy(update={"status": "DRAFT"})
        created = await service.create_template(admin, draft, "Work in progress")

        with pytest.raises(ValidationError) as exc_info:
            await service.submit_entry(operator, created.entity.id, VALID_VALUES, "Try it")
        assert exc_info.value.field == "template_id"

    async def test_entries_are_create_only(
        self,
        service: ELogbookService,
        active_template: LogbookTemplate,
        operator: Actor,
    ) -> None:
        result = await service.submit_entry(operator, active_template.id, VALID_VALUES, "Shift 1 cleaning")

        with pytest.raises(ValidationError):
            await service.pipeline.commit_change(
                "ENTRY",
                result.entity.id,
                EntryDraft(template_id=active_template.id, values=VALID_VALUES),
                "Correct the batch",
                operator,
            )

    async def test_returned_entity_cannot_reach_stored_state(
        self,
        service: ELogbookService,
        store: InMemoryRecordStore,
        active_template: LogbookTemplate,
        operator: Actor,
    ) -> None:
        """Mutating a returned value map leaves the stored entry intact."""
        result = await service.submit_entry(operator, active_template.id, VALID_VALUES, "Shift 1 cleaning")
        assert isinstance(result.entity, LogbookEntry)

        result.entity.values.pop("batch_number")

        stored = await store.get("ENTRY", result.entity.id)
        assert isinstance(stored, LogbookEntry)
        assert stored.values["batch_number"].value == "B-1001"


class TestCommitPreconditions:
    """Identity and justification checks shared by all entity types."""

    async def test_missing_actor_is_unauthenticated(
        self,
        service: ELogbookService,
        store: InMemoryRecordStore,
        template_draft: TemplateDraft,
        admin: Actor,
    ) -> None:
        ledger_before = await store.list_audit_records()
        with pytest.raises(UnauthenticatedError):
            await service.create_template(None, template_draft, "No one")
        assert await store.list_audit_records() == ledger_before

    async def test_unknown_actor_is_unauthenticated(
        self,
        service: ELogbookService,
        template_draft: TemplateDraft,
        admin: Actor,
    ) -> None:
        ghost = Actor(id="u_ghost", username="ghost", full_name="Ghost", role="ADMIN")
        with pytest.raises(UnauthenticatedError):
            await service.create_template(ghost, template_draft, "Spoofed identity")

    @pytest.mark.parametrize("justification", ["", "   "])
    async def test_blank_justification_is_rejected(
        self,
        service: ELogbookService,
        store: InMemoryRecordStore,
        template_draft: TemplateDraft,
        admin: Actor,
        justification: str,
    ) -> None:
        ledger_before = await store.list_audit_records()
        with pytest.raises(ValidationError) as exc_info:
            await service.create_template(admin, template_draft, justification)
        assert exc_info.value.field == "justification"
        assert store.count("LOGBOOK_TEMPLATE") == 0
        assert await store.list_audit_records() == ledger_before

    async def test_draft_must_match_entity_type(
        self,
        service: ELogbookService,
        template_draft: TemplateDraft,
        admin: Actor,
    ) -> None:
        with pytest.raises(ValidationError):
            await service.pipeline.commit_change("USER", None, template_draft, "Mixed up", admin)

    async def test_storage_failure_writes_nothing(self, clock, template_draft: TemplateDraft) -> None:
        """When the store cannot persist, the change and its audit record are both absent."""
        store = FlakyStore()
        pipeline = VersionedWritePipeline(store, clock=clock)
        account = await pipeline.bootstrap_administrator("admin", "Ada Admin")
        assert account is not None
        ledger_before = await store.list_audit_records()
        store.available = False

        with pytest.raises(StorageUnavailableError):
            await pipeline.commit_change("LOGBOOK_TEMPLATE", None, template_draft, "New SOP", account.as_actor())

        assert store.count("LOGBOOK_TEMPLATE") == 0
        assert await store.list_audit_records() == ledger_before


class TestUsers:
    """User provisioning through the pipeline."""

    async def test_bootstrap_is_self_attributed_and_runs_once(self, service: ELogbookService) -> None:
        account = await service.bootstrap("Admin", "Ada Admin")
        assert account is not None
        assert account.username == "admin"
        assert account.role == "ADMIN"

        history = await service.ledger.list_for_entity(account.id)
        assert history[0].author_id == account.id
        assert await service.bootstrap("other", "Other Admin") is None

    async def test_duplicate_username_is_rejected(self, service: ELogbookService, admin: Actor) -> None:
        with pytest.raises(ValidationError) as exc_info:
            await service.provision_user(admin, " ADMIN ", "Second Admin", "ADMIN", "Backup")
        assert exc_info.value.field == "username"

    async def test_users_are_immutable(self, service: ELogbookService, admin: Actor) -> None:
        with pytest.raises(ValidationError):
            await service.pipeline.commit_change(
                "USER",
                admin.id,
                UserDraft(username="admin", full_name="Renamed", role="ADMIN"),
                "Rename",
                admin,
            )

    async def test_standard_user_cannot_provision(self, service: ELogbookService, operator: Actor) -> None:
        with pytest.raises(PermissionDeniedError):
            await service.provision_user(operator, "friend", "A Friend", "ADMIN", "Escalation")


class TestConcurrency:
    """Concurrent commits are serialized without losing audit records.

    Runs against stores that suspend between reading the prior state and
    committing, so interleaving tasks would clobber each other without the
    per-entity locks.
    """

    @pytest.fixture(params=["memory", "sql"])
    async def store(self, request: pytest.FixtureRequest, tmp_path: Path) -> AsyncIterator[IRecordStore]:
        """Override the conftest store with a yielding in-memory or file-backed SQLite store."""
        if request.param == "memory":
            yield YieldingRecordStore()
            return
        sql = SqlRecordStore.from_url(f"sqlite+aiosqlite:///{tmp_path / 'elogbook.db'}")
        await sql.init()
        yield sql
        await sql.close()

    async def test_concurrent_entries_each_get_one_audit_record(
        self,
        service: ELogbookService,
        store: IRecordStore,
        active_template: LogbookTemplate,
        operator: Actor,
    ) -> None:
        ledger_before = len(await store.list_audit_records())

        results = await asyncio.gather(
            *(
                service.submit_entry(
                    operator,
                    active_template.id,
                    {"batch_number": f"B-{i}", "temperature": i},
                    f"Reading {i}",
                )
                for i in range(20)
            )
        )

        records = await store.list_audit_records()
        assert len(records) == ledger_before + 20
        assert [r.sequence for r in records] == list(range(1, len(records) + 1))
        assert len(await store.list_entities("ENTRY")) == 20
        audit_ids = {r.audit_record_id for r in results}
        assert len(audit_ids) == 20
        assert {r.entity_id for r in records if r.entity_type == "ENTRY"} == {r.entity.id for r in results}

    async def test_concurrent_updates_chain_prior_states(
        self,
        service: ELogbookService,
        active_template: LogbookTemplate,
        admin: Actor,
    ) -> None:
        """Each UPDATE's old value is exactly the previous version's new value."""
        base = TemplateDraft.from_template(active_template)

        await asyncio.gather(
            *(
                service.update_template(
                    admin,
                    active_template.id,
                    base.model_copy(update={"description": f"Revision {i}"}),
                    f"Revision {i}",
                )
                for i in range(5)
            )
        )

        history = list(reversed(await service.ledger.list_for_entity(active_template.id)))
        assert [r.action for r in history] == ["CREATE"] + ["UPDATE"] * 5
        for previous, current in zip(history, history[1:]):
            assert current.old_value == previous.new_value

    async def test_entry_and_deactivation_are_serialized(
        self,
        service: ELogbookService,
        active_template: LogbookTemplate,
        admin: Actor,
        operator: Actor,
    ) -> None:
        """An entry racing a deactivation is either refused or committed before it."""
        deactivate = TemplateDraft.from_template(active_template).model_copy(update={"status": "INACTIVE"})

        update_result, entry_result = await asyncio.gather(
            service.update_template(admin, active_template.id, deactivate, "Retire SOP rev 3"),
            service.submit_entry(operator, active_template.id, VALID_VALUES, "Last reading"),
            return_exceptions=True,
        )

        assert not isinstance(update_result, BaseException)
        history = await service.ledger.list_for_entity(active_template.id)
        deactivated_at = next(r.sequence for r in history if r.action == "UPDATE")
        if isinstance(entry_result, ValidationError):
            assert entry_result.field == "template_id"
        else:
            assert not isinstance(entry_result, BaseException)
            entry_record = (await service.ledger.list_for_entity(entry_result.entity.id))[0]
            assert entry_record.sequence < deactivated_at

    async def test_entry_waits_for_its_template_lock(
        self,
        service: ELogbookService,
        active_template: LogbookTemplate,
        operator: Actor,
    ) -> None:
        async with service.pipeline._locks.hold(f"LOGBOOK_TEMPLATE:{active_template.id}"):
            pending = asyncio.create_task(
                service.submit_entry(operator, active_template.id, VALID_VALUES, "Blocked reading")
            )
            await asyncio.sleep(0.05)
            assert not pending.done()

        result = await pending
        assert isinstance(result.entity, LogbookEntry)


class TestKeyedLock:
    async def test_locks_are_released_after_use(self) -> None:
        locks = KeyedLock()
        async with locks.hold("a", "b"):
            assert len(locks) == 2
        assert len(locks) == 0
