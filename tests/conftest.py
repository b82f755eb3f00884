"""Test fixtures for gxp-elogbook-ledger.

Provides:
- clock: A settable clock shared by the service and its pipeline
- store: A fresh InMemoryRecordStore
- sql_store: A SqlRecordStore on an in-memory SQLite database
- service: An ELogbookService over the in-memory store
- admin / operator: Provisioned ADMIN and STANDARD identities
- template_draft: A draft with mandatory, optional and dropdown columns
- active_template: The draft committed with status ACTIVE
"""

from collections.abc import AsyncIterator
from datetime import UTC, datetime, timedelta

import pytest

from gxp_elogbook.adapters.memory_store import InMemoryRecordStore
from gxp_elogbook.adapters.sql_store import SqlRecordStore
from gxp_elogbook.core.models import Actor, ColumnDraft, LogbookTemplate, TemplateDraft
from gxp_elogbook.core.services import ELogbookService


class SettableClock:
    """Callable clock that only moves when a test advances it."""

    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture()
def clock() -> SettableClock:
    """Return a clock fixed at 2026-03-02 09:00 UTC.

    Returns:
        A SettableClock; call advance() to move time forward.
    """
    return SettableClock(datetime(2026, 3, 2, 9, 0, tzinfo=UTC))


@pytest.fixture()
def store() -> InMemoryRecordStore:
    """Return an empty in-memory Record Store."""
    return InMemoryRecordStore()


@pytest.fixture()
async def sql_store() -> AsyncIterator[SqlRecordStore]:
    """Create a SqlRecordStore on a private in-memory SQLite database.

    Yields:
        An initialized store; disposed after the test.
    """
    sql = SqlRecordStore.from_url("sqlite+aiosqlite://")
    await sql.init()
    yield sql
    await sql.close()


@pytest.fixture()
def service(store: InMemoryRecordStore, clock: SettableClock) -> ELogbookService:
    """Create an ELogbookService over the in-memory store.

    Args:
        store: Injected in-memory store.
        clock: Injected settable clock.

    Returns:
        The service under test.
    """
    return ELogbookService(store, clock=clock)


@pytest.fixture()
async def admin(service: ELogbookService) -> Actor:
    """Bootstrap the first administrator and return its identity."""
    account = await service.bootstrap("admin", "Ada Admin")
    assert account is not None
    return account.as_actor()


@pytest.fixture()
async def operator(service: ELogbookService, admin: Actor) -> Actor:
    """Provision a STANDARD user and return its identity."""
    account = await service.provision_user(
        admin,
        username="operator",
        full_name="Olive Operator",
        role="STANDARD",
        reason="Line operator onboarding",
    )
    return account.as_actor()


@pytest.fixture()
def template_draft() -> TemplateDraft:
    """Return a cleaning-log template draft.

    Columns: Batch Number (TEXT, mandatory), Temperature (NUMBER, mandatory),
    Cleaned (BOOLEAN), Room (DROPDOWN A/B), Comment (TEXT).
    """
    return TemplateDraft(
        name="Cleaning Log",
        description="Equipment cleaning record",
        status="ACTIVE",
        columns=(
            ColumnDraft(label="Batch Number", type="TEXT", is_mandatory=True),
            ColumnDraft(label="Temperature", type="NUMBER", is_mandatory=True, group="Readings"),
            ColumnDraft(label="Cleaned", type="BOOLEAN"),
            ColumnDraft(label="Room", type="DROPDOWN", options=("A", "B")),
            ColumnDraft(label="Comment", type="TEXT"),
        ),
    )


@pytest.fixture()
async def active_template(service: ELogbookService, admin: Actor, template_draft: TemplateDraft) -> LogbookTemplate:
    """Commit the template draft and return the created template."""
    result = await service.create_template(admin, template_draft, "New cleaning SOP rev 3")
    assert isinstance(result.entity, LogbookTemplate)
    return result.entity
