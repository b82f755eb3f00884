"""Versioned Write Pipeline — the only path that writes regulated data.

For every mutation of a user, template or entry the pipeline:
1. resolves the acting user (explicitly passed, never ambient),
2. requires a non-empty justification,
3. applies the two-role check,
4. under a per-entity lock (entries also hold their template's lock),
   reads the current value as the prior state,
5. validates and builds the new immutable state,
6. hands the new state and its paired audit record to the store's atomic
   commit().

Every check runs before step 6, so a rejected change leaves the store and
the ledger exactly as they were. Errors propagate to the caller unchanged.

Audit-only events (LOGIN, VIEW_REPORT) are also appended here so the ledger
has a single writer.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Callable
from contextlib import AsyncExitStack, asynccontextmanager
from datetime import UTC, datetime
from typing import cast

from pydantic import BaseModel

from gxp_elogbook.core.interfaces import IRecordStore
from gxp_elogbook.core.models import (
    Actor,
    AuditRecord,
    CommitResult,
    Entity,
    EntityType,
    EntryDraft,
    LogbookEntry,
    LogbookTemplate,
    PendingAuditRecord,
    TemplateDraft,
    UserAccount,
    UserDraft,
    normalize_username,
)
from gxp_elogbook.core.snapshots import canonical_json, new_id, snapshot
from gxp_elogbook.core.validation import build_entry_values, build_template, build_user
from gxp_elogbook.errors import (
    ELogbookError,
    NotFoundError,
    PermissionDeniedError,
    UnauthenticatedError,
    ValidationError,
)
from gxp_elogbook.observability import get_logger

logger = get_logger(__name__)

_DRAFT_TYPES: dict[str, type[BaseModel]] = {
    "USER": UserDraft,
    "LOGBOOK_TEMPLATE": TemplateDraft,
    "ENTRY": EntryDraft,
}

_ID_PREFIXES: dict[str, str] = {
    "USER": "u",
    "LOGBOOK_TEMPLATE": "lb",
    "ENTRY": "ent",
}

_RESOURCE_NAMES: dict[str, str] = {
    "USER": "UserAccount",
    "LOGBOOK_TEMPLATE": "LogbookTemplate",
    "ENTRY": "LogbookEntry",
}

# Entity types whose mutations require the ADMIN role
_ADMIN_ONLY: frozenset[str] = frozenset({"USER", "LOGBOOK_TEMPLATE"})

LOGIN_JUSTIFICATION = "Standard Login"
BOOTSTRAP_JUSTIFICATION = "Initial system administrator provisioning"


def _utcnow() -> datetime:
    return datetime.now(UTC)


class KeyedLock:
    """Per-key asyncio mutual exclusion.

    Locks are created on first use and dropped once no task holds or waits
    for them, so the table only ever contains keys with in-flight commits.
    """

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._holders: dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, *keys: str) -> AsyncIterator[None]:
        """Acquire the locks for all keys, in sorted order to avoid deadlock."""
        async with AsyncExitStack() as stack:
            for key in sorted(set(keys)):
                await stack.enter_async_context(self._hold_one(key))
            yield

    @asynccontextmanager
    async def _hold_one(self, key: str) -> AsyncIterator[None]:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        self._holders[key] = self._holders.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._holders[key] -= 1
            if not self._holders[key]:
                del self._holders[key]
                del self._locks[key]

    def __len__(self) -> int:
        return len(self._locks)


class VersionedWritePipeline:
    """Atomic, audited writes for users, templates and entries.

    Args:
        store: The Record Store. The pipeline is its only writer.
        clock: Returns the current UTC time. Injected for tests.
    """

    def __init__(self, store: IRecordStore, clock: Callable[[], datetime] | None = None) -> None:
        """Initialize the pipeline.

        Args:
            store: The Record Store to write through.
            clock: Optional time source; defaults to datetime.now(UTC).
        """
        self._store = store
        self._clock = clock or _utcnow
        self._locks = KeyedLock()

    async def commit_change(
        self,
        entity_type: EntityType,
        entity_id: str | None,
        proposed: BaseModel,
        justification: str,
        acting_user: Actor | None,
    ) -> CommitResult:
        """Create or update a regulated entity together with its audit record.

        Args:
            entity_type: USER, LOGBOOK_TEMPLATE or ENTRY.
            entity_id: None to create; the id of an existing entity to update.
            proposed: The draft matching entity_type (UserDraft, TemplateDraft
                or EntryDraft).
            justification: Mandatory reason for the change.
            acting_user: The acting user from the identity collaborator.

        Returns:
            CommitResult with the committed entity and the audit record id.

        Raises:
            UnauthenticatedError: acting_user is None or unknown to the store.
            ValidationError: Empty justification, wrong draft type, entity
                validation failure, or an update of a create-only entity.
            PermissionDeniedError: A STANDARD user changing a template or user.
            NotFoundError: entity_id (or an entry's template) does not exist.
            InvariantViolationError: System-managed template column tampering.
            ConflictError: The store rejected the write as clashing with stored rows.
            StorageUnavailableError: The store could not persist the change.
        """
        try:
            account = await self._resolve_actor(acting_user)
            reason = self._require_justification(justification)
            self._check_role(entity_type, account)

            expected = _DRAFT_TYPES[entity_type]
            if not isinstance(proposed, expected):
                raise ValidationError(
                    f"{entity_type} changes take a {expected.__name__}, got {type(proposed).__name__}",
                    field="proposed",
                )
            if entity_id is not None and entity_type == "ENTRY":
                raise ValidationError("Logbook entries are create-only", field="entity_id")
            if entity_id is not None and entity_type == "USER":
                raise ValidationError("User accounts are immutable", field="entity_id")

            target_id = entity_id or new_id(_ID_PREFIXES[entity_type])
            lock_keys = [f"{entity_type}:{target_id}"]
            if isinstance(proposed, UserDraft):
                lock_keys.append(f"USER:username:{normalize_username(proposed.username)}")
            elif isinstance(proposed, EntryDraft):
                lock_keys.append(f"LOGBOOK_TEMPLATE:{proposed.template_id}")

            async with self._locks.hold(*lock_keys):
                prior: Entity | None = None
                if entity_id is not None:
                    prior = await self._store.get(entity_type, entity_id)
                    if prior is None:
                        raise NotFoundError(resource=_RESOURCE_NAMES[entity_type], resource_id=entity_id)

                now = self._clock()
                entity = await self._build(entity_type, proposed, target_id, prior, account, reason, now)
                audit = PendingAuditRecord(
                    id=new_id("audit"),
                    entity_type=entity_type,
                    entity_id=target_id,
                    action="UPDATE" if prior is not None else "CREATE",
                    old_snapshot=snapshot(prior) if prior is not None else None,
                    new_snapshot=snapshot(entity),
                    author_id=account.id,
                    author_name=account.full_name,
                    timestamp=now,
                    justification=reason,
                )
                record = await self._store.commit(entity, audit)
        except ELogbookError as exc:
            logger.warning(
                "Change rejected",
                entity_type=entity_type,
                entity_id=entity_id,
                kind=exc.kind,
                field=exc.field,
            )
            raise

        logger.info(
            "Change committed",
            entity_type=entity_type,
            entity_id=target_id,
            action=record.action,
            audit_id=record.id,
            sequence=record.sequence,
            author_id=account.id,
        )
        return CommitResult(entity=entity, audit_record_id=record.id)

    async def record_login(self, acting_user: Actor | None) -> AuditRecord:
        """Append a LOGIN audit record for a user.

        Raises:
            UnauthenticatedError: The user does not resolve.
        """
        account = await self._resolve_actor(acting_user)
        record = await self._store.commit(
            None,
            PendingAuditRecord(
                id=new_id("audit"),
                entity_type="USER",
                entity_id=account.id,
                action="LOGIN",
                new_snapshot=canonical_json({"username": account.username}),
                author_id=account.id,
                author_name=account.full_name,
                timestamp=self._clock(),
                justification=LOGIN_JUSTIFICATION,
            ),
        )
        logger.info("Login recorded", user_id=account.id, audit_id=record.id)
        return record

    async def record_report_view(
        self,
        acting_user: Actor | None,
        entity_type: EntityType,
        entity_id: str,
        description: str,
    ) -> AuditRecord:
        """Append a VIEW_REPORT audit record for an export or report view.

        Args:
            acting_user: The user viewing the report.
            entity_type: Kind of entity the report covers.
            entity_id: The entity the report covers (a template, or the user
                themselves for an audit trail export).
            description: What was viewed, e.g. the export window.

        Raises:
            UnauthenticatedError: The user does not resolve.
            ValidationError: Empty description.
        """
        account = await self._resolve_actor(acting_user)
        text = description.strip()
        if not text:
            raise ValidationError("A report description is required", field="description")
        record = await self._store.commit(
            None,
            PendingAuditRecord(
                id=new_id("audit"),
                entity_type=entity_type,
                entity_id=entity_id,
                action="VIEW_REPORT",
                new_snapshot=canonical_json({"report": text}),
                author_id=account.id,
                author_name=account.full_name,
                timestamp=self._clock(),
                justification=text,
            ),
        )
        logger.info("Report view recorded", user_id=account.id, entity_id=entity_id, audit_id=record.id)
        return record

    async def bootstrap_administrator(self, username: str, full_name: str) -> UserAccount | None:
        """Create the first ADMIN account when no users exist yet.

        The account's CREATE record is attributed to the account itself,
        since no other identity exists to sign it.

        Returns:
            The new account, or None if users already exist.
        """
        async with self._locks.hold("USER:bootstrap"):
            if await self._store.list_entities("USER"):
                return None
            now = self._clock()
            account = build_user(
                UserDraft(username=username, full_name=full_name, role="ADMIN"),
                user_id=new_id("u"),
                now=now,
            )
            record = await self._store.commit(
                account,
                PendingAuditRecord(
                    id=new_id("audit"),
                    entity_type="USER",
                    entity_id=account.id,
                    action="CREATE",
                    new_snapshot=snapshot(account),
                    author_id=account.id,
                    author_name=account.full_name,
                    timestamp=now,
                    justification=BOOTSTRAP_JUSTIFICATION,
                ),
            )
        logger.info("Bootstrap administrator created", user_id=account.id, audit_id=record.id)
        return account

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _resolve_actor(self, acting_user: Actor | None) -> UserAccount:
        if acting_user is None:
            raise UnauthenticatedError()
        account = await self._store.get("USER", acting_user.id)
        if account is None:
            raise UnauthenticatedError(f"User '{acting_user.id}' is not a known account")
        return cast(UserAccount, account)

    @staticmethod
    def _require_justification(justification: str | None) -> str:
        reason = justification.strip() if justification else ""
        if not reason:
            raise ValidationError("A justification is required for every change", field="justification")
        return reason

    @staticmethod
    def _check_role(entity_type: EntityType, account: UserAccount) -> None:
        if entity_type in _ADMIN_ONLY and account.role != "ADMIN":
            raise PermissionDeniedError(
                f"Only administrators may change {_RESOURCE_NAMES[entity_type]} records",
                resource=_RESOURCE_NAMES[entity_type],
            )

    async def _build(
        self,
        entity_type: EntityType,
        proposed: BaseModel,
        target_id: str,
        prior: Entity | None,
        account: UserAccount,
        reason: str,
        now: datetime,
    ) -> Entity:
        if entity_type == "LOGBOOK_TEMPLATE":
            return build_template(
                cast(TemplateDraft, proposed),
                template_id=target_id,
                prior=cast(LogbookTemplate | None, prior),
                author_id=account.id,
                now=now,
            )

        if entity_type == "ENTRY":
            draft = cast(EntryDraft, proposed)
            stored = await self._store.get("LOGBOOK_TEMPLATE", draft.template_id)
            if stored is None:
                raise NotFoundError(resource="LogbookTemplate", resource_id=draft.template_id)
            template = cast(LogbookTemplate, stored)
            if template.status != "ACTIVE":
                raise ValidationError(
                    f"Logbook '{template.name}' is {template.status} and does not accept entries",
                    field="template_id",
                )
            return LogbookEntry(
                id=target_id,
                template_id=template.id,
                values=build_entry_values(template, draft.values, recorded_at=now),
                created_at=now,
                created_by=account.id,
                status="SUBMITTED",
                reason=reason,
            )

        user = build_user(cast(UserDraft, proposed), user_id=target_id, now=now)
        for existing in await self._store.list_entities("USER"):
            if isinstance(existing, UserAccount) and existing.username == user.username:
                raise ValidationError(f"Username '{user.username}' is already taken", field="username")
        return user
