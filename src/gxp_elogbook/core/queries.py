"""Read paths for current-state collections.

Collaborators read templates, entries and users through RecordQueries rather
than the Record Store itself. Every value returned is a fresh immutable copy.
"""

from __future__ import annotations

from typing import cast

from gxp_elogbook.core.access import ExportWindow
from gxp_elogbook.core.interfaces import IRecordStore
from gxp_elogbook.core.models import (
    Actor,
    LogbookEntry,
    LogbookTemplate,
    TemplateStatus,
    UserAccount,
    normalize_username,
)
from gxp_elogbook.errors import NotFoundError


class RecordQueries:
    """Template, entry and user lookups.

    Args:
        store: The Record Store to read from.
    """

    def __init__(self, store: IRecordStore) -> None:
        self._store = store

    async def get_template(self, template_id: str) -> LogbookTemplate:
        """Return a template by id.

        Raises:
            NotFoundError: If no template has this id.
        """
        template = await self._store.get("LOGBOOK_TEMPLATE", template_id)
        if template is None:
            raise NotFoundError(resource="LogbookTemplate", resource_id=template_id)
        return cast(LogbookTemplate, template)

    async def list_templates(self, status: TemplateStatus | None = None) -> list[LogbookTemplate]:
        """Return templates in creation order, optionally filtered by status."""
        templates = [t for t in await self._store.list_entities("LOGBOOK_TEMPLATE") if isinstance(t, LogbookTemplate)]
        if status is not None:
            templates = [t for t in templates if t.status == status]
        return templates

    async def list_entries(self, template_id: str, window: ExportWindow | None = None) -> list[LogbookEntry]:
        """Return a template's entries in creation order.

        Args:
            template_id: The owning template.
            window: Optional validated window on created_at.

        Raises:
            NotFoundError: If the template does not exist.
        """
        await self.get_template(template_id)
        entries = [
            entry
            for entry in await self._store.list_entities("ENTRY")
            if isinstance(entry, LogbookEntry) and entry.template_id == template_id
        ]
        if window is not None:
            entries = [entry for entry in entries if window.contains(entry.created_at)]
        return sorted(entries, key=lambda entry: (entry.created_at, entry.id))

    async def list_users(self, search: str | None = None) -> list[UserAccount]:
        """Return user accounts, optionally filtered by full name or username."""
        users = [u for u in await self._store.list_entities("USER") if isinstance(u, UserAccount)]
        if search and search.strip():
            needle = search.strip().lower()
            users = [u for u in users if needle in u.full_name.lower() or needle in u.username]
        return users

    async def find_user(self, username: str) -> UserAccount | None:
        """Return the account with this (case-insensitive) username, or None."""
        wanted = normalize_username(username)
        for user in await self.list_users():
            if user.username == wanted:
                return user
        return None

    async def resolve_actor(self, user_id: str | None) -> Actor | None:
        """Resolve a session user id to an Actor, or None if unknown."""
        if not user_id:
            return None
        account = await self._store.get("USER", user_id)
        if not isinstance(account, UserAccount):
            return None
        return account.as_actor()
