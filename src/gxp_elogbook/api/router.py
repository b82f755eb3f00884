"""API router for the eLogbook ledger.

All endpoints are registered here and included in main.py under the /api/v1
prefix. Routes are thin; business logic lives in ELogbookService.

The acting user is identified by the X-User-Id header (the id returned by
POST /sessions). A missing or unknown id reaches the service as an
unauthenticated identity, which every operation rejects.

Endpoints:
- POST        /sessions                             — Log in, records LOGIN
- POST/GET    /users                                — Provision / search users
- POST/GET    /templates                            — Create / list templates
- GET/PUT     /templates/{id}                       — Read / update a template
- POST/GET    /templates/{id}/entries               — Submit / list entries
- GET         /templates/{id}/entries/export        — CSV export of entries
- GET         /audit-records                        — Role-filtered audit trail
- GET         /audit-records/export                 — CSV export of the audit trail
- GET         /audit-records/entities/{entity_id}   — One entity's history
"""

from datetime import datetime
from typing import Annotated, cast

from fastapi import APIRouter, Depends, Header, Query, Request, Response

from gxp_elogbook.api.schemas import (
    ActorResponse,
    AuditRecordResponse,
    EntryCommitResponse,
    EntryResponse,
    EntrySubmitRequest,
    LoginRequest,
    TemplateCommitResponse,
    TemplateResponse,
    TemplateWriteRequest,
    UserCreateRequest,
    UserResponse,
)
from gxp_elogbook.core.models import Actor, LogbookEntry, LogbookTemplate, TemplateStatus
from gxp_elogbook.core.services import ELogbookService
from gxp_elogbook.observability import get_logger

logger = get_logger(__name__)

router = APIRouter(tags=["elogbook"])


# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------


def get_service(request: Request) -> ELogbookService:
    """Return the ELogbookService wired at startup."""
    return request.app.state.service


class HeaderIdentityProvider:
    """Identity collaborator resolving the X-User-Id header against the user store.

    Args:
        service: The service used to resolve user ids.
        user_id: Raw header value, if any.
    """

    def __init__(self, service: ELogbookService, user_id: str | None) -> None:
        self._service = service
        self._user_id = user_id

    async def current_user(self) -> Actor | None:
        return await self._service.resolve_actor(self._user_id)


async def get_current_actor(
    service: Annotated[ELogbookService, Depends(get_service)],
    x_user_id: Annotated[str | None, Header()] = None,
) -> Actor | None:
    """Resolve the acting user for this request, or None if unauthenticated."""
    return await HeaderIdentityProvider(service, x_user_id).current_user()


ServiceDep = Annotated[ELogbookService, Depends(get_service)]
ActorDep = Annotated[Actor | None, Depends(get_current_actor)]


def _csv(text: str, filename: str) -> Response:
    return Response(
        content=text,
        media_type="text/csv; charset=utf-8",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


def _template_commit(entity: object, audit_record_id: str) -> TemplateCommitResponse:
    return TemplateCommitResponse(
        template=TemplateResponse.from_template(cast(LogbookTemplate, entity)),
        audit_record_id=audit_record_id,
    )


# ---------------------------------------------------------------------------
# Sessions and users
# ---------------------------------------------------------------------------


@router.post("/sessions", response_model=ActorResponse, status_code=201)
async def login(request: LoginRequest, service: ServiceDep) -> ActorResponse:
    """Open a session for a username and record the LOGIN."""
    actor = await service.login(request.username)
    return ActorResponse(**actor.model_dump())


@router.post("/users", response_model=UserResponse, status_code=201)
async def provision_user(request: UserCreateRequest, actor: ActorDep, service: ServiceDep) -> UserResponse:
    """Provision a user account (administrators only)."""
    logger.info("POST /users", role=request.role)
    account = await service.provision_user(
        actor,
        username=request.username,
        full_name=request.full_name,
        role=request.role,
        reason=request.reason,
    )
    return UserResponse.from_account(account)


@router.get("/users", response_model=list[UserResponse])
async def list_users(
    actor: ActorDep,
    service: ServiceDep,
    search: str | None = Query(default=None, description="Match full name or username"),
) -> list[UserResponse]:
    """List user accounts."""
    return [UserResponse.from_account(account) for account in await service.list_users(actor, search)]


# ---------------------------------------------------------------------------
# Templates
# ---------------------------------------------------------------------------


@router.post("/templates", response_model=TemplateCommitResponse, status_code=201)
async def create_template(
    request: TemplateWriteRequest,
    actor: ActorDep,
    service: ServiceDep,
) -> TemplateCommitResponse:
    """Create a logbook template. The capture-time column is added automatically."""
    logger.info("POST /templates", column_count=len(request.columns))
    result = await service.create_template(actor, request.to_draft(), request.reason)
    return _template_commit(result.entity, result.audit_record_id)


@router.get("/templates", response_model=list[TemplateResponse])
async def list_templates(
    actor: ActorDep,
    service: ServiceDep,
    status: TemplateStatus | None = Query(default=None),
) -> list[TemplateResponse]:
    """List logbook templates."""
    return [TemplateResponse.from_template(t) for t in await service.list_templates(actor, status)]


@router.get("/templates/{template_id}", response_model=TemplateResponse)
async def get_template(template_id: str, actor: ActorDep, service: ServiceDep) -> TemplateResponse:
    """Get a logbook template by id."""
    return TemplateResponse.from_template(await service.get_template(actor, template_id))


@router.put("/templates/{template_id}", response_model=TemplateCommitResponse)
async def update_template(
    template_id: str,
    request: TemplateWriteRequest,
    actor: ActorDep,
    service: ServiceDep,
) -> TemplateCommitResponse:
    """Replace a template with a new version. System-managed columns must be kept."""
    logger.info("PUT /templates/{id}", template_id=template_id)
    result = await service.update_template(actor, template_id, request.to_draft(), request.reason)
    return _template_commit(result.entity, result.audit_record_id)


# ---------------------------------------------------------------------------
# Entries
# ---------------------------------------------------------------------------


@router.post("/templates/{template_id}/entries", response_model=EntryCommitResponse, status_code=201)
async def submit_entry(
    template_id: str,
    request: EntrySubmitRequest,
    actor: ActorDep,
    service: ServiceDep,
) -> EntryCommitResponse:
    """Submit an entry against an active template."""
    result = await service.submit_entry(actor, template_id, request.values, request.reason)
    entry = cast(LogbookEntry, result.entity)
    return EntryCommitResponse(entry=EntryResponse.from_entry(entry), audit_record_id=result.audit_record_id)


@router.get("/templates/{template_id}/entries", response_model=list[EntryResponse])
async def list_entries(
    template_id: str,
    actor: ActorDep,
    service: ServiceDep,
    start: datetime | None = Query(default=None),
    end: datetime | None = Query(default=None),
) -> list[EntryResponse]:
    """List a template's entries, optionally within a bounded window."""
    entries = await service.list_entries(actor, template_id, start, end)
    return [EntryResponse.from_entry(entry) for entry in entries]


@router.get("/templates/{template_id}/entries/export")
async def export_entries(
    template_id: str,
    actor: ActorDep,
    service: ServiceDep,
    start: datetime | None = Query(default=None),
    end: datetime | None = Query(default=None),
) -> Response:
    """Export a template's entries as CSV. Records VIEW_REPORT."""
    text = await service.export_entries(actor, template_id, start, end)
    return _csv(text, f"{template_id}-entries.csv")


# ---------------------------------------------------------------------------
# Audit trail
# ---------------------------------------------------------------------------


@router.get("/audit-records", response_model=list[AuditRecordResponse])
async def list_audit_records(
    actor: ActorDep,
    service: ServiceDep,
    search: str | None = Query(default=None, description="Match user, entity type or reason"),
    start: datetime | None = Query(default=None),
    end: datetime | None = Query(default=None),
) -> list[AuditRecordResponse]:
    """Return the audit records visible to the caller, newest first."""
    records = await service.audit_trail(actor, search=search, start=start, end=end)
    return [AuditRecordResponse.from_record(record) for record in records]


@router.get("/audit-records/export")
async def export_audit_records(
    actor: ActorDep,
    service: ServiceDep,
    start: datetime | None = Query(default=None),
    end: datetime | None = Query(default=None),
    search: str | None = Query(default=None),
) -> Response:
    """Export the visible audit trail as CSV. Records VIEW_REPORT."""
    text = await service.export_audit_trail(actor, start, end, search=search)
    return _csv(text, "audit-trail.csv")


@router.get("/audit-records/entities/{entity_id}", response_model=list[AuditRecordResponse])
async def entity_history(entity_id: str, actor: ActorDep, service: ServiceDep) -> list[AuditRecordResponse]:
    """Return one entity's audit history visible to the caller, newest first."""
    return [AuditRecordResponse.from_record(record) for record in await service.entity_history(actor, entity_id)]
