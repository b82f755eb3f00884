"""eLogbook ledger service entry point.

Initializes the FastAPI application with:
- The Record Store (SQL through SQLAlchemy async, or in-memory)
- ELogbookService wiring the write pipeline, audit ledger and queries
- A bootstrap administrator when the user store is empty
- Exception handlers mapping ELogbookError kinds to HTTP status codes
"""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from gxp_elogbook import __version__
from gxp_elogbook.adapters.memory_store import InMemoryRecordStore
from gxp_elogbook.adapters.sql_store import SqlRecordStore
from gxp_elogbook.api.router import router
from gxp_elogbook.core.services import ELogbookService
from gxp_elogbook.errors import ELogbookError
from gxp_elogbook.observability import get_logger, setup_logging
from gxp_elogbook.settings import Settings

logger = get_logger(__name__)

STATUS_BY_KIND: dict[str, int] = {
    "validation_error": 422,
    "not_found": 404,
    "unauthenticated": 401,
    "permission_denied": 403,
    "invariant_violation": 409,
    "conflict": 409,
    "storage_unavailable": 503,
}


async def handle_elogbook_error(request: Request, exc: ELogbookError) -> JSONResponse:
    """Render an ELogbookError as a JSON error body with the mapped status."""
    status_code = STATUS_BY_KIND.get(exc.kind, 500)
    if status_code >= 500:
        logger.error("Request failed", path=request.url.path, kind=exc.kind)
    return JSONResponse(status_code=status_code, content={"error": exc.to_dict()})


def create_app(settings: Settings | None = None) -> FastAPI:
    """Build the FastAPI application.

    Args:
        settings: Service settings. Read from the environment when omitted.

    Returns:
        The configured application. The Record Store is opened by the lifespan.
    """
    settings = settings or Settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Open the Record Store and bootstrap on startup, close it on shutdown.

        Args:
            app: The FastAPI application instance.

        Yields:
            None
        """
        setup_logging(level=settings.log_level, format=settings.log_format)

        sql_store: SqlRecordStore | None = None
        if settings.store_backend == "sql":
            logger.info("Initializing SQL record store", service=settings.service_name)
            sql_store = SqlRecordStore.from_url(settings.database_url, echo=settings.db_echo)
            await sql_store.init()
            store: InMemoryRecordStore | SqlRecordStore = sql_store
        else:
            logger.warning("Using in-memory record store; records are lost on shutdown")
            store = InMemoryRecordStore()

        service = ELogbookService(store, max_span_days=settings.export_max_span_days)
        await service.bootstrap(settings.bootstrap_admin_username, settings.bootstrap_admin_full_name)

        app.state.service = service
        app.state.settings = settings

        logger.info("eLogbook ledger startup complete", backend=settings.store_backend)

        yield

        logger.info("Shutting down eLogbook ledger")
        if sql_store is not None:
            await sql_store.close()

    app = FastAPI(title=settings.service_name, version=__version__, lifespan=lifespan)
    app.add_exception_handler(ELogbookError, handle_elogbook_error)  # type: ignore[arg-type]
    app.include_router(router, prefix="/api/v1")
    app.state.settings = settings
    return app


app: FastAPI = create_app()
