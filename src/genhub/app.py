"""FastAPI application factory.

`app` at module level is what uvicorn serves; tests reuse it and populate
app.state themselves because the lifespan does not run under ASGITransport.
"""

import asyncio
from contextlib import asynccontextmanager

import httpx
import structlog
from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from genhub.api.routes import credits, generations, health, models
from genhub.core.config import Settings, configure_logging
from genhub.core.database import create_schema, setup_db_session
from genhub.services.auth import SupabaseAuthClient
from genhub.services.exceptions import GenerationError
from genhub.services.orchestrator import GenerationOrchestrator
from genhub.services.providers.registry import AdapterRegistry
from genhub.uow import create_uow_factory
from genhub.workers.reconciliation_worker import supervise_reconciliation_worker

logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Wire shared resources onto app.state for the lifetime of the process.

    The provider adapters and the auth client share one httpx.AsyncClient.
    The reconciliation worker runs under a supervisor that restarts it after
    crashes; shutdown cancels it before closing the client and the engine.
    """
    settings = Settings()  # type: ignore[call-arg]
    configure_logging(settings)

    session_factory = setup_db_session(settings.database_url, settings.db_pool_size)
    if settings.database_url.startswith("sqlite"):
        await create_schema(session_factory)
    uow_factory = create_uow_factory(session_factory)
    http_client = httpx.AsyncClient(timeout=settings.provider_http_timeout_seconds)

    orchestrator = GenerationOrchestrator(
        uow_factory=uow_factory,
        registry=AdapterRegistry.from_settings(settings, client=http_client),
        settings=settings,
    )

    app.state.settings = settings
    app.state.session_factory = session_factory
    app.state.uow_factory = uow_factory
    app.state.orchestrator = orchestrator
    app.state.auth_client = SupabaseAuthClient(
        settings.supabase_url, settings.supabase_anon_key, client=http_client
    )

    shutdown_event = asyncio.Event()
    worker_task = None
    if settings.enable_reconciliation_worker:
        worker_task = asyncio.create_task(
            supervise_reconciliation_worker(orchestrator, settings, shutdown_event)
        )

    logger.info(
        "application.startup",
        db_url=settings.database_url.split("@")[-1],
        reconciliation_worker=worker_task is not None,
    )

    try:
        yield
    finally:
        logger.info("application.shutdown")
        shutdown_event.set()
        if worker_task is not None:
            worker_task.cancel()
            await asyncio.gather(worker_task, return_exceptions=True)
        await http_client.aclose()
        await session_factory.kw["bind"].dispose()


async def generation_error_handler(request: Request, exc: GenerationError) -> JSONResponse:
    """Render orchestrator errors as {"error": message} with their HTTP status."""
    return JSONResponse(status_code=exc.http_status, content={"error": str(exc)})


async def unexpected_error_handler(request: Request, exc: Exception) -> JSONResponse:
    """Render unhandled errors as a JSON 500 with a generic message."""
    logger.error(
        "request.unhandled_error",
        path=request.url.path,
        error=str(exc),
        error_type=type(exc).__name__,
    )
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"error": "Internal server error"},
    )


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Render malformed request bodies as 400 {"error": message}."""
    first = exc.errors()[0] if exc.errors() else {}
    location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
    message = first.get("msg", "Invalid request")
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"error": f"{location}: {message}" if location else message},
    )


def create_app() -> FastAPI:
    settings = Settings()  # type: ignore[call-arg]

    app = FastAPI(
        title="genhub API",
        description="Generative media orchestration backend",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(GenerationError, generation_error_handler)  # type: ignore[arg-type]
    app.add_exception_handler(RequestValidationError, request_validation_handler)  # type: ignore[arg-type]
    app.add_exception_handler(Exception, unexpected_error_handler)

    for router in (generations.router, models.router, credits.router, health.router):
        app.include_router(router)

    return app


app = create_app()
