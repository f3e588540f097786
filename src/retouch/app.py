"""FastAPI application factory."""

from contextlib import asynccontextmanager

import httpx
import structlog
import uvicorn
from fastapi import FastAPI, Request, Response, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text
from starlette.exceptions import HTTPException as StarletteHTTPException

from retouch.api.routes import generate, jobs, scavenger, worker
from retouch.core import timezone  # noqa: F401
from retouch.core.config import Settings, configure_logging
from retouch.core.database import setup_db_session
from retouch.services.dispatch.factory import create_dispatcher
from retouch.services.generation.adapter import GenerationProvider
from retouch.services.generation.replicate_client import ReplicateClient
from retouch.services.generation.retry import RetryPolicy
from retouch.services.generation.vertex_client import GoogleTokenProvider, VertexClient
from retouch.services.storage.object_store import R2ObjectStore
from retouch.uow import create_uow_factory
from retouch.workers.job_runner import JobRunner

logger = structlog.get_logger()


def build_provider(settings: Settings, http_client: httpx.AsyncClient) -> GenerationProvider:
    """Generation provider wired from settings."""
    vertex_client = None
    if settings.vertex_project_id:
        vertex_client = VertexClient(http_client, GoogleTokenProvider(settings.google_credentials_json))

    return GenerationProvider(
        http_client,
        vertex_client=vertex_client,
        replicate_client=ReplicateClient(settings.replicate_api_token),
        project_id=settings.vertex_project_id,
        location=settings.vertex_location,
        configured_model=settings.generation_model,
        default_resolution=settings.default_resolution,
        upscale_model=settings.upscale_model,
        max_dimension=settings.image_max_dimension,
        max_reference_images=settings.max_reference_images,
        fetch_timeout=settings.fetch_timeout_seconds,
        policy=RetryPolicy(
            max_attempts=settings.retry_max_attempts,
            base_delay=settings.retry_base_delay,
            rate_limit_initial_delay=settings.rate_limit_initial_delay,
            max_delay=settings.retry_max_delay,
            deadline_seconds=settings.generation_deadline_seconds,
            attempt_timeout=settings.provider_request_timeout,
        ),
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan context manager.

    Handles startup and shutdown tasks:
    - Startup: Configure logging, build the database session factory and every
      outbound client once, store them in app.state
    - Shutdown: Drain pending local deliveries, close the HTTP client
    """
    settings: Settings = app.state.settings

    configure_logging(settings)

    session_factory = setup_db_session(settings.database_url, settings.db_pool_size)
    uow_factory = create_uow_factory(session_factory)

    http_client = httpx.AsyncClient(timeout=httpx.Timeout(settings.provider_request_timeout))
    dispatcher = create_dispatcher(settings, http_client)
    object_store = R2ObjectStore.from_credentials(
        account_id=settings.r2_account_id,
        access_key_id=settings.r2_access_key_id,
        secret_access_key=settings.r2_secret_access_key,
        bucket=settings.r2_bucket,
        endpoint_url=settings.r2_endpoint_url,
        public_base_url=settings.public_base_url,
        timeout=settings.upload_timeout_seconds,
    )
    job_runner = JobRunner(
        session_factory,
        build_provider(settings, http_client),
        object_store,
        http_client,
        fetch_timeout=settings.fetch_timeout_seconds,
        upload_timeout=settings.upload_timeout_seconds,
        backup_bucket=settings.backup_bucket,
    )

    # Store in app.state for access in routes
    app.state.session_factory = session_factory
    app.state.uow_factory = uow_factory
    app.state.http_client = http_client
    app.state.dispatcher = dispatcher
    app.state.object_store = object_store
    app.state.job_runner = job_runner

    logger.info(
        "application.startup",
        db_url=settings.database_url.split("@")[-1],
        dispatcher=dispatcher.name,
        worker_url=settings.worker_url or "<request host>",
    )

    yield

    logger.info("application.shutdown")
    await dispatcher.aclose()
    await http_client.aclose()


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content={"ok": False, "error": str(exc.detail)},
        headers=getattr(exc, "headers", None),
    )


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Malformed JSON and wrong field types are client errors (400)."""
    errors = exc.errors()
    first = errors[0] if errors else {}
    location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
    message = first.get("msg", "Invalid request")
    error = f"Invalid request: {location}: {message}" if location else f"Invalid request: {message}"
    return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"ok": False, "error": error})


def create_app(settings: Settings | None = None) -> FastAPI:
    """Create and configure FastAPI application.

    Returns:
        Configured FastAPI application instance
    """
    settings = settings or Settings()  # type: ignore[call-arg]

    app = FastAPI(
        title="Retouch Backend API",
        description="Asynchronous photo enhancement job pipeline",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.settings = settings

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)

    app.include_router(generate.router)
    app.include_router(worker.router)
    app.include_router(scavenger.router)
    app.include_router(jobs.router)

    # Health check endpoint with database validation
    @app.get("/health")
    async def health_check(response: Response):
        """Health check endpoint with database connectivity test.

        Returns:
            200: {"status": "healthy"} if database connection succeeds
            503: {"status": "unhealthy", "error": {...}} if database connection fails
        """
        try:
            async with app.state.session_factory() as session:
                result = await session.execute(text("SELECT 1"))
                result.scalar()

            logger.debug("health_check.success")
            return {"status": "healthy"}

        except Exception as e:
            logger.error(
                "health_check.failed",
                error=str(e),
                error_type=type(e).__name__,
            )
            response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
            return {
                "status": "unhealthy",
                "error": {
                    "type": type(e).__name__,
                    "message": str(e),
                },
            }

    return app


# Create app instance for uvicorn
app = create_app()


def main() -> None:
    """Serve the API on the configured HOST and PORT."""
    settings: Settings = app.state.settings
    uvicorn.run(app, host=settings.host, port=settings.port)
