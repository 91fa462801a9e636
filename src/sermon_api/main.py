import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from src.sermon_api.api.responses import ErrorResponse, ServiceError, error_kind_for_status
from src.sermon_api.api.v1.routes_audio_stream import router as audio_router_v1
from src.sermon_api.api.v1.routes_audio_stream import ws_router as audio_ws_router_v1
from src.sermon_api.api.v1.routes_sessions import router as sessions_router_v1
from src.sermon_api.api.v1.routes_system import router as system_router_v1
from src.sermon_api.config import settings
from src.sermon_api.domain.results import ErrorKind
from src.sermon_api.infra.db.bootstrap import init_sql_repositories
from src.sermon_api.logging_config import configure_logging
from src.sermon_api.services.audio_stream.sweeper import cache_sweeper

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application startup and shutdown.

    When USE_SQL_REPOS is enabled and a DATABASE_URL is configured, the SQL
    session repository replaces the in-memory one. The ingestion cache
    sweeper runs for the lifetime of the app unless ENABLE_CACHE_SWEEPER is
    false.
    """

    configure_logging()
    init_sql_repositories()
    if settings.enable_cache_sweeper:
        cache_sweeper.start()
    try:
        yield
    finally:
        await cache_sweeper.stop()


app = FastAPI(title="Sermon Transcription API", lifespan=lifespan)

# CORS configuration – permissive by default for development. Tighten via
# CORS_ALLOW_ORIGINS in production deployments.
allow_origins = [origin.strip() for origin in settings.cors_allow_origins.split(",") if origin.strip()] or ["*"]
app.add_middleware(
    CORSMiddleware,
    allow_origins=allow_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(ServiceError)
async def service_error_handler(request: Request, exc: ServiceError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content=exc.to_response().model_dump(mode="json"))


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    body = ErrorResponse(message=str(exc.detail), error_kind=error_kind_for_status(exc.status_code))
    return JSONResponse(status_code=exc.status_code, content=body.model_dump(mode="json"), headers=exc.headers)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = "; ".join(
        f"{'.'.join(str(part) for part in error['loc'])}: {error['msg']}" for error in exc.errors()
    )
    body = ErrorResponse(message=f"Invalid request: {errors}", error_kind=ErrorKind.VALIDATION_ERROR)
    return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content=body.model_dump(mode="json"))


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    body = ErrorResponse(message="An unexpected error occurred", error_kind=ErrorKind.INTERNAL_ERROR)
    return JSONResponse(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, content=body.model_dump(mode="json"))


@app.get("/health", tags=["system"])
async def health_check() -> dict:
    """Basic liveness check for the API root."""
    return {"status": "ok"}


# Versioned API routers
app.include_router(system_router_v1, prefix="/api/v1")
app.include_router(sessions_router_v1, prefix="/api/v1")
app.include_router(audio_router_v1, prefix="/api/v1")
app.include_router(audio_ws_router_v1, prefix="/api/v1")
